"""
In-Memory Stores

Single-process document stores for local runs and tests. Documents are kept
as serialized dicts so callers never share mutable state with the store; the
store lock is the atomic primitive behind each conditional write.
"""

import asyncio
from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from loguru import logger

from reqflow_api.workflow.enums import RequestState
from reqflow_api.workflow.exceptions import ConflictError
from reqflow_api.workflow.exceptions import NotFoundError
from reqflow_api.workflow.models.request import Claim
from reqflow_api.workflow.models.request import EventRequest
from reqflow_api.workflow.models.request import StatusHistoryEntry
from reqflow_api.workflow.models.request import utc_now
from reqflow_api.workflow.models.system_settings import SystemSettings
from reqflow_api.workflow.state_machine import is_terminal


class InMemoryRequestStore:
    """Dict-backed RequestStore."""

    def __init__(self):
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _load(document: Dict[str, Any]) -> EventRequest:
        return EventRequest.model_validate(document)

    async def get(self, request_id: str) -> Optional[EventRequest]:
        document = self._documents.get(request_id)
        return self._load(document) if document is not None else None

    async def list_requests(self, status: Optional[RequestState] = None, limit: int = 100) -> List[EventRequest]:
        requests = [self._load(doc) for doc in self._documents.values()]
        if status is not None:
            requests = [r for r in requests if r.status == status]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return requests[:limit]

    async def insert(self, request: EventRequest) -> EventRequest:
        async with self._lock:
            if request.id in self._documents:
                raise ConflictError(f"Request {request.id} already exists", {"request_id": request.id})
            stored = request.model_copy(update={"version": 1})
            self._documents[request.id] = stored.to_document()
        return self._load(self._documents[request.id])

    async def compare_and_set(self, request: EventRequest, expected_version: int) -> EventRequest:
        async with self._lock:
            current = self._documents.get(request.id)
            if current is None:
                raise NotFoundError(f"Request {request.id} not found", {"request_id": request.id})
            if current["version"] != expected_version:
                logger.debug(
                    "Version mismatch on request write",
                    event_request_id=request.id,
                    expected_version=expected_version,
                    stored_version=current["version"],
                )
                raise ConflictError(
                    f"Request {request.id} was modified concurrently",
                    {"request_id": request.id, "expected_version": expected_version},
                )
            stored = request.model_copy(update={"version": expected_version + 1, "updated_at": utc_now()})
            self._documents[request.id] = stored.to_document()
            return self._load(self._documents[request.id])

    async def acquire_claim(
        self, request_id: str, claim: Claim, history: StatusHistoryEntry, now: datetime
    ) -> Optional[EventRequest]:
        async with self._lock:
            current = self._documents.get(request_id)
            if current is None:
                raise NotFoundError(f"Request {request_id} not found", {"request_id": request_id})
            request = self._load(current)
            if is_terminal(request.status):
                return None
            existing = request.active_claim(now)
            if existing is not None and existing.holder_id != claim.holder_id:
                return None
            request.claim = claim
            request.status_history.append(history)
            request.version += 1
            request.updated_at = now
            self._documents[request_id] = request.to_document()
            return self._load(self._documents[request_id])

    async def release_claim(
        self, request_id: str, holder_id: str, history: StatusHistoryEntry
    ) -> Optional[EventRequest]:
        async with self._lock:
            current = self._documents.get(request_id)
            if current is None:
                raise NotFoundError(f"Request {request_id} not found", {"request_id": request_id})
            request = self._load(current)
            if request.claim is None or request.claim.holder_id != holder_id:
                return None
            request.claim = None
            request.status_history.append(history)
            request.version += 1
            request.updated_at = utc_now()
            self._documents[request_id] = request.to_document()
            return self._load(self._documents[request_id])

    async def delete_if_status(self, request_id: str, statuses: List[RequestState]) -> bool:
        async with self._lock:
            current = self._documents.get(request_id)
            if current is None or self._load(current).status not in statuses:
                return False
            del self._documents[request_id]
            return True


class InMemorySettingsStore:
    """Holds one SystemSettings document."""

    def __init__(self, initial: Optional[SystemSettings] = None):
        self._document: Optional[Dict[str, Any]] = initial.model_dump(mode="json") if initial else None
        self._lock = asyncio.Lock()

    async def get(self) -> Optional[SystemSettings]:
        if self._document is None:
            return None
        return SystemSettings.model_validate(self._document)

    async def compare_and_set(self, settings: SystemSettings, expected_version: int) -> SystemSettings:
        async with self._lock:
            stored_version = self._document["version"] if self._document is not None else 0
            if stored_version != expected_version:
                raise ConflictError(
                    "System settings were modified concurrently",
                    {"expected_version": expected_version, "stored_version": stored_version},
                )
            stored = settings.model_copy(update={"version": expected_version + 1})
            self._document = stored.model_dump(mode="json")
            return SystemSettings.model_validate(self._document)
