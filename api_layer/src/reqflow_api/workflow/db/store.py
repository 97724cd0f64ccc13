"""
Document Store Contracts

Storage operations the workflow relies on. Every mutating call is a single
atomic conditional write on one request document; implementations must not
emulate them with an unguarded read-then-write.
"""

from datetime import datetime
from typing import List
from typing import Optional
from typing import Protocol

from reqflow_api.workflow.enums import RequestState
from reqflow_api.workflow.models.request import Claim
from reqflow_api.workflow.models.request import EventRequest
from reqflow_api.workflow.models.request import StatusHistoryEntry
from reqflow_api.workflow.models.system_settings import SystemSettings


class RequestStore(Protocol):
    """One document per request, keyed by request id."""

    async def get(self, request_id: str) -> Optional[EventRequest]:
        ...

    async def list_requests(self, status: Optional[RequestState] = None, limit: int = 100) -> List[EventRequest]:
        ...

    async def insert(self, request: EventRequest) -> EventRequest:
        """
        Store a new document at version 1.

        Raises:
            ConflictError: If the id already exists
        """
        ...

    async def compare_and_set(self, request: EventRequest, expected_version: int) -> EventRequest:
        """
        Replace the document if its stored version equals expected_version.

        Returns the stored document at version expected_version + 1.

        Raises:
            NotFoundError: If the document does not exist
            ConflictError: If the stored version differs
        """
        ...

    async def acquire_claim(
        self, request_id: str, claim: Claim, history: StatusHistoryEntry, now: datetime
    ) -> Optional[EventRequest]:
        """
        Set the lease if the request is not terminal and the current lease is
        absent, expired at now, or already held by claim.holder_id.

        Appends history and bumps the version in the same write. Returns None
        when the condition does not hold.
        """
        ...

    async def release_claim(
        self, request_id: str, holder_id: str, history: StatusHistoryEntry
    ) -> Optional[EventRequest]:
        """Clear the lease if held by holder_id. Returns None otherwise."""
        ...

    async def delete_if_status(self, request_id: str, statuses: List[RequestState]) -> bool:
        """Hard delete if the stored status is one of statuses."""
        ...


class SettingsStore(Protocol):
    """Single versioned SystemSettings document."""

    async def get(self) -> Optional[SystemSettings]:
        ...

    async def compare_and_set(self, settings: SystemSettings, expected_version: int) -> SystemSettings:
        """
        Raises:
            ConflictError: If the stored version differs from expected_version
        """
        ...
