"""
Request Repository

PostgreSQL-backed RequestStore. Each request is one JSONB document; status,
claim holder, claim expiry and version are mirrored into columns so every
mutation is a single conditional UPDATE.
"""

import json
from datetime import datetime
from typing import Any
from typing import List
from typing import Optional

import asyncpg
from loguru import logger

from reqflow_api.workflow.enums import RequestState
from reqflow_api.workflow.exceptions import ConflictError
from reqflow_api.workflow.exceptions import NotFoundError
from reqflow_api.workflow.models.request import Claim
from reqflow_api.workflow.models.request import EventRequest
from reqflow_api.workflow.models.request import StatusHistoryEntry
from reqflow_api.workflow.models.request import utc_now
from reqflow_api.workflow.state_machine import TERMINAL_STATES

TABLE = "workflow.event_requests"


def _decode(document: Any) -> EventRequest:
    if isinstance(document, str):
        document = json.loads(document)
    return EventRequest.model_validate(document)


def _encode(value: Any) -> str:
    return json.dumps(value, default=str)


class RequestRepository:
    """Request document repository (one row per request, no SCD2)."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get(self, request_id: str) -> Optional[EventRequest]:
        async with self.pool.acquire() as conn:
            document = await conn.fetchval(f"SELECT document FROM {TABLE} WHERE request_id = $1", request_id)
        return _decode(document) if document is not None else None

    async def list_requests(self, status: Optional[RequestState] = None, limit: int = 100) -> List[EventRequest]:
        async with self.pool.acquire() as conn:
            if status is None:
                rows = await conn.fetch(
                    f"SELECT document FROM {TABLE} ORDER BY created_at DESC LIMIT $1",
                    limit,
                )
            else:
                rows = await conn.fetch(
                    f"SELECT document FROM {TABLE} WHERE status = $1 ORDER BY created_at DESC LIMIT $2",
                    status.value,
                    limit,
                )
        return [_decode(row["document"]) for row in rows]

    async def insert(self, request: EventRequest) -> EventRequest:
        stored = request.model_copy(update={"version": 1})
        claim = stored.claim
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO {TABLE}
                        (request_id, status, claim_holder_id, claim_expires_at, version, document, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, 1, $5::jsonb, $6, $7)
                    """,
                    stored.id,
                    stored.status.value,
                    claim.holder_id if claim else None,
                    claim.expires_at if claim else None,
                    _encode(stored.to_document()),
                    stored.created_at,
                    stored.updated_at,
                )
        except asyncpg.UniqueViolationError:
            raise ConflictError(f"Request {request.id} already exists", {"request_id": request.id})
        return stored

    async def compare_and_set(self, request: EventRequest, expected_version: int) -> EventRequest:
        stored = request.model_copy(update={"version": expected_version + 1, "updated_at": utc_now()})
        claim = stored.claim
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                updated = await conn.fetchval(
                    f"""
                    UPDATE {TABLE}
                    SET document = $2::jsonb,
                        status = $3,
                        claim_holder_id = $4,
                        claim_expires_at = $5,
                        version = $6,
                        updated_at = $7
                    WHERE request_id = $1 AND version = $8
                    RETURNING request_id
                    """,
                    stored.id,
                    _encode(stored.to_document()),
                    stored.status.value,
                    claim.holder_id if claim else None,
                    claim.expires_at if claim else None,
                    stored.version,
                    stored.updated_at,
                    expected_version,
                )
                if updated is None:
                    exists = await conn.fetchval(f"SELECT 1 FROM {TABLE} WHERE request_id = $1", request.id)
                    if not exists:
                        raise NotFoundError(f"Request {request.id} not found", {"request_id": request.id})
                    logger.debug(
                        "Version mismatch on request write",
                        event_request_id=request.id,
                        expected_version=expected_version,
                    )
                    raise ConflictError(
                        f"Request {request.id} was modified concurrently",
                        {"request_id": request.id, "expected_version": expected_version},
                    )
        return stored

    async def acquire_claim(
        self, request_id: str, claim: Claim, history: StatusHistoryEntry, now: datetime
    ) -> Optional[EventRequest]:
        terminal = [state.value for state in TERMINAL_STATES]
        async with self.pool.acquire() as conn:
            document = await conn.fetchval(
                f"""
                UPDATE {TABLE}
                SET document = document || jsonb_build_object(
                        'claim', $2::jsonb,
                        'status_history', COALESCE(document->'status_history', '[]'::jsonb) || $3::jsonb,
                        'version', version + 1,
                        'updated_at', to_jsonb($4::text)
                    ),
                    claim_holder_id = $5,
                    claim_expires_at = $6,
                    version = version + 1,
                    updated_at = $7
                WHERE request_id = $1
                  AND status <> ALL($8::text[])
                  AND (claim_holder_id IS NULL OR claim_expires_at <= $7 OR claim_holder_id = $5)
                RETURNING document
                """,
                request_id,
                _encode(claim.model_dump(mode="json")),
                _encode([history.model_dump(mode="json")]),
                now.isoformat(),
                claim.holder_id,
                claim.expires_at,
                now,
                terminal,
            )
            if document is None:
                exists = await conn.fetchval(f"SELECT 1 FROM {TABLE} WHERE request_id = $1", request_id)
                if not exists:
                    raise NotFoundError(f"Request {request_id} not found", {"request_id": request_id})
                return None
        return _decode(document)

    async def release_claim(
        self, request_id: str, holder_id: str, history: StatusHistoryEntry
    ) -> Optional[EventRequest]:
        now = utc_now()
        async with self.pool.acquire() as conn:
            document = await conn.fetchval(
                f"""
                UPDATE {TABLE}
                SET document = document || jsonb_build_object(
                        'claim', 'null'::jsonb,
                        'status_history', COALESCE(document->'status_history', '[]'::jsonb) || $3::jsonb,
                        'version', version + 1,
                        'updated_at', to_jsonb($4::text)
                    ),
                    claim_holder_id = NULL,
                    claim_expires_at = NULL,
                    version = version + 1,
                    updated_at = $5
                WHERE request_id = $1 AND claim_holder_id = $2
                RETURNING document
                """,
                request_id,
                holder_id,
                _encode([history.model_dump(mode="json")]),
                now.isoformat(),
                now,
            )
            if document is None:
                exists = await conn.fetchval(f"SELECT 1 FROM {TABLE} WHERE request_id = $1", request_id)
                if not exists:
                    raise NotFoundError(f"Request {request_id} not found", {"request_id": request_id})
                return None
        return _decode(document)

    async def delete_if_status(self, request_id: str, statuses: List[RequestState]) -> bool:
        async with self.pool.acquire() as conn:
            deleted = await conn.fetchval(
                f"DELETE FROM {TABLE} WHERE request_id = $1 AND status = ANY($2::text[]) RETURNING request_id",
                request_id,
                [status.value for status in statuses],
            )
        return deleted is not None
