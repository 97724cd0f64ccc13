"""
Claim Manager

Broadcast concurrency control: many eligible coordinators see a request,
at most one holds the lease at a time. Acquisition and release are single
atomic conditional writes in the store. Expiry is lazy; an expired lease is
treated as absent wherever it is read.
"""

from datetime import datetime
from datetime import timedelta
from typing import Optional

from loguru import logger

from reqflow_api.workflow.collaborators import EventDispatcher
from reqflow_api.workflow.collaborators import UserDirectory
from reqflow_api.workflow.db.store import RequestStore
from reqflow_api.workflow.dispatch import emit_event
from reqflow_api.workflow.enums import AssignmentRule
from reqflow_api.workflow.enums import ClaimMode
from reqflow_api.workflow.enums import DomainEvent
from reqflow_api.workflow.exceptions import ForbiddenError
from reqflow_api.workflow.exceptions import InvalidTransitionError
from reqflow_api.workflow.exceptions import NotFoundError
from reqflow_api.workflow.exceptions import RequestValidationError
from reqflow_api.workflow.models.actor import ActorRef
from reqflow_api.workflow.models.actor import ActorSnapshot
from reqflow_api.workflow.models.actor import ReviewerSnapshot
from reqflow_api.workflow.models.request import Claim
from reqflow_api.workflow.models.request import EventRequest
from reqflow_api.workflow.models.request import StatusHistoryEntry
from reqflow_api.workflow.models.request import utc_now
from reqflow_api.workflow.models.system_settings import SystemSettings
from reqflow_api.workflow.resilience import run_with_conflict_retry
from reqflow_api.workflow.settings_service import SystemSettingsService
from reqflow_api.workflow.state_machine import is_terminal


def can_hold_claim(request: EventRequest, actor_id: str) -> bool:
    """Only valid coordinators and the assigned reviewer may hold the lease."""
    return request.is_valid_coordinator(actor_id) or request.is_reviewer(actor_id)


def holder_snapshot(request: EventRequest, actor_id: str) -> ActorSnapshot:
    """Snapshot of a claim-eligible actor taken from the request itself."""
    coordinator = request.find_coordinator(actor_id)
    if coordinator is not None:
        return ActorSnapshot(
            user_id=coordinator.user_id,
            name=coordinator.name,
            role_snapshot=coordinator.role_snapshot,
            authority_snapshot=coordinator.authority,
        )
    reviewer = request.reviewer
    return ActorSnapshot(
        user_id=reviewer.user_id,
        name=reviewer.name,
        role_snapshot=reviewer.role_snapshot,
        authority_snapshot=reviewer.authority_snapshot,
    )


def build_lease(holder: ActorSnapshot, settings: SystemSettings, now: datetime, hold: bool = False) -> Claim:
    """Lease starting now, sized by the active or hold window."""
    minutes = settings.claim_hold_ttl_minutes if hold else settings.claim_active_ttl_minutes
    return Claim(
        holder_id=holder.user_id,
        holder_name=holder.name,
        claimed_at=now,
        expires_at=now + timedelta(minutes=minutes),
        mode=ClaimMode.HOLD if hold else ClaimMode.ACTIVE,
    )


def get_claim(request: EventRequest, now: Optional[datetime] = None) -> Optional[Claim]:
    """Current lease, or None if absent or expired."""
    return request.active_claim(now)


class ClaimManager:
    """Lease acquisition, release and administrative reviewer override."""

    def __init__(
        self,
        store: RequestStore,
        settings_service: SystemSettingsService,
        directory: UserDirectory,
        dispatcher: Optional[EventDispatcher] = None,
    ):
        self.store = store
        self.settings_service = settings_service
        self.directory = directory
        self.dispatcher = dispatcher

    async def _load(self, request_id: str) -> EventRequest:
        request = await self.store.get(request_id)
        if request is None:
            raise NotFoundError(f"Request {request_id} not found", {"request_id": request_id})
        return request

    async def claim(self, request_id: str, coordinator_id: str, hold: bool = False) -> Claim:
        """
        Take the lease on a request.

        Idempotent for the current holder, which gets its existing lease back.

        Raises:
            NotFoundError: Unknown request
            InvalidTransitionError: Request is terminal
            ForbiddenError: Not eligible, or another coordinator holds the lease
        """
        coordinator_id = str(coordinator_id)
        request = await self._load(request_id)
        if is_terminal(request.status):
            raise InvalidTransitionError(
                f"Request {request_id} is {request.status.value} and cannot be claimed",
                {"request_id": request_id, "status": request.status.value},
            )
        if not can_hold_claim(request, coordinator_id):
            raise ForbiddenError(
                f"User {coordinator_id} is not an eligible coordinator for request {request_id}",
                {"request_id": request_id, "actor_id": coordinator_id},
            )

        now = utc_now()
        existing = request.active_claim(now)
        if existing is not None:
            if existing.holder_id == coordinator_id:
                logger.debug("Claim already held by caller, returning existing lease", event_request_id=request_id)
                return existing
            raise ForbiddenError(
                f"Request {request_id} is claimed by another coordinator",
                {"request_id": request_id, "holder_id": existing.holder_id},
            )

        settings = await self.settings_service.get()
        holder = holder_snapshot(request, coordinator_id)
        lease = build_lease(holder, settings, now, hold)
        history = StatusHistoryEntry(
            status=request.status,
            actor=holder,
            note=f"Claimed by {holder.name or holder.user_id} ({lease.mode.value}) until {lease.expires_at.isoformat()}",
            changed_at=now,
        )

        updated = await self.store.acquire_claim(request_id, lease, history, now)
        if updated is None:
            # Lost the race: somebody else's lease landed first
            current = await self._load(request_id)
            if is_terminal(current.status):
                raise InvalidTransitionError(
                    f"Request {request_id} is {current.status.value} and cannot be claimed",
                    {"request_id": request_id, "status": current.status.value},
                )
            winner = current.active_claim()
            raise ForbiddenError(
                f"Request {request_id} is claimed by another coordinator",
                {"request_id": request_id, "holder_id": winner.holder_id if winner else None},
            )

        logger.info(
            f"Request {request_id} claimed by {coordinator_id}",
            event_request_id=request_id,
            holder_id=coordinator_id,
            claim_mode=lease.mode.value,
            expires_at=lease.expires_at,
        )
        await emit_event(
            self.dispatcher,
            settings,
            DomainEvent.REQUEST_CLAIMED,
            {
                "request_id": request_id,
                "holder_id": coordinator_id,
                "mode": lease.mode.value,
                "expires_at": lease.expires_at.isoformat(),
            },
        )
        return updated.claim

    async def release(self, request_id: str, coordinator_id: str) -> EventRequest:
        """
        Drop the lease. Only the holder may release.

        Raises:
            NotFoundError: Unknown request
            ForbiddenError: Caller does not hold the lease
        """
        coordinator_id = str(coordinator_id)
        request = await self._load(request_id)
        if request.claim is None or request.claim.holder_id != coordinator_id:
            raise ForbiddenError(
                f"User {coordinator_id} does not hold the claim on request {request_id}",
                {"request_id": request_id, "actor_id": coordinator_id},
            )

        holder = holder_snapshot(request, coordinator_id) if can_hold_claim(request, coordinator_id) else None
        history = StatusHistoryEntry(
            status=request.status,
            actor=holder,
            note=f"Claim released by {holder.name if holder and holder.name else coordinator_id}",
        )
        updated = await self.store.release_claim(request_id, coordinator_id, history)
        if updated is None:
            raise ForbiddenError(
                f"User {coordinator_id} does not hold the claim on request {request_id}",
                {"request_id": request_id, "actor_id": coordinator_id},
            )

        logger.info(f"Request {request_id} released by {coordinator_id}", event_request_id=request_id)
        settings = await self.settings_service.get()
        await emit_event(
            self.dispatcher,
            settings,
            DomainEvent.REQUEST_RELEASED,
            {"request_id": request_id, "holder_id": coordinator_id},
        )
        return updated

    async def override_reviewer(self, request_id: str, admin_id: str, new_coordinator_id: str) -> EventRequest:
        """
        Reassign the reviewer, replacing the whole snapshot. Ignores the claim.

        Raises:
            NotFoundError: Unknown request or admin
            ForbiddenError: Caller is not an administrator
            RequestValidationError: Target is not a valid coordinator
            InvalidTransitionError: Request is terminal
        """
        admin_id = str(admin_id)
        new_coordinator_id = str(new_coordinator_id)

        user = await self.directory.get_user(admin_id)
        if user is None:
            raise NotFoundError(f"User {admin_id} not found", {"user_id": admin_id})
        admin = ActorRef.from_user(admin_id, user)
        if not admin.is_admin:
            raise ForbiddenError(
                f"User {admin_id} is not allowed to override reviewers",
                {"actor_id": admin_id, "authority": admin.authority},
            )

        settings = await self.settings_service.get()

        async def override_once() -> EventRequest:
            return await self._override_once(request_id, admin, new_coordinator_id, settings)

        return await run_with_conflict_retry(override_once, settings.conflict_retry_attempts)

    async def _override_once(
        self, request_id: str, admin: ActorRef, new_coordinator_id: str, settings: SystemSettings
    ) -> EventRequest:
        request = await self._load(request_id)
        if is_terminal(request.status):
            raise InvalidTransitionError(
                f"Request {request_id} is {request.status.value}; reviewer cannot be changed",
                {"request_id": request_id, "status": request.status.value},
            )
        coordinator = request.find_coordinator(new_coordinator_id)
        if coordinator is None or not coordinator.is_active:
            raise RequestValidationError(
                f"User {new_coordinator_id} is not a valid coordinator for request {request_id}",
                {"request_id": request_id, "coordinator_id": new_coordinator_id},
            )

        now = utc_now()
        previous = request.reviewer
        admin_snapshot = admin.to_snapshot()
        request.reviewer = ReviewerSnapshot(
            user_id=coordinator.user_id,
            name=coordinator.name,
            role_snapshot=coordinator.role_snapshot,
            authority_snapshot=coordinator.authority,
            assigned_at=now,
            auto_assigned=False,
            assignment_rule=AssignmentRule.MANUAL,
            overridden_at=now,
            overridden_by=admin_snapshot,
        )

        previous_label = f"{previous.name} ({previous.user_id})" if previous else "none"
        request.add_status_history(
            request.status,
            admin_snapshot,
            note=f"Reviewer overridden: {previous_label} -> {coordinator.name} ({coordinator.user_id})",
            at=now,
        )

        # A lease held by the outgoing reviewer is no longer backed by eligibility
        if request.claim is not None and not can_hold_claim(request, request.claim.holder_id):
            request.claim = None

        saved = await self.store.compare_and_set(request, request.version)
        logger.success(
            f"Reviewer overridden on request {request_id}",
            event_request_id=request_id,
            previous_reviewer_id=previous.user_id if previous else None,
            new_reviewer_id=coordinator.user_id,
            overridden_by=admin.id,
        )
        await emit_event(
            self.dispatcher,
            settings,
            DomainEvent.COORDINATOR_ASSIGNED,
            {
                "request_id": request_id,
                "coordinator_id": coordinator.user_id,
                "previous_coordinator_id": previous.user_id if previous else None,
                "assigned_by": admin.id,
                "assignment_rule": AssignmentRule.MANUAL.value,
            },
        )
        return saved
