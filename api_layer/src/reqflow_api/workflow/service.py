"""
Request Service

Orchestrates every operation on event requests: load the document, let the
state machine and action resolver decide, mutate, persist with a versioned
conditional write, then dispatch events. Version conflicts re-run the whole
read-validate-write cycle a bounded number of times.
"""

import secrets
from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

import pydantic
from loguru import logger

from reqflow_api.workflow.assignment import assign_reviewer
from reqflow_api.workflow.claims import ClaimManager
from reqflow_api.workflow.claims import build_lease
from reqflow_api.workflow.claims import can_hold_claim
from reqflow_api.workflow.claims import holder_snapshot
from reqflow_api.workflow.collaborators import CoordinatorResolver
from reqflow_api.workflow.collaborators import EventDispatcher
from reqflow_api.workflow.collaborators import PermissionEngine
from reqflow_api.workflow.collaborators import UserDirectory
from reqflow_api.workflow.collaborators import has_wildcard
from reqflow_api.workflow.db.store import RequestStore
from reqflow_api.workflow.dispatch import emit_event
from reqflow_api.workflow.enums import DecisionType
from reqflow_api.workflow.enums import DomainEvent
from reqflow_api.workflow.enums import Relationship
from reqflow_api.workflow.enums import RequestAction
from reqflow_api.workflow.enums import RequestState
from reqflow_api.workflow.exceptions import ConflictError
from reqflow_api.workflow.exceptions import ForbiddenError
from reqflow_api.workflow.exceptions import InvalidTransitionError
from reqflow_api.workflow.exceptions import NotFoundError
from reqflow_api.workflow.exceptions import RequestValidationError
from reqflow_api.workflow.exceptions import error_for_kind
from reqflow_api.workflow.models.actor import ActorRef
from reqflow_api.workflow.models.actor import CoordinatorSnapshot
from reqflow_api.workflow.models.payloads import DecisionPayload
from reqflow_api.workflow.models.payloads import EventDetails
from reqflow_api.workflow.models.payloads import ReschedulePayload
from reqflow_api.workflow.models.request import Claim
from reqflow_api.workflow.models.request import EventRequest
from reqflow_api.workflow.models.request import LastAction
from reqflow_api.workflow.models.request import RescheduleProposal
from reqflow_api.workflow.models.request import Revision
from reqflow_api.workflow.models.request import utc_now
from reqflow_api.workflow.models.system_settings import SystemSettings
from reqflow_api.workflow.negotiation import responder_after
from reqflow_api.workflow.negotiation import reviewer_turn
from reqflow_api.workflow.resilience import run_with_conflict_retry
from reqflow_api.workflow.resolver import ACTION_PERMISSIONS
from reqflow_api.workflow.resolver import ActionContext
from reqflow_api.workflow.resolver import ActionResolver
from reqflow_api.workflow.resolver import permission_name
from reqflow_api.workflow.settings_service import SystemSettingsService
from reqflow_api.workflow.state_machine import can_edit
from reqflow_api.workflow.state_machine import is_terminal
from reqflow_api.workflow.state_machine import next_state

DELETABLE_STATES = [RequestState.REJECTED, RequestState.CANCELLED]

DECISION_TYPES = {
    RequestAction.ACCEPT: DecisionType.ACCEPT,
    RequestAction.CONFIRM: DecisionType.ACCEPT,
    RequestAction.REJECT: DecisionType.REJECT,
    RequestAction.DECLINE: DecisionType.REJECT,
    RequestAction.RESCHEDULE: DecisionType.RESCHEDULE,
}

# Fields a requester may change while the request awaits review
EDITABLE_FIELDS = {"event_details", "notes"}


def new_request_id(now: Optional[datetime] = None) -> str:
    """Human readable id: REQ-<epoch-ms>-<4 digits>."""
    now = now or utc_now()
    return f"REQ-{int(now.timestamp() * 1000)}-{secrets.randbelow(10000):04d}"


def _validation_error(message: str, error: pydantic.ValidationError) -> RequestValidationError:
    return RequestValidationError(
        message,
        {"errors": [{"field": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]} for err in error.errors()]},
    )


class RequestService:
    """Exposed operations over event requests."""

    def __init__(
        self,
        store: RequestStore,
        settings_service: SystemSettingsService,
        permissions: PermissionEngine,
        coordinators: CoordinatorResolver,
        directory: UserDirectory,
        dispatcher: Optional[EventDispatcher] = None,
        resolver: Optional[ActionResolver] = None,
    ):
        self.store = store
        self.settings_service = settings_service
        self.permissions = permissions
        self.coordinators = coordinators
        self.directory = directory
        self.dispatcher = dispatcher
        self.resolver = resolver or ActionResolver()
        self.claims = ClaimManager(store, settings_service, directory, dispatcher)

    # ------------------------------------------------------------------
    # Boundary helpers
    # ------------------------------------------------------------------

    async def resolve_actor(self, actor_id: Any) -> ActorRef:
        """Normalize an actor id into an ActorRef via the user directory."""
        actor_id = str(actor_id)
        user = await self.directory.get_user(actor_id)
        if user is None:
            raise NotFoundError(f"User {actor_id} not found", {"user_id": actor_id})
        return ActorRef.from_user(actor_id, user)

    async def _load(self, request_id: str) -> EventRequest:
        request = await self.store.get(request_id)
        if request is None:
            raise NotFoundError(f"Request {request_id} not found", {"request_id": request_id})
        return request

    async def build_context(self, actor: ActorRef, location_id: Optional[str]) -> ActionContext:
        """Evaluate every request permission once for the actor at the location."""
        grants = await self.permissions.get_user_permissions(actor.id)
        if has_wildcard(grants):
            return ActionContext(actor=actor, wildcard=True, location_id=location_id)

        granted = set()
        for resource, perm in set(ACTION_PERMISSIONS.values()):
            if await self.permissions.check_permission(actor.id, resource, perm, location_id):
                granted.add(f"{resource}.{perm}")
        return ActionContext(actor=actor, granted=frozenset(granted), location_id=location_id)

    @staticmethod
    def _check_event_date(value: datetime, settings: SystemSettings, now: datetime) -> None:
        violation = settings.date_violation(value, now)
        if violation:
            raise RequestValidationError(violation, {"date": value.isoformat()})

    def _validate_event_details(
        self, details: Dict[str, Any], settings: SystemSettings, now: datetime
    ) -> Dict[str, Any]:
        try:
            parsed = EventDetails.model_validate(details or {})
        except pydantic.ValidationError as e:
            raise _validation_error("Invalid event details", e) from e
        self._check_event_date(parsed.start_date, settings, now)
        if parsed.end_date is not None and parsed.end_date.date() < parsed.start_date.date():
            raise RequestValidationError("Event end date is before its start date")
        return parsed.model_dump(mode="json", exclude_none=True)

    @staticmethod
    def _coordinator_snapshot(raw: Dict[str, Any], now: datetime) -> CoordinatorSnapshot:
        known = {"user_id", "id", "name", "role_code", "authority", "organization_type"}
        return CoordinatorSnapshot(
            user_id=str(raw.get("user_id") or raw.get("id")),
            name=raw.get("name") or "",
            role_snapshot=raw.get("role_code") or "coordinator",
            authority=int(raw.get("authority") or 60),
            organization_type=raw.get("organization_type"),
            discovered_at=now,
            extra={k: v for k, v in raw.items() if k not in known},
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_request(
        self,
        requester_id: str,
        event_details: Dict[str, Any],
        location_id: Optional[str] = None,
        organization_type: Optional[str] = None,
        notes: str = "",
        parent_request_id: Optional[str] = None,
    ) -> EventRequest:
        """
        Submit a new request in PENDING_REVIEW.

        Valid coordinators are resolved once and frozen on the document; the
        reviewer is auto-assigned among them. A parent_request_id resubmits a
        terminal request as its next revision.

        Raises:
            NotFoundError: Unknown requester or parent request
            ForbiddenError: Missing request.create, or parent owned by someone else
            RequestValidationError: Bad event details, non-terminal parent, no reviewer
        """
        actor = await self.resolve_actor(requester_id)
        context = await self.build_context(actor, location_id)
        if not context.allows(permission_name(RequestAction.CREATE)):
            raise ForbiddenError(
                f"User {actor.id} may not create requests",
                {"actor_id": actor.id, "location_id": location_id},
            )

        settings = await self.settings_service.get()
        now = utc_now()
        details = self._validate_event_details(event_details, settings, now)

        revision = Revision()
        if parent_request_id:
            parent = await self._load(parent_request_id)
            if not parent.is_requester(actor.id):
                raise ForbiddenError(
                    f"Only the original requester may resubmit {parent_request_id}",
                    {"request_id": parent_request_id, "actor_id": actor.id},
                )
            if not is_terminal(parent.status):
                raise RequestValidationError(
                    f"Request {parent_request_id} is {parent.status.value}; only closed requests can be resubmitted",
                    {"request_id": parent_request_id, "status": parent.status.value},
                )
            revision = Revision(
                number=parent.revision.number + 1,
                parent_request_id=parent.id,
                supersedes=parent.revision.supersedes + [parent.id],
            )

        requester = actor.to_snapshot()
        request = EventRequest(
            id=new_request_id(now),
            status=RequestState.PENDING_REVIEW,
            requester=requester,
            location_id=location_id,
            organization_type=organization_type,
            event_details=details,
            notes=notes,
            revision=revision,
            created_at=now,
            updated_at=now,
        )

        eligible = await self.coordinators.get_eligible_coordinators(request)
        snapshots: Dict[str, CoordinatorSnapshot] = {}
        for raw in eligible:
            snapshot = self._coordinator_snapshot(raw, now)
            if snapshot.user_id != requester.user_id:
                snapshots.setdefault(snapshot.user_id, snapshot)
        request.valid_coordinators = list(snapshots.values())
        request.reviewer = assign_reviewer(requester, request.valid_coordinators, now)
        request.active_responder = reviewer_turn(request, now)
        request.last_action = LastAction(action=RequestAction.CREATE, actor_id=actor.id, timestamp=now)
        note = "Request submitted" if revision.number == 1 else f"Resubmitted as revision {revision.number}"
        request.add_status_history(RequestState.PENDING_REVIEW, requester, note=note, at=now)

        async def insert_once() -> EventRequest:
            request.id = new_request_id()
            return await self.store.insert(request)

        saved = await run_with_conflict_retry(insert_once, settings.conflict_retry_attempts)

        logger.success(
            f"Request {saved.id} created",
            event_request_id=saved.id,
            requester_id=actor.id,
            reviewer_id=saved.reviewer.user_id,
            coordinator_count=len(saved.valid_coordinators),
            revision=saved.revision.number,
        )
        await emit_event(
            self.dispatcher,
            settings,
            DomainEvent.REQUEST_CREATED,
            {
                "request_id": saved.id,
                "requester_id": actor.id,
                "status": saved.status.value,
                "parent_request_id": revision.parent_request_id,
            },
        )
        await emit_event(
            self.dispatcher,
            settings,
            DomainEvent.COORDINATOR_ASSIGNED,
            {
                "request_id": saved.id,
                "coordinator_id": saved.reviewer.user_id,
                "assignment_rule": saved.reviewer.assignment_rule.value,
                "valid_coordinator_ids": [c.user_id for c in saved.valid_coordinators],
            },
        )
        return saved

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_request(self, request_id: str, actor_id: Optional[str] = None) -> EventRequest:
        """
        Load a request. With an actor, require a relationship or request.read.
        """
        request = await self._load(request_id)
        if actor_id is None:
            return request
        actor = await self.resolve_actor(actor_id)
        context = await self.build_context(actor, request.location_id)
        related = bool(self.resolver.relationships(actor.id, request, context))
        if not related and not context.allows(permission_name(RequestAction.VIEW)):
            raise ForbiddenError(
                f"User {actor.id} may not view request {request_id}",
                {"request_id": request_id, "actor_id": actor.id},
            )
        return request

    async def list_requests(self, status: Optional[RequestState] = None, limit: int = 100) -> List[EventRequest]:
        return await self.store.list_requests(status=status, limit=limit)

    async def get_available_actions(self, request_id: str, actor_id: str) -> List[RequestAction]:
        request = await self._load(request_id)
        actor = await self.resolve_actor(actor_id)
        context = await self.build_context(actor, request.location_id)
        return self.resolver.get_available_actions(actor.id, request, context)

    async def get_valid_coordinators(self, request_id: str) -> List[CoordinatorSnapshot]:
        request = await self._load(request_id)
        return list(request.valid_coordinators)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def execute_action(
        self, request_id: str, actor_id: str, action: str, payload: Optional[Dict[str, Any]] = None
    ) -> EventRequest:
        """
        Apply a workflow action on behalf of an actor.

        Args:
            request_id: Target request
            actor_id: Acting user
            action: accept, reject, confirm, decline, reschedule or cancel
                (requester and reviewer vocabularies are interchangeable)
            payload: notes, and for reschedule the proposed date/times

        Returns:
            The stored request after the transition

        Raises:
            NotFoundError, ForbiddenError, InvalidTransitionError,
            RequestValidationError, or ConflictError once retries are exhausted
        """
        actor = await self.resolve_actor(actor_id)
        settings = await self.settings_service.get()

        async def execute_once() -> EventRequest:
            return await self._execute_once(request_id, actor, action, payload or {}, settings)

        return await run_with_conflict_retry(execute_once, settings.conflict_retry_attempts)

    async def _execute_once(
        self,
        request_id: str,
        actor: ActorRef,
        action: str,
        payload: Dict[str, Any],
        settings: SystemSettings,
    ) -> EventRequest:
        request = await self._load(request_id)
        context = await self.build_context(actor, request.location_id)

        result = self.resolver.validate_action(actor.id, action, request, context)
        if not result.valid:
            raise error_for_kind(
                result.error_kind,
                result.reason,
                {"request_id": request_id, "actor_id": actor.id, "action": str(action)},
            )
        effective = result.action
        if effective == RequestAction.VIEW:
            return request

        now = context.now
        previous_status = request.status
        new_status = next_state(previous_status, effective)
        snapshot = actor.to_snapshot()

        if effective == RequestAction.RESCHEDULE:
            try:
                proposal = ReschedulePayload.model_validate(payload)
            except pydantic.ValidationError as e:
                raise _validation_error("Reschedule requires a proposed date", e) from e
            self._check_event_date(proposal.proposed_date, settings, now)
            request.reschedule_proposal = RescheduleProposal(
                proposed_date=proposal.proposed_date,
                proposed_start_time=proposal.proposed_start_time,
                proposed_end_time=proposal.proposed_end_time,
                notes=proposal.notes,
                proposed_at=now,
                proposed_by=snapshot,
            )
            notes = proposal.notes
            decision_payload = proposal.model_dump(mode="json", exclude_none=True)
        else:
            try:
                notes = DecisionPayload.model_validate(payload).notes
            except pydantic.ValidationError as e:
                raise _validation_error("Invalid action payload", e) from e
            decision_payload = {}

        if effective in (RequestAction.ACCEPT, RequestAction.CONFIRM) and request.reschedule_proposal is not None:
            self._apply_proposal(request)

        auto_claim: Optional[Claim] = None
        if (
            result.side == Relationship.REVIEWER
            and not is_terminal(new_status)
            and request.active_claim(now) is None
            and can_hold_claim(request, actor.id)
        ):
            auto_claim = build_lease(holder_snapshot(request, actor.id), settings, now)
            request.claim = auto_claim
            request.add_status_history(
                previous_status, snapshot, note=f"Claimed by {actor.display_name or actor.id} on {effective.value}", at=now
            )

        decision_type = DECISION_TYPES.get(effective)
        if decision_type is not None:
            request.add_decision_history(decision_type, snapshot, notes=notes, payload=decision_payload, at=now)

        request.active_responder = responder_after(request, effective, actor.id, new_status, now)
        request.status = new_status
        if is_terminal(new_status):
            request.claim = None
            request.active_responder = None
        request.last_action = LastAction(action=effective, actor_id=actor.id, timestamp=now)
        request.add_status_history(
            new_status, snapshot, note=notes or f"{effective.value} by {actor.display_name or actor.id}", at=now
        )

        saved = await self.store.compare_and_set(request, request.version)

        logger.success(
            f"Request {request_id}: {effective.value} {previous_status.value} -> {new_status.value}",
            event_request_id=request_id,
            actor_id=actor.id,
            action=effective.value,
            from_status=previous_status.value,
            to_status=new_status.value,
            version=saved.version,
        )
        if auto_claim is not None:
            await emit_event(
                self.dispatcher,
                settings,
                DomainEvent.REQUEST_CLAIMED,
                {
                    "request_id": request_id,
                    "holder_id": actor.id,
                    "mode": auto_claim.mode.value,
                    "expires_at": auto_claim.expires_at.isoformat(),
                    "auto": True,
                },
            )
        await emit_event(
            self.dispatcher,
            settings,
            DomainEvent.REQUEST_STATUS_CHANGED,
            {
                "request_id": request_id,
                "actor_id": actor.id,
                "action": effective.value,
                "from_status": previous_status.value,
                "to_status": new_status.value,
            },
        )
        return saved

    @staticmethod
    def _apply_proposal(request: EventRequest) -> None:
        """Accepting a reschedule moves the event to the proposed slot."""
        proposal = request.reschedule_proposal
        details = dict(request.event_details)
        details["start_date"] = proposal.proposed_date.isoformat()
        if proposal.proposed_start_time:
            details["start_time"] = proposal.proposed_start_time
        if proposal.proposed_end_time:
            details["end_time"] = proposal.proposed_end_time
        request.event_details = details
        request.reschedule_proposal = None

    async def cancel_request(self, request_id: str, actor_id: str, reason: str = "") -> EventRequest:
        """Cancel through the transition table (only APPROVED requests can be cancelled)."""
        return await self.execute_action(request_id, actor_id, RequestAction.CANCEL.value, {"notes": reason})

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    async def claim(self, request_id: str, actor_id: str, hold: bool = False) -> Claim:
        return await self.claims.claim(request_id, actor_id, hold=hold)

    async def release(self, request_id: str, actor_id: str) -> EventRequest:
        return await self.claims.release(request_id, actor_id)

    async def override_reviewer(self, request_id: str, admin_id: str, new_coordinator_id: str) -> EventRequest:
        return await self.claims.override_reviewer(request_id, admin_id, new_coordinator_id)

    # ------------------------------------------------------------------
    # Edit / delete
    # ------------------------------------------------------------------

    async def update_request(self, request_id: str, actor_id: str, changes: Dict[str, Any]) -> EventRequest:
        """
        Edit event details or notes while the request awaits review.

        Raises:
            RequestValidationError: Unknown/uneditable fields or invalid details
            InvalidTransitionError: Request is past PENDING_REVIEW
            ForbiddenError: Caller is not the requester and lacks request.update
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise RequestValidationError(f"Fields cannot be edited: {sorted(unknown)}", {"fields": sorted(unknown)})

        actor = await self.resolve_actor(actor_id)
        settings = await self.settings_service.get()

        async def update_once() -> EventRequest:
            request = await self._load(request_id)
            if not can_edit(request.status):
                raise InvalidTransitionError(
                    f"Request {request_id} is {request.status.value} and can no longer be edited",
                    {"request_id": request_id, "status": request.status.value},
                )
            context = await self.build_context(actor, request.location_id)
            if not context.allows(permission_name(RequestAction.EDIT)):
                raise ForbiddenError(
                    f"User {actor.id} may not edit request {request_id}",
                    {"request_id": request_id, "actor_id": actor.id},
                )
            if not request.is_requester(actor.id) and not context.wildcard:
                raise ForbiddenError(
                    f"Only the requester may edit request {request_id}",
                    {"request_id": request_id, "actor_id": actor.id},
                )

            now = context.now
            if "event_details" in changes:
                merged = {**request.event_details, **(changes["event_details"] or {})}
                request.event_details = self._validate_event_details(merged, settings, now)
            if "notes" in changes:
                request.notes = changes["notes"] or ""
            request.add_status_history(request.status, actor.to_snapshot(), note="Request details updated", at=now)
            return await self.store.compare_and_set(request, request.version)

        saved = await run_with_conflict_retry(update_once, settings.conflict_retry_attempts)
        logger.info(
            f"Request {request_id} updated",
            event_request_id=request_id,
            actor_id=actor.id,
            changed_fields=sorted(changes),
        )
        return saved

    async def delete_request(self, request_id: str, actor_id: str) -> None:
        """
        Hard delete a REJECTED or CANCELLED request.

        Raises:
            InvalidTransitionError: Request is not in a deletable state
            ForbiddenError: Caller lacks request.delete
        """
        actor = await self.resolve_actor(actor_id)
        request = await self._load(request_id)
        if request.status not in DELETABLE_STATES:
            raise InvalidTransitionError(
                f"Request {request_id} is {request.status.value}; only rejected or cancelled requests can be deleted",
                {"request_id": request_id, "status": request.status.value},
            )
        context = await self.build_context(actor, request.location_id)
        if not context.allows(permission_name(RequestAction.DELETE)):
            raise ForbiddenError(
                f"User {actor.id} may not delete request {request_id}",
                {"request_id": request_id, "actor_id": actor.id},
            )

        deleted = await self.store.delete_if_status(request_id, DELETABLE_STATES)
        if not deleted:
            if await self.store.get(request_id) is None:
                raise NotFoundError(f"Request {request_id} not found", {"request_id": request_id})
            raise ConflictError(f"Request {request_id} changed before it could be deleted", {"request_id": request_id})

        logger.warning(
            f"Request {request_id} deleted",
            event_request_id=request_id,
            actor_id=actor.id,
            status=request.status.value,
        )

    # ------------------------------------------------------------------
    # System settings
    # ------------------------------------------------------------------

    async def update_system_settings(
        self, actor_id: str, changes: Dict[str, Any], expected_version: int
    ) -> SystemSettings:
        """Administrators only; see SystemSettingsService.update for the version check."""
        actor = await self.resolve_actor(actor_id)
        if not actor.is_admin:
            raise ForbiddenError(
                f"User {actor.id} may not change system settings",
                {"actor_id": actor.id, "authority": actor.authority},
            )
        return await self.settings_service.update(changes, expected_version, actor.id)
