"""
Action Resolver

Decides which actions an actor may take on a request, combining state
legality, relationship to the request, claim ownership, authority, turn
order and RBAC grants. Pure: permissions arrive pre-evaluated in an
ActionContext, nothing here performs I/O.
"""

from datetime import datetime
from typing import Dict
from typing import FrozenSet
from typing import List
from typing import Optional
from typing import Tuple

from pydantic import BaseModel
from pydantic import Field

from reqflow_api.workflow.enums import ErrorKind
from reqflow_api.workflow.enums import Relationship
from reqflow_api.workflow.enums import RequestAction
from reqflow_api.workflow.models.actor import ActorRef
from reqflow_api.workflow.models.request import EventRequest
from reqflow_api.workflow.models.request import utc_now
from reqflow_api.workflow.negotiation import current_responder
from reqflow_api.workflow.negotiation import holds_turn
from reqflow_api.workflow.state_machine import available_actions
from reqflow_api.workflow.state_machine import is_terminal
from reqflow_api.workflow.state_machine import is_valid_transition

RESOURCE = "request"

# Action -> (resource, permission action)
ACTION_PERMISSIONS: Dict[RequestAction, Tuple[str, str]] = {
    RequestAction.VIEW: (RESOURCE, "read"),
    RequestAction.ACCEPT: (RESOURCE, "review"),
    RequestAction.REJECT: (RESOURCE, "review"),
    RequestAction.RESCHEDULE: (RESOURCE, "reschedule"),
    RequestAction.CONFIRM: (RESOURCE, "confirm"),
    RequestAction.DECLINE: (RESOURCE, "confirm"),
    RequestAction.CANCEL: (RESOURCE, "cancel"),
    RequestAction.DELETE: (RESOURCE, "delete"),
    RequestAction.EDIT: (RESOURCE, "update"),
    RequestAction.CREATE: (RESOURCE, "create"),
}

# Caller vocabulary per side of the request
SIDE_ACTIONS: Dict[Relationship, FrozenSet[RequestAction]] = {
    Relationship.REVIEWER: frozenset(
        {RequestAction.ACCEPT, RequestAction.REJECT, RequestAction.RESCHEDULE, RequestAction.CANCEL}
    ),
    Relationship.REQUESTER: frozenset(
        {RequestAction.CONFIRM, RequestAction.DECLINE, RequestAction.RESCHEDULE, RequestAction.CANCEL}
    ),
}

SYNONYMS: Dict[Relationship, Dict[RequestAction, RequestAction]] = {
    Relationship.REVIEWER: {RequestAction.CONFIRM: RequestAction.ACCEPT, RequestAction.DECLINE: RequestAction.REJECT},
    Relationship.REQUESTER: {RequestAction.ACCEPT: RequestAction.CONFIRM, RequestAction.REJECT: RequestAction.DECLINE},
}

# Cancel is never turn gated
TURN_GATED = frozenset(
    {
        RequestAction.ACCEPT,
        RequestAction.REJECT,
        RequestAction.CONFIRM,
        RequestAction.DECLINE,
        RequestAction.RESCHEDULE,
    }
)

# Reviewer-side actions that need authority >= the requester's
AUTHORITY_GATED = frozenset({RequestAction.ACCEPT, RequestAction.REJECT, RequestAction.RESCHEDULE})

TRANSITION_ACTIONS = frozenset(
    {
        RequestAction.ACCEPT,
        RequestAction.REJECT,
        RequestAction.CONFIRM,
        RequestAction.DECLINE,
        RequestAction.RESCHEDULE,
        RequestAction.CANCEL,
    }
)


def permission_name(action: RequestAction) -> str:
    resource, perm = ACTION_PERMISSIONS[action]
    return f"{resource}.{perm}"


class ActionContext(BaseModel):
    """Pre-evaluated permission snapshot for one actor and one request."""

    actor: ActorRef
    granted: FrozenSet[str] = frozenset()
    wildcard: bool = False
    location_id: Optional[str] = None
    now: datetime = Field(default_factory=utc_now)

    def allows(self, permission: str) -> bool:
        return self.wildcard or permission in self.granted

    def allows_action(self, action: RequestAction) -> bool:
        if self.allows(permission_name(action)):
            return True
        # Reviewers granted request.review may also reschedule
        return action == RequestAction.RESCHEDULE and self.allows(permission_name(RequestAction.ACCEPT))


class ValidationResult(BaseModel):
    """Outcome of validate_action. error_kind is None when valid."""

    valid: bool
    reason: str = ""
    error_kind: Optional[ErrorKind] = None
    action: Optional[RequestAction] = None
    side: Optional[Relationship] = None

    @classmethod
    def ok(cls, action: RequestAction, side: Optional[Relationship] = None) -> "ValidationResult":
        return cls(valid=True, action=action, side=side)

    @classmethod
    def fail(cls, kind: ErrorKind, reason: str) -> "ValidationResult":
        return cls(valid=False, reason=reason, error_kind=kind)


class ActionResolver:
    """Per-actor action resolution over a request document."""

    def relationships(self, actor_id: str, request: EventRequest, context: ActionContext) -> List[Relationship]:
        """Sides of the request the actor can act for."""
        sides = []
        if request.is_requester(actor_id):
            # Requesters never review their own request, wildcard grants included
            return [Relationship.REQUESTER]
        if request.is_reviewer(actor_id) or request.is_valid_coordinator(actor_id) or context.wildcard:
            sides.append(Relationship.REVIEWER)
        return sides

    def get_available_actions(
        self, actor_id: str, request: EventRequest, context: ActionContext
    ) -> List[RequestAction]:
        """
        Actions the actor may take now. Always starts with 'view'.

        Args:
            actor_id: Acting user id
            request: Request document
            context: Permission snapshot for the actor

        Returns:
            ['view'] plus every legal transition action that passes all gates
        """
        actor_id = str(actor_id)
        if is_terminal(request.status):
            return [RequestAction.VIEW]

        sides = self.relationships(actor_id, request, context)
        if not sides:
            return [RequestAction.VIEW]

        allowed = [
            action
            for action in available_actions(request.status)
            if any(self._check(actor_id, action, side, request, context) is None for side in sides)
        ]
        return [RequestAction.VIEW] + allowed

    def validate_action(
        self, actor_id: str, action: str, request: EventRequest, context: ActionContext
    ) -> ValidationResult:
        """
        Re-check one action at mutation time.

        Caller vocabulary is translated per side (a requester's 'accept' is a
        'confirm'). The returned result carries the effective action.
        """
        actor_id = str(actor_id)
        try:
            requested = RequestAction(str(getattr(action, "value", action)).strip().lower())
        except ValueError:
            return ValidationResult.fail(ErrorKind.VALIDATION_ERROR, f"Unknown action '{action}'")

        if requested == RequestAction.VIEW:
            return ValidationResult.ok(RequestAction.VIEW)
        if requested not in TRANSITION_ACTIONS:
            return ValidationResult.fail(ErrorKind.VALIDATION_ERROR, f"'{requested.value}' is not a workflow action")
        if is_terminal(request.status):
            return ValidationResult.fail(
                ErrorKind.INVALID_TRANSITION, f"Request is {request.status.value}; no further actions are allowed"
            )

        sides = self.relationships(actor_id, request, context)
        if not sides:
            return ValidationResult.fail(ErrorKind.FORBIDDEN, "Actor has no relationship to this request")

        failures: List[ValidationResult] = []
        for side in sides:
            effective = SYNONYMS[side].get(requested, requested)
            if not is_valid_transition(request.status, effective):
                failures.append(
                    ValidationResult.fail(
                        ErrorKind.INVALID_TRANSITION,
                        f"Action '{effective.value}' is not allowed in state '{request.status.value}'",
                    )
                )
                continue
            failure = self._check(actor_id, effective, side, request, context)
            if failure is None:
                return ValidationResult.ok(effective, side)
            failures.append(failure)

        for failure in failures:
            if failure.error_kind != ErrorKind.INVALID_TRANSITION:
                return failure
        return failures[0]

    def _check(
        self,
        actor_id: str,
        action: RequestAction,
        side: Relationship,
        request: EventRequest,
        context: ActionContext,
    ) -> Optional[ValidationResult]:
        """Return the first failing gate for action on side, or None."""
        if action not in SIDE_ACTIONS[side]:
            return ValidationResult.fail(ErrorKind.FORBIDDEN, f"'{action.value}' is not available to the {side.value}")

        if side == Relationship.REVIEWER:
            claim = request.active_claim(context.now)
            if claim is not None and claim.holder_id != actor_id:
                return ValidationResult.fail(
                    ErrorKind.FORBIDDEN, f"Request is claimed by another coordinator ({claim.holder_id})"
                )
            if action in AUTHORITY_GATED and not self._meets_authority(request, context):
                return ValidationResult.fail(
                    ErrorKind.FORBIDDEN,
                    f"Authority {context.actor.authority} is below required authority "
                    f"{self.required_authority(request)}",
                )

        if action in TURN_GATED:
            responder = current_responder(request, context.now)
            if not holds_turn(responder, side):
                return ValidationResult.fail(
                    ErrorKind.FORBIDDEN, f"Waiting on the {responder.relationship.value} to respond"
                )

        if not context.allows_action(action):
            return ValidationResult.fail(ErrorKind.FORBIDDEN, f"Missing permission {permission_name(action)}")
        return None

    @staticmethod
    def required_authority(request: EventRequest) -> int:
        """Authority needed to decide: the requester's, or the assigned reviewer's when it is lower."""
        required = request.requester.authority_snapshot
        if request.reviewer is not None:
            required = min(required, request.reviewer.authority_snapshot)
        return required

    def _meets_authority(self, request: EventRequest, context: ActionContext) -> bool:
        actor = context.actor
        return actor.is_system_admin or actor.authority >= self.required_authority(request)
