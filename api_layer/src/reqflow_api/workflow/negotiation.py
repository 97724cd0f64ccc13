"""
Negotiation Tracker

Computes whose turn it is during reschedule negotiation. Pure functions over
the request document.
"""

from datetime import datetime
from typing import Optional

from reqflow_api.workflow.enums import Relationship
from reqflow_api.workflow.enums import RequestAction
from reqflow_api.workflow.enums import RequestState
from reqflow_api.workflow.models.request import ActiveResponder
from reqflow_api.workflow.models.request import EventRequest
from reqflow_api.workflow.state_machine import is_terminal

# Actions that settle the negotiation
CLOSING_ACTIONS = frozenset(
    {
        RequestAction.ACCEPT,
        RequestAction.REJECT,
        RequestAction.CONFIRM,
        RequestAction.DECLINE,
        RequestAction.CANCEL,
    }
)


def requester_turn(request: EventRequest) -> ActiveResponder:
    return ActiveResponder(
        user_id=request.requester.user_id,
        relationship=Relationship.REQUESTER,
        authority=request.requester.authority_snapshot,
    )


def reviewer_turn(request: EventRequest, now: Optional[datetime] = None) -> ActiveResponder:
    """
    Reviewer side owns the turn.

    Names the claim holder when there is one; otherwise no specific user, since
    any eligible coordinator may respond to a broadcast request.
    """
    claim = request.active_claim(now)
    if claim is None:
        return ActiveResponder(relationship=Relationship.REVIEWER)
    coordinator = request.find_coordinator(claim.holder_id)
    if coordinator is not None:
        authority = coordinator.authority
    elif request.reviewer is not None and request.reviewer.user_id == claim.holder_id:
        authority = request.reviewer.authority_snapshot
    else:
        authority = None
    return ActiveResponder(user_id=claim.holder_id, relationship=Relationship.REVIEWER, authority=authority)


def _other_party(request: EventRequest, actor_id: str, now: Optional[datetime] = None) -> ActiveResponder:
    if request.is_requester(actor_id):
        return reviewer_turn(request, now)
    return requester_turn(request)


def current_responder(request: EventRequest, now: Optional[datetime] = None) -> Optional[ActiveResponder]:
    """
    Return the party expected to act next.

    Uses the stored responder when present. Legacy documents without one derive
    it: pending review waits on the reviewer side; a reschedule waits on the
    party opposite the last actor, else opposite the proposer, else on the
    requester.
    """
    status = request.status
    if is_terminal(status) or status == RequestState.APPROVED:
        return None
    if request.active_responder is not None:
        return request.active_responder
    if status == RequestState.PENDING_REVIEW:
        return reviewer_turn(request, now)
    if request.last_action is not None:
        return _other_party(request, request.last_action.actor_id, now)
    if request.reschedule_proposal is not None:
        return _other_party(request, request.reschedule_proposal.proposed_by.user_id, now)
    return requester_turn(request)


def responder_after(
    request: EventRequest,
    action: RequestAction,
    actor_id: str,
    new_status: RequestState,
    now: Optional[datetime] = None,
) -> Optional[ActiveResponder]:
    """Responder once action by actor_id has moved the request to new_status."""
    if is_terminal(new_status) or action in CLOSING_ACTIONS:
        return None
    if action == RequestAction.RESCHEDULE:
        return _other_party(request, actor_id, now)
    return current_responder(request, now)


def holds_turn(responder: Optional[ActiveResponder], relationship: Relationship) -> bool:
    """No responder means no turn gating."""
    return responder is None or responder.relationship == relationship
