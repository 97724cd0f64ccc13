"""
Request State Machine

Pure functions over the request transition table. No I/O, no side effects.
"""

import re
from typing import Any
from typing import Dict
from typing import List

from reqflow_api.workflow.enums import RequestAction
from reqflow_api.workflow.enums import RequestState
from reqflow_api.workflow.exceptions import InvalidTransitionError
from reqflow_api.workflow.exceptions import RequestValidationError

# (state, action) -> next state. Pairs not listed are invalid.
TRANSITIONS: Dict[RequestState, Dict[RequestAction, RequestState]] = {
    RequestState.PENDING_REVIEW: {
        RequestAction.ACCEPT: RequestState.APPROVED,
        RequestAction.REJECT: RequestState.REJECTED,
        RequestAction.CONFIRM: RequestState.APPROVED,
        RequestAction.DECLINE: RequestState.REJECTED,
        RequestAction.RESCHEDULE: RequestState.REVIEW_RESCHEDULED,
    },
    RequestState.REVIEW_RESCHEDULED: {
        RequestAction.ACCEPT: RequestState.APPROVED,
        RequestAction.REJECT: RequestState.REJECTED,
        RequestAction.CONFIRM: RequestState.APPROVED,
        RequestAction.DECLINE: RequestState.REJECTED,
        RequestAction.RESCHEDULE: RequestState.REVIEW_RESCHEDULED,
    },
    RequestState.APPROVED: {
        RequestAction.CONFIRM: RequestState.APPROVED,
        RequestAction.RESCHEDULE: RequestState.REVIEW_RESCHEDULED,
        RequestAction.CANCEL: RequestState.CANCELLED,
    },
    RequestState.REJECTED: {},
    RequestState.CANCELLED: {},
    RequestState.COMPLETED: {},
}

TERMINAL_STATES = frozenset({RequestState.REJECTED, RequestState.CANCELLED, RequestState.COMPLETED})

STATUS_LABELS: Dict[RequestState, str] = {
    RequestState.PENDING_REVIEW: "Waiting for Review",
    RequestState.REVIEW_RESCHEDULED: "Reschedule Proposed",
    RequestState.APPROVED: "Approved",
    RequestState.REJECTED: "Rejected",
    RequestState.CANCELLED: "Cancelled",
    RequestState.COMPLETED: "Completed",
}

# Keys are lower-case with separators collapsed to "_"
_LEGACY_STATES: Dict[str, RequestState] = {
    "pending": RequestState.PENDING_REVIEW,
    "pending_admin_review": RequestState.PENDING_REVIEW,
    "pending_coordinator_review": RequestState.PENDING_REVIEW,
    "pending_stakeholder_review": RequestState.PENDING_REVIEW,
    "accepted_by_admin": RequestState.APPROVED,
    "accepted_by_coordinator": RequestState.APPROVED,
    "review_accepted": RequestState.APPROVED,
    "rejected_by_admin": RequestState.REJECTED,
    "rejected_by_coordinator": RequestState.REJECTED,
    "review_rejected": RequestState.REJECTED,
    "rescheduled_by_admin": RequestState.REVIEW_RESCHEDULED,
    "rescheduled_by_coordinator": RequestState.REVIEW_RESCHEDULED,
    "rescheduled_by_stakeholder": RequestState.REVIEW_RESCHEDULED,
    "canceled": RequestState.CANCELLED,
}
_LEGACY_STATES.update({state.value.replace("-", "_"): state for state in RequestState})

_SEPARATORS = re.compile(r"[\s\-_]+")


def normalize_state(raw: Any) -> RequestState:
    """
    Map any stored status spelling onto the canonical enum.

    Idempotent. Unknown or empty input reads as PENDING_REVIEW; callers that
    need strict validation must check membership themselves.
    """
    if isinstance(raw, RequestState):
        return raw
    if raw is None:
        return RequestState.PENDING_REVIEW
    key = _SEPARATORS.sub("_", str(raw).strip().lower()).strip("_")
    return _LEGACY_STATES.get(key, RequestState.PENDING_REVIEW)


def _as_action(action: Any) -> RequestAction:
    try:
        return RequestAction(str(getattr(action, "value", action)).strip().lower())
    except ValueError:
        raise RequestValidationError(f"Unknown action '{action}'", {"action": str(action)})


def next_state(state: Any, action: Any) -> RequestState:
    """
    Return the state reached by applying action in state.

    Raises:
        RequestValidationError: If action is not a known action
        InvalidTransitionError: If the pair is not in the transition table
    """
    current = normalize_state(state)
    act = _as_action(action)
    target = TRANSITIONS[current].get(act)
    if target is None:
        raise InvalidTransitionError(
            f"Action '{act.value}' is not allowed in state '{current.value}'",
            {"state": current.value, "action": act.value},
        )
    return target


def is_valid_transition(state: Any, action: Any) -> bool:
    try:
        next_state(state, action)
    except (InvalidTransitionError, RequestValidationError):
        return False
    return True


def available_actions(state: Any) -> List[RequestAction]:
    """Legal transition actions for a state, in table order."""
    return list(TRANSITIONS[normalize_state(state)].keys())


def is_terminal(state: Any) -> bool:
    return normalize_state(state) in TERMINAL_STATES


def can_edit(state: Any) -> bool:
    return normalize_state(state) == RequestState.PENDING_REVIEW


def can_cancel(state: Any) -> bool:
    return normalize_state(state) in (RequestState.PENDING_REVIEW, RequestState.APPROVED)


def status_label(state: Any) -> str:
    return STATUS_LABELS[normalize_state(state)]
