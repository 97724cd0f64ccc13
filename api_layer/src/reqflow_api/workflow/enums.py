"""
Workflow Enums

All enum types used throughout the request workflow.
Values are the canonical strings persisted in request documents.
"""

from enum import Enum
from enum import IntEnum

# ════════════════════════════════════════════════════════════════════════════
# Request Lifecycle Enums
# ════════════════════════════════════════════════════════════════════════════


class RequestState(str, Enum):
    """Canonical request status."""

    PENDING_REVIEW = "pending-review"
    REVIEW_RESCHEDULED = "review-rescheduled"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class RequestAction(str, Enum):
    """Actions an actor can invoke on a request."""

    VIEW = "view"
    ACCEPT = "accept"
    REJECT = "reject"
    CONFIRM = "confirm"
    DECLINE = "decline"
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
    # Not state transitions; used for permission lookups only
    DELETE = "delete"
    EDIT = "edit"
    CREATE = "create"


class DecisionType(str, Enum):
    """Decision history entry types."""

    ACCEPT = "accept"
    REJECT = "reject"
    RESCHEDULE = "reschedule"


class Relationship(str, Enum):
    """Relationship of the active responder to the request."""

    REQUESTER = "requester"
    REVIEWER = "reviewer"


class ClaimMode(str, Enum):
    """Claim lease window."""

    ACTIVE = "active"  # Short window while a coordinator is working the request
    HOLD = "hold"  # Longer passive hold


# ════════════════════════════════════════════════════════════════════════════
# Authority and Assignment Enums
# ════════════════════════════════════════════════════════════════════════════


class AuthorityTier(IntEnum):
    """Authority tiers used for reviewer routing and hierarchy checks."""

    BASIC_USER = 20
    STAKEHOLDER = 30
    COORDINATOR = 60
    OPERATIONAL_ADMIN = 80
    SYSTEM_ADMIN = 100


class AssignmentRule(str, Enum):
    """How the current reviewer was assigned."""

    STAKEHOLDER_TO_COORDINATOR = "stakeholder-to-coordinator"
    COORDINATOR_TO_ADMIN = "coordinator-to-admin"
    ADMIN_TO_COORDINATOR = "admin-to-coordinator"
    AUTO_ASSIGNED = "auto-assigned"
    MANUAL = "manual"


# ════════════════════════════════════════════════════════════════════════════
# Domain Event Enums
# ════════════════════════════════════════════════════════════════════════════


class DomainEvent(str, Enum):
    """Events emitted to the dispatcher after successful mutations."""

    REQUEST_CREATED = "request_created"
    REQUEST_STATUS_CHANGED = "request_status_changed"
    COORDINATOR_ASSIGNED = "coordinator_assigned"
    REQUEST_CLAIMED = "request_claimed"
    REQUEST_RELEASED = "request_released"


# ════════════════════════════════════════════════════════════════════════════
# Error Taxonomy Enums
# ════════════════════════════════════════════════════════════════════════════


class ErrorKind(str, Enum):
    """Failure kinds surfaced by the workflow."""

    NOT_FOUND = "NotFound"
    FORBIDDEN = "Forbidden"
    INVALID_TRANSITION = "InvalidTransition"
    VALIDATION_ERROR = "ValidationError"
    CONFLICT = "Conflict"
