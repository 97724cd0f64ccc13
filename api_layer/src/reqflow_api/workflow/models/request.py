"""
Request Model

Document model for event requests. One document per request, keyed by the
immutable request id, with status and decision history embedded.
"""

from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

from reqflow_api.workflow.enums import ClaimMode
from reqflow_api.workflow.enums import DecisionType
from reqflow_api.workflow.enums import Relationship
from reqflow_api.workflow.enums import RequestAction
from reqflow_api.workflow.enums import RequestState
from reqflow_api.workflow.models.actor import ActorSnapshot
from reqflow_api.workflow.models.actor import CoordinatorSnapshot
from reqflow_api.workflow.models.actor import ReviewerSnapshot
from reqflow_api.workflow.state_machine import normalize_state


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Claim(BaseModel):
    """Time-bounded exclusive hold on a request."""

    holder_id: str
    holder_name: str = ""
    claimed_at: datetime
    expires_at: datetime
    mode: ClaimMode = ClaimMode.ACTIVE

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """A lease is active until its expiry instant (exclusive)."""
        return (now or utc_now()) < self.expires_at


class StatusHistoryEntry(BaseModel):
    """Append-only status log entry."""

    status: RequestState
    actor: Optional[ActorSnapshot] = None
    note: str = ""
    changed_at: datetime = Field(default_factory=utc_now)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> RequestState:
        return normalize_state(v)


class DecisionEntry(BaseModel):
    """Append-only decision log entry."""

    decision_type: DecisionType
    actor: ActorSnapshot
    notes: str = ""
    payload: Dict[str, Any] = Field(default_factory=dict)
    decided_at: datetime = Field(default_factory=utc_now)


class RescheduleProposal(BaseModel):
    """Outstanding reschedule proposal."""

    proposed_date: datetime
    proposed_start_time: Optional[str] = None
    proposed_end_time: Optional[str] = None
    notes: str = ""
    proposed_at: datetime = Field(default_factory=utc_now)
    proposed_by: ActorSnapshot


class ActiveResponder(BaseModel):
    """Party expected to act next. user_id is None for 'any eligible reviewer'."""

    user_id: Optional[str] = None
    relationship: Relationship
    authority: Optional[int] = None


class LastAction(BaseModel):
    """Most recent mutating action."""

    action: RequestAction
    actor_id: str
    timestamp: datetime = Field(default_factory=utc_now)


class Revision(BaseModel):
    """Request versioning across resubmissions."""

    number: int = 1
    parent_request_id: Optional[str] = None
    supersedes: List[str] = Field(default_factory=list)


class EventRequest(BaseModel):
    """Event request document (aggregate root)."""

    id: str
    status: RequestState = RequestState.PENDING_REVIEW
    requester: ActorSnapshot
    reviewer: Optional[ReviewerSnapshot] = None
    valid_coordinators: List[CoordinatorSnapshot] = Field(default_factory=list)
    claim: Optional[Claim] = None
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    decision_history: List[DecisionEntry] = Field(default_factory=list)
    reschedule_proposal: Optional[RescheduleProposal] = None
    active_responder: Optional[ActiveResponder] = None
    last_action: Optional[LastAction] = None
    revision: Revision = Field(default_factory=Revision)

    # Context used for permission checks and coordinator resolution
    location_id: Optional[str] = None
    organization_type: Optional[str] = None
    event_details: Dict[str, Any] = Field(default_factory=dict)
    notes: str = ""

    # Optimistic concurrency counter, incremented on every committed write
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> RequestState:
        """Legacy status strings are normalized on read."""
        return normalize_state(v)

    # ------------------------------------------------------------------
    # Relationship helpers
    # ------------------------------------------------------------------

    def is_requester(self, actor_id: str) -> bool:
        return self.requester.user_id == str(actor_id)

    def is_reviewer(self, actor_id: str) -> bool:
        return self.reviewer is not None and self.reviewer.user_id == str(actor_id)

    def is_valid_coordinator(self, actor_id: str) -> bool:
        actor_id = str(actor_id)
        return any(c.user_id == actor_id and c.is_active for c in self.valid_coordinators)

    def find_coordinator(self, actor_id: str) -> Optional[CoordinatorSnapshot]:
        actor_id = str(actor_id)
        for coordinator in self.valid_coordinators:
            if coordinator.user_id == actor_id:
                return coordinator
        return None

    def active_claim(self, now: Optional[datetime] = None) -> Optional[Claim]:
        """Return the lease if present and not expired. Expired leases count as absent."""
        if self.claim is not None and self.claim.is_active(now):
            return self.claim
        return None

    # ------------------------------------------------------------------
    # Append-only history
    # ------------------------------------------------------------------

    def add_status_history(
        self,
        status: RequestState,
        actor: Optional[ActorSnapshot],
        note: str = "",
        at: Optional[datetime] = None,
    ) -> None:
        self.status_history.append(
            StatusHistoryEntry(status=status, actor=actor, note=note, changed_at=at or utc_now())
        )

    def add_decision_history(
        self,
        decision_type: DecisionType,
        actor: ActorSnapshot,
        notes: str = "",
        payload: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> None:
        self.decision_history.append(
            DecisionEntry(
                decision_type=decision_type,
                actor=actor,
                notes=notes,
                payload=payload or {},
                decided_at=at or utc_now(),
            )
        )

    def to_document(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict for storage."""
        return self.model_dump(mode="json")
