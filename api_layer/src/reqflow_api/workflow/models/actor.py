"""
Actor Models

Normalized actor identity produced at the system boundary, plus the snapshot
shapes embedded into request documents for audit stability.
"""

from datetime import datetime
from typing import Any
from typing import Dict
from typing import Optional

from pydantic import BaseModel
from pydantic import Field

from reqflow_api.workflow.enums import AssignmentRule
from reqflow_api.workflow.enums import AuthorityTier


class ActorRef(BaseModel):
    """Single normalized actor shape used by all internal logic."""

    id: str
    display_name: str = ""
    role: Optional[str] = None
    authority: int = AuthorityTier.BASIC_USER

    class Config:
        frozen = True

    @classmethod
    def from_user(cls, user_id: Any, user: Optional[Dict[str, Any]]) -> "ActorRef":
        """
        Build an ActorRef from an identity lookup result.

        Args:
            user_id: Identifier the lookup was made with (ObjectId, int, str...)
            user: Mapping with name, role_code, authority (None if unknown)

        Returns:
            ActorRef with a string id
        """
        user = user or {}
        return cls(
            id=str(user_id),
            display_name=(user.get("name") or "").strip(),
            role=user.get("role_code"),
            authority=int(user.get("authority") or AuthorityTier.BASIC_USER),
        )

    @property
    def is_system_admin(self) -> bool:
        return self.authority >= AuthorityTier.SYSTEM_ADMIN

    @property
    def is_admin(self) -> bool:
        return self.authority >= AuthorityTier.OPERATIONAL_ADMIN

    def to_snapshot(self) -> "ActorSnapshot":
        return ActorSnapshot(
            user_id=self.id,
            name=self.display_name,
            role_snapshot=self.role,
            authority_snapshot=self.authority,
        )


class ActorSnapshot(BaseModel):
    """Actor identity captured at the time of an action."""

    user_id: str
    name: str = ""
    role_snapshot: Optional[str] = None
    authority_snapshot: int = AuthorityTier.BASIC_USER


class ReviewerSnapshot(ActorSnapshot):
    """Assigned reviewer. Replaced as a whole on override, never merged."""

    assigned_at: datetime
    auto_assigned: bool = True
    assignment_rule: AssignmentRule = AssignmentRule.AUTO_ASSIGNED
    overridden_at: Optional[datetime] = None
    overridden_by: Optional[ActorSnapshot] = None


class CoordinatorSnapshot(BaseModel):
    """Coordinator eligible to act on a request (frozen at creation)."""

    user_id: str
    name: str = ""
    role_snapshot: Optional[str] = "coordinator"
    authority: int = AuthorityTier.COORDINATOR
    organization_type: Optional[str] = None
    discovered_at: Optional[datetime] = None
    is_active: bool = True
    extra: Dict[str, Any] = Field(default_factory=dict)
