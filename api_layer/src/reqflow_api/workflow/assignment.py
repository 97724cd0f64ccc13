"""
Reviewer Assignment

Chooses the initial reviewer among a request's eligible coordinators based on
the requester's authority tier.

Routing:
- stakeholder (30-59)  -> coordinator (60-79)
- coordinator (60-79)  -> operational admin (>= 80)
- admin (>= 80)        -> coordinator (60-79)
"""

from datetime import datetime
from typing import List
from typing import Optional
from typing import Tuple

from loguru import logger

from reqflow_api.workflow.enums import AssignmentRule
from reqflow_api.workflow.enums import AuthorityTier
from reqflow_api.workflow.exceptions import RequestValidationError
from reqflow_api.workflow.models.actor import ActorSnapshot
from reqflow_api.workflow.models.actor import CoordinatorSnapshot
from reqflow_api.workflow.models.actor import ReviewerSnapshot

# (lower bound inclusive, upper bound exclusive or None)
Band = Tuple[int, Optional[int]]

COORDINATOR_BAND: Band = (AuthorityTier.COORDINATOR, AuthorityTier.OPERATIONAL_ADMIN)
ADMIN_BAND: Band = (AuthorityTier.OPERATIONAL_ADMIN, None)


def routing_for(authority: int) -> Tuple[Band, AssignmentRule]:
    """Target authority band and rule name for a requester authority."""
    if authority >= AuthorityTier.OPERATIONAL_ADMIN:
        return COORDINATOR_BAND, AssignmentRule.ADMIN_TO_COORDINATOR
    if authority >= AuthorityTier.COORDINATOR:
        return ADMIN_BAND, AssignmentRule.COORDINATOR_TO_ADMIN
    return COORDINATOR_BAND, AssignmentRule.STAKEHOLDER_TO_COORDINATOR


def _in_band(authority: int, band: Band) -> bool:
    low, high = band
    return authority >= low and (high is None or authority < high)


def select_reviewer(
    requester: ActorSnapshot, candidates: List[CoordinatorSnapshot]
) -> Tuple[CoordinatorSnapshot, AssignmentRule]:
    """
    Pick the reviewer and the rule that selected it.

    Prefers the lowest authority inside the target band; then the lowest
    authority at or above the requester; then the highest authority overall.

    Raises:
        RequestValidationError: If there is no candidate other than the requester
    """
    pool = [c for c in candidates if c.is_active and c.user_id != requester.user_id]
    if not pool:
        raise RequestValidationError(
            "No eligible reviewer is available for this request",
            {"requester_id": requester.user_id},
        )

    band, rule = routing_for(requester.authority_snapshot)
    in_band = [c for c in pool if _in_band(c.authority, band)]
    if in_band:
        return min(in_band, key=lambda c: c.authority), rule

    senior = [c for c in pool if c.authority >= requester.authority_snapshot]
    if senior:
        return min(senior, key=lambda c: c.authority), AssignmentRule.AUTO_ASSIGNED

    return max(pool, key=lambda c: c.authority), AssignmentRule.AUTO_ASSIGNED


def assign_reviewer(
    requester: ActorSnapshot, candidates: List[CoordinatorSnapshot], now: datetime
) -> ReviewerSnapshot:
    """Build the auto-assigned reviewer snapshot for a new request."""
    chosen, rule = select_reviewer(requester, candidates)
    logger.debug(
        "Reviewer selected",
        requester_id=requester.user_id,
        reviewer_id=chosen.user_id,
        assignment_rule=rule.value,
        candidate_count=len(candidates),
    )
    return ReviewerSnapshot(
        user_id=chosen.user_id,
        name=chosen.name,
        role_snapshot=chosen.role_snapshot,
        authority_snapshot=chosen.authority,
        assigned_at=now,
        auto_assigned=True,
        assignment_rule=rule,
    )
