"""
Workflow Models Module

All Pydantic models for the request workflow:
- Actor identity and snapshots
- Event request document and its embedded entries
- System settings document
"""

# Actor Models
from reqflow_api.workflow.models.actor import (
    ActorRef,
    ActorSnapshot,
    ReviewerSnapshot,
    CoordinatorSnapshot,
)

# Request Document Models
from reqflow_api.workflow.models.request import (
    Claim,
    StatusHistoryEntry,
    DecisionEntry,
    RescheduleProposal,
    ActiveResponder,
    LastAction,
    Revision,
    EventRequest,
)

# Settings Model
from reqflow_api.workflow.models.system_settings import SystemSettings

__all__ = [
    # Actors
    "ActorRef",
    "ActorSnapshot",
    "ReviewerSnapshot",
    "CoordinatorSnapshot",
    # Request document
    "Claim",
    "StatusHistoryEntry",
    "DecisionEntry",
    "RescheduleProposal",
    "ActiveResponder",
    "LastAction",
    "Revision",
    "EventRequest",
    # Settings
    "SystemSettings",
]
