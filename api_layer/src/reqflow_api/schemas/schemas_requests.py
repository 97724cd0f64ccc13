"""
Request Workflow API Schemas

Request bodies and response envelopes for the event request endpoints
(PascalCase envelope fields per existing pattern).
"""

from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import Field

from reqflow_api.workflow.models.actor import CoordinatorSnapshot
from reqflow_api.workflow.models.request import Claim
from reqflow_api.workflow.models.request import EventRequest
from reqflow_api.workflow.models.system_settings import SystemSettings

# ════════════════════════════════════════════════════════════════════════════
# Request bodies
# ════════════════════════════════════════════════════════════════════════════


class CreateRequestBody(BaseModel):
    """Submit a new event request, or resubmit a closed one as a new revision."""

    event_details: Dict[str, Any] = Field(
        ...,
        description="Event title, start_date and optional times/location",
        examples=[{"title": "Quarterly town hall", "start_date": "2026-11-03", "start_time": "10:00"}],
    )
    location_id: Optional[str] = Field(default=None, description="Location used for coverage and scoped RBAC")
    organization_type: Optional[str] = None
    notes: str = ""
    parent_request_id: Optional[str] = Field(default=None, description="Closed request this one supersedes")


class ActionBody(BaseModel):
    """Workflow action with its optional payload."""

    action: str = Field(..., description="accept, reject, confirm, decline, reschedule or cancel")
    payload: Dict[str, Any] = Field(default_factory=dict)


class ClaimBody(BaseModel):
    hold: bool = Field(default=False, description="Take a long passive hold instead of an active lease")


class OverrideBody(BaseModel):
    coordinator_id: str = Field(..., description="Valid coordinator who becomes the reviewer")


class CancelBody(BaseModel):
    reason: str = ""


class UpdateRequestBody(BaseModel):
    """Editable fields while the request awaits review."""

    event_details: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class UpdateSettingsBody(BaseModel):
    expected_version: int = Field(..., ge=0, description="Version the caller last read")
    changes: Dict[str, Any]


# ════════════════════════════════════════════════════════════════════════════
# Responses
# ════════════════════════════════════════════════════════════════════════════


class RequestResponse(BaseModel):
    Message: str
    Request: EventRequest


class RequestListResponse(BaseModel):
    Message: str
    Count: int
    Requests: List[EventRequest]


class AvailableActionsResponse(BaseModel):
    RequestId: str
    ActorId: str
    Actions: List[str]


class ClaimResponse(BaseModel):
    Message: str
    RequestId: str
    Claim: Claim


class CoordinatorsResponse(BaseModel):
    RequestId: str
    Count: int
    Coordinators: List[CoordinatorSnapshot]


class SettingsResponse(BaseModel):
    Message: str
    Settings: SystemSettings
