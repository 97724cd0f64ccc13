"""
Event Request API Routes

REST endpoints for the event request approval workflow. Workflow errors are
raised from the service and mapped to HTTP by the registered error handler.
"""

from typing import Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Query
from fastapi import Response
from fastapi import status
from loguru import logger

from reqflow_api.dependencies import get_actor_id
from reqflow_api.dependencies import get_request_service
from reqflow_api.dependencies import get_settings_service
from reqflow_api.schemas.schemas_requests import ActionBody
from reqflow_api.schemas.schemas_requests import AvailableActionsResponse
from reqflow_api.schemas.schemas_requests import CancelBody
from reqflow_api.schemas.schemas_requests import ClaimBody
from reqflow_api.schemas.schemas_requests import ClaimResponse
from reqflow_api.schemas.schemas_requests import CoordinatorsResponse
from reqflow_api.schemas.schemas_requests import CreateRequestBody
from reqflow_api.schemas.schemas_requests import OverrideBody
from reqflow_api.schemas.schemas_requests import RequestListResponse
from reqflow_api.schemas.schemas_requests import RequestResponse
from reqflow_api.schemas.schemas_requests import SettingsResponse
from reqflow_api.schemas.schemas_requests import UpdateRequestBody
from reqflow_api.schemas.schemas_requests import UpdateSettingsBody
from reqflow_api.workflow.enums import RequestState
from reqflow_api.workflow.service import RequestService
from reqflow_api.workflow.settings_service import SystemSettingsService
from reqflow_api.workflow.state_machine import normalize_state

ROUTER_REQUESTS = APIRouter(tags=["Requests"], prefix="/requests")
ROUTER_SETTINGS = APIRouter(tags=["Settings"], prefix="/settings")

_ERROR_RESPONSES = {
    status.HTTP_400_BAD_REQUEST: {"description": "ValidationError"},
    status.HTTP_403_FORBIDDEN: {"description": "Forbidden"},
    status.HTTP_404_NOT_FOUND: {"description": "NotFound"},
    status.HTTP_409_CONFLICT: {"description": "InvalidTransition or Conflict"},
}


@ROUTER_REQUESTS.post(
    "",
    response_model=RequestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit an event request",
    responses=_ERROR_RESPONSES,
)
async def create_request(
    body: CreateRequestBody,
    actor_id: str = Depends(get_actor_id),
    service: RequestService = Depends(get_request_service),
):
    """Create a request in pending_review with its reviewer auto-assigned."""
    request = await service.create_request(
        requester_id=actor_id,
        event_details=body.event_details,
        location_id=body.location_id,
        organization_type=body.organization_type,
        notes=body.notes,
        parent_request_id=body.parent_request_id,
    )
    return RequestResponse(Message=f"Request {request.id} submitted", Request=request)


@ROUTER_REQUESTS.get(
    "",
    response_model=RequestListResponse,
    summary="List event requests",
)
async def list_requests(
    status_filter: Optional[str] = Query(default=None, alias="status", description="Filter by status"),
    limit: int = Query(default=100, ge=1, le=500),
    service: RequestService = Depends(get_request_service),
):
    state: Optional[RequestState] = normalize_state(status_filter) if status_filter else None
    requests = await service.list_requests(status=state, limit=limit)
    return RequestListResponse(Message=f"Fetched {len(requests)} requests", Count=len(requests), Requests=requests)


@ROUTER_REQUESTS.get(
    "/{request_id}",
    response_model=RequestResponse,
    summary="Get an event request",
    responses=_ERROR_RESPONSES,
)
async def get_request(
    request_id: str,
    actor_id: str = Depends(get_actor_id),
    service: RequestService = Depends(get_request_service),
):
    request = await service.get_request(request_id, actor_id)
    return RequestResponse(Message="Request fetched", Request=request)


@ROUTER_REQUESTS.patch(
    "/{request_id}",
    response_model=RequestResponse,
    summary="Edit a request awaiting review",
    responses=_ERROR_RESPONSES,
)
async def update_request(
    request_id: str,
    body: UpdateRequestBody,
    actor_id: str = Depends(get_actor_id),
    service: RequestService = Depends(get_request_service),
):
    request = await service.update_request(request_id, actor_id, body.changes())
    return RequestResponse(Message="Request updated", Request=request)


@ROUTER_REQUESTS.delete(
    "/{request_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a rejected or cancelled request",
    responses=_ERROR_RESPONSES,
)
async def delete_request(
    request_id: str,
    actor_id: str = Depends(get_actor_id),
    service: RequestService = Depends(get_request_service),
):
    await service.delete_request(request_id, actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@ROUTER_REQUESTS.get(
    "/{request_id}/actions",
    response_model=AvailableActionsResponse,
    summary="Actions available to the caller",
    responses=_ERROR_RESPONSES,
)
async def get_available_actions(
    request_id: str,
    actor_id: str = Depends(get_actor_id),
    service: RequestService = Depends(get_request_service),
):
    """Always includes 'view'; terminal requests and unrelated callers get only 'view'."""
    actions = await service.get_available_actions(request_id, actor_id)
    return AvailableActionsResponse(RequestId=request_id, ActorId=actor_id, Actions=[a.value for a in actions])


@ROUTER_REQUESTS.post(
    "/{request_id}/actions",
    response_model=RequestResponse,
    summary="Execute a workflow action",
    responses=_ERROR_RESPONSES,
)
async def execute_action(
    request_id: str,
    body: ActionBody,
    actor_id: str = Depends(get_actor_id),
    service: RequestService = Depends(get_request_service),
):
    """
    Apply accept, reject, confirm, decline, reschedule or cancel.

    A reschedule payload carries proposed_date and optional proposed times.
    """
    logger.info("Executing workflow action", event_request_id=request_id, action=body.action)
    request = await service.execute_action(request_id, actor_id, body.action, body.payload)
    return RequestResponse(Message=f"Request is now {request.status.value}", Request=request)


@ROUTER_REQUESTS.post(
    "/{request_id}/cancel",
    response_model=RequestResponse,
    summary="Cancel an approved request",
    responses=_ERROR_RESPONSES,
)
async def cancel_request(
    request_id: str,
    body: CancelBody,
    actor_id: str = Depends(get_actor_id),
    service: RequestService = Depends(get_request_service),
):
    request = await service.cancel_request(request_id, actor_id, body.reason)
    return RequestResponse(Message="Request cancelled", Request=request)


@ROUTER_REQUESTS.post(
    "/{request_id}/claim",
    response_model=ClaimResponse,
    summary="Claim a request for review",
    responses=_ERROR_RESPONSES,
)
async def claim_request(
    request_id: str,
    body: ClaimBody,
    actor_id: str = Depends(get_actor_id),
    service: RequestService = Depends(get_request_service),
):
    claim = await service.claim(request_id, actor_id, hold=body.hold)
    return ClaimResponse(Message=f"Claimed until {claim.expires_at.isoformat()}", RequestId=request_id, Claim=claim)


@ROUTER_REQUESTS.post(
    "/{request_id}/release",
    response_model=RequestResponse,
    summary="Release a held claim",
    responses=_ERROR_RESPONSES,
)
async def release_request(
    request_id: str,
    actor_id: str = Depends(get_actor_id),
    service: RequestService = Depends(get_request_service),
):
    request = await service.release(request_id, actor_id)
    return RequestResponse(Message="Claim released", Request=request)


@ROUTER_REQUESTS.post(
    "/{request_id}/reviewer",
    response_model=RequestResponse,
    summary="Override the assigned reviewer (administrators)",
    responses=_ERROR_RESPONSES,
)
async def override_reviewer(
    request_id: str,
    body: OverrideBody,
    actor_id: str = Depends(get_actor_id),
    service: RequestService = Depends(get_request_service),
):
    request = await service.override_reviewer(request_id, actor_id, body.coordinator_id)
    return RequestResponse(Message=f"Reviewer set to {request.reviewer.user_id}", Request=request)


@ROUTER_REQUESTS.get(
    "/{request_id}/coordinators",
    response_model=CoordinatorsResponse,
    summary="Valid coordinators frozen at creation",
    responses=_ERROR_RESPONSES,
)
async def get_valid_coordinators(
    request_id: str,
    service: RequestService = Depends(get_request_service),
):
    coordinators = await service.get_valid_coordinators(request_id)
    return CoordinatorsResponse(RequestId=request_id, Count=len(coordinators), Coordinators=coordinators)


@ROUTER_SETTINGS.get("", response_model=SettingsResponse, summary="Current workflow settings")
async def get_system_settings(settings_service: SystemSettingsService = Depends(get_settings_service)):
    settings = await settings_service.get()
    return SettingsResponse(Message=f"Settings version {settings.version}", Settings=settings)


@ROUTER_SETTINGS.put(
    "",
    response_model=SettingsResponse,
    summary="Update workflow settings (administrators)",
    responses=_ERROR_RESPONSES,
)
async def update_system_settings(
    body: UpdateSettingsBody,
    actor_id: str = Depends(get_actor_id),
    service: RequestService = Depends(get_request_service),
):
    settings = await service.update_system_settings(actor_id, body.changes, body.expected_version)
    return SettingsResponse(Message=f"Settings updated to version {settings.version}", Settings=settings)
