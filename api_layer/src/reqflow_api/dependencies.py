"""FastAPI dependencies for accessing app state."""

from fastapi import Header
from fastapi import HTTPException
from fastapi import Request
from fastapi import status

from reqflow_api.settings import Settings
from reqflow_api.workflow.service import RequestService
from reqflow_api.workflow.settings_service import SystemSettingsService


def get_settings(request: Request) -> Settings:
    """
    Get application settings from request state.

    Parameters
    ----------
    request : Request
        FastAPI request object

    Returns
    -------
    Settings
        Application settings instance
    """
    return request.app.state.settings


def get_request_service(request: Request) -> RequestService:
    """
    Get the request workflow service from app state.

    The service is wired once in create_app with the configured store,
    collaborators and event dispatcher.
    """
    return request.app.state.request_service


def get_settings_service(request: Request) -> SystemSettingsService:
    return request.app.state.settings_service


async def get_actor_id(
    x_actor_id: str = Header(
        ...,
        alias="X-Actor-Id",
        description="Identifier of the user performing the call",
        examples=["u-coordinator-1"],
    ),
) -> str:
    """
    Extract the acting user from the X-Actor-Id header.

    Parameters
    ----------
    x_actor_id : str
        Raw header value

    Returns
    -------
    str
        Stripped actor id

    Raises
    ------
    HTTPException
        400 if the header is blank
    """
    actor_id = x_actor_id.strip()
    if not actor_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Actor-Id header must not be empty",
        )
    return actor_id
