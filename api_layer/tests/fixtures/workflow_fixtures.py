"""Fixtures for the request workflow: in-memory collaborators, stores and services."""

from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

import pytest

from reqflow_api.workflow.collaborators import InMemoryCoordinatorResolver
from reqflow_api.workflow.collaborators import InMemoryPermissionEngine
from reqflow_api.workflow.collaborators import InMemoryUserDirectory
from reqflow_api.workflow.db.memory import InMemoryRequestStore
from reqflow_api.workflow.db.memory import InMemorySettingsStore
from reqflow_api.workflow.service import RequestService
from reqflow_api.workflow.settings_service import SystemSettingsService

LOCATION = "LOC-1"

REQUESTER = "u-requester"
COORD_A = "u-coord-a"
COORD_B = "u-coord-b"
COORD_C = "u-coord-c"
ADMIN = "u-admin"
OUTSIDER = "u-outsider"

USERS = {
    REQUESTER: {"name": "Riley Requester", "role_code": "stakeholder", "authority": 30},
    COORD_A: {"name": "Alex Coordinator", "role_code": "coordinator", "authority": 60},
    COORD_B: {"name": "Blake Coordinator", "role_code": "coordinator", "authority": 65},
    COORD_C: {"name": "Casey Coordinator", "role_code": "coordinator", "authority": 62},
    ADMIN: {"name": "Ada Admin", "role_code": "operational_admin", "authority": 80},
    OUTSIDER: {"name": "Owen Outsider", "role_code": "basic", "authority": 20},
}

COORDINATOR_ACTIONS = ["read", "review", "reschedule", "cancel"]
REQUESTER_ACTIONS = ["create", "read", "confirm", "reschedule", "cancel", "update", "delete"]


def event_day(days_ahead: int = 3) -> date:
    """First weekday at least days_ahead from today (UTC)."""
    day = datetime.now(timezone.utc).date() + timedelta(days=days_ahead)
    while day.weekday() >= 5:
        day += timedelta(days=1)
    return day


def event_details(days_ahead: int = 3, **extra: Any) -> Dict[str, Any]:
    details = {
        "title": "Quarterly town hall",
        "start_date": event_day(days_ahead).isoformat(),
        "start_time": "10:00",
        "end_time": "11:00",
        "location": "Main hall",
    }
    details.update(extra)
    return details


class RecordingDispatcher:
    """EventDispatcher that keeps every event for assertions."""

    def __init__(self, fail: bool = False):
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.fail = fail

    async def dispatch(self, event_name: str, payload: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("dispatcher unavailable")
        self.events.append((event_name, payload))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]


def build_collaborators() -> Tuple[InMemoryUserDirectory, InMemoryPermissionEngine, InMemoryCoordinatorResolver]:
    directory = InMemoryUserDirectory(USERS)

    permissions = InMemoryPermissionEngine()
    permissions.grant(REQUESTER, "request", REQUESTER_ACTIONS)
    for coordinator in (COORD_A, COORD_B, COORD_C):
        permissions.grant(coordinator, "request", COORDINATOR_ACTIONS)
    permissions.grant(ADMIN, "*", ["*"])

    coordinators = InMemoryCoordinatorResolver()
    for coordinator in (COORD_A, COORD_B):
        user = USERS[coordinator]
        coordinators.add_coordinator(
            LOCATION,
            {"user_id": coordinator, "name": user["name"], "role_code": "coordinator", "authority": user["authority"]},
        )
    return directory, permissions, coordinators


@pytest.fixture
def user_directory():
    directory, _, _ = build_collaborators()
    return directory


@pytest.fixture
def collaborators():
    """(directory, permissions, coordinator resolver) seeded with the test users."""
    return build_collaborators()


@pytest.fixture
def request_store():
    return InMemoryRequestStore()


@pytest.fixture
def settings_store():
    return InMemorySettingsStore()


@pytest.fixture
def settings_service(settings_store):
    return SystemSettingsService(settings_store)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def request_service(collaborators, request_store, settings_service, dispatcher):
    """RequestService over in-memory stores and collaborators."""
    directory, permissions, coordinators = collaborators
    return RequestService(
        store=request_store,
        settings_service=settings_service,
        permissions=permissions,
        coordinators=coordinators,
        directory=directory,
        dispatcher=dispatcher,
    )


async def submit_request(
    service: RequestService,
    requester_id: str = REQUESTER,
    parent_request_id: Optional[str] = None,
    **details: Any,
):
    """Create a pending request at LOCATION (reviewer is COORD_A)."""
    return await service.create_request(
        requester_id=requester_id,
        event_details=event_details(**details),
        location_id=LOCATION,
        organization_type="internal",
        parent_request_id=parent_request_id,
    )
