"""
Workflow Collaborators

Contracts the request workflow consumes from outside systems (permission
engine, coordinator coverage resolver, identity lookup, event dispatcher),
plus in-memory implementations used for local runs and tests.
"""

from typing import Any
from typing import Callable
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Protocol

from reqflow_api.workflow.models.request import EventRequest

WILDCARD = "*"


class PermissionEngine(Protocol):
    """RBAC evaluation. Policy storage is owned by the engine."""

    async def check_permission(
        self, actor_id: str, resource: str, action: str, location_id: Optional[str] = None
    ) -> bool:
        """Return True if the actor may perform resource.action at the location."""
        ...

    async def get_user_permissions(self, actor_id: str) -> List[Dict[str, Any]]:
        """Return [{"resource": str, "actions": [str]}] grants for the actor."""
        ...


class CoordinatorResolver(Protocol):
    """Jurisdiction/coverage lookup for eligible coordinators."""

    async def get_eligible_coordinators(self, request: EventRequest) -> List[Dict[str, Any]]:
        """Return [{"user_id", "name", "authority", "organization_type"}] for the request."""
        ...


class UserDirectory(Protocol):
    """Identity lookup used to snapshot actors."""

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Return {"name", "role_code", "authority"} or None if unknown."""
        ...


class EventDispatcher(Protocol):
    """Fire-and-forget domain event sink."""

    async def dispatch(self, event_name: str, payload: Dict[str, Any]) -> None:
        ...


def has_wildcard(grants: Iterable[Dict[str, Any]]) -> bool:
    """True if any grant is resource '*' or contains action '*'."""
    for grant in grants:
        if grant.get("resource") == WILDCARD:
            return True
        if WILDCARD in (grant.get("actions") or []):
            return True
    return False


# ════════════════════════════════════════════════════════════════════════════
# In-memory implementations
# ════════════════════════════════════════════════════════════════════════════


class InMemoryPermissionEngine:
    """
    Grant table keyed by actor id.

    Grants are {"resource": "request", "actions": ["review", ...], "locations": [...]}.
    A grant without "locations" applies everywhere.
    """

    def __init__(self, grants: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._grants: Dict[str, List[Dict[str, Any]]] = {k: list(v) for k, v in (grants or {}).items()}

    def grant(
        self, actor_id: str, resource: str, actions: List[str], locations: Optional[List[str]] = None
    ) -> None:
        entry: Dict[str, Any] = {"resource": resource, "actions": list(actions)}
        if locations is not None:
            entry["locations"] = list(locations)
        self._grants.setdefault(str(actor_id), []).append(entry)

    async def check_permission(
        self, actor_id: str, resource: str, action: str, location_id: Optional[str] = None
    ) -> bool:
        for grant in self._grants.get(str(actor_id), []):
            if grant["resource"] not in (resource, WILDCARD):
                continue
            actions = grant.get("actions") or []
            if action not in actions and WILDCARD not in actions:
                continue
            locations = grant.get("locations")
            if locations is None or location_id is None or location_id in locations:
                return True
        return False

    async def get_user_permissions(self, actor_id: str) -> List[Dict[str, Any]]:
        return [
            {"resource": g["resource"], "actions": list(g.get("actions") or [])}
            for g in self._grants.get(str(actor_id), [])
        ]


class InMemoryUserDirectory:
    """User records keyed by id."""

    def __init__(self, users: Optional[Dict[str, Dict[str, Any]]] = None):
        self._users: Dict[str, Dict[str, Any]] = {str(k): dict(v) for k, v in (users or {}).items()}

    def add_user(self, user_id: str, name: str, role_code: Optional[str], authority: int) -> None:
        self._users[str(user_id)] = {"name": name, "role_code": role_code, "authority": authority}

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        user = self._users.get(str(user_id))
        return dict(user) if user is not None else None


class InMemoryCoordinatorResolver:
    """
    Coordinators indexed by location id.

    An optional predicate further filters candidates per request
    (e.g. by organization type).
    """

    def __init__(
        self,
        coverage: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        predicate: Optional[Callable[[EventRequest, Dict[str, Any]], bool]] = None,
    ):
        self._coverage = {str(k): list(v) for k, v in (coverage or {}).items()}
        self._predicate = predicate

    def add_coordinator(self, location_id: str, coordinator: Dict[str, Any]) -> None:
        self._coverage.setdefault(str(location_id), []).append(dict(coordinator))

    async def get_eligible_coordinators(self, request: EventRequest) -> List[Dict[str, Any]]:
        candidates = self._coverage.get(str(request.location_id), [])
        if self._predicate is not None:
            candidates = [c for c in candidates if self._predicate(request, c)]
        return [dict(c) for c in candidates]
