"""
System Settings Service

Injected holder for the runtime SystemSettings document. Updates are guarded
by the document version, the same optimistic discipline used for requests.
"""

from typing import Any
from typing import Dict
from typing import Optional

import pydantic
from loguru import logger

from reqflow_api.workflow.db.store import SettingsStore
from reqflow_api.workflow.exceptions import ConflictError
from reqflow_api.workflow.exceptions import RequestValidationError
from reqflow_api.workflow.models.request import utc_now
from reqflow_api.workflow.models.system_settings import SystemSettings

# Fields managed by the service itself
_READ_ONLY_FIELDS = {"version", "updated_at", "updated_by"}


class SystemSettingsService:
    """Read and update the workflow settings document."""

    def __init__(self, store: SettingsStore, defaults: Optional[SystemSettings] = None):
        """
        Args:
            store: Settings document store
            defaults: Values served until the first update is stored
        """
        self.store = store
        self.defaults = defaults or SystemSettings()

    async def get(self) -> SystemSettings:
        """Return stored settings, or the defaults at version 0."""
        stored = await self.store.get()
        if stored is not None:
            return stored
        return self.defaults.model_copy(update={"version": 0})

    async def update(self, changes: Dict[str, Any], expected_version: int, updated_by: str) -> SystemSettings:
        """
        Apply a partial update if the caller saw the current version.

        Args:
            changes: Field name to new value
            expected_version: Version the caller read
            updated_by: Acting administrator id

        Raises:
            ConflictError: If the settings changed since expected_version
            RequestValidationError: If a field is unknown, read-only or invalid
        """
        unknown = set(changes) - set(SystemSettings.model_fields)
        if unknown:
            raise RequestValidationError(f"Unknown settings: {sorted(unknown)}", {"fields": sorted(unknown)})
        read_only = set(changes) & _READ_ONLY_FIELDS
        if read_only:
            raise RequestValidationError(f"Read-only settings: {sorted(read_only)}", {"fields": sorted(read_only)})

        current = await self.get()
        if current.version != expected_version:
            raise ConflictError(
                "System settings were modified concurrently",
                {"expected_version": expected_version, "current_version": current.version},
            )

        try:
            merged = SystemSettings.model_validate(
                {**current.model_dump(), **changes, "updated_at": utc_now(), "updated_by": str(updated_by)}
            )
        except pydantic.ValidationError as e:
            raise RequestValidationError(
                "Invalid settings values", {"errors": [err["msg"] for err in e.errors()]}
            ) from e

        saved = await self.store.compare_and_set(merged, expected_version)
        logger.success(
            "System settings updated",
            updated_by=updated_by,
            settings_version=saved.version,
            changed_fields=sorted(changes),
        )
        return saved
