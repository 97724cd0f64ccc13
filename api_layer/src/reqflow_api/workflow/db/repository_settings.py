"""
System Settings Repository

PostgreSQL-backed SettingsStore holding the single settings document.
"""

import json
from typing import Optional

import asyncpg

from reqflow_api.workflow.exceptions import ConflictError
from reqflow_api.workflow.models.system_settings import SystemSettings

TABLE = "workflow.system_settings"


class SystemSettingsRepository:
    """Single-row settings repository guarded by a version column."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get(self) -> Optional[SystemSettings]:
        async with self.pool.acquire() as conn:
            document = await conn.fetchval(f"SELECT document FROM {TABLE} WHERE settings_id = 1")
        if document is None:
            return None
        if isinstance(document, str):
            document = json.loads(document)
        return SystemSettings.model_validate(document)

    async def compare_and_set(self, settings: SystemSettings, expected_version: int) -> SystemSettings:
        stored = settings.model_copy(update={"version": expected_version + 1})
        payload = json.dumps(stored.model_dump(mode="json"), default=str)

        async with self.pool.acquire() as conn:
            if expected_version == 0:
                # First write creates the row; a concurrent creator wins the primary key
                written = await conn.fetchval(
                    f"""
                    INSERT INTO {TABLE} (settings_id, version, document, updated_at)
                    VALUES (1, 1, $1::jsonb, NOW())
                    ON CONFLICT (settings_id) DO NOTHING
                    RETURNING version
                    """,
                    payload,
                )
            else:
                written = await conn.fetchval(
                    f"""
                    UPDATE {TABLE}
                    SET document = $1::jsonb, version = $2, updated_at = NOW()
                    WHERE settings_id = 1 AND version = $3
                    RETURNING version
                    """,
                    payload,
                    stored.version,
                    expected_version,
                )

        if written is None:
            raise ConflictError(
                "System settings were modified concurrently",
                {"expected_version": expected_version},
            )
        return stored
