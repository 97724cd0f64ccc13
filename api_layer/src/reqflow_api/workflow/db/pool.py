"""
Workflow Domain Database Connection Pool

Manages the asyncpg connection pool for the request document store.
Bootstraps the schema from schema.sql on initialization.

Schema Evolution:
-----------------
When adding/removing/renaming tables in schema.sql:
1. Update the schema.sql file with new DDL (keep IF NOT EXISTS)
2. Update DomainDBPool.EXPECTED_TABLES constant with new table names
"""

from pathlib import Path
from typing import Optional

import asyncpg
from loguru import logger

SCHEMA_NAME = "workflow"


class DomainDBPool:
    """Workflow domain database connection pool manager."""

    # Expected tables in the workflow schema
    # Update this set when schema evolves (add/remove/rename tables)
    EXPECTED_TABLES = {
        "event_requests",
        "system_settings",
    }

    def __init__(self, connection_string: str, min_size: int = 2, max_size: int = 10):
        """
        Initialize domain DB pool.

        Args:
            connection_string: PostgreSQL connection string for the workflow database
            min_size: Minimum pool connections
            max_size: Maximum pool connections
        """
        self.connection_string = connection_string
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None
        self._pool_initialized = False

    async def initialize(self) -> None:
        """
        Initialize connection pool and bootstrap the schema.
        """
        if self._pool_initialized and self.pool is not None:
            logger.debug("Domain DB pool already initialized")
            return

        try:
            logger.info("Initializing workflow domain database pool")

            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60,  # Query timeout (60 seconds)
                timeout=15,  # Connection timeout (15 seconds)
            )

            logger.info("Domain DB pool created successfully")

            # Validate pool connection
            async with self.pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                if result != 1:
                    raise RuntimeError("Pool validation query failed")

            await self._run_migrations()

            self._pool_initialized = True
            logger.success("Workflow domain database initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize domain DB pool: {e}", exc_info=True)
            if self.pool:
                await self.pool.close()
                self.pool = None
            raise

    async def _run_migrations(self) -> None:
        """
        Execute schema.sql (idempotent DDL) and verify the expected tables exist.
        """
        schema_path = Path(__file__).parent / "schema.sql"
        if not schema_path.exists():
            raise FileNotFoundError(f"schema.sql not found at {schema_path}")

        try:
            async with self.pool.acquire() as conn:
                await conn.execute(schema_path.read_text())

                rows = await conn.fetch(
                    """
                    SELECT table_name
                    FROM information_schema.tables
                    WHERE table_schema = $1
                    """,
                    SCHEMA_NAME,
                )
                existing_tables = {row["table_name"] for row in rows}

            missing_tables = self.EXPECTED_TABLES - existing_tables
            if missing_tables:
                raise RuntimeError(f"Migration incomplete: missing tables {missing_tables}")

            logger.success(f"All {len(self.EXPECTED_TABLES)} workflow tables verified successfully")

        except Exception as e:
            logger.error(f"Migration failed: {e}", exc_info=True)
            raise

    async def close(self) -> None:
        """Close the connection pool gracefully."""
        if self.pool:
            logger.info("Closing workflow domain database pool")
            await self.pool.close()
            self.pool = None
            self._pool_initialized = False
            logger.info("Domain DB pool closed")

    def acquire(self):
        """
        Acquire a database connection from the pool.

        Returns async context manager that yields a connection.

        Usage:
            async with pool.acquire() as conn:
                result = await conn.fetchrow("SELECT * FROM ...")
        """
        if not self.pool:
            raise RuntimeError("Domain DB pool not initialized - call initialize() first")
        return self.pool.acquire()

    async def health_check(self) -> bool:
        """
        Check if database connection is healthy.

        Returns:
            True if connection is healthy, False otherwise
        """
        try:
            if not self.pool:
                return False

            async with self.pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                return result == 1
        except Exception as e:
            logger.error(f"Domain DB health check failed: {e}")
            return False
