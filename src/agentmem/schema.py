#!/usr/bin/env python3
"""Schema Bootstrap for the agentmem memory store.

Runs once at startup, inside a single transaction:
    1. Mark the active embedding provider in session settings
    2. Check the sentinel table exists
    3. Check the pgvector extension is installed
    4. Apply schema.sql if either check failed

Any failure rolls the whole transaction back and raises SchemaError, which
is not retried: a broken schema should stop the process from starting.

Example:
    bootstrapper = SchemaBootstrapper(pool, EmbeddingConfig.from_env())
    await bootstrapper.ensure_schema()

Author: agentmem Team
"""
import logging
from importlib import resources
from pathlib import Path
from typing import Optional

from .config import EmbeddingConfig, EmbeddingProvider
from .database import ConnectionPool
from .exceptions import SchemaError

logger = logging.getLogger(__name__)

SENTINEL_TABLE = "rooms"
SCHEMA_RESOURCE = "schema.sql"


class SchemaBootstrapper:
    """Verify and, when needed, apply the store schema."""

    def __init__(
        self,
        pool: ConnectionPool,
        embedding: EmbeddingConfig,
        schema_path: Optional[Path] = None,
    ):
        """Initialize the bootstrapper.

        Args:
            pool: Open connection pool
            embedding: Active embedding provider and dimension
            schema_path: DDL script to apply, defaults to the packaged schema.sql
        """
        self.pool = pool
        self.embedding = embedding
        self.schema_path = schema_path

    def load_schema(self) -> str:
        """Read the DDL script.

        Raises:
            SchemaError: If the script cannot be read
        """
        try:
            if self.schema_path is not None:
                return Path(self.schema_path).read_text(encoding="utf-8")
            return (
                resources.files("agentmem")
                .joinpath(SCHEMA_RESOURCE)
                .read_text(encoding="utf-8")
            )
        except OSError as e:
            raise SchemaError(
                f"Unable to read schema file: {e}",
                details={"path": str(self.schema_path or SCHEMA_RESOURCE)},
                cause=e,
            )

    async def _set_provider_flags(self, conn) -> None:
        """Write one flag per provider; exactly one of them is 'true'."""
        for provider in EmbeddingProvider:
            value = "true" if provider == self.embedding.provider else "false"
            await conn.execute(
                "SELECT set_config($1, $2, true)",
                provider.session_flag,
                value,
            )
        await conn.execute(
            "SELECT set_config('app.embedding_dimension', $1, true)",
            str(self.embedding.dimensions),
        )

    async def _table_exists(self, conn) -> bool:
        return bool(await conn.fetchval(
            """
            SELECT EXISTS (
                SELECT FROM information_schema.tables
                WHERE table_name = $1
            )
            """,
            SENTINEL_TABLE,
        ))

    async def _vector_extension_installed(self, conn) -> bool:
        installed = bool(await conn.fetchval(
            "SELECT EXISTS (SELECT 1 FROM pg_extension WHERE extname = 'vector')"
        ))
        if not installed:
            logger.error("Vector extension not found in database")
        return installed

    async def ensure_schema(self) -> bool:
        """Make sure the schema exists, applying it if necessary.

        Returns:
            True if the schema was applied, False if it was already present

        Raises:
            SchemaError: On any failure; nothing is left half-applied
        """
        applied = False
        try:
            async with self.pool.transaction() as conn:
                await self._set_provider_flags(conn)

                has_table = await self._table_exists(conn)
                has_vector = await self._vector_extension_installed(conn)

                if not has_table or not has_vector:
                    logger.info(
                        "Applying database schema - tables or vector extension missing "
                        f"(table={has_table}, vector={has_vector}, "
                        f"provider={self.embedding.provider.value}, "
                        f"dimensions={self.embedding.dimensions})"
                    )
                    await conn.execute(
                        self.load_schema(),
                        timeout=self.pool.config.connect_timeout,
                    )
                    applied = True

        except SchemaError:
            raise
        except Exception as e:
            raise SchemaError(
                f"Schema bootstrap failed and was rolled back: {e}",
                cause=e,
            ) from e

        if applied:
            logger.info("Database schema applied")
        else:
            logger.debug("Database schema already present")
        return applied


__all__ = ["SchemaBootstrapper", "SENTINEL_TABLE"]
