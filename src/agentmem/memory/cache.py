"""
Result cache backed by the ``cache`` table.

Entries are keyed by ``(key, agentId)`` and hold an opaque string value.
The cache is a performance layer: a failing read is reported as a miss
and a failing write returns False, so a degraded store never breaks the
caller's main path.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..database import ConnectionPool
from ..exceptions import MemoryStoreError, ValidationError
from ..resilience import ResilientExecutor

logger = logging.getLogger(__name__)


def _require(value: Optional[str], field_name: str) -> None:
    if not value:
        raise ValidationError(f"{field_name} is required", field=field_name)


class ResultCache:
    """Key-value cache with per-agent namespacing.

    Usage:
        cache = ResultCache(pool, executor)

        await cache.set("knowledge_search:agent:abc", str(agent_id), payload)
        payload = await cache.get("knowledge_search:agent:abc", str(agent_id))
    """

    def __init__(self, pool: ConnectionPool, executor: ResilientExecutor):
        """Initialize the cache.

        Args:
            pool: Connection pool
            executor: Circuit breaker and retry wrapper shared by the store
        """
        self.pool = pool
        self.executor = executor

    async def get(self, key: str, agent_id: str) -> Optional[str]:
        """Get a cached value.

        Returns:
            The cached string, or None on a miss or any store failure
        """
        _require(key, "key")
        _require(agent_id, "agent_id")

        async def fetch():
            async with self.pool.connection() as conn:
                return await conn.fetchval(
                    'SELECT value FROM cache WHERE "key" = $1 AND "agentId" = $2',
                    key,
                    str(agent_id),
                )

        try:
            value = await self.executor.execute(fetch, "get_cache")
        except MemoryStoreError as e:
            logger.warning(f"Cache read failed for {key}, treating as miss: {e}")
            return None

        logger.debug(f"Cache {'hit' if value is not None else 'miss'} for {key}")
        return value

    async def set(self, key: str, agent_id: str, value: str) -> bool:
        """Store a value, replacing any existing entry for the same key.

        Returns:
            True if the value was written
        """
        _require(key, "key")
        _require(agent_id, "agent_id")
        if value is None:
            raise ValidationError("value is required", field="value")

        async def upsert():
            async with self.pool.transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO cache ("key", "agentId", value, "createdAt")
                    VALUES ($1, $2, $3, CURRENT_TIMESTAMP)
                    ON CONFLICT ("key", "agentId")
                    DO UPDATE SET
                        value = EXCLUDED.value,
                        "createdAt" = CURRENT_TIMESTAMP
                    """,
                    key,
                    str(agent_id),
                    value,
                )

        try:
            await self.executor.execute(upsert, "set_cache")
        except MemoryStoreError as e:
            logger.error(f"Error setting cache {key}: {e}")
            return False

        return True

    async def delete(self, key: str, agent_id: str) -> bool:
        """Delete a cached value.

        Returns:
            True if the delete statement ran (whether or not a row existed)
        """
        _require(key, "key")
        _require(agent_id, "agent_id")

        async def remove():
            async with self.pool.transaction() as conn:
                await conn.execute(
                    'DELETE FROM cache WHERE "key" = $1 AND "agentId" = $2',
                    key,
                    str(agent_id),
                )

        try:
            await self.executor.execute(remove, "delete_cache")
        except MemoryStoreError as e:
            logger.error(f"Error deleting cache {key}: {e}")
            return False

        return True

    async def delete_prefix(self, prefix: str, agent_id: Optional[str] = None) -> bool:
        """Delete every entry whose key starts with ``prefix``.

        Args:
            prefix: Key prefix, e.g. ``knowledge_search:``
            agent_id: Restrict the delete to one agent; None clears all agents

        Returns:
            True if the delete statement ran
        """
        _require(prefix, "prefix")

        query = 'DELETE FROM cache WHERE left("key", length($1)) = $1'
        args = [prefix]
        if agent_id is not None:
            _require(agent_id, "agent_id")
            query += ' AND "agentId" = $2'
            args.append(str(agent_id))

        async def remove():
            async with self.pool.transaction() as conn:
                return await conn.execute(query, *args)

        try:
            status = await self.executor.execute(remove, "delete_cache_prefix")
        except MemoryStoreError as e:
            logger.error(f"Error deleting cache entries under {prefix}: {e}")
            return False

        logger.debug(f"Cache invalidation under {prefix}: {status}")
        return True


__all__ = ["ResultCache"]
