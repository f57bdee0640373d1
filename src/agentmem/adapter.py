#!/usr/bin/env python3
"""Memory Adapter - single entry point to the agentmem store.

Builds one ResilientExecutor, one ConnectionPool and the three stores that
share them, and owns their lifecycle:

    adapter = MemoryAdapter(StoreConfig.from_env())
    await adapter.init()            # open pool, bootstrap schema

    await adapter.memories.create(memory)
    results = await adapter.knowledge.search(agent_id, embedding, 0.5, 5, "query")

    await adapter.close()           # drain pool

Author: agentmem Team
"""
import logging
from typing import Any, Callable, Optional

from .config import StoreConfig
from .database import ConnectionPool
from .memory import KnowledgeStore, MemoryStore, ResultCache
from .resilience import ResilientExecutor, RetryPolicy
from .schema import SchemaBootstrapper

logger = logging.getLogger(__name__)


class MemoryAdapter:
    """Wire the pool, executor, schema bootstrap and stores together.

    Attributes:
        executor: Circuit breaker and retry shared by every store operation
        pool: Connection pool
        schema: Schema bootstrapper run by ``init()``
        cache: Result cache
        memories: Memory store
        knowledge: Knowledge store
    """

    def __init__(
        self,
        config: StoreConfig,
        pool_factory: Optional[Callable[..., Any]] = None,
    ):
        """Initialize the adapter (no I/O until ``init()``).

        Args:
            config: Store configuration
            pool_factory: Optional replacement for asyncpg.create_pool
        """
        self.config = config
        dimensions = config.embedding.dimensions

        self.executor = ResilientExecutor.from_config(config.circuit, config.retry)
        self.pool = ConnectionPool(
            config.pool,
            retry_policy=RetryPolicy.from_config(config.retry),
            pool_factory=pool_factory,
        )
        self.schema = SchemaBootstrapper(self.pool, config.embedding)

        self.cache = ResultCache(self.pool, self.executor)
        self.memories = MemoryStore(self.pool, self.executor, dimensions)
        self.knowledge = KnowledgeStore(self.pool, self.executor, self.cache, dimensions)

    @classmethod
    def from_env(cls) -> "MemoryAdapter":
        return cls(StoreConfig.from_env())

    async def init(self, install_signal_handlers: bool = True) -> None:
        """Open the pool and make sure the schema exists.

        Args:
            install_signal_handlers: Drain the pool and exit on SIGINT/SIGTERM

        Raises:
            ConnectionPoolError: If the database is unreachable
            SchemaError: If the schema cannot be verified or applied
        """
        await self.pool.open()
        try:
            await self.schema.ensure_schema()
        except Exception:
            await self.pool.close()
            raise

        if install_signal_handlers:
            self.pool.install_signal_handlers()

        logger.info(
            f"Memory store ready (provider={self.config.embedding.provider.value}, "
            f"dimensions={self.config.embedding.dimensions})"
        )

    async def close(self, timeout: float = 10.0) -> None:
        self.pool.remove_signal_handlers()
        await self.pool.close(timeout=timeout)

    async def check_health(self) -> dict[str, Any]:
        """Pool health merged with circuit breaker status."""
        health = await self.pool.check_health()
        health["circuit"] = self.executor.get_status()
        if health["circuit"]["state"] != "closed":
            health["healthy"] = False
        return health

    async def __aenter__(self) -> "MemoryAdapter":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


__all__ = ["MemoryAdapter"]
