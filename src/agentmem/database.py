#!/usr/bin/env python3
"""Connection Pool for the agentmem memory store.

This module owns the only shared mutable resource of the store: a bounded
asyncpg pool. It provides:
    - Scoped connection acquisition (release guaranteed on every exit path)
    - Transaction context managers with automatic commit/rollback
    - Supervised reconnect when the pool hits a fatal connection error
    - SIGINT/SIGTERM hooks that drain the pool before exit
    - Conversion of driver errors into the store's exception taxonomy

Example:
    pool = ConnectionPool(PoolConfig(dsn="postgresql://..."))
    await pool.open()

    async with pool.transaction() as conn:
        await conn.execute("INSERT INTO ...")
        await conn.execute("UPDATE ...")
        # Automatic commit on success, rollback on exception

Author: agentmem Team
"""
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

import asyncpg

from .config import PoolConfig
from .exceptions import (
    ConnectionPoolError,
    IntegrityError,
    MemoryStoreError,
    StoreError,
    TransactionError,
)
from .resilience import RetryPolicy

logger = logging.getLogger(__name__)


# Errors after which the pool's sockets can no longer be trusted
FATAL_CONNECTION_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.AdminShutdownError,
    asyncpg.exceptions.CannotConnectNowError,
    ConnectionResetError,
    BrokenPipeError,
)


# ============================================
# Error Conversion
# ============================================

def convert_db_exception(e: BaseException) -> MemoryStoreError:
    """Convert a driver exception to the matching StoreError subtype."""
    if isinstance(e, MemoryStoreError):
        return e

    if isinstance(e, asyncpg.exceptions.UniqueViolationError):
        return IntegrityError(f"Duplicate entry: {e}", constraint="unique", cause=e)

    if isinstance(e, asyncpg.exceptions.ForeignKeyViolationError):
        return IntegrityError(f"Foreign key violation: {e}", constraint="foreign_key", cause=e)

    if isinstance(e, asyncpg.exceptions.NotNullViolationError):
        return IntegrityError(f"Not null violation: {e}", constraint="not_null", cause=e)

    if isinstance(e, asyncpg.exceptions.DeadlockDetectedError):
        return TransactionError(f"Deadlock detected: {e}", operation="transaction", cause=e)

    if isinstance(e, (asyncio.TimeoutError, asyncpg.exceptions.QueryCanceledError)):
        return TransactionError(f"Database operation timed out: {e}", operation="query", cause=e)

    if isinstance(e, FATAL_CONNECTION_ERRORS):
        return ConnectionPoolError(f"Database connection lost: {e}", cause=e)

    return StoreError(f"Database operation failed: {e}", cause=e)


def is_fatal_connection_error(e: BaseException) -> bool:
    """Check ``e`` and its cause chain for a connection-level failure."""
    seen = set()
    current: Optional[BaseException] = e
    while current is not None and id(current) not in seen:
        if isinstance(current, FATAL_CONNECTION_ERRORS):
            return True
        seen.add(id(current))
        current = current.__cause__
    return False


# ============================================
# Connection Pool
# ============================================

class ConnectionPool:
    """Bounded asyncpg pool with supervised reconnect.

    A fatal connection error seen by any caller tears the pool down and
    recreates it with the same configuration, in a background task run
    under the retry policy. Only one reconnect is in flight at a time;
    ``wait_reconnected()`` lets callers and tests await its outcome.
    While the pool is being rebuilt, acquisitions fail with the retryable
    ConnectionPoolError.
    """

    def __init__(
        self,
        config: PoolConfig,
        retry_policy: Optional[RetryPolicy] = None,
        pool_factory: Optional[Callable[..., Any]] = None,
    ):
        """Initialize the pool wrapper (no I/O until ``open()``).

        Args:
            config: Pool sizing and timeouts
            retry_policy: Backoff used when rebuilding the pool
            pool_factory: Coroutine function creating the pool, defaults to
                asyncpg.create_pool
        """
        self.config = config
        self._retry_policy = retry_policy or RetryPolicy()
        self._pool_factory = pool_factory or asyncpg.create_pool
        self._pool = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._signal_loop: Optional[asyncio.AbstractEventLoop] = None
        self._signals: list[signal.Signals] = []
        self._closing = False
        self.drained = asyncio.Event()

    @property
    def is_open(self) -> bool:
        return self._pool is not None and not self._closing

    @property
    def reconnect_task(self) -> Optional[asyncio.Task]:
        return self._reconnect_task

    # ----------------------------------------
    # Lifecycle
    # ----------------------------------------

    async def open(self) -> None:
        """Create the pool and verify connectivity.

        Raises:
            ConnectionPoolError: If the pool cannot be created
        """
        if self._pool is not None:
            return
        self._closing = False
        self.drained.clear()
        self._pool = await self._create_pool()

    async def _create_pool(self):
        try:
            pool = await self._pool_factory(
                dsn=self.config.dsn,
                min_size=self.config.min_size,
                max_size=self.config.max_size,
                max_inactive_connection_lifetime=self.config.idle_timeout,
                timeout=self.config.connect_timeout,
                command_timeout=self.config.command_timeout,
            )
        except Exception as e:
            raise ConnectionPoolError(
                f"Failed to create database pool: {e}",
                cause=e,
            )

        try:
            async with pool.acquire() as conn:
                now = await conn.fetchval("SELECT NOW()")
        except Exception as e:
            pool.terminate()
            raise ConnectionPoolError(
                f"Failed to connect to database: {e}",
                cause=e,
            )

        logger.info(
            f"Database pool created (min={self.config.min_size}, "
            f"max={self.config.max_size}), server time {now}"
        )
        return pool

    async def close(self, timeout: float = 10.0) -> None:
        """Close the pool gracefully, terminating it after ``timeout``."""
        self._closing = True

        task = self._reconnect_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Reconnect task ended with error during close: {e}")

        pool, self._pool = self._pool, None
        await self._close_pool(pool, timeout)
        self.drained.set()

    async def _close_pool(self, pool, timeout: float = 10.0) -> None:
        if pool is None:
            return

        try:
            await asyncio.wait_for(pool.close(), timeout=timeout)
            logger.info("Database pool closed")
        except asyncio.TimeoutError:
            logger.warning(f"Pool close timed out after {timeout}s, terminating")
            pool.terminate()
        except Exception as e:
            logger.error(f"Error closing pool: {e}")
            pool.terminate()

    # ----------------------------------------
    # Reconnect
    # ----------------------------------------

    def handle_fatal_error(self, error: BaseException) -> Optional[asyncio.Task]:
        """Schedule a pool rebuild after a fatal connection error.

        Returns:
            The (possibly already running) reconnect task, or None while closing
        """
        if self._closing:
            return None

        if self._reconnect_task is None or self._reconnect_task.done():
            logger.error(f"Pool error occurred, attempting to reconnect: {error}")
            self._reconnect_task = asyncio.get_running_loop().create_task(
                self._reconnect(), name="agentmem-pool-reconnect"
            )
            self._reconnect_task.add_done_callback(self._on_reconnect_done)

        return self._reconnect_task

    async def _reconnect(self) -> None:
        old_pool, self._pool = self._pool, None
        await self._close_pool(old_pool, timeout=self.config.connect_timeout)

        self._pool = await self._retry_policy.run(self._create_pool, "reconnect_pool")
        logger.info("Pool reconnection successful")

    def _on_reconnect_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Failed to reconnect pool: {error}")

    async def wait_reconnected(self) -> None:
        """Wait for an in-flight reconnect, re-raising its failure."""
        task = self._reconnect_task
        if task is not None:
            await task

    # ----------------------------------------
    # Signals
    # ----------------------------------------

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Drain the pool, then exit, when the process receives SIGINT or SIGTERM.

        After the drain the default disposition is restored and the signal
        re-raised: SIGTERM terminates the process and SIGINT raises
        KeyboardInterrupt, which unwinds ``asyncio.run``.
        """
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError) as e:
                logger.warning(f"Signal handlers not supported, {sig.name} will not drain the pool: {e}")
                continue
            self._signal_loop = loop
            self._signals.append(sig)

    def remove_signal_handlers(self) -> None:
        """Restore the default SIGINT/SIGTERM behaviour."""
        loop, self._signal_loop = self._signal_loop, None
        signals, self._signals = self._signals, []
        if loop is None:
            return
        for sig in signals:
            loop.remove_signal_handler(sig)

    def _on_signal(self, signum: int) -> None:
        logger.info(f"Received signal {signum}, draining database pool")
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain_and_exit(signum))

    async def _drain_and_exit(self, signum: int) -> None:
        try:
            await self.close()
        finally:
            self.remove_signal_handlers()
            logger.info(f"Database pool drained, re-raising signal {signum}")
            signal.raise_signal(signum)

    # ----------------------------------------
    # Scoped acquisition
    # ----------------------------------------

    def _require_pool(self):
        if self._pool is None:
            if self._reconnect_task is not None and not self._reconnect_task.done():
                raise ConnectionPoolError("Database pool is reconnecting")
            raise ConnectionPoolError("Database connection pool is not initialized")
        return self._pool

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        """Acquire a connection, releasing it on success, error or cancellation.

        Driver errors raised inside the block are converted to the store
        taxonomy; connection-level failures also schedule a reconnect.

        Example:
            async with pool.connection() as conn:
                rows = await conn.fetch("SELECT * FROM memories LIMIT 10")
        """
        pool = self._require_pool()

        try:
            conn = await asyncio.wait_for(
                pool.acquire(),
                timeout=self.config.connect_timeout,
            )
        except asyncio.TimeoutError:
            raise ConnectionPoolError(
                "Timeout acquiring database connection",
                details={"timeout_seconds": self.config.connect_timeout},
            )
        except Exception as e:
            if is_fatal_connection_error(e):
                self.handle_fatal_error(e)
            raise ConnectionPoolError(
                f"Failed to acquire database connection: {e}",
                cause=e,
            )

        try:
            yield conn
        except Exception as e:
            if is_fatal_connection_error(e):
                self.handle_fatal_error(e)
            converted = convert_db_exception(e)
            if converted is e:
                raise
            raise converted from e
        finally:
            try:
                await pool.release(conn)
            except Exception as release_error:
                logger.warning(f"Failed to release connection: {release_error}")

    @asynccontextmanager
    async def transaction(
        self,
        isolation: str = "read_committed",
    ) -> AsyncIterator[Any]:
        """Connection inside a transaction, committed on success.

        Any exception rolls the transaction back before it propagates.

        Args:
            isolation: Transaction isolation level
                ("serializable", "repeatable_read", "read_committed")
        """
        async with self.connection() as conn:
            transaction = conn.transaction(isolation=isolation)

            try:
                await transaction.start()
            except Exception as e:
                raise TransactionError(
                    f"Failed to start transaction: {e}",
                    cause=e,
                )

            try:
                yield conn
            except Exception:
                try:
                    await transaction.rollback()
                    logger.debug("Transaction rolled back due to exception")
                except Exception as rollback_error:
                    logger.error(f"Rollback failed: {rollback_error}")
                raise

            await transaction.commit()
            logger.debug("Transaction committed successfully")

    # ----------------------------------------
    # Health
    # ----------------------------------------

    async def check_health(self) -> dict[str, Any]:
        """Check database connection health."""
        pool = self._pool
        if pool is None:
            return {
                "healthy": False,
                "error": "Pool not initialized",
            }

        try:
            async with self.connection() as conn:
                result = await conn.fetchval("SELECT 1")
            pool_size = pool.get_size()
            pool_free = pool.get_idle_size()

            return {
                "healthy": result == 1,
                "pool_size": pool_size,
                "pool_free": pool_free,
                "pool_used": pool_size - pool_free,
            }

        except Exception as e:
            return {
                "healthy": False,
                "error": str(e),
            }


__all__ = [
    "ConnectionPool",
    "convert_db_exception",
    "is_fatal_connection_error",
    "FATAL_CONNECTION_ERRORS",
]
