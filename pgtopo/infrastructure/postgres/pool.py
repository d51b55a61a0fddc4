"""Async connection pool for PostgreSQL using asyncpg.

The controller keeps one of these against the primary for catalog work
(replication slots, `pg_stat_replication`). Probes do not use a pool: each
probe opens and closes its own short-lived connection.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Self

import asyncpg
from asyncpg import Pool, Record

from ...logger import get_logger
from .exceptions import PoolNotInitializedError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from types import TracebackType

    from asyncpg.pool import PoolConnectionProxy

    from .config import AsyncpgConfig

logger = get_logger(__name__)


class AsyncConnectionPool:
    """Async connection pool for a single PostgreSQL database.

    Examples
    --------
    >>> async with AsyncConnectionPool(config) as pool:
    ...     rows = await pool.afetch("SELECT slot_name FROM pg_replication_slots")
    """

    __slots__ = ("_config", "_init_lock", "_pool")

    def __init__(self, config: AsyncpgConfig) -> None:
        self._config = config
        self._pool: Pool[Record] | None = None
        self._init_lock = asyncio.Lock()

    async def __aenter__(self) -> Self:
        await self.ainitialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None and exc_val is not None:
            logger.error(
                "AsyncConnectionPool context manager exiting with exception",
                exc_type=exc_type.__name__,
                exc_val=str(exc_val),
            )
        await self.aclose()

    @property
    def pool(self) -> Pool[Record]:
        """Access the underlying asyncpg pool.

        Raises
        ------
        PoolNotInitializedError
            If pool has not been initialized via `ainitialize()`.
        """
        if self._pool is None:
            msg = "Pool not initialized. Call ainitialize() first."
            raise PoolNotInitializedError(msg)
        return self._pool

    @property
    def is_initialized(self) -> bool:
        return self._pool is not None

    async def ainitialize(self) -> None:
        """Initialize the connection pool.

        Idempotent. The lock keeps two concurrent callers from each creating
        a pool and orphaning one of them.
        """
        async with self._init_lock:
            if self._pool is not None:
                return

            self._pool = await asyncpg.create_pool(**self._config.to_pool_params())

            async with self._pool.acquire() as conn:
                await conn.execute("SELECT 1")

            logger.info(
                "AsyncConnectionPool initialized",
                host=self._config.connection.host,
                port=self._config.connection.port,
                max_size=self._config.pool.max_size,
            )

    async def aclose(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("AsyncConnectionPool closed", host=self._config.connection.host)

    @asynccontextmanager
    async def aacquire(self) -> AsyncIterator[PoolConnectionProxy[Record]]:
        """Acquire a connection that is returned to the pool on exit."""
        async with self.pool.acquire() as conn:
            yield conn

    async def aexecute(self, query: str, *args: object, timeout: float | None = None) -> str:
        """Execute a query without returning results.

        Returns
        -------
        str
            Command status string (e.g., "SELECT 1").
        """
        async with self.aacquire() as conn:
            return await conn.execute(query, *args, timeout=timeout)

    async def afetch(self, query: str, *args: object, timeout: float | None = None) -> list[Record]:
        """Execute a query and return all rows."""
        async with self.aacquire() as conn:
            return await conn.fetch(query, *args, timeout=timeout)

    async def afetchrow(self, query: str, *args: object, timeout: float | None = None) -> Record | None:
        """Execute a query and return the first row, or None."""
        async with self.aacquire() as conn:
            return await conn.fetchrow(query, *args, timeout=timeout)

    async def afetchval(self, query: str, *args: object, timeout: float | None = None) -> Any:
        """Execute a query and return the first column of the first row."""
        async with self.aacquire() as conn:
            return await conn.fetchval(query, *args, timeout=timeout)
