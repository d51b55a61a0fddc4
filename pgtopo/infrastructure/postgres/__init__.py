"""PostgreSQL infrastructure with asyncpg.

- `AsyncConnectionPool`: connection pool for one database (the primary's
  administrative connection)
- `AsyncpgConfig`: configuration for that pool
"""

from .config import AsyncpgConfig, AsyncpgConnectionSettings, AsyncpgPoolSettings
from .exceptions import AsyncpgWrapperError, PoolNotInitializedError
from .pool import AsyncConnectionPool

__all__ = [
    "AsyncConnectionPool",
    "AsyncpgConfig",
    "AsyncpgConnectionSettings",
    "AsyncpgPoolSettings",
    "AsyncpgWrapperError",
    "PoolNotInitializedError",
]
