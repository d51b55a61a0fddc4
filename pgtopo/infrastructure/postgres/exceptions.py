from __future__ import annotations


class AsyncpgWrapperError(Exception):
    """Base error for the asyncpg pool wrapper."""


class PoolNotInitializedError(AsyncpgWrapperError):
    """Raised when the pool is used before `ainitialize()`."""
