"""Configuration models for asyncpg connections.

- `AsyncpgConfig`: settings for one connection pool (used for the primary's
  administrative pool that manages replication slots).
"""

from __future__ import annotations

from typing import Any, Self
from urllib.parse import quote_plus

from pydantic import BaseModel, ConfigDict, Field, SecretStr, computed_field


class AsyncpgConnectionSettings(BaseModel):
    """Connection settings for a PostgreSQL database."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    host: str = Field(default="localhost")
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = Field(default="postgres")
    user: str = Field(default="postgres")
    password: SecretStr | None = Field(default=None)


class AsyncpgPoolSettings(BaseModel):
    """Connection pool settings.

    The admin pool only runs short catalog queries, so it stays small.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    min_size: int = Field(default=1, ge=0, le=100)
    max_size: int = Field(default=4, ge=1, le=200)
    max_inactive_connection_lifetime: float = Field(default=300.0, ge=0.0)
    command_timeout: float = Field(default=30.0, ge=1.0, le=300.0)


class AsyncpgConfig(BaseModel):
    """Complete configuration for an asyncpg connection pool.

    Examples
    --------
    >>> config = AsyncpgConfig(
    ...     connection=AsyncpgConnectionSettings(host="192.168.1.10", password=SecretStr("secret")),
    ... )
    >>> async with AsyncConnectionPool(config) as pool:
    ...     await pool.afetchval("SELECT pg_is_in_recovery()")
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    connection: AsyncpgConnectionSettings = Field(default_factory=AsyncpgConnectionSettings)
    pool: AsyncpgPoolSettings = Field(default_factory=AsyncpgPoolSettings)
    application_name: str = Field(default="pgtopo")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def dsn(self) -> str:
        """Build PostgreSQL DSN from connection settings."""
        password = self.connection.password.get_secret_value() if self.connection.password else ""
        escaped_user = quote_plus(self.connection.user)
        escaped_password = quote_plus(password) if password else ""
        auth = f"{escaped_user}:{escaped_password}@" if escaped_password else f"{escaped_user}@"
        return f"postgresql://{auth}{self.connection.host}:{self.connection.port}/{self.connection.database}"

    def to_pool_params(self) -> dict[str, Any]:
        """Convert config to asyncpg.create_pool() parameters."""
        return {
            "dsn": self.dsn,
            **self.pool.model_dump(),
            "server_settings": {"application_name": self.application_name},
        }

    def for_host(self, host: str, port: int | None = None) -> Self:
        """Copy this config pointing at another node, keeping credentials and pool settings."""
        new_connection = self.connection.model_copy(
            update={"host": host, "port": port if port is not None else self.connection.port}
        )
        return self.model_copy(update={"connection": new_connection})
