"""Static configuration for the topology controller.

`TopologyConfig` is built once at startup and handed to the controller; nothing
re-reads it at runtime. `TopologySettings` is a convenience loader that reads
the same inputs from `PGTOPO_`-prefixed environment variables.
"""

from __future__ import annotations

from ipaddress import ip_network
from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, IPvAnyNetwork, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.enums import BalanceStrategy
from ..infrastructure.postgres.config import AsyncpgConfig, AsyncpgConnectionSettings


class NodeSpec(BaseModel):
    """Where a node lives and how to reach its services."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    host: str = Field(min_length=1)
    port: int = Field(default=5432, ge=1, le=65535, description="PostgreSQL port")
    pooler_port: int = Field(default=6432, ge=1, le=65535, description="Port client traffic is forwarded to")
    check_port: int = Field(default=8008, ge=1, le=65535, description="Health-check endpoint port")
    ssh_user: str | None = Field(default=None, description="Run node commands over ssh as this user")

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


class CredentialsSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    user: str = Field(default="postgres")
    password: SecretStr | None = Field(default=None)
    database: str = Field(default="postgres")
    replication_user: str = Field(default="replicator")
    replication_password: SecretStr | None = Field(default=None)


class HealthCheckSettings(BaseModel):
    """Polling and hysteresis settings (`inter 3s fall 3 rise 2`)."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    poll_interval_s: float = Field(default=3.0, gt=0)
    probe_timeout_s: float = Field(default=2.0, gt=0)
    fall: int = Field(default=3, ge=1)
    rise: int = Field(default=2, ge=1)
    start_up: bool = Field(default=False, description="Treat newly registered nodes as up before any probe")
    method: Literal["sql", "http"] = Field(default="sql")
    balance: BalanceStrategy = Field(default=BalanceStrategy.LEASTCONN)

    @model_validator(mode="after")
    def _timeout_shorter_than_interval(self) -> Self:
        if self.probe_timeout_s >= self.poll_interval_s:
            msg = "probe_timeout_s must be shorter than poll_interval_s"
            raise ValueError(msg)
        return self


class BootstrapSettings(BaseModel):
    """Replica bootstrap settings."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    pg_version: int = Field(default=15, ge=10)
    instance_name: str = Field(default="main")
    service_name: str = Field(default="postgresql")
    deadline_s: float = Field(default=1800.0, gt=0)
    confirm_attempts: int = Field(default=30, ge=1)
    confirm_wait_min_s: float = Field(default=1.0, ge=0)
    confirm_wait_max_s: float = Field(default=5.0, ge=0)
    command_timeout_s: float = Field(default=120.0, gt=0, description="Timeout for short node commands")
    max_standby_streaming_delay: str = Field(default="30s")
    max_standby_archive_delay: str = Field(default="300s")
    wal_receiver_status_interval: str = Field(default="1s")

    @property
    def data_dir(self) -> str:
        return f"/var/lib/postgresql/{self.pg_version}/{self.instance_name}"


class FrontendSettings(BaseModel):
    """Listening ports for the write/read frontends and the stats endpoint."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    listen_host: str = Field(default="0.0.0.0")  # noqa: S104
    write_port: int = Field(default=5000, ge=1, le=65535)
    read_port: int = Field(default=5001, ge=1, le=65535)
    stats_port: int = Field(default=7000, ge=1, le=65535)
    connect_timeout_s: float = Field(default=5.0, gt=0)
    shutdown_sessions_on_down: bool = Field(default=True)


class TopologyConfig(BaseModel):
    """Configuration for one primary and its replicas.

    Examples
    --------
    >>> config = TopologyConfig.with_replica_hosts(
    ...     NodeSpec(host="192.168.1.10"),
    ...     ["192.168.1.11", "192.168.1.12"],
    ...     network_subnet="192.168.1.0/24",
    ... )
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    primary: NodeSpec
    replicas: tuple[NodeSpec, ...] = Field(default_factory=tuple)
    network_subnet: IPvAnyNetwork = Field(default_factory=lambda: ip_network("192.168.1.0/24"))
    credentials: CredentialsSettings = Field(default_factory=CredentialsSettings)
    health: HealthCheckSettings = Field(default_factory=HealthCheckSettings)
    bootstrap: BootstrapSettings = Field(default_factory=BootstrapSettings)
    frontend: FrontendSettings = Field(default_factory=FrontendSettings)

    @model_validator(mode="after")
    def _unique_addresses(self) -> Self:
        addresses = [self.primary.address, *(replica.address for replica in self.replicas)]
        duplicates = sorted({a for a in addresses if addresses.count(a) > 1})
        if duplicates:
            msg = f"duplicate node addresses: {', '.join(duplicates)}"
            raise ValueError(msg)
        return self

    @classmethod
    def with_replica_hosts(cls, primary: NodeSpec, hosts: list[str], **kwargs: object) -> Self:
        """Build a config whose replicas share every port setting with the primary."""
        replicas = tuple(primary.model_copy(update={"host": host}) for host in hosts)
        return cls(primary=primary, replicas=replicas, **kwargs)  # type: ignore[arg-type]

    def admin_pool_config(self, spec: NodeSpec | None = None) -> AsyncpgConfig:
        """asyncpg settings for an administrative connection (defaults to the primary)."""
        target = spec or self.primary
        return AsyncpgConfig(
            connection=AsyncpgConnectionSettings(
                host=target.host,
                port=target.port,
                database=self.credentials.database,
                user=self.credentials.user,
                password=self.credentials.password,
            ),
        )

    def hba_replication_line(self) -> str:
        """pg_hba.conf entry allowing replicas in the subnet to stream."""
        return f"host    replication    {self.credentials.replication_user}  {self.network_subnet}     md5"


class TopologySettings(BaseSettings):
    """Environment loader mirroring the flat inputs of the provisioning scripts.

    ``PGTOPO_PRIMARY_IP=10.0.0.10 PGTOPO_REPLICA_IPS=10.0.0.11,10.0.0.12``
    """

    model_config = SettingsConfigDict(env_file=".env", env_prefix="PGTOPO_", extra="ignore", frozen=True)

    primary_ip: str = Field(default="192.168.1.10")
    replica_ips: str = Field(default="192.168.1.11,192.168.1.12")
    network_subnet: str = Field(default="192.168.1.0/24")
    pg_port: int = Field(default=5432)
    pgbouncer_port: int = Field(default=6432)
    check_port: int = Field(default=8008)
    pg_user: str = Field(default="postgres")
    pg_password: SecretStr | None = Field(default=None)
    replication_user: str = Field(default="replicator")
    replication_password: SecretStr | None = Field(default=None)
    pg_version: int = Field(default=15)
    poll_interval_s: float = Field(default=3.0)
    probe_timeout_s: float = Field(default=2.0)
    fall: int = Field(default=3)
    rise: int = Field(default=2)

    def to_config(self) -> TopologyConfig:
        primary = NodeSpec(
            host=self.primary_ip,
            port=self.pg_port,
            pooler_port=self.pgbouncer_port,
            check_port=self.check_port,
        )
        hosts = [host.strip() for host in self.replica_ips.split(",") if host.strip()]
        return TopologyConfig.with_replica_hosts(
            primary,
            hosts,
            network_subnet=self.network_subnet,
            credentials=CredentialsSettings(
                user=self.pg_user,
                password=self.pg_password,
                replication_user=self.replication_user,
                replication_password=self.replication_password,
            ),
            health=HealthCheckSettings(
                poll_interval_s=self.poll_interval_s,
                probe_timeout_s=self.probe_timeout_s,
                fall=self.fall,
                rise=self.rise,
            ),
            bootstrap=BootstrapSettings(pg_version=self.pg_version),
        )
