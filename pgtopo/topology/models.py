"""Value objects shared by the topology components.

All models are frozen: a change produces a new instance via ``model_copy``,
so a reference handed to a reader never changes under it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Self

from pydantic import BaseModel, ConfigDict, Field, computed_field

from ..core.enums import BootstrapPhase, HealthStatus, NodeRole, NodeState, SlotState

if TYPE_CHECKING:
    from ..config.topology import NodeSpec


def _utcnow() -> datetime:
    return datetime.now(UTC)


def replica_node_id(ordinal: int) -> str:
    return f"replica{ordinal}"


class Node(BaseModel):
    """A registered database node.

    ``id`` and the address fields never change for the node's lifetime; only
    ``state`` moves, driven by probe results and bootstrap phases.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    host: str = Field(min_length=1)
    port: int = Field(default=5432, ge=1, le=65535)
    pooler_port: int = Field(default=6432, ge=1, le=65535)
    check_port: int = Field(default=8008, ge=1, le=65535)
    ssh_user: str | None = None
    declared_role: NodeRole = NodeRole.REPLICA
    ordinal: int | None = Field(default=None, ge=1)
    slot_name: str | None = None
    state: NodeState = NodeState.UNKNOWN

    @classmethod
    def primary_from_spec(cls, spec: NodeSpec, node_id: str = "primary") -> Self:
        return cls(
            id=node_id,
            host=spec.host,
            port=spec.port,
            pooler_port=spec.pooler_port,
            check_port=spec.check_port,
            ssh_user=spec.ssh_user,
            declared_role=NodeRole.PRIMARY,
        )

    @classmethod
    def replica_from_spec(cls, spec: NodeSpec, ordinal: int) -> Self:
        return cls(
            id=replica_node_id(ordinal),
            host=spec.host,
            port=spec.port,
            pooler_port=spec.pooler_port,
            check_port=spec.check_port,
            ssh_user=spec.ssh_user,
            declared_role=NodeRole.REPLICA,
            ordinal=ordinal,
        )

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def application_name(self) -> str:
        """Name the node reports to the primary in ``pg_stat_replication``."""
        return self.id

    def with_state(self, state: NodeState) -> Self:
        if state == self.state:
            return self
        return self.model_copy(update={"state": state})


class ProbeResult(BaseModel):
    """Snapshot of one probe against one node."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    observed_role: NodeRole
    healthy: bool
    timestamp: datetime = Field(default_factory=_utcnow)
    stream_state: str | None = None
    latency_s: float | None = None
    message: str | None = None

    @classmethod
    def failed(cls, node_id: str, error: str) -> Self:
        """Result for a probe whose query failed or timed out."""
        return cls(node_id=node_id, observed_role=NodeRole.UNKNOWN, healthy=False, message=error)

    @property
    def is_streaming_replica(self) -> bool:
        return self.healthy and self.observed_role == NodeRole.REPLICA and self.stream_state == "streaming"


class NodeHealth(BaseModel):
    """Hysteresis counters for one node, as exposed for introspection."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    up: bool
    role: NodeRole
    consecutive_failures: int
    consecutive_successes: int
    last_probe: ProbeResult | None = None


class RoutingState(BaseModel):
    """Where traffic goes, computed from one complete polling cycle.

    At most one write target. Published as a whole; never edited in place.
    """

    model_config = ConfigDict(frozen=True)

    write_target: Node | None = None
    read_targets: tuple[Node, ...] = ()
    cycle: int = 0
    computed_at: datetime = Field(default_factory=_utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def read_target_ids(self) -> frozenset[str]:
        return frozenset(node.id for node in self.read_targets)

    @property
    def write_target_id(self) -> str | None:
        return self.write_target.id if self.write_target is not None else None

    def routes_to(self, node_id: str) -> bool:
        return self.write_target_id == node_id or node_id in self.read_target_ids


class ReplicationSlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    bound_node_id: str | None = None
    state: SlotState = SlotState.FREE


class BootstrapJob(BaseModel):
    """One bootstrap attempt for one node."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    slot_name: str
    phase: BootstrapPhase = BootstrapPhase.PREPARING
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None
    error: str | None = None

    def advance(self, phase: BootstrapPhase, error: str | None = None) -> Self:
        update: dict[str, object] = {"phase": phase}
        if phase.is_terminal:
            update["finished_at"] = _utcnow()
        if error is not None:
            update["error"] = error
        return self.model_copy(update=update)


class TopologyStats(BaseModel):
    """Read-only snapshot served by the stats endpoint."""

    model_config = ConfigDict(frozen=True)

    status: HealthStatus
    routing: RoutingState
    nodes: tuple[Node, ...]
    health: tuple[NodeHealth, ...]
    slots: tuple[ReplicationSlot, ...]
    bootstrap_jobs: tuple[BootstrapJob, ...]
    outstanding_connections: dict[str, int] = Field(default_factory=dict)


class ReplicationPeer(BaseModel):
    """A row of ``pg_stat_replication`` on the primary."""

    model_config = ConfigDict(frozen=True)

    application_name: str
    client_addr: str | None = None
    state: str | None = None
    sync_state: str | None = None
