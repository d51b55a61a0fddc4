from __future__ import annotations

from enum import StrEnum


class NodeRole(StrEnum):
    """Role a node is declared with, or observed in by a probe."""

    PRIMARY = "primary"
    REPLICA = "replica"
    UNKNOWN = "unknown"


class NodeState(StrEnum):
    """Role state held in the node record."""

    PRIMARY = "primary"
    STANDBY = "standby"
    UNKNOWN = "unknown"


class SlotState(StrEnum):
    FREE = "free"
    RESERVED = "reserved"
    ACTIVE = "active"


class BootstrapPhase(StrEnum):
    PREPARING = "preparing"
    COPYING = "copying"
    ATTACHING_TO_STREAM = "attaching_to_stream"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BootstrapPhase.DONE, BootstrapPhase.FAILED)


class BalanceStrategy(StrEnum):
    LEASTCONN = "leastconn"
    ROUNDROBIN = "roundrobin"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    INITIALIZING = "initializing"
