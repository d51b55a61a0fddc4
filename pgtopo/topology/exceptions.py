"""Errors raised by the topology control plane.

Every error carries a ``retryable`` flag so callers of the write/read
dispatch paths can tell a "try again shortly" rejection from a real failure.
Transient probe failures are never raised; they only move hysteresis
counters.
"""

from __future__ import annotations

from ..core.enums import BootstrapPhase


class TopologyError(Exception):
    """Base error for the topology control plane."""

    retryable: bool = False


class NoPrimaryAvailableError(TopologyError):
    """No single healthy primary is routable; writes are refused."""

    retryable = True

    def __init__(self, message: str = "no primary available") -> None:
        super().__init__(message)


class NoReplicaAvailableError(TopologyError):
    """No healthy replica is routable."""

    retryable = True

    def __init__(self, message: str = "no replica available") -> None:
        super().__init__(message)


class SlotConflictError(TopologyError):
    """A replication slot is reserved or bound by another node."""

    def __init__(self, slot_name: str, owner: str | None, requested_by: str | None = None) -> None:
        self.slot_name = slot_name
        self.owner = owner
        self.requested_by = requested_by
        detail = f"owned by {owner!r}" if owner else "not reserved"
        super().__init__(f"slot {slot_name!r} conflict: {detail}")


class BootstrapError(TopologyError):
    """A bootstrap attempt failed; the node is not routable. Safe to retry."""

    retryable = True

    def __init__(self, node_id: str, phase: BootstrapPhase, reason: str) -> None:
        self.node_id = node_id
        self.phase = phase
        self.reason = reason
        super().__init__(f"bootstrap of {node_id!r} failed in phase {phase.value}: {reason}")


class BootstrapInProgressError(TopologyError):
    """A second bootstrap was requested for a node with a running job."""

    def __init__(self, node_id: str, phase: BootstrapPhase) -> None:
        self.node_id = node_id
        self.phase = phase
        super().__init__(f"bootstrap already in progress for {node_id!r} (phase {phase.value})")


class NodeNotFoundError(TopologyError):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"node {node_id!r} is not registered")


class DuplicateNodeError(TopologyError):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"node {node_id!r} is already registered")


class CommandError(TopologyError):
    """An external command on a node exited non-zero."""

    def __init__(self, argv: list[str], returncode: int, stderr: str) -> None:
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"command {argv[0]!r} exited with {returncode}: {stderr.strip()[-500:]}")
