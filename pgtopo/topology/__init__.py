"""Topology control plane: role probing, routing, slots and replica bootstrap."""

from .bootstrap import ReplicaBootstrapper
from .controller import TopologyController
from .exceptions import (
    BootstrapError,
    BootstrapInProgressError,
    CommandError,
    DuplicateNodeError,
    NodeNotFoundError,
    NoPrimaryAvailableError,
    NoReplicaAvailableError,
    SlotConflictError,
    TopologyError,
)
from .models import BootstrapJob, Node, NodeHealth, ProbeResult, ReplicationPeer, ReplicationSlot, RoutingState
from .operator import NodeOperator, ShellNodeOperator
from .probe import HttpRoleProbe, RoleProbe, SqlRoleProbe
from .proxy import TcpFrontend
from .routing import HealthTracker, RoutingPool, compute_routing_state
from .slots import PostgresSlotCatalog, ReplicationSlotManager, SlotCatalog, slot_name_for

__all__ = [
    "BootstrapError",
    "BootstrapInProgressError",
    "BootstrapJob",
    "CommandError",
    "DuplicateNodeError",
    "HealthTracker",
    "HttpRoleProbe",
    "Node",
    "NodeHealth",
    "NodeNotFoundError",
    "NodeOperator",
    "NoPrimaryAvailableError",
    "NoReplicaAvailableError",
    "PostgresSlotCatalog",
    "ProbeResult",
    "ReplicaBootstrapper",
    "ReplicationPeer",
    "ReplicationSlot",
    "ReplicationSlotManager",
    "RoleProbe",
    "RoutingPool",
    "RoutingState",
    "ShellNodeOperator",
    "SlotCatalog",
    "SlotConflictError",
    "SqlRoleProbe",
    "TcpFrontend",
    "TopologyController",
    "TopologyError",
    "compute_routing_state",
    "slot_name_for",
]
