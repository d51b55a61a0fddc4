"""Core module exports."""

from __future__ import annotations

from .enums import BalanceStrategy, BootstrapPhase, HealthStatus, NodeRole, NodeState, SlotState

__all__ = [
    "BalanceStrategy",
    "BootstrapPhase",
    "HealthStatus",
    "NodeRole",
    "NodeState",
    "SlotState",
]
