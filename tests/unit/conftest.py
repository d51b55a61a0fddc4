"""Shared fakes for unit tests.

Provides:
- ScriptedProbe: returns queued ProbeResults per node (unhealthy when the queue is empty)
- InMemorySlotCatalog: SlotCatalog over a dict, records every call
- node / config factories
"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import pytest

from pgtopo.config import BootstrapSettings, CredentialsSettings, HealthCheckSettings, NodeSpec, TopologyConfig
from pgtopo.core.enums import NodeRole
from pgtopo.topology.models import Node, ProbeResult
from pgtopo.topology.slots import PhysicalSlotInfo

if TYPE_CHECKING:
    from collections.abc import Callable


class ScriptedProbe:
    """RoleProbe whose answers are scripted per node id.

    ``set(node_id, role)`` makes every following probe report that role;
    ``push(node_id, *results)`` queues one-shot results that take precedence.
    """

    def __init__(self) -> None:
        self._queued: dict[str, deque[ProbeResult]] = defaultdict(deque)
        self._steady: dict[str, tuple[NodeRole, bool, str | None]] = {}
        self.calls: list[str] = []
        self.delay_s: dict[str, float] = {}

    def set(self, node_id: str, role: NodeRole | None, stream_state: str | None = "streaming") -> None:
        if role is None:
            self._steady[node_id] = (NodeRole.UNKNOWN, False, None)
        else:
            state = stream_state if role == NodeRole.REPLICA else None
            self._steady[node_id] = (role, True, state)

    def push(self, node_id: str, *results: ProbeResult) -> None:
        self._queued[node_id].extend(results)

    async def aprobe(self, node: Node) -> ProbeResult:
        self.calls.append(node.id)
        if delay := self.delay_s.get(node.id):
            await asyncio.sleep(delay)
        if self._queued[node.id]:
            return self._queued[node.id].popleft()
        role, healthy, stream_state = self._steady.get(node.id, (NodeRole.UNKNOWN, False, None))
        if not healthy:
            return ProbeResult.failed(node.id, "scripted failure")
        return ProbeResult(node_id=node.id, observed_role=role, healthy=True, stream_state=stream_state)


class InMemorySlotCatalog:
    """SlotCatalog backed by a dict of slot name -> active flag."""

    def __init__(self) -> None:
        self.slots: dict[str, bool] = {}
        self.calls: list[tuple[str, str]] = []

    async def aget(self, name: str) -> PhysicalSlotInfo | None:
        self.calls.append(("get", name))
        await asyncio.sleep(0)
        if name not in self.slots:
            return None
        return PhysicalSlotInfo(name=name, active=self.slots[name])

    async def acreate(self, name: str) -> None:
        self.calls.append(("create", name))
        await asyncio.sleep(0)
        self.slots[name] = False

    async def adrop(self, name: str) -> None:
        self.calls.append(("drop", name))
        await asyncio.sleep(0)
        self.slots.pop(name, None)

    async def aterminate(self, name: str) -> None:
        self.calls.append(("terminate", name))
        if name in self.slots:
            self.slots[name] = False


@pytest.fixture
def probe() -> ScriptedProbe:
    return ScriptedProbe()


@pytest.fixture
def catalog() -> InMemorySlotCatalog:
    return InMemorySlotCatalog()


@pytest.fixture
def operator() -> AsyncMock:
    """NodeOperator whose steps all succeed immediately."""
    fake = AsyncMock()
    fake.astop_instance.return_value = None
    fake.awipe_data.return_value = None
    fake.abase_backup.return_value = None
    fake.awrite_standby_config.return_value = None
    fake.astart_instance.return_value = None
    return fake


@pytest.fixture
def make_node() -> Callable[..., Node]:
    def _make(node_id: str, role: NodeRole = NodeRole.REPLICA, ordinal: int | None = None) -> Node:
        last_octet = 10 if role == NodeRole.PRIMARY else 10 + (ordinal or 0) + 1
        return Node(id=node_id, host=f"10.0.0.{last_octet}", declared_role=role, ordinal=ordinal)

    return _make


@pytest.fixture
def health_settings() -> HealthCheckSettings:
    return HealthCheckSettings(poll_interval_s=0.05, probe_timeout_s=0.02, fall=3, rise=2)


@pytest.fixture
def bootstrap_settings() -> BootstrapSettings:
    return BootstrapSettings(deadline_s=5.0, confirm_attempts=3, confirm_wait_min_s=0.0, confirm_wait_max_s=0.0)


@pytest.fixture
def topology_config(health_settings: HealthCheckSettings, bootstrap_settings: BootstrapSettings) -> TopologyConfig:
    return TopologyConfig.with_replica_hosts(
        NodeSpec(host="10.0.0.10"),
        ["10.0.0.11", "10.0.0.12"],
        network_subnet="10.0.0.0/24",
        credentials=CredentialsSettings(),
        health=health_settings,
        bootstrap=bootstrap_settings,
    )
