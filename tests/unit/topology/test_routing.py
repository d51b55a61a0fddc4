"""RoutingPool and HealthTracker behavior.

No network: probes are scripted and cycles are driven explicitly with
`RoutingPool.arun_cycle()`.
"""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING

import pytest

from pgtopo.config import HealthCheckSettings
from pgtopo.core.enums import BalanceStrategy, NodeRole, NodeState
from pgtopo.topology.exceptions import (
    DuplicateNodeError,
    NodeNotFoundError,
    NoPrimaryAvailableError,
    NoReplicaAvailableError,
)
from pgtopo.topology.models import Node, ProbeResult
from pgtopo.topology.routing import HealthTracker, RoutingPool, compute_routing_state

if TYPE_CHECKING:
    from collections.abc import Callable

    from tests.unit.conftest import ScriptedProbe


def _healthy(node_id: str, role: NodeRole) -> ProbeResult:
    stream_state = "streaming" if role == NodeRole.REPLICA else None
    return ProbeResult(node_id=node_id, observed_role=role, healthy=True, stream_state=stream_state)


def _unhealthy(node_id: str) -> ProbeResult:
    return ProbeResult.failed(node_id, "connection refused")


async def _cycles(pool: RoutingPool, count: int) -> None:
    for _ in range(count):
        await pool.arun_cycle()


@pytest.fixture
def cluster(
    probe: ScriptedProbe, health_settings: HealthCheckSettings, make_node: Callable[..., Node]
) -> RoutingPool:
    """Primary plus replicas A and B, all healthy and qualified after `rise` cycles."""
    pool = RoutingPool(probe, health_settings)
    pool.add_node(make_node("primary", NodeRole.PRIMARY))
    pool.add_node(make_node("replica1", ordinal=1))
    pool.add_node(make_node("replica2", ordinal=2))
    probe.set("primary", NodeRole.PRIMARY)
    probe.set("replica1", NodeRole.REPLICA)
    probe.set("replica2", NodeRole.REPLICA)
    return pool


class TestHealthTracker:
    """Fall/rise hysteresis for a single node."""

    @pytest.mark.parametrize(("fall", "rise"), [(1, 1), (3, 2), (5, 4)])
    def test_fall_and_rise_are_exact(self, fall: int, rise: int) -> None:
        """Verify the node flips exactly on the fall-th failure and the rise-th success.

        Arrange
        -------
        - Tracker that starts down

        Act
        ---
        - Feed rise-1 healthy probes, then one more
        - Feed fall-1 unhealthy probes, then one more

        Assert
        ------
        - Up only after the rise-th healthy probe
        - Down only after the fall-th unhealthy probe
        """
        tracker = HealthTracker("n1", fall=fall, rise=rise)

        for _ in range(rise - 1):
            tracker.observe(_healthy("n1", NodeRole.REPLICA))
            assert tracker.up is False
        assert tracker.observe(_healthy("n1", NodeRole.REPLICA)) is True
        assert tracker.up is True

        for _ in range(fall - 1):
            tracker.observe(_unhealthy("n1"))
            assert tracker.up is True
        assert tracker.observe(_unhealthy("n1")) is True
        assert tracker.up is False

    def test_interleaved_success_resets_failure_count(self) -> None:
        """Non-consecutive failures never take a node down."""
        tracker = HealthTracker("n1", fall=3, rise=1)
        tracker.observe(_healthy("n1", NodeRole.REPLICA))

        for _ in range(10):
            tracker.observe(_unhealthy("n1"))
            tracker.observe(_unhealthy("n1"))
            tracker.observe(_healthy("n1", NodeRole.REPLICA))

        assert tracker.up is True
        assert tracker.failures == 0

    def test_interleaved_failure_resets_success_count(self) -> None:
        tracker = HealthTracker("n1", fall=1, rise=3)

        for _ in range(5):
            tracker.observe(_healthy("n1", NodeRole.PRIMARY))
            tracker.observe(_healthy("n1", NodeRole.PRIMARY))
            tracker.observe(_unhealthy("n1"))

        assert tracker.up is False

    def test_role_change_takes_node_down_and_requalifies(self) -> None:
        """Verify a healthy probe with a new role is not served until seen `rise` times.

        Arrange
        -------
        - Tracker up as replica (rise=2)

        Act
        ---
        - One healthy probe reporting primary, then a second one

        Assert
        ------
        - Down with role primary after the first
        - Up as primary after the second
        """
        tracker = HealthTracker("n1", fall=3, rise=2)
        tracker.observe(_healthy("n1", NodeRole.REPLICA))
        tracker.observe(_healthy("n1", NodeRole.REPLICA))
        assert tracker.up is True

        tracker.observe(_healthy("n1", NodeRole.PRIMARY))
        assert tracker.up is False
        assert tracker.role == NodeRole.PRIMARY

        tracker.observe(_healthy("n1", NodeRole.PRIMARY))
        assert tracker.up is True
        assert tracker.state == NodeState.PRIMARY

    def test_start_up_uses_declared_role(self) -> None:
        tracker = HealthTracker("n1", fall=3, rise=2, start_up=True, role=NodeRole.REPLICA)

        assert tracker.up is True
        assert tracker.state == NodeState.STANDBY

    def test_snapshot_reports_counters(self) -> None:
        tracker = HealthTracker("n1", fall=3, rise=2)
        tracker.observe(_unhealthy("n1"))
        tracker.observe(_unhealthy("n1"))

        snapshot = tracker.snapshot()

        assert snapshot.node_id == "n1"
        assert snapshot.up is False
        assert snapshot.consecutive_failures == 2
        assert snapshot.consecutive_successes == 0
        assert snapshot.last_probe is not None
        assert snapshot.last_probe.healthy is False


class TestComputeRoutingState:
    """Write/read target derivation from tracker state."""

    def _up(self, node_id: str, role: NodeRole) -> HealthTracker:
        tracker = HealthTracker(node_id, fall=1, rise=1)
        tracker.observe(_healthy(node_id, role))
        return tracker

    def test_single_primary_is_write_target(self, make_node: Callable[..., Node]) -> None:
        nodes = {"p": make_node("p", NodeRole.PRIMARY), "r": make_node("r", ordinal=1)}
        trackers = {"p": self._up("p", NodeRole.PRIMARY), "r": self._up("r", NodeRole.REPLICA)}

        state = compute_routing_state(nodes, trackers, cycle=7)

        assert state.write_target_id == "p"
        assert state.read_target_ids == frozenset({"r"})
        assert state.cycle == 7
        assert state.write_target is not None
        assert state.write_target.state == NodeState.PRIMARY

    def test_two_primaries_fail_closed(self, make_node: Callable[..., Node]) -> None:
        """Verify writes are refused when more than one node reports primary.

        Arrange
        -------
        - Two nodes up, both observed as primary

        Act
        ---
        - Compute routing state

        Assert
        ------
        - No write target
        """
        nodes = {"a": make_node("a", NodeRole.PRIMARY), "b": make_node("b", ordinal=1)}
        trackers = {"a": self._up("a", NodeRole.PRIMARY), "b": self._up("b", NodeRole.PRIMARY)}

        state = compute_routing_state(nodes, trackers, cycle=1)

        assert state.write_target is None
        assert state.read_targets == ()

    def test_excluded_nodes_are_not_routed(self, make_node: Callable[..., Node]) -> None:
        nodes = {"p": make_node("p", NodeRole.PRIMARY), "r": make_node("r", ordinal=1)}
        trackers = {"p": self._up("p", NodeRole.PRIMARY), "r": self._up("r", NodeRole.REPLICA)}

        state = compute_routing_state(nodes, trackers, cycle=1, excluded={"r"})

        assert state.write_target_id == "p"
        assert state.read_targets == ()


class TestRoutingPoolCycles:
    """Cycle-driven routing decisions."""

    async def test_new_nodes_start_down(self, cluster: RoutingPool) -> None:
        """Nothing is routed before `rise` healthy cycles."""
        await cluster.arun_cycle()

        assert cluster.state.write_target is None
        assert cluster.state.read_targets == ()

        await cluster.arun_cycle()

        assert cluster.state.write_target_id == "primary"
        assert cluster.state.read_target_ids == frozenset({"replica1", "replica2"})

    async def test_replica_failing_three_checks_leaves_reads(
        self, cluster: RoutingPool, probe: ScriptedProbe
    ) -> None:
        """Verify a replica failing `fall` checks is dropped from reads only.

        Arrange
        -------
        - Cluster qualified (primary, replica1, replica2 up)

        Act
        ---
        - replica1 fails two checks, then a third

        Assert
        ------
        - Still routed after two failures
        - Reads go to replica2 only after the third; writes still go to the primary
        """
        await _cycles(cluster, 2)
        probe.set("replica1", None)

        await _cycles(cluster, 2)
        assert "replica1" in cluster.state.read_target_ids

        await cluster.arun_cycle()
        assert cluster.state.read_target_ids == frozenset({"replica2"})
        assert cluster.state.write_target_id == "primary"

    @pytest.mark.parametrize("stream_state", [None, "catchup", "startup"])
    async def test_replica_without_streaming_receiver_leaves_reads_after_fall(
        self, cluster: RoutingPool, probe: ScriptedProbe, stream_state: str | None
    ) -> None:
        """Verify a replica whose WAL receiver stops streaming is treated as failing.

        Arrange
        -------
        - Cluster qualified, then replica1 still answers as a replica but is not streaming

        Act
        ---
        - Two cycles, then a third; then streaming resumes for `rise` cycles

        Assert
        ------
        - Routed for `fall - 1` cycles, dropped on the `fall`-th, back after `rise`
        """
        await _cycles(cluster, 2)
        probe.set("replica1", NodeRole.REPLICA, stream_state=stream_state)

        await _cycles(cluster, 2)
        assert "replica1" in cluster.state.read_target_ids

        await cluster.arun_cycle()
        assert cluster.state.read_target_ids == frozenset({"replica2"})

        probe.set("replica1", NodeRole.REPLICA)
        await _cycles(cluster, 2)
        assert cluster.state.read_target_ids == frozenset({"replica1", "replica2"})

    async def test_primary_failing_three_checks_refuses_writes_keeps_reads(
        self, cluster: RoutingPool, probe: ScriptedProbe
    ) -> None:
        await _cycles(cluster, 2)
        probe.set("primary", None)

        await _cycles(cluster, 3)

        assert cluster.state.write_target is None
        with pytest.raises(NoPrimaryAvailableError) as exc_info:
            cluster.pick_write()
        assert exc_info.value.retryable is True
        assert cluster.pick_read().id in {"replica1", "replica2"}

    async def test_promoted_replica_needs_rise_before_taking_writes(
        self, cluster: RoutingPool, probe: ScriptedProbe
    ) -> None:
        """A manual promotion is only served once seen `rise` times, and never alongside another primary."""
        await _cycles(cluster, 2)
        probe.set("replica1", NodeRole.PRIMARY)

        await cluster.arun_cycle()
        assert cluster.state.write_target_id == "primary"
        assert "replica1" not in cluster.state.read_target_ids

        await cluster.arun_cycle()
        assert cluster.state.write_target is None

        probe.set("primary", None)
        await _cycles(cluster, 3)
        assert cluster.state.write_target_id == "replica1"

    async def test_at_most_one_write_target_for_random_probe_sequences(
        self, probe: ScriptedProbe, make_node: Callable[..., Node]
    ) -> None:
        """Verify the single-writer rule holds for arbitrary probe outcomes.

        Arrange
        -------
        - Four nodes, fall=1 rise=1 so every cycle can change routing
        - Seeded random mix of primary, replica and failed probes

        Act
        ---
        - Run 200 cycles

        Assert
        ------
        - Write target is None whenever zero or several nodes are up as primary
        - Write target, when set, is the only up primary
        """
        rng = random.Random(1234)
        pool = RoutingPool(probe, HealthCheckSettings(poll_interval_s=1.0, probe_timeout_s=0.1, fall=1, rise=1))
        node_ids = ["n1", "n2", "n3", "n4"]
        for ordinal, node_id in enumerate(node_ids, start=1):
            pool.add_node(make_node(node_id, ordinal=ordinal))

        for _ in range(200):
            for node_id in node_ids:
                probe.set(node_id, rng.choice([NodeRole.PRIMARY, NodeRole.REPLICA, None]))
            state = await pool.arun_cycle()

            up_primaries = [h.node_id for h in pool.health() if h.up and h.role == NodeRole.PRIMARY]
            if len(up_primaries) == 1:
                assert state.write_target_id == up_primaries[0]
            else:
                assert state.write_target is None

    async def test_hung_probe_does_not_delay_other_nodes(
        self, cluster: RoutingPool, probe: ScriptedProbe, health_settings: HealthCheckSettings
    ) -> None:
        """A probe exceeding the timeout counts as a failure; the cycle still finishes promptly."""
        probe.delay_s["replica2"] = 10.0

        async with asyncio.timeout(health_settings.probe_timeout_s * 20):
            await _cycles(cluster, 2)

        assert cluster.state.write_target_id == "primary"
        assert cluster.state.read_target_ids == frozenset({"replica1"})
        replica2 = next(h for h in cluster.health() if h.node_id == "replica2")
        assert replica2.consecutive_failures == 2

    async def test_recompute_happens_once_per_cycle(self, cluster: RoutingPool, probe: ScriptedProbe) -> None:
        published = []
        cluster.add_route_listener(lambda old, new: published.append(new.cycle))

        await _cycles(cluster, 3)

        assert published == [2]
        assert cluster.state.cycle == 3

    async def test_snapshot_is_never_partially_updated(self, cluster: RoutingPool, probe: ScriptedProbe) -> None:
        """Verify concurrent readers only see whole snapshots.

        Arrange
        -------
        - Qualified cluster; a reader task sampling the state continuously
        - Probes flip all replicas between up and down every few cycles

        Act
        ---
        - Run cycles while the reader samples

        Assert
        ------
        - Every sampled snapshot has both replicas or neither
        """
        await _cycles(cluster, 2)
        seen: list[frozenset[str]] = []
        stop = asyncio.Event()

        async def reader() -> None:
            while not stop.is_set():
                seen.append(cluster.state.read_target_ids)
                await asyncio.sleep(0)

        task = asyncio.create_task(reader())
        for round_number in range(6):
            role = None if round_number % 2 == 0 else NodeRole.REPLICA
            probe.set("replica1", role)
            probe.set("replica2", role)
            await _cycles(cluster, 3)
        stop.set()
        await task

        assert seen
        assert all(ids in (frozenset(), frozenset({"replica1", "replica2"})) for ids in seen)


class TestRoutingPoolRegistration:
    """add / remove / exclude."""

    def test_duplicate_node_rejected(self, cluster: RoutingPool, make_node: Callable[..., Node]) -> None:
        with pytest.raises(DuplicateNodeError):
            cluster.add_node(make_node("replica1", ordinal=1))

    def test_unknown_node_rejected(self, cluster: RoutingPool) -> None:
        with pytest.raises(NodeNotFoundError):
            cluster.exclude("nope")
        with pytest.raises(NodeNotFoundError):
            cluster.remove_node("nope")

    async def test_exclude_publishes_immediately_and_notifies(self, cluster: RoutingPool) -> None:
        """Verify exclusion takes effect without waiting for a cycle.

        Arrange
        -------
        - Qualified cluster, route listener recording transitions

        Act
        ---
        - Exclude replica1

        Assert
        ------
        - Snapshot no longer routes to replica1
        - Listener saw replica1 leave the read targets
        """
        await _cycles(cluster, 2)
        transitions: list[tuple[frozenset[str], frozenset[str]]] = []
        cluster.add_route_listener(lambda old, new: transitions.append((old.read_target_ids, new.read_target_ids)))

        cluster.exclude("replica1")

        assert not cluster.state.routes_to("replica1")
        assert transitions == [(frozenset({"replica1", "replica2"}), frozenset({"replica2"}))]

        await cluster.arun_cycle()
        assert not cluster.state.routes_to("replica1")

        cluster.include("replica1")
        assert cluster.state.routes_to("replica1")

    async def test_remove_node_mid_cycle_is_ignored(self, cluster: RoutingPool, probe: ScriptedProbe) -> None:
        probe.delay_s["replica1"] = 0.01
        cycle = asyncio.create_task(cluster.arun_cycle())
        await asyncio.sleep(0)

        cluster.remove_node("replica1")
        await cycle

        assert "replica1" not in {h.node_id for h in cluster.health()}

    async def test_start_up_nodes_route_before_any_probe(
        self, probe: ScriptedProbe, make_node: Callable[..., Node]
    ) -> None:
        pool = RoutingPool(
            probe, HealthCheckSettings(poll_interval_s=1.0, probe_timeout_s=0.1, start_up=True)
        )
        pool.add_node(make_node("primary", NodeRole.PRIMARY))
        pool.add_node(make_node("replica1", ordinal=1))

        assert pool.state.write_target_id == "primary"
        assert pool.state.read_target_ids == frozenset({"replica1"})


class TestRoutingPoolDispatch:
    """Leases and balancing."""

    async def test_no_replica_raises_retryable(self, cluster: RoutingPool) -> None:
        with pytest.raises(NoReplicaAvailableError) as exc_info:
            cluster.pick_read()
        assert exc_info.value.retryable is True

    async def test_leastconn_prefers_idle_replica(self, cluster: RoutingPool) -> None:
        """Verify reads go to the replica with the fewest outstanding leases.

        Arrange
        -------
        - Qualified cluster; two leases held on the first picked replica

        Act
        ---
        - Pick a read target

        Assert
        ------
        - The other replica is chosen
        - Outstanding counts are released when leases exit
        """
        await _cycles(cluster, 2)

        async with cluster.alease_read() as first:
            async with cluster.alease_read() as second:
                assert second.id != first.id
                async with cluster.alease_read() as third:
                    assert cluster.outstanding()[third.id] == 2
                    assert cluster.pick_read().id != third.id

        assert cluster.outstanding() == {"primary": 0, "replica1": 0, "replica2": 0}

    async def test_ties_are_broken_round_robin(self, cluster: RoutingPool) -> None:
        await _cycles(cluster, 2)

        picks = [cluster.pick_read().id for _ in range(4)]

        assert set(picks) == {"replica1", "replica2"}
        assert picks[0] != picks[1]

    async def test_roundrobin_ignores_connection_counts(
        self, probe: ScriptedProbe, make_node: Callable[..., Node]
    ) -> None:
        pool = RoutingPool(
            probe,
            HealthCheckSettings(
                poll_interval_s=1.0, probe_timeout_s=0.1, rise=1, balance=BalanceStrategy.ROUNDROBIN
            ),
        )
        pool.add_node(make_node("replica1", ordinal=1))
        pool.add_node(make_node("replica2", ordinal=2))
        probe.set("replica1", NodeRole.REPLICA)
        probe.set("replica2", NodeRole.REPLICA)
        await pool.arun_cycle()

        async with pool.alease_read() as held:
            picks = [pool.pick_read().id for _ in range(4)]

        assert picks.count(held.id) == 2

    async def test_write_lease_counts_connections(self, cluster: RoutingPool) -> None:
        await _cycles(cluster, 2)

        async with cluster.alease_write() as node:
            assert node.id == "primary"
            assert cluster.outstanding()["primary"] == 1

        assert cluster.outstanding()["primary"] == 0


class TestRoutingPoolLoop:
    """Background polling lifecycle."""

    async def test_polling_loop_qualifies_nodes_and_stops(
        self, cluster: RoutingPool, health_settings: HealthCheckSettings
    ) -> None:
        await cluster.astart()
        assert cluster.is_running

        async with asyncio.timeout(health_settings.poll_interval_s * 40):
            while cluster.state.write_target is None:
                await asyncio.sleep(health_settings.poll_interval_s / 2)

        await cluster.aclose()
        assert not cluster.is_running
        assert cluster.observed_state("primary") == NodeState.PRIMARY
