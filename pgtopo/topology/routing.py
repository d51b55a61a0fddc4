"""Health-driven routing.

`RoutingPool` probes every registered node once per polling interval, feeds
the results through per-node `HealthTracker` hysteresis and, after the whole
cycle has been observed, publishes a new `RoutingState`. Readers always see
one complete snapshot: the state is replaced by reference, never edited.

Routing rules::

    write target = the one up node whose role is primary (none if 0 or > 1)
    read targets = every up node whose role is replica
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from ..core.enums import BalanceStrategy, NodeRole, NodeState
from ..logger import get_logger
from .exceptions import DuplicateNodeError, NodeNotFoundError, NoPrimaryAvailableError, NoReplicaAvailableError
from .models import Node, NodeHealth, ProbeResult, RoutingState

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterator, Mapping

    from ..config.topology import HealthCheckSettings
    from .probe import RoleProbe

logger = get_logger(__name__)

type RouteChangeListener = Callable[[RoutingState, RoutingState], None]
type CycleListener = Callable[[RoutingState], None]

_ROLE_TO_STATE = {NodeRole.PRIMARY: NodeState.PRIMARY, NodeRole.REPLICA: NodeState.STANDBY}


def _counts_as_healthy(result: ProbeResult) -> bool:
    if not result.healthy or result.observed_role == NodeRole.UNKNOWN:
        return False
    return result.observed_role != NodeRole.REPLICA or result.is_streaming_replica


class HealthTracker:
    """Fall/rise hysteresis for one node.

    A node goes down after ``fall`` consecutive unhealthy probes and comes up
    after ``rise`` consecutive healthy probes reporting the same role. A
    healthy probe that reports a different role than the tracked one takes
    the node down and restarts qualification for the new role.

    A replica whose WAL receiver is not ``streaming`` counts as unhealthy, the
    same verdict the per-node ``/replica`` endpoint gives `HttpRoleProbe`.
    """

    __slots__ = ("node_id", "fall", "rise", "up", "role", "failures", "successes", "last_probe")

    def __init__(
        self,
        node_id: str,
        fall: int,
        rise: int,
        *,
        start_up: bool = False,
        role: NodeRole = NodeRole.UNKNOWN,
    ) -> None:
        self.node_id = node_id
        self.fall = fall
        self.rise = rise
        self.up = start_up and role != NodeRole.UNKNOWN
        self.role = role
        self.failures = 0
        self.successes = 0
        self.last_probe: ProbeResult | None = None

    def observe(self, result: ProbeResult) -> bool:
        """Apply one probe result; return True if ``up`` flipped."""
        self.last_probe = result
        was_up = self.up

        if not _counts_as_healthy(result):
            self.successes = 0
            self.failures += 1
            if self.up and self.failures >= self.fall:
                self.up = False
                logger.warning("Node marked down", node_id=self.node_id, failures=self.failures)
            return was_up != self.up

        self.failures = 0
        if result.observed_role != self.role:
            if self.up:
                logger.warning(
                    "Node changed role; requalifying",
                    node_id=self.node_id,
                    previous_role=self.role.value,
                    observed_role=result.observed_role.value,
                )
            self.up = False
            self.role = result.observed_role
            self.successes = 1
        else:
            self.successes += 1

        if not self.up and self.successes >= self.rise:
            self.up = True
            logger.info("Node marked up", node_id=self.node_id, role=self.role.value, successes=self.successes)
        return was_up != self.up

    @property
    def state(self) -> NodeState:
        if not self.up:
            return NodeState.UNKNOWN
        return _ROLE_TO_STATE.get(self.role, NodeState.UNKNOWN)

    def snapshot(self) -> NodeHealth:
        return NodeHealth(
            node_id=self.node_id,
            up=self.up,
            role=self.role,
            consecutive_failures=self.failures,
            consecutive_successes=self.successes,
            last_probe=self.last_probe,
        )


def compute_routing_state(
    nodes: Mapping[str, Node],
    trackers: Mapping[str, HealthTracker],
    cycle: int,
    excluded: frozenset[str] | set[str] = frozenset(),
) -> RoutingState:
    """Derive write/read targets from the current hysteresis state."""
    primaries: list[Node] = []
    replicas: list[Node] = []
    for node_id in sorted(nodes):
        tracker = trackers.get(node_id)
        if tracker is None or not tracker.up or node_id in excluded:
            continue
        node = nodes[node_id].with_state(tracker.state)
        if tracker.role == NodeRole.PRIMARY:
            primaries.append(node)
        elif tracker.role == NodeRole.REPLICA:
            replicas.append(node)

    if len(primaries) > 1:
        logger.error(
            "More than one node reports primary; refusing writes",
            node_ids=[node.id for node in primaries],
            cycle=cycle,
        )
    write_target = primaries[0] if len(primaries) == 1 else None
    return RoutingState(write_target=write_target, read_targets=tuple(replicas), cycle=cycle)


class RoutingPool:
    """Tracks node health and hands out write/read targets.

    Parameters
    ----------
    probe
        Role probe run against every registered node each cycle.
    settings
        Poll interval, probe timeout, fall/rise and balance strategy.

    Examples
    --------
    >>> pool = RoutingPool(SqlRoleProbe(credentials, timeout_s=2.0), HealthCheckSettings())
    >>> pool.add_node(primary)
    >>> await pool.astart()
    >>> async with pool.alease_read() as node:
    ...     print(node.address)
    """

    def __init__(self, probe: RoleProbe, settings: HealthCheckSettings) -> None:
        self._probe = probe
        self._settings = settings
        self._nodes: dict[str, Node] = {}
        self._trackers: dict[str, HealthTracker] = {}
        self._excluded: set[str] = set()
        self._outstanding: dict[str, int] = {}
        self._state = RoutingState()
        self._cycle = 0
        self._round_robin = itertools.count()
        self._route_listeners: list[RouteChangeListener] = []
        self._cycle_listeners: list[CycleListener] = []
        self._cycle_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> RoutingState:
        """The latest published snapshot."""
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def node_ids(self) -> frozenset[str]:
        return frozenset(self._nodes)

    def add_route_listener(self, listener: RouteChangeListener) -> None:
        """Call ``listener(old, new)`` whenever a new snapshot is published."""
        self._route_listeners.append(listener)

    def add_cycle_listener(self, listener: CycleListener) -> None:
        self._cycle_listeners.append(listener)

    # -- registration --------------------------------------------------------

    def add_node(self, node: Node) -> None:
        if node.id in self._nodes:
            raise DuplicateNodeError(node.id)
        self._nodes[node.id] = node
        self._trackers[node.id] = HealthTracker(
            node.id,
            self._settings.fall,
            self._settings.rise,
            start_up=self._settings.start_up,
            role=node.declared_role if self._settings.start_up else NodeRole.UNKNOWN,
        )
        self._outstanding.setdefault(node.id, 0)
        logger.info("Node registered for routing", node_id=node.id, address=node.address)
        if self._settings.start_up:
            self._republish()

    def remove_node(self, node_id: str) -> Node:
        node = self._nodes.pop(node_id, None)
        if node is None:
            raise NodeNotFoundError(node_id)
        self._trackers.pop(node_id, None)
        self._excluded.discard(node_id)
        if not self._outstanding.get(node_id):
            self._outstanding.pop(node_id, None)
        self._republish()
        logger.info("Node removed from routing", node_id=node_id)
        return node

    def exclude(self, node_id: str) -> None:
        """Stop routing to ``node_id`` now, without waiting for a cycle."""
        if node_id not in self._nodes:
            raise NodeNotFoundError(node_id)
        self._excluded.add(node_id)
        self._republish()
        logger.info("Node excluded from routing", node_id=node_id)

    def include(self, node_id: str) -> None:
        """Undo `exclude`; the node routes again once its health allows it."""
        if node_id not in self._nodes:
            raise NodeNotFoundError(node_id)
        self._excluded.discard(node_id)
        self._republish()

    def is_excluded(self, node_id: str) -> bool:
        return node_id in self._excluded

    # -- polling -------------------------------------------------------------

    async def _aprobe(self, node: Node) -> ProbeResult:
        try:
            async with asyncio.timeout(self._settings.probe_timeout_s):
                return await self._probe.aprobe(node)
        except TimeoutError:
            return ProbeResult.failed(node.id, f"probe timed out after {self._settings.probe_timeout_s}s")
        except Exception as e:
            logger.exception("Probe raised", node_id=node.id)
            return ProbeResult.failed(node.id, str(e) or type(e).__name__)

    async def arun_cycle(self) -> RoutingState:
        """Probe every node concurrently, then recompute and publish once."""
        async with self._cycle_lock:
            nodes = list(self._nodes.values())
            results = await asyncio.gather(*(self._aprobe(node) for node in nodes))
            for result in results:
                tracker = self._trackers.get(result.node_id)
                # removed while its probe was in flight
                if tracker is not None:
                    tracker.observe(result)

            self._cycle += 1
            state = self._republish()
            for listener in self._cycle_listeners:
                listener(state)
            return state

    async def _apoll_forever(self) -> None:
        interval = self._settings.poll_interval_s
        while True:
            started = time.perf_counter()
            try:
                await self.arun_cycle()
            except Exception:
                logger.exception("Polling cycle failed", cycle=self._cycle)
            await asyncio.sleep(max(0.0, interval - (time.perf_counter() - started)))

    async def astart(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._apoll_forever(), name="pgtopo-routing-poll")
        logger.info(
            "Health polling started",
            interval_s=self._settings.poll_interval_s,
            fall=self._settings.fall,
            rise=self._settings.rise,
        )

    async def aclose(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Health polling stopped")

    def _republish(self) -> RoutingState:
        new = compute_routing_state(self._nodes, self._trackers, self._cycle, self._excluded)
        old = self._state
        self._state = new
        if old.write_target_id != new.write_target_id or old.read_target_ids != new.read_target_ids:
            logger.info(
                "Routing changed",
                cycle=new.cycle,
                write_target=new.write_target_id,
                read_targets=sorted(new.read_target_ids),
            )
            for listener in self._route_listeners:
                listener(old, new)
        return new

    # -- dispatch ------------------------------------------------------------

    def pick_write(self) -> Node:
        node = self._state.write_target
        if node is None:
            raise NoPrimaryAvailableError
        return node

    def pick_read(self) -> Node:
        targets = self._state.read_targets
        if not targets:
            raise NoReplicaAvailableError
        if self._settings.balance == BalanceStrategy.ROUNDROBIN:
            return targets[next(self._round_robin) % len(targets)]

        fewest = min(self._outstanding.get(node.id, 0) for node in targets)
        candidates = [node for node in targets if self._outstanding.get(node.id, 0) == fewest]
        return candidates[next(self._round_robin) % len(candidates)]

    @contextlib.contextmanager
    def _lease(self, node: Node) -> Iterator[Node]:
        self._outstanding[node.id] = self._outstanding.get(node.id, 0) + 1
        try:
            yield node
        finally:
            remaining = self._outstanding.get(node.id, 1) - 1
            if remaining > 0 or node.id in self._nodes:
                self._outstanding[node.id] = remaining
            else:
                self._outstanding.pop(node.id, None)

    @asynccontextmanager
    async def alease_write(self) -> AsyncIterator[Node]:
        """Lease the write target for the duration of the block.

        Raises
        ------
        NoPrimaryAvailableError
            If there is no single healthy primary. Retryable.
        """
        with self._lease(self.pick_write()) as node:
            yield node

    @asynccontextmanager
    async def alease_read(self) -> AsyncIterator[Node]:
        with self._lease(self.pick_read()) as node:
            yield node

    # -- introspection -------------------------------------------------------

    def outstanding(self) -> dict[str, int]:
        return dict(self._outstanding)

    def observed_state(self, node_id: str) -> NodeState:
        tracker = self._trackers.get(node_id)
        return tracker.state if tracker is not None else NodeState.UNKNOWN

    def health(self) -> tuple[NodeHealth, ...]:
        return tuple(self._trackers[node_id].snapshot() for node_id in sorted(self._trackers))
