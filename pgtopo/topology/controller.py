"""Composition root for the topology control plane.

`TopologyController` owns the node registry, wires probe results into
routing and exposes the operator-facing operations: add and remove nodes,
trigger a bootstrap, read the current routing snapshot.

Removal order matters: a node is excluded from routing (new snapshot
published, its sessions closed) before its slot is released and before it
leaves the registry, so traffic stops before resources are reclaimed.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Self

import uvicorn

from ..core.enums import HealthStatus, NodeRole, NodeState
from ..infrastructure.postgres import AsyncConnectionPool
from ..logger import get_logger
from .bootstrap import ReplicaBootstrapper
from .exceptions import (
    BootstrapInProgressError,
    DuplicateNodeError,
    NodeNotFoundError,
    NoPrimaryAvailableError,
    TopologyError,
)
from .models import BootstrapJob, Node, ReplicationPeer, RoutingState, TopologyStats
from .operator import ShellNodeOperator
from .probe import HttpRoleProbe, SqlRoleProbe
from .proxy import TcpFrontend
from .routing import RoutingPool
from .slots import PostgresSlotCatalog, ReplicationSlotManager, slot_name_for

if TYPE_CHECKING:
    from types import TracebackType

    from ..config.topology import TopologyConfig
    from .operator import NodeOperator
    from .probe import RoleProbe

logger = get_logger(__name__)

REPLICATION_STATUS_QUERY = """
SELECT application_name, client_addr::text AS client_addr, state, sync_state
FROM pg_stat_replication
ORDER BY application_name
"""


class TopologyController:
    """One primary, N streaming replicas, a write port and a read port.

    Parameters
    ----------
    config
        Static configuration, read once.
    probe
        Role probe shared by routing and bootstrap confirmation.
    slots
        Replication slot manager for the primary.
    operator
        Runs bootstrap steps on nodes.
    admin_pool
        asyncpg pool against the primary; initialized and closed with the controller.

    Examples
    --------
    >>> async with TopologyController.from_config(config) as controller:
    ...     await controller.aadd_node(Node(id="replica3", host="192.168.1.13", ordinal=3))
    ...     print(controller.current_topology().write_target_id)
    """

    def __init__(
        self,
        config: TopologyConfig,
        *,
        probe: RoleProbe,
        slots: ReplicationSlotManager,
        operator: NodeOperator,
        admin_pool: AsyncConnectionPool | None = None,
    ) -> None:
        self._config = config
        self._probe = probe
        self._slots = slots
        self._admin_pool = admin_pool
        self._routing = RoutingPool(probe, config.health)
        self._bootstrapper = ReplicaBootstrapper(
            probe, slots, operator, config.bootstrap, on_ready=self._aregister_bootstrapped
        )
        self._nodes: dict[str, Node] = {}
        self._lock = asyncio.Lock()
        self._bootstrap_tasks: dict[str, asyncio.Task[BootstrapJob]] = {}
        self._initialized = False
        self._writable = asyncio.Event()
        self._routing.add_cycle_listener(self._on_cycle)
        self._routing.add_route_listener(self._on_route_change)

    @classmethod
    def from_config(cls, config: TopologyConfig) -> Self:
        """Wire the default probe, slot catalog and operator for ``config``."""
        admin_pool = AsyncConnectionPool(config.admin_pool_config())
        probe: RoleProbe
        if config.health.method == "http":
            probe = HttpRoleProbe(config.health.probe_timeout_s)
        else:
            probe = SqlRoleProbe(config.credentials, config.health.probe_timeout_s)
        return cls(
            config,
            probe=probe,
            slots=ReplicationSlotManager(PostgresSlotCatalog(admin_pool)),
            operator=ShellNodeOperator(config.credentials, config.bootstrap),
            admin_pool=admin_pool,
        )

    async def __aenter__(self) -> Self:
        await self.ainitialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    @property
    def config(self) -> TopologyConfig:
        return self._config

    @property
    def routing(self) -> RoutingPool:
        return self._routing

    @property
    def bootstrapper(self) -> ReplicaBootstrapper:
        return self._bootstrapper

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # -- lifecycle -----------------------------------------------------------

    async def ainitialize(self) -> None:
        """Open the primary pool, register the configured nodes and start polling.

        Configured replicas are taken as already attached: their slots are
        adopted as active rather than created.
        """
        if self._initialized:
            return
        if self._admin_pool is not None:
            await self._admin_pool.ainitialize()

        async with self._lock:
            self._register(Node.primary_from_spec(self._config.primary))
            for ordinal, spec in enumerate(self._config.replicas, start=1):
                node = Node.replica_from_spec(spec, ordinal).model_copy(
                    update={"slot_name": slot_name_for(ordinal)}
                )
                await self._slots.aadopt(node.slot_name, node.id)  # type: ignore[arg-type]
                self._register(node)

        await self._routing.astart()
        self._initialized = True
        logger.info(
            "Topology controller initialized",
            primary=self._config.primary.address,
            replicas=[spec.address for spec in self._config.replicas],
        )

    async def aclose(self) -> None:
        for task in list(self._bootstrap_tasks.values()):
            task.cancel()
        for task in list(self._bootstrap_tasks.values()):
            with contextlib.suppress(asyncio.CancelledError, TopologyError):
                await task
        await self._routing.aclose()
        if isinstance(self._probe, HttpRoleProbe):
            await self._probe.aclose()
        if self._admin_pool is not None:
            await self._admin_pool.aclose()
        self._initialized = False
        logger.info("Topology controller closed")

    async def aserve(self) -> None:
        """Run the write/read frontends and the stats endpoint until cancelled."""
        from ..api.stats import create_stats_app

        settings = self._config.frontend
        frontends = [
            TcpFrontend.for_settings(self._routing, "write", settings),
            TcpFrontend.for_settings(self._routing, "read", settings),
        ]
        server = uvicorn.Server(
            uvicorn.Config(
                create_stats_app(self),
                host=settings.listen_host,
                port=settings.stats_port,
                log_config=None,
                access_log=False,
            )
        )
        try:
            for frontend in frontends:
                await frontend.astart()
            await server.serve()
        finally:
            for frontend in frontends:
                await frontend.aclose()

    # -- registry ------------------------------------------------------------

    def _register(self, node: Node) -> None:
        if node.id in self._nodes:
            raise DuplicateNodeError(node.id)
        if any(existing.address == node.address for existing in self._nodes.values()):
            raise DuplicateNodeError(node.id)
        self._nodes[node.id] = node
        self._routing.add_node(node)

    async def aadd_node(self, node: Node, *, bootstrap: bool | None = None) -> None:
        """Register ``node``.

        A replica is bootstrapped in the background by default and joins
        routing only once it streams. With ``bootstrap=False`` the node is
        taken as already attached and routed as soon as its health qualifies.
        """
        should_bootstrap = node.declared_role == NodeRole.REPLICA if bootstrap is None else bootstrap
        async with self._lock:
            if node.id in self._nodes:
                raise DuplicateNodeError(node.id)
            if not should_bootstrap:
                self._register(node)
                logger.info("Node added", node_id=node.id, address=node.address)
                return
            if any(existing.address == node.address for existing in self._nodes.values()):
                raise DuplicateNodeError(node.id)
            # in the registry but not in routing until bootstrap confirms streaming
            self._nodes[node.id] = node

        logger.info("Node added; bootstrap scheduled", node_id=node.id, address=node.address)
        self._spawn_bootstrap(node.id)

    async def aremove_node(self, node_id: str) -> Node:
        """Stop routing to ``node_id``, release its slot and forget it."""
        async with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise NodeNotFoundError(node_id)
            if self._bootstrapper.is_running(node_id):
                job = self._bootstrapper.job(node_id)
                raise BootstrapInProgressError(node_id, job.phase)  # type: ignore[union-attr]

            in_routing = node_id in self._routing.node_ids
            if in_routing:
                self._routing.exclude(node_id)
            slot = self._slots.slot_for(node_id)
            if slot is not None:
                await self._slots.arelease(slot.name)
            if in_routing:
                self._routing.remove_node(node_id)
            del self._nodes[node_id]

        logger.info("Node removed", node_id=node_id, released_slot=slot.name if slot else None)
        return node

    def nodes(self) -> tuple[Node, ...]:
        return tuple(self._nodes[node_id] for node_id in sorted(self._nodes))

    def node(self, node_id: str) -> Node:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NodeNotFoundError(node_id) from None

    def current_topology(self) -> RoutingState:
        return self._routing.state

    # -- bootstrap -----------------------------------------------------------

    async def atrigger_bootstrap(self, node_id: str) -> BootstrapJob:
        """(Re)attach ``node_id`` as a streaming standby of the current write target.

        The node leaves routing before its data directory is touched and
        rejoins only after streaming is confirmed.

        Raises
        ------
        NodeNotFoundError
            Unknown node.
        BootstrapInProgressError
            A bootstrap for the node is still running.
        NoPrimaryAvailableError
            No single healthy primary to copy from.
        BootstrapError, SlotConflictError
            The attempt failed.
        """
        async with self._lock:
            node = self.node(node_id)
            running = self._bootstrapper.job(node_id)
            if running is not None and not running.phase.is_terminal:
                raise BootstrapInProgressError(node_id, running.phase)

            primary = self._routing.state.write_target
            if primary is None:
                raise NoPrimaryAvailableError
            if primary.id == node_id:
                msg = f"refusing to bootstrap the current write target {node_id!r}"
                raise TopologyError(msg)

            if node_id in self._routing.node_ids:
                self._routing.exclude(node_id)
                self._routing.remove_node(node_id)
            self._nodes[node_id] = node.with_state(NodeState.UNKNOWN)

        return await self._bootstrapper.abootstrap(node, primary)

    def bootstrap_task(self, node_id: str) -> asyncio.Task[BootstrapJob] | None:
        """The background bootstrap started by `aadd_node`, while it runs."""
        return self._bootstrap_tasks.get(node_id)

    async def _abootstrap_when_writable(self, node_id: str) -> BootstrapJob:
        """Wait up to the bootstrap deadline for a write target, then bootstrap ``node_id``."""
        if self._routing.state.write_target is None:
            deadline_s = self._config.bootstrap.deadline_s
            logger.info("Bootstrap waiting for a write target", node_id=node_id, timeout_s=deadline_s)
            try:
                async with asyncio.timeout(deadline_s):
                    while self._routing.state.write_target is None:
                        await self._writable.wait()
            except TimeoutError:
                msg = f"no primary qualified within {deadline_s}s to bootstrap {node_id!r}"
                raise NoPrimaryAvailableError(msg) from None
        return await self.atrigger_bootstrap(node_id)

    def _spawn_bootstrap(self, node_id: str) -> asyncio.Task[BootstrapJob]:
        task = asyncio.create_task(self._abootstrap_when_writable(node_id), name=f"pgtopo-bootstrap-{node_id}")
        self._bootstrap_tasks[node_id] = task
        task.add_done_callback(lambda t: self._on_bootstrap_done(node_id, t))
        return task

    def _on_bootstrap_done(self, node_id: str, task: asyncio.Task[BootstrapJob]) -> None:
        if self._bootstrap_tasks.get(node_id) is task:
            del self._bootstrap_tasks[node_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background bootstrap failed", node_id=node_id, error=str(error))

    async def _aregister_bootstrapped(self, node: Node) -> None:
        async with self._lock:
            self._nodes[node.id] = node
            if node.id not in self._routing.node_ids:
                self._routing.add_node(node)
        logger.info("Bootstrapped node registered for routing", node_id=node.id, slot=node.slot_name)

    # -- introspection -------------------------------------------------------

    def _on_route_change(self, old: RoutingState, new: RoutingState) -> None:
        if new.write_target is not None:
            self._writable.set()
        else:
            self._writable.clear()

    def _on_cycle(self, state: RoutingState) -> None:
        for node_id, node in list(self._nodes.items()):
            if node_id in self._routing.node_ids:
                self._nodes[node_id] = node.with_state(self._routing.observed_state(node_id))

    def status(self) -> HealthStatus:
        if not self._initialized:
            return HealthStatus.INITIALIZING
        state = self._routing.state
        if state.write_target is None:
            return HealthStatus.UNHEALTHY
        routed = 1 + len(state.read_targets)
        return HealthStatus.HEALTHY if routed == len(self._routing.node_ids) else HealthStatus.DEGRADED

    def stats(self) -> TopologyStats:
        return TopologyStats(
            status=self.status(),
            routing=self._routing.state,
            nodes=self.nodes(),
            health=self._routing.health(),
            slots=self._slots.slots(),
            bootstrap_jobs=self._bootstrapper.jobs(),
            outstanding_connections=self._routing.outstanding(),
        )

    async def areplication_status(self) -> tuple[ReplicationPeer, ...]:
        """Standbys currently connected to the primary, from ``pg_stat_replication``."""
        if self._admin_pool is None:
            return ()
        rows = await self._admin_pool.afetch(REPLICATION_STATUS_QUERY)
        return tuple(ReplicationPeer(**dict(row)) for row in rows)
