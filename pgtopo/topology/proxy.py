"""TCP frontends for the write and read ports.

Each accepted client is paired with one backend connection to the node the
`RoutingPool` picks at accept time (the node's pooler port). The lease is held
for the life of the session, so least-connections balancing sees it. When a
node leaves the route a frontend serves, its open sessions are closed
(``on-marked-down shutdown-sessions``). That includes a session whose backend
connection was still opening when the node left.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Literal

from ..logger import get_logger
from .exceptions import NoPrimaryAvailableError, NoReplicaAvailableError

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from ..config.topology import FrontendSettings
    from .models import Node, RoutingState
    from .routing import RoutingPool

logger = get_logger(__name__)

type Route = Literal["write", "read"]

_CHUNK_SIZE = 64 * 1024


class _Session:
    __slots__ = ("node_id", "client", "upstream")

    def __init__(self, node_id: str, client: asyncio.StreamWriter, upstream: asyncio.StreamWriter) -> None:
        self.node_id = node_id
        self.client = client
        self.upstream = upstream

    def abort(self) -> None:
        self.upstream.transport.abort()
        self.client.transport.abort()


async def _pipe(source: asyncio.StreamReader, sink: asyncio.StreamWriter) -> None:
    while data := await source.read(_CHUNK_SIZE):
        sink.write(data)
        await sink.drain()


class TcpFrontend:
    """One listening port forwarding to the write target or to a read target.

    Parameters
    ----------
    pool
        Source of routing decisions and leases.
    route
        ``"write"`` or ``"read"``.
    host, port
        Listen address. Port ``0`` binds an ephemeral port (see `port`).
    connect_timeout_s
        Bound on opening the backend connection.
    shutdown_sessions_on_down
        Close open sessions to a node as soon as it leaves this route.
    """

    def __init__(
        self,
        pool: RoutingPool,
        route: Route,
        host: str,
        port: int,
        *,
        connect_timeout_s: float = 5.0,
        shutdown_sessions_on_down: bool = True,
    ) -> None:
        self._pool = pool
        self._route = route
        self._host = host
        self._port = port
        self._connect_timeout_s = connect_timeout_s
        self._sessions: set[_Session] = set()
        self._server: asyncio.Server | None = None
        if shutdown_sessions_on_down:
            pool.add_route_listener(self._on_route_change)

    @classmethod
    def for_settings(cls, pool: RoutingPool, route: Route, settings: FrontendSettings) -> TcpFrontend:
        return cls(
            pool,
            route,
            settings.listen_host,
            settings.write_port if route == "write" else settings.read_port,
            connect_timeout_s=settings.connect_timeout_s,
            shutdown_sessions_on_down=settings.shutdown_sessions_on_down,
        )

    @property
    def port(self) -> int:
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    def session_count(self, node_id: str | None = None) -> int:
        return sum(1 for s in self._sessions if node_id is None or s.node_id == node_id)

    async def astart(self) -> None:
        self._server = await asyncio.start_server(self._handle, self._host, self._port)
        logger.info("Frontend listening", route=self._route, host=self._host, port=self.port)

    async def aclose(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for session in list(self._sessions):
            session.abort()
        await self._server.wait_closed()
        self._server = None
        logger.info("Frontend stopped", route=self._route)

    def _routed_ids(self, state: RoutingState) -> frozenset[str]:
        if self._route == "write":
            return frozenset({state.write_target_id}) if state.write_target_id else frozenset()
        return state.read_target_ids

    def _on_route_change(self, old: RoutingState, new: RoutingState) -> None:
        left = self._routed_ids(old) - self._routed_ids(new)
        for session in [s for s in self._sessions if s.node_id in left]:
            session.abort()
        if left:
            logger.info("Closed sessions to nodes leaving route", route=self._route, node_ids=sorted(left))

    def _lease(self) -> AbstractAsyncContextManager[Node]:
        return self._pool.alease_write() if self._route == "write" else self._pool.alease_read()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        try:
            async with self._lease() as node:
                async with asyncio.timeout(self._connect_timeout_s):
                    upstream_reader, upstream_writer = await asyncio.open_connection(node.host, node.pooler_port)
                session = _Session(node.id, writer, upstream_writer)
                self._sessions.add(session)
                try:
                    # the route may have changed while the backend connection was opening
                    if node.id not in self._routed_ids(self._pool.state):
                        logger.info("Dropped client whose node left route", route=self._route, node_id=node.id)
                        return
                    await self._aforward(reader, writer, upstream_reader, upstream_writer)
                finally:
                    self._sessions.discard(session)
                    upstream_writer.close()
        except (NoPrimaryAvailableError, NoReplicaAvailableError) as e:
            logger.warning("Rejected client", route=self._route, peer=peer, reason=str(e))
        except (TimeoutError, OSError) as e:
            logger.warning("Backend connection failed", route=self._route, peer=peer, error=str(e))
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()

    async def _aforward(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        upstream_reader: asyncio.StreamReader,
        upstream_writer: asyncio.StreamWriter,
    ) -> None:
        tasks = [
            asyncio.create_task(_pipe(client_reader, upstream_writer)),
            asyncio.create_task(_pipe(upstream_reader, client_writer)),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            # a reset from either side just ends the session
            if isinstance(result, Exception) and not isinstance(result, ConnectionError):
                raise result
