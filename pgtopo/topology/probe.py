"""Role detection for a single node.

A probe never raises for a sick node: a failed or timed-out query is reported
as ``observed_role=unknown, healthy=False`` and left to the routing
hysteresis. The whole probe is bounded by a timeout shorter than the polling
interval, so a hung node cannot stall a polling cycle.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, Protocol

import asyncpg
import httpx

from ..core.enums import NodeRole
from ..logger import get_logger
from .models import ProbeResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..config.topology import CredentialsSettings
    from .models import Node

logger = get_logger(__name__)

IS_IN_RECOVERY_QUERY = "SELECT pg_is_in_recovery()"
WAL_RECEIVER_STATUS_QUERY = "SELECT status FROM pg_stat_wal_receiver"


class RoleProbe(Protocol):
    async def aprobe(self, node: Node) -> ProbeResult: ...


class SqlRoleProbe:
    """Ask the engine directly: ``pg_is_in_recovery()`` plus the WAL receiver status.

    Parameters
    ----------
    credentials
        Login used for the probe connection.
    timeout_s
        Upper bound for connect + queries.
    connect
        Connection factory, ``asyncpg.connect`` by default.
    """

    def __init__(
        self,
        credentials: CredentialsSettings,
        timeout_s: float,
        connect: Callable[..., Awaitable[Any]] = asyncpg.connect,
    ) -> None:
        self._credentials = credentials
        self._timeout_s = timeout_s
        self._connect = connect

    async def aprobe(self, node: Node) -> ProbeResult:
        started = time.perf_counter()
        try:
            async with asyncio.timeout(self._timeout_s):
                in_recovery, stream_state = await self._query(node)
        except TimeoutError:
            logger.debug("Probe timed out", node_id=node.id, timeout_s=self._timeout_s)
            return ProbeResult.failed(node.id, f"probe timed out after {self._timeout_s}s")
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.debug("Probe failed", node_id=node.id, error=str(e))
            return ProbeResult.failed(node.id, str(e) or type(e).__name__)

        return ProbeResult(
            node_id=node.id,
            observed_role=NodeRole.REPLICA if in_recovery else NodeRole.PRIMARY,
            healthy=True,
            stream_state=stream_state,
            latency_s=time.perf_counter() - started,
        )

    async def _query(self, node: Node) -> tuple[bool, str | None]:
        password = self._credentials.password
        conn = await self._connect(
            host=node.host,
            port=node.port,
            user=self._credentials.user,
            password=password.get_secret_value() if password else None,
            database=self._credentials.database,
            timeout=self._timeout_s,
        )
        try:
            in_recovery = bool(await conn.fetchval(IS_IN_RECOVERY_QUERY))
            stream_state = await conn.fetchval(WAL_RECEIVER_STATUS_QUERY) if in_recovery else None
        finally:
            await conn.close()
        return in_recovery, stream_state


class HttpRoleProbe:
    """Consume the per-node health endpoint (``GET /primary``, ``GET /replica``)."""

    def __init__(self, timeout_s: float, client: httpx.AsyncClient | None = None) -> None:
        self._timeout_s = timeout_s
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def aprobe(self, node: Node) -> ProbeResult:
        base_url = f"http://{node.host}:{node.check_port}"
        started = time.perf_counter()
        try:
            async with asyncio.timeout(self._timeout_s):
                primary = await self._client.get(f"{base_url}/primary")
                if primary.status_code == httpx.codes.OK:
                    return ProbeResult(
                        node_id=node.id,
                        observed_role=NodeRole.PRIMARY,
                        healthy=True,
                        latency_s=time.perf_counter() - started,
                    )
                replica = await self._client.get(f"{base_url}/replica")
                if replica.status_code == httpx.codes.OK:
                    return ProbeResult(
                        node_id=node.id,
                        observed_role=NodeRole.REPLICA,
                        healthy=True,
                        stream_state="streaming",
                        latency_s=time.perf_counter() - started,
                    )
        except TimeoutError:
            return ProbeResult.failed(node.id, f"probe timed out after {self._timeout_s}s")
        except httpx.HTTPError as e:
            logger.debug("Health endpoint unreachable", node_id=node.id, error=str(e))
            return ProbeResult.failed(node.id, str(e) or type(e).__name__)

        return ProbeResult.failed(node.id, "neither primary nor streaming replica")
