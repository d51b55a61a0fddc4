"""Role probes: classification rules and failure handling."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock

import asyncpg
import httpx
import pytest

from pgtopo.config import CredentialsSettings
from pgtopo.core.enums import NodeRole
from pgtopo.topology.models import Node
from pgtopo.topology.probe import (
    IS_IN_RECOVERY_QUERY,
    WAL_RECEIVER_STATUS_QUERY,
    HttpRoleProbe,
    SqlRoleProbe,
)

NODE = Node(id="replica1", host="10.0.0.11", ordinal=1)


def _fake_connection(in_recovery: bool, stream_state: str | None = None) -> AsyncMock:
    answers = {IS_IN_RECOVERY_QUERY: in_recovery, WAL_RECEIVER_STATUS_QUERY: stream_state}
    conn = AsyncMock()
    conn.fetchval.side_effect = lambda query: answers[query]
    return conn


class TestSqlRoleProbe:
    async def test_primary_when_not_in_recovery(self) -> None:
        conn = _fake_connection(in_recovery=False)
        probe = SqlRoleProbe(CredentialsSettings(), timeout_s=1.0, connect=AsyncMock(return_value=conn))

        result = await probe.aprobe(NODE)

        assert result.observed_role == NodeRole.PRIMARY
        assert result.healthy is True
        assert result.stream_state is None
        assert result.latency_s is not None
        conn.close.assert_awaited_once()

    async def test_replica_reports_wal_receiver_status(self) -> None:
        conn = _fake_connection(in_recovery=True, stream_state="streaming")
        connect = AsyncMock(return_value=conn)
        probe = SqlRoleProbe(CredentialsSettings(user="monitor"), timeout_s=1.0, connect=connect)

        result = await probe.aprobe(NODE)

        assert result.observed_role == NodeRole.REPLICA
        assert result.is_streaming_replica is True
        kwargs: dict[str, Any] = connect.await_args.kwargs
        assert kwargs["host"] == "10.0.0.11"
        assert kwargs["port"] == 5432
        assert kwargs["user"] == "monitor"

    async def test_replica_without_receiver_is_not_streaming(self) -> None:
        conn = _fake_connection(in_recovery=True, stream_state=None)
        probe = SqlRoleProbe(CredentialsSettings(), timeout_s=1.0, connect=AsyncMock(return_value=conn))

        result = await probe.aprobe(NODE)

        assert result.observed_role == NodeRole.REPLICA
        assert result.healthy is True
        assert result.is_streaming_replica is False

    @pytest.mark.parametrize(
        "error",
        [
            ConnectionRefusedError("connection refused"),
            asyncpg.InvalidPasswordError("password authentication failed"),
            asyncpg.exceptions.CannotConnectNowError("the database system is starting up"),
        ],
    )
    async def test_query_failure_is_unknown_and_unhealthy(self, error: Exception) -> None:
        """Verify a failing connection is reported, never raised.

        Arrange
        -------
        - Connection factory raising a network or server error

        Act
        ---
        - Probe the node

        Assert
        ------
        - observed_role unknown, healthy False, message carries the error
        """
        probe = SqlRoleProbe(CredentialsSettings(), timeout_s=1.0, connect=AsyncMock(side_effect=error))

        result = await probe.aprobe(NODE)

        assert result.observed_role == NodeRole.UNKNOWN
        assert result.healthy is False
        assert result.message

    async def test_hung_node_times_out_as_failure(self) -> None:
        async def hang(**_: object) -> None:
            await asyncio.sleep(60)

        probe = SqlRoleProbe(CredentialsSettings(), timeout_s=0.05, connect=hang)

        async with asyncio.timeout(1.0):
            result = await probe.aprobe(NODE)

        assert result.observed_role == NodeRole.UNKNOWN
        assert result.healthy is False
        assert "timed out" in (result.message or "")


def _http_probe(primary_status: int, replica_status: int) -> HttpRoleProbe:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.host == NODE.host
        assert request.url.port == NODE.check_port
        status = primary_status if request.url.path == "/primary" else replica_status
        return httpx.Response(status, text="OK" if status == 200 else "no")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpRoleProbe(timeout_s=1.0, client=client)


class TestHttpRoleProbe:
    @pytest.mark.parametrize(
        ("primary_status", "replica_status", "role", "healthy"),
        [
            (200, 503, NodeRole.PRIMARY, True),
            (503, 200, NodeRole.REPLICA, True),
            (503, 503, NodeRole.UNKNOWN, False),
        ],
    )
    async def test_classification(
        self, primary_status: int, replica_status: int, role: NodeRole, healthy: bool
    ) -> None:
        probe = _http_probe(primary_status, replica_status)

        result = await probe.aprobe(NODE)

        assert result.observed_role == role
        assert result.healthy is healthy
        if role == NodeRole.REPLICA:
            assert result.is_streaming_replica

    async def test_unreachable_endpoint_is_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        probe = HttpRoleProbe(timeout_s=1.0, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        result = await probe.aprobe(NODE)

        assert result.observed_role == NodeRole.UNKNOWN
        assert result.healthy is False

    async def test_borrowed_client_is_not_closed(self) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        probe = HttpRoleProbe(timeout_s=1.0, client=client)

        await probe.aclose()

        assert client.is_closed is False
        await client.aclose()
