"""Per-node health endpoint (default port 8008).

Runs next to each database instance and answers for the local engine::

    GET /primary  -> 200 if the node is a healthy primary, else 503
    GET /replica  -> 200 if the node is a streaming replica, else 503

`HttpRoleProbe` consumes these endpoints.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from ..config.topology import CredentialsSettings
from ..core.enums import NodeRole
from ..topology.models import Node
from ..topology.probe import SqlRoleProbe

if TYPE_CHECKING:
    from ..topology.probe import RoleProbe

SERVICE_UNAVAILABLE = 503


def create_healthcheck_app(probe: RoleProbe, node: Node) -> FastAPI:
    """Build the app answering for ``node`` using ``probe`` (normally a local `SqlRoleProbe`)."""
    app = FastAPI(title="pgtopo healthcheck", docs_url=None, redoc_url=None)

    @app.get("/primary", response_class=PlainTextResponse)
    async def primary() -> PlainTextResponse:
        result = await probe.aprobe(node)
        if result.healthy and result.observed_role == NodeRole.PRIMARY:
            return PlainTextResponse("OK")
        return PlainTextResponse("Not primary", status_code=SERVICE_UNAVAILABLE)

    @app.get("/replica", response_class=PlainTextResponse)
    async def replica() -> PlainTextResponse:
        result = await probe.aprobe(node)
        if result.is_streaming_replica:
            return PlainTextResponse("OK")
        return PlainTextResponse("Not replica", status_code=SERVICE_UNAVAILABLE)

    return app


def run_healthcheck(
    credentials: CredentialsSettings | None = None,
    *,
    db_port: int = 5432,
    host: str = "0.0.0.0",  # noqa: S104
    port: int = 8008,
    timeout_s: float = 2.0,
) -> None:
    """Serve the health endpoint for the engine on ``localhost:db_port``."""
    local = Node(id="local", host="localhost", port=db_port)
    probe = SqlRoleProbe(credentials or CredentialsSettings(), timeout_s)
    uvicorn.run(create_healthcheck_app(probe, local), host=host, port=port, log_config=None)
