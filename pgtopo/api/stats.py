"""Read-only stats endpoint for the controller (default port 7000)."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI, Response, status

from ..core.enums import HealthStatus
from ..topology.models import ReplicationPeer, RoutingState, TopologyStats

if TYPE_CHECKING:
    from ..topology.controller import TopologyController


def create_stats_app(controller: TopologyController) -> FastAPI:
    """Expose routing state, per-node hysteresis counters, slots and bootstrap jobs."""
    app = FastAPI(title="pgtopo stats", docs_url=None, redoc_url=None)

    @app.get("/stats", response_model=TopologyStats)
    async def stats() -> TopologyStats:
        return controller.stats()

    @app.get("/topology", response_model=RoutingState)
    async def topology() -> RoutingState:
        return controller.current_topology()

    @app.get("/replication", response_model=list[ReplicationPeer])
    async def replication() -> list[ReplicationPeer]:
        return list(await controller.areplication_status())

    @app.get("/healthz")
    async def healthz(response: Response) -> dict[str, str]:
        current = controller.status()
        if current in (HealthStatus.UNHEALTHY, HealthStatus.INITIALIZING):
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": current.value}

    return app
