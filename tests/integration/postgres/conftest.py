"""Fixtures for tests against a live primary and a streaming replica."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from docker import from_env  # type: ignore[import-untyped]
from docker.errors import DockerException  # type: ignore[import-untyped]
from pydantic import SecretStr

from pgtopo.config import CredentialsSettings, NodeSpec
from pgtopo.infrastructure.postgres import AsyncConnectionPool, AsyncpgConfig, AsyncpgConnectionSettings
from tests.integration.postgres.replication_fixtures import PostgresPrimaryContainer, PostgresReplicaContainer

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator


def pytest_configure(config: pytest.Config) -> None:  # noqa: ARG001
    """Point testcontainers at the Docker socket before any fixture runs."""
    if not os.environ.get("DOCKER_HOST"):
        for socket_path in (Path("/var/run/docker.sock"), Path.home() / ".docker" / "run" / "docker.sock"):
            if socket_path.exists():
                os.environ["DOCKER_HOST"] = f"unix://{socket_path}"
                os.environ["TESTCONTAINERS_DOCKER_SOCKET_OVERRIDE"] = str(socket_path)
                break

    # Ryuk (testcontainers cleanup daemon) has known issues on Docker Desktop
    if sys.platform == "darwin" and not os.environ.get("TESTCONTAINERS_RYUK_DISABLED"):
        os.environ["TESTCONTAINERS_RYUK_DISABLED"] = "true"


def _is_docker_available() -> bool:
    try:
        client = from_env()
        client.ping()
    except DockerException:
        return False
    else:
        return True


@pytest.fixture(scope="session")
def primary_container() -> Iterator[PostgresPrimaryContainer]:
    if not _is_docker_available():
        pytest.skip("Docker daemon not accessible")

    with PostgresPrimaryContainer() as container:
        container.create_replication_user()
        yield container


@pytest.fixture(scope="session")
def replica_container(primary_container: PostgresPrimaryContainer) -> Iterator[PostgresReplicaContainer]:
    """Standby streaming from the primary through ``replica1_slot``."""
    with PostgresReplicaContainer(primary_container) as container:
        container.attach()
        container.wait_for_streaming()
        yield container


def _node_spec(container: PostgresPrimaryContainer | PostgresReplicaContainer) -> NodeSpec:
    """How the test process reaches a container (mapped port on the docker host)."""
    return NodeSpec(host=container.get_container_host_ip(), port=int(container.get_exposed_port(5432)))


@pytest.fixture(scope="session")
def primary_spec(primary_container: PostgresPrimaryContainer) -> NodeSpec:
    return _node_spec(primary_container)


@pytest.fixture(scope="session")
def replica_spec(replica_container: PostgresReplicaContainer) -> NodeSpec:
    return _node_spec(replica_container)


@pytest.fixture(scope="session")
def credentials(primary_container: PostgresPrimaryContainer) -> CredentialsSettings:
    """Superuser login; replicas share it because their data is a copy of the primary's."""
    return CredentialsSettings(
        user=primary_container.username,
        password=SecretStr(primary_container.password),
        database=primary_container.dbname,
    )


@pytest_asyncio.fixture
async def primary_pool(primary_spec: NodeSpec, credentials: CredentialsSettings) -> AsyncIterator[AsyncConnectionPool]:
    config = AsyncpgConfig(
        connection=AsyncpgConnectionSettings(
            host=primary_spec.host,
            port=primary_spec.port,
            database=credentials.database,
            user=credentials.user,
            password=credentials.password,
        ),
        application_name="pgtopo_test",
    )

    async with AsyncConnectionPool(config) as pool:
        yield pool
