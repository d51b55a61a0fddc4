"""Operations on a node's database instance used by replica bootstrap.

`ShellNodeOperator` drives the instance with the usual tools (``systemctl``,
``pg_basebackup``) through asyncio subprocesses, locally or over ``ssh``
when the node has an ``ssh_user``. Secrets are fed on stdin, never put on
the command line.
"""

from __future__ import annotations

import asyncio
import shlex
from typing import TYPE_CHECKING, Protocol

from ..logger import get_logger
from .exceptions import CommandError

if TYPE_CHECKING:
    from ..config.topology import BootstrapSettings, CredentialsSettings
    from .models import Node

logger = get_logger(__name__)

STANDBY_CONF_NAME = "standby.conf"
STANDBY_SIGNAL_NAME = "standby.signal"

# reads one line from stdin into PGPASSWORD, then runs the remaining argv
_WITH_PASSWORD_FROM_STDIN = 'IFS= read -r PGPASSWORD && export PGPASSWORD && exec "$@"'


class NodeOperator(Protocol):
    async def astop_instance(self, node: Node) -> None: ...

    async def awipe_data(self, node: Node) -> None: ...

    async def abase_backup(self, node: Node, primary: Node, slot_name: str) -> None: ...

    async def awrite_standby_config(self, node: Node, primary: Node, slot_name: str) -> None: ...

    async def astart_instance(self, node: Node) -> None: ...


def _conninfo_value(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _conf_string(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def render_standby_config(
    node: Node,
    primary: Node,
    slot_name: str,
    credentials: CredentialsSettings,
    settings: BootstrapSettings,
) -> str:
    """Render the standby settings that attach ``node`` to ``primary`` through ``slot_name``."""
    conninfo_parts = {
        "host": primary.host,
        "port": str(primary.port),
        "user": credentials.replication_user,
        "application_name": node.application_name,
    }
    if credentials.replication_password is not None:
        conninfo_parts["password"] = credentials.replication_password.get_secret_value()
    conninfo = " ".join(f"{key}={_conninfo_value(value)}" for key, value in conninfo_parts.items())

    settings_lines = {
        "hot_standby": "on",
        "primary_conninfo": _conf_string(conninfo),
        "primary_slot_name": _conf_string(slot_name),
        "recovery_target_timeline": _conf_string("latest"),
        "hot_standby_feedback": "on",
        "max_standby_streaming_delay": settings.max_standby_streaming_delay,
        "max_standby_archive_delay": settings.max_standby_archive_delay,
        "wal_receiver_status_interval": settings.wal_receiver_status_interval,
    }
    body = "\n".join(f"{key} = {value}" for key, value in settings_lines.items())
    return f"# managed by pgtopo; rewritten on every bootstrap\n{body}\n"


class ShellNodeOperator:
    """`NodeOperator` running ``systemctl`` and ``pg_basebackup`` on the node.

    Parameters
    ----------
    credentials
        Replication login used by ``pg_basebackup`` and the standby config.
    settings
        Data directory, service name and timeouts.
    os_user
        Account that owns the data directory; file and backup commands run
        as this user via ``sudo -u``. ``None`` runs them as the current user.
    """

    def __init__(
        self,
        credentials: CredentialsSettings,
        settings: BootstrapSettings,
        os_user: str | None = "postgres",
    ) -> None:
        self._credentials = credentials
        self._settings = settings
        self._os_user = os_user

    @property
    def data_dir(self) -> str:
        return self._settings.data_dir

    def _as_db_user(self, argv: list[str]) -> list[str]:
        if self._os_user is None:
            return argv
        return ["sudo", "-u", self._os_user, "--preserve-env=PGPASSWORD", *argv]

    def _on_node(self, node: Node, argv: list[str]) -> list[str]:
        if node.ssh_user is None:
            return argv
        return ["ssh", "-o", "BatchMode=yes", f"{node.ssh_user}@{node.host}", shlex.join(argv)]

    async def _arun(
        self,
        node: Node,
        argv: list[str],
        *,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> str:
        full_argv = self._on_node(node, argv)
        logger.debug("Running node command", node_id=node.id, command=argv[0])
        proc = await asyncio.create_subprocess_exec(
            *full_argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            async with asyncio.timeout(timeout) as command_timeout:
                stdout, stderr = await proc.communicate(stdin.encode() if stdin is not None else None)
        except BaseException as e:
            # timeout or cancellation (bootstrap deadline): do not leave the child running
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            if isinstance(e, TimeoutError) and command_timeout.expired():
                raise TimeoutError(f"command {argv[0]!r} timed out after {timeout}s") from e
            raise

        if proc.returncode != 0:
            raise CommandError(argv, proc.returncode or -1, stderr.decode(errors="replace"))
        return stdout.decode(errors="replace")

    async def astop_instance(self, node: Node) -> None:
        await self._arun(
            node, ["systemctl", "stop", self._settings.service_name], timeout=self._settings.command_timeout_s
        )

    async def awipe_data(self, node: Node) -> None:
        """Remove everything under the data directory, keeping the directory itself."""
        timeout = self._settings.command_timeout_s
        await self._arun(node, self._as_db_user(["mkdir", "-p", "-m", "700", self.data_dir]), timeout=timeout)
        await self._arun(
            node, self._as_db_user(["find", self.data_dir, "-mindepth", "1", "-delete"]), timeout=timeout
        )

    async def abase_backup(self, node: Node, primary: Node, slot_name: str) -> None:
        """Stream a physical copy of the primary into the data directory through ``slot_name``."""
        password = self._credentials.replication_password
        backup = [
            "pg_basebackup",
            "-h",
            primary.host,
            "-p",
            str(primary.port),
            "-U",
            self._credentials.replication_user,
            "-D",
            self.data_dir,
            "-Fp",
            "-Xs",
            "-c",
            "fast",
            "-S",
            slot_name,
            "-w",
        ]
        # no timeout here: the copy is bounded by the bootstrap deadline
        await self._arun(
            node,
            ["bash", "-c", _WITH_PASSWORD_FROM_STDIN, "pg_basebackup", *self._as_db_user(backup)],
            stdin=(password.get_secret_value() if password else "") + "\n",
        )

    async def awrite_standby_config(self, node: Node, primary: Node, slot_name: str) -> None:
        timeout = self._settings.command_timeout_s
        content = render_standby_config(node, primary, slot_name, self._credentials, self._settings)
        conf_path = f"{self.data_dir}/{STANDBY_CONF_NAME}"
        main_conf = f"{self.data_dir}/postgresql.conf"
        include_line = f"include_if_exists = '{STANDBY_CONF_NAME}'"

        await self._arun(node, self._as_db_user(["tee", conf_path]), stdin=content, timeout=timeout)
        await self._arun(
            node,
            self._as_db_user(
                [
                    "sh",
                    "-c",
                    f"grep -qxF {shlex.quote(include_line)} {shlex.quote(main_conf)} "
                    f"|| echo {shlex.quote(include_line)} >> {shlex.quote(main_conf)}",
                ]
            ),
            timeout=timeout,
        )
        await self._arun(
            node, self._as_db_user(["touch", f"{self.data_dir}/{STANDBY_SIGNAL_NAME}"]), timeout=timeout
        )

    async def astart_instance(self, node: Node) -> None:
        await self._arun(
            node, ["systemctl", "start", self._settings.service_name], timeout=self._settings.command_timeout_s
        )
