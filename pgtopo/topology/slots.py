"""Replication slot ownership.

Each replica streams through exactly one physical slot on the primary, named
from its stable ordinal (``replica1_slot``, ``replica2_slot``, ...), so a
rerun of bootstrap for the same replica always lands on the same slot.

The manager is the single writer of slot bindings: reserve, bind and release
are serialized by one lock, and each of them covers both the in-memory
binding and the primary's catalog.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol

import asyncpg
from pydantic import BaseModel, ConfigDict

from ..config.retry import RetryConfig
from ..core.enums import SlotState
from ..logger import get_logger
from ..resilience.retry import retry
from .exceptions import SlotConflictError
from .models import ReplicationSlot

if TYPE_CHECKING:
    from ..infrastructure.postgres import AsyncConnectionPool

logger = get_logger(__name__)

# a terminated walsender can hold the slot for a moment after pg_terminate_backend
_DROP_RETRY = RetryConfig(
    max_attempts=5,
    wait_min=0.2,
    wait_max=2.0,
    retry_on_exceptions=(asyncpg.exceptions.ObjectInUseError,),
)


def slot_name_for(ordinal: int) -> str:
    """Deterministic slot name for a replica ordinal (1-based)."""
    if ordinal < 1:
        msg = f"replica ordinal must be >= 1, got {ordinal}"
        raise ValueError(msg)
    return f"replica{ordinal}_slot"


class PhysicalSlotInfo(BaseModel):
    """A row of ``pg_replication_slots`` on the primary."""

    model_config = ConfigDict(frozen=True)

    name: str
    active: bool
    restart_lsn: str | None = None


class SlotCatalog(Protocol):
    """Primary-side slot operations."""

    async def aget(self, name: str) -> PhysicalSlotInfo | None: ...

    async def acreate(self, name: str) -> None: ...

    async def adrop(self, name: str) -> None: ...

    async def aterminate(self, name: str) -> None: ...


class PostgresSlotCatalog:
    """`SlotCatalog` backed by an asyncpg pool connected to the primary."""

    def __init__(self, pool: AsyncConnectionPool, drop_retry: RetryConfig = _DROP_RETRY) -> None:
        self._pool = pool
        self._drop = retry(drop_retry)(self._adrop_once)

    async def aget(self, name: str) -> PhysicalSlotInfo | None:
        row = await self._pool.afetchrow(
            """
            SELECT slot_name, active, restart_lsn::text AS restart_lsn
            FROM pg_replication_slots
            WHERE slot_name = $1 AND slot_type = 'physical'
            """,
            name,
        )
        if row is None:
            return None
        return PhysicalSlotInfo(name=row["slot_name"], active=row["active"], restart_lsn=row["restart_lsn"])

    async def acreate(self, name: str) -> None:
        # immediately_reserve=true: WAL is retained from now on, before the copy starts
        await self._pool.aexecute("SELECT pg_create_physical_replication_slot($1, true)", name)

    async def adrop(self, name: str) -> None:
        await self._drop(name)

    async def _adrop_once(self, name: str) -> None:
        await self._pool.aexecute("SELECT pg_drop_replication_slot($1)", name)

    async def aterminate(self, name: str) -> None:
        await self._pool.aexecute(
            """
            SELECT pg_terminate_backend(active_pid)
            FROM pg_replication_slots
            WHERE slot_name = $1 AND active_pid IS NOT NULL
            """,
            name,
        )


class ReplicationSlotManager:
    """Allocates and tracks one replication slot per replica.

    Examples
    --------
    >>> manager = ReplicationSlotManager(PostgresSlotCatalog(primary_pool))
    >>> await manager.areserve("replica3_slot", "replica3")
    >>> await manager.abind("replica3_slot", "replica3")
    >>> await manager.arelease("replica3_slot")
    """

    def __init__(self, catalog: SlotCatalog) -> None:
        self._catalog = catalog
        self._slots: dict[str, ReplicationSlot] = {}
        self._lock = asyncio.Lock()

    def get(self, name: str) -> ReplicationSlot | None:
        return self._slots.get(name)

    def slot_for(self, node_id: str) -> ReplicationSlot | None:
        for slot in self._slots.values():
            if slot.bound_node_id == node_id and slot.state != SlotState.FREE:
                return slot
        return None

    def slots(self) -> tuple[ReplicationSlot, ...]:
        return tuple(sorted(self._slots.values(), key=lambda s: s.name))

    async def areserve(self, name: str, node_id: str) -> ReplicationSlot:
        """Reserve ``name`` for ``node_id`` and make sure the physical slot exists.

        Re-reserving a slot the node already owns succeeds.

        Raises
        ------
        SlotConflictError
            If the slot is owned by another node, if the node already owns a
            different slot, or if the physical slot is being streamed from by
            someone this manager does not know about.
        """
        async with self._lock:
            current = self._slots.get(name)
            if current is not None and current.state != SlotState.FREE and current.bound_node_id != node_id:
                raise SlotConflictError(name, current.bound_node_id, node_id)

            other = self.slot_for(node_id)
            if other is not None and other.name != name:
                raise SlotConflictError(other.name, node_id, node_id)

            owned_by_self = current is not None and current.state != SlotState.FREE
            info = await self._catalog.aget(name)
            if info is not None and info.active and not owned_by_self:
                raise SlotConflictError(name, "unknown streaming client", node_id)
            if info is not None and not info.active:
                # leftover from an earlier attempt: its restart_lsn belongs to the old copy
                await self._catalog.adrop(name)
                info = None
            if info is None:
                await self._catalog.acreate(name)

            slot = ReplicationSlot(name=name, bound_node_id=node_id, state=SlotState.RESERVED)
            self._slots[name] = slot
            logger.info("Replication slot reserved", slot=name, node_id=node_id, streaming=info is not None)
            return slot

    async def abind(self, name: str, node_id: str) -> ReplicationSlot:
        """Mark a reserved slot active for ``node_id``; idempotent for the same node.

        Raises
        ------
        SlotConflictError
            If the slot is not reserved, or is held by a different node.
        """
        async with self._lock:
            current = self._slots.get(name)
            if current is None or current.state == SlotState.FREE:
                raise SlotConflictError(name, None, node_id)
            if current.bound_node_id != node_id:
                raise SlotConflictError(name, current.bound_node_id, node_id)
            if current.state == SlotState.ACTIVE:
                return current

            slot = current.model_copy(update={"state": SlotState.ACTIVE})
            self._slots[name] = slot
            logger.info("Replication slot bound", slot=name, node_id=node_id)
            return slot

    async def aadopt(self, name: str, node_id: str) -> ReplicationSlot:
        """Record an already-streaming replica's slot without touching the primary.

        Used at startup for replicas attached by an earlier run.
        """
        async with self._lock:
            current = self._slots.get(name)
            if current is not None and current.state != SlotState.FREE and current.bound_node_id != node_id:
                raise SlotConflictError(name, current.bound_node_id, node_id)
            slot = ReplicationSlot(name=name, bound_node_id=node_id, state=SlotState.ACTIVE)
            self._slots[name] = slot
            return slot

    async def arelease(self, name: str) -> None:
        """Drop the physical slot and free the binding. Unknown names are a no-op."""
        async with self._lock:
            current = self._slots.get(name)
            if current is None or current.state == SlotState.FREE:
                return

            info = await self._catalog.aget(name)
            if info is not None:
                if info.active:
                    await self._catalog.aterminate(name)
                await self._catalog.adrop(name)

            self._slots[name] = ReplicationSlot(name=name)
            logger.info("Replication slot released", slot=name, node_id=current.bound_node_id)
