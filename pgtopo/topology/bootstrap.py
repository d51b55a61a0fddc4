"""Attach a new or reset node as a streaming standby.

Phases::

    Preparing -> Copying -> AttachingToStream -> AwaitingConfirmation -> Done
         \\___________\\_______________\\___________________\\____-> Failed

Preparing is destructive: the node's instance is stopped and its data
directory emptied before anything is copied, so leftovers from an earlier
interrupted attempt never mix with the new copy. Every phase can be entered
again from scratch, which is what makes a retry after ``Failed`` safe.

The node is handed to routing only after a probe confirms it is a replica
whose WAL receiver reports ``streaming``.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from ..config.retry import RetryConfig
from ..core.enums import BootstrapPhase, NodeState
from ..logger import get_logger
from ..resilience.retry import retry
from .exceptions import BootstrapError, BootstrapInProgressError, CommandError, SlotConflictError, TopologyError
from .models import BootstrapJob, Node, ProbeResult
from .slots import slot_name_for

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..config.topology import BootstrapSettings
    from .operator import NodeOperator
    from .probe import RoleProbe
    from .slots import ReplicationSlotManager

logger = get_logger(__name__)

type ReadyCallback = Callable[[Node], Awaitable[None]]

# systemctl start can fail transiently while the unit is still stopping
_START_RETRY = RetryConfig(max_attempts=3, wait_min=1.0, wait_max=5.0, retry_on_exceptions=(CommandError,))


class StreamNotConfirmedError(TopologyError):
    """The node is not (yet) a streaming replica."""

    retryable = True

    def __init__(self, result: ProbeResult) -> None:
        self.result = result
        super().__init__(
            f"node {result.node_id!r} reports role={result.observed_role.value} "
            f"healthy={result.healthy} stream_state={result.stream_state}"
        )


class ReplicaBootstrapper:
    """Runs bootstrap jobs, at most one per node at a time.

    Parameters
    ----------
    probe
        Used to confirm the node is streaming before it is handed over.
    slots
        Owner of replication slot reservations.
    operator
        Performs the stop / wipe / copy / configure / start steps on the node.
    settings
        Deadline and confirmation retry budget.
    on_ready
        Called with the attached node once streaming is confirmed; the
        controller uses it to register the node for routing.
    start_retry
        Budget for starting the engine, which can fail while the unit is still stopping.
    """

    def __init__(
        self,
        probe: RoleProbe,
        slots: ReplicationSlotManager,
        operator: NodeOperator,
        settings: BootstrapSettings,
        on_ready: ReadyCallback | None = None,
        *,
        start_retry: RetryConfig = _START_RETRY,
    ) -> None:
        self._probe = probe
        self._slots = slots
        self._operator = operator
        self._settings = settings
        self._on_ready = on_ready
        self._active: dict[str, BootstrapJob] = {}
        self._last: dict[str, BootstrapJob] = {}
        self._confirm = retry(
            RetryConfig(
                max_attempts=settings.confirm_attempts,
                wait_min=settings.confirm_wait_min_s,
                wait_max=settings.confirm_wait_max_s,
                retry_on_exceptions=(StreamNotConfirmedError,),
            )
        )(self._aconfirm_once)
        self._start = retry(start_retry)(self._astart_once)

    def set_ready_callback(self, on_ready: ReadyCallback) -> None:
        self._on_ready = on_ready

    def job(self, node_id: str) -> BootstrapJob | None:
        """The running job for ``node_id``, else its last finished one."""
        return self._active.get(node_id) or self._last.get(node_id)

    def jobs(self) -> tuple[BootstrapJob, ...]:
        merged = {**self._last, **self._active}
        return tuple(merged[node_id] for node_id in sorted(merged))

    def is_running(self, node_id: str) -> bool:
        return node_id in self._active

    async def abootstrap(self, node: Node, primary: Node) -> BootstrapJob:
        """Attach ``node`` to ``primary`` as a streaming standby.

        Returns
        -------
        BootstrapJob
            The finished job, in phase ``Done``.

        Raises
        ------
        BootstrapInProgressError
            If a job for this node has not finished yet. Slot state is not touched.
        SlotConflictError
            If the node's slot is owned elsewhere.
        BootstrapError
            Any other failure, tagged with the phase it happened in.
        """
        running = self._active.get(node.id)
        if running is not None:
            raise BootstrapInProgressError(node.id, running.phase)

        slot_name = node.slot_name or (slot_name_for(node.ordinal) if node.ordinal is not None else None)
        if slot_name is None:
            raise BootstrapError(node.id, BootstrapPhase.PREPARING, "node has neither a slot name nor an ordinal")

        # registered before the first await: a concurrent call sees it immediately
        self._active[node.id] = BootstrapJob(node_id=node.id, slot_name=slot_name)
        attached = node.model_copy(update={"slot_name": slot_name, "state": NodeState.UNKNOWN})
        logger.info("Bootstrap started", node_id=node.id, slot=slot_name, primary=primary.address)

        deadline = asyncio.timeout(self._settings.deadline_s)
        try:
            async with deadline:
                await self._arun(attached, primary, slot_name)
        except SlotConflictError as e:
            await self._afail(attached, str(e), release=False)
            raise
        except TimeoutError as e:
            # a step's own timeout surfaces here too; only an expired deadline is reported as one
            reason = f"deadline of {self._settings.deadline_s}s exceeded" if deadline.expired() else str(e)
            reason = reason or "command timed out"
            phase = await self._afail(attached, reason)
            raise BootstrapError(node.id, phase, reason) from e
        except asyncio.CancelledError:
            await self._afail(attached, "cancelled")
            raise
        except Exception as e:
            phase = await self._afail(attached, str(e))
            raise BootstrapError(node.id, phase, str(e)) from e

        job = self._advance(node.id, BootstrapPhase.DONE)
        self._finish(node.id)
        logger.info("Bootstrap finished", node_id=node.id, slot=slot_name)
        return job

    async def _arun(self, node: Node, primary: Node, slot_name: str) -> None:
        self._advance(node.id, BootstrapPhase.PREPARING)
        await self._slots.areserve(slot_name, node.id)
        await self._operator.astop_instance(node)
        await self._operator.awipe_data(node)

        self._advance(node.id, BootstrapPhase.COPYING)
        await self._operator.abase_backup(node, primary, slot_name)

        self._advance(node.id, BootstrapPhase.ATTACHING_TO_STREAM)
        await self._operator.awrite_standby_config(node, primary, slot_name)
        await self._slots.abind(slot_name, node.id)

        self._advance(node.id, BootstrapPhase.AWAITING_CONFIRMATION)
        await self._start(node)
        result = await self._confirm(node)
        logger.info("Replica streaming confirmed", node_id=node.id, latency_s=result.latency_s)

        if self._on_ready is not None:
            await self._on_ready(node.with_state(NodeState.STANDBY))

    async def _astart_once(self, node: Node) -> None:
        await self._operator.astart_instance(node)

    async def _aconfirm_once(self, node: Node) -> ProbeResult:
        result = await self._probe.aprobe(node)
        if not result.is_streaming_replica:
            raise StreamNotConfirmedError(result)
        return result

    def _advance(self, node_id: str, phase: BootstrapPhase, error: str | None = None) -> BootstrapJob:
        job = self._active[node_id].advance(phase, error)
        self._active[node_id] = job
        if not phase.is_terminal:
            logger.info("Bootstrap phase", node_id=node_id, phase=phase.value)
        return job

    def _finish(self, node_id: str) -> None:
        self._last[node_id] = self._active.pop(node_id)

    async def _afail(self, node: Node, reason: str, *, release: bool = True) -> BootstrapPhase:
        """Mark the job failed, undo what it holds, and return the phase it failed in."""
        phase = self._active[node.id].phase
        self._advance(node.id, BootstrapPhase.FAILED, error=reason)
        logger.error("Bootstrap failed", node_id=node.id, phase=phase.value, reason=reason)

        try:
            if phase == BootstrapPhase.AWAITING_CONFIRMATION:
                # the engine may be running against a slot that is about to be dropped
                await self._operator.astop_instance(node)
            slot = self._slots.get(node.slot_name) if node.slot_name else None
            if release and slot is not None and slot.bound_node_id == node.id:
                await self._slots.arelease(slot.name)
        except Exception:
            logger.exception("Cleanup after failed bootstrap did not complete", node_id=node.id)
        finally:
            self._finish(node.id)
        return phase
