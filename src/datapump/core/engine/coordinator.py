"""
Worker pool coordinator.

Owns the worker handles and the authoritative progress counters. Work is
handed to the lowest-id READY worker; when every worker is busy,
``dispatch`` suspends until a report frees one. Completion listeners fire
exactly once, after which every worker is told to terminate.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Sequence

from datapump.core.config.models import Environment
from datapump.core.errors import ExitCode, PoolError

from .channels import Channel, LocalChannel, PipeChannel
from .messages import Done, Error, Initialize, Report, Terminate, Work, WorkUnit
from .worker import GateFactory, WorkerState, default_gate

logger = logging.getLogger(__name__)


@dataclass
class WorkerHandle:
    """Coordinator-side view of one worker."""

    id: int
    channel: Channel
    state: WorkerState = WorkerState.READY

    @property
    def live(self) -> bool:
        return self.state is not WorkerState.TERMINATED


@dataclass
class ProgressStats:
    """Run counters, updated only from worker reports."""

    processed: int = 0
    total_expected: int = 0
    peak_memory_ratio: float = 0.0
    failed_units: int = 0

    # A worker reported an empty page: the source has no more records
    exhausted: bool = False

    # Set on completion when dispatching was closed before every record
    # was processed (aborted runs, skipped units, early end of stream)
    closed_early: bool = False

    @property
    def percent(self) -> float:
        if self.total_expected <= 0:
            return 0.0
        return min(100.0, self.processed / self.total_expected * 100)


ProgressListener = Callable[[ProgressStats], None]
ErrorListener = Callable[[Error], None]
CompleteListener = Callable[[ProgressStats], None]


class Coordinator:
    """Dispatches work units to workers and aggregates their reports."""

    def __init__(
        self,
        channels: Sequence[Channel],
        total_expected: int,
        reader: ThreadPoolExecutor | None = None,
    ):
        """Initialize the coordinator.

        Args:
            channels: One channel per worker; worker ids are list positions
            total_expected: Record count at which the run is complete
            reader: Thread pool used by pipe channels, shut down with the pool
        """
        if not channels:
            raise ValueError("Coordinator needs at least one worker channel")
        self.handles = [WorkerHandle(id=i, channel=channel) for i, channel in enumerate(channels)]
        self.stats = ProgressStats(total_expected=total_expected)
        self._reader = reader

        self._progress_listeners: list[ProgressListener] = []
        self._error_listeners: list[ErrorListener] = []
        self._complete_listeners: list[CompleteListener] = []

        self._condition = asyncio.Condition()
        self._closed = asyncio.Event()
        self._in_flight: dict[int, WorkUnit] = {}
        self._dispatch_closed = False
        self._completed = False
        self._readers: list[asyncio.Task] = []

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, environment: Environment) -> None:
        """Send Initialize to every worker and start reading their reports."""
        for handle in self.handles:
            handle.channel.send(Initialize(worker_id=handle.id, environment=environment))
            self._readers.append(
                asyncio.create_task(self._read(handle), name=f"datapump-reader-{handle.id}")
            )

    async def _read(self, handle: WorkerHandle) -> None:
        while True:
            try:
                report = await handle.channel.receive()
            except EOFError:
                await self._worker_lost(handle)
                return
            try:
                await self.receive(report)
            except Exception:
                logger.exception(f"Could not apply report from worker {handle.id}")

    async def _worker_lost(self, handle: WorkerHandle) -> None:
        async with self._condition:
            if handle.state is WorkerState.TERMINATED:
                return
            unit = self._in_flight.pop(handle.id, None)
            handle.state = WorkerState.TERMINATED
            if unit is not None:
                self.stats.failed_units += 1
            self._deliver_error(
                Error(
                    handle.id,
                    f"Worker {handle.id} exited unexpectedly",
                    unit,
                    exit_code=int(ExitCode.UNCAUGHT),
                )
            )
            self._condition.notify_all()
            self._check_complete()
            self._check_closed()

    async def shutdown(self) -> None:
        """Terminate remaining workers and release their channels."""
        async with self._condition:
            self._dispatch_closed = True
            for handle in self.handles:
                self._terminate(handle)
            self._condition.notify_all()
            self._closed.set()

        for handle in self.handles:
            await handle.channel.close()
        for reader in self._readers:
            if not reader.done():
                reader.cancel()
        await asyncio.gather(*self._readers, return_exceptions=True)
        if self._reader is not None:
            self._reader.shutdown(wait=False, cancel_futures=True)
        logger.debug("Worker pool shut down")

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def on_progress(self, listener: ProgressListener) -> None:
        self._progress_listeners.append(listener)

    def on_error(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def on_complete(self, listener: CompleteListener) -> None:
        """Register a listener called once when the run is over.

        This also fires when ``close_dispatch()`` ends a run short of
        ``total_expected``; ``stats.closed_early`` tells the cases apart.
        """
        self._complete_listeners.append(listener)

    def _notify(self, listeners: Sequence[Callable], payload: object) -> None:
        # A failing listener must not stop the others or the report loop
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                logger.exception(f"Listener {listener!r} raised")

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def dispatch(
        self,
        offset: int,
        size: int,
        on_dispatched: Callable[[int], None] | None = None,
    ) -> int:
        """Hand ``[offset, offset + size)`` to the lowest-id READY worker.

        Suspends while every live worker is busy.

        Args:
            offset: First record of the unit
            size: Number of records in the unit
            on_dispatched: Called with the worker id once the unit is accepted

        Returns:
            Id of the worker that accepted the unit

        Raises:
            PoolError: If dispatching was closed or no worker is left
        """
        unit = WorkUnit(offset=offset, size=size)

        async with self._condition:
            while True:
                if self._dispatch_closed:
                    raise PoolError("Dispatching has been closed")
                live = [h for h in self.handles if h.live]
                if not live:
                    raise PoolError("All workers have terminated")
                handle = next((h for h in live if h.state is WorkerState.READY), None)
                if handle is None:
                    await self._condition.wait()
                    continue
                try:
                    handle.channel.send(Work(unit))
                except (OSError, EOFError):
                    logger.warning(f"Worker {handle.id} is unreachable, marking it terminated")
                    handle.state = WorkerState.TERMINATED
                    continue
                handle.state = WorkerState.WORKING
                self._in_flight[handle.id] = unit
                break

        if on_dispatched is not None:
            on_dispatched(handle.id)
        return handle.id

    async def close_dispatch(self) -> None:
        """Signal that no further units will be dispatched."""
        async with self._condition:
            self._dispatch_closed = True
            self._condition.notify_all()
            self._check_complete()
            self._check_closed()

    async def wait_closed(self) -> ProgressStats:
        """Wait until the run completed or no worker is left."""
        await self._closed.wait()
        return self.stats

    @property
    def completed(self) -> bool:
        return self._completed

    # -------------------------------------------------------------------------
    # Reports
    # -------------------------------------------------------------------------

    async def receive(self, report: Report) -> None:
        """Apply a worker report to the handles and counters."""
        async with self._condition:
            handle = self.handles[report.worker_id]
            if handle.state is WorkerState.WORKING:
                handle.state = WorkerState.READY
            self._in_flight.pop(handle.id, None)

            if isinstance(report, Done):
                self.stats.processed += report.processed
                if report.memory is not None:
                    self.stats.peak_memory_ratio = max(
                        self.stats.peak_memory_ratio, report.memory.ratio
                    )
                if report.end_of_stream:
                    self.stats.exhausted = True
                self._notify(self._progress_listeners, self.stats)
            elif isinstance(report, Error):
                if report.unit is not None:
                    self.stats.failed_units += 1
                self._deliver_error(report)
            else:
                raise TypeError(f"Unexpected report from worker {handle.id}: {report!r}")

            self._condition.notify_all()
            self._check_complete()

    def _deliver_error(self, error: Error) -> None:
        if not self._error_listeners:
            logger.error(f"Worker {error.worker_id}: {error.message}")
            return
        self._notify(self._error_listeners, error)

    # -------------------------------------------------------------------------
    # Completion (called with the condition held)
    # -------------------------------------------------------------------------

    def _check_complete(self) -> None:
        if self._completed:
            return
        live = [h for h in self.handles if h.live]
        if not live or any(h.state is not WorkerState.READY for h in live):
            return
        if self.stats.processed != self.stats.total_expected and not self._dispatch_closed:
            return

        self._completed = True
        self._dispatch_closed = True
        self.stats.closed_early = self.stats.processed != self.stats.total_expected
        logger.debug(
            f"Transfer complete: {self.stats.processed}/{self.stats.total_expected} records"
        )
        self._notify(self._complete_listeners, self.stats)
        for handle in self.handles:
            self._terminate(handle)
        self._closed.set()

    def _check_closed(self) -> None:
        if not any(h.live for h in self.handles):
            self._closed.set()

    def _terminate(self, handle: WorkerHandle) -> None:
        if not handle.live:
            return
        try:
            handle.channel.send(Terminate())
        except (OSError, EOFError):
            logger.debug(f"Worker {handle.id} already gone")
        handle.state = WorkerState.TERMINATED


# =============================================================================
# Pool Construction
# =============================================================================


async def start_pool(
    environment: Environment,
    worker_count: int,
    gate_factory: GateFactory = default_gate,
) -> Coordinator:
    """Start workers and return their coordinator.

    Fewer than two workers run in-process on the current event loop;
    otherwise ``worker_count`` processes are spawned.

    Args:
        environment: Options and statistics sent to every worker
        worker_count: Number of workers
        gate_factory: Memory gate builder for the in-process worker

    Returns:
        Started coordinator
    """
    total = environment.statistics.hits.total
    reader = None
    if worker_count < 2:
        channels: list[Channel] = [LocalChannel(gate_factory=gate_factory)]
        logger.debug("Running a single in-process worker")
    else:
        # One blocking recv per worker plus room for joining on shutdown
        reader = ThreadPoolExecutor(max_workers=worker_count + 1, thread_name_prefix="datapump-pipe")
        channels = [PipeChannel.spawn(i, reader) for i in range(worker_count)]
        logger.info(f"Started {worker_count} worker processes")

    coordinator = Coordinator(channels, total_expected=total, reader=reader)
    coordinator.start(environment)
    return coordinator
