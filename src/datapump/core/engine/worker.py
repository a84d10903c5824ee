"""
Worker executor.

Runs inside a worker process (or in-process for single-worker runs) and
handles one coordinator message at a time:

- ``Initialize``: configure logging, create backend instances, load the
  transform and call the backends' ``prepare_transfer`` hooks
- ``Work``: wait for memory headroom, fetch a page (with retries),
  transform it, store it (with retries) and report ``Done`` or ``Error``
- ``Terminate``: call the backends' ``end`` hooks and stop serving
"""

from __future__ import annotations

import asyncio
import gc
import logging
from enum import Enum
from multiprocessing.connection import Connection
from typing import Awaitable, Callable

from setproctitle import setproctitle

from datapump.core.backends import registry
from datapump.core.backends.base import Backend, BackendContext
from datapump.core.config.models import Environment, MemoryConfig
from datapump.core.errors import ExitCode, FatalError
from datapump.core.logging import ContextualLogger, get_contextual_logger, setup_logging

from .memory import MemoryGate, process_memory_probe
from .messages import Command, Done, Error, Initialize, Report, Terminate, Work, WorkUnit
from .retry import RetryExhaustedError, with_retry
from .transform import Transform, apply_transform, load_transform

logger = logging.getLogger(__name__)

Reporter = Callable[[Report], Awaitable[None]]
Receiver = Callable[[], Awaitable[Command]]
GateFactory = Callable[[MemoryConfig], MemoryGate]


class WorkerState(str, Enum):
    """Lifecycle of a worker."""

    UNINITIALIZED = "uninitialized"
    READY = "ready"
    WORKING = "working"
    TERMINATED = "terminated"


def default_gate(config: MemoryConfig) -> MemoryGate:
    """Build a memory gate measuring this process against the budget."""
    return MemoryGate(
        probe=process_memory_probe(config.budget),
        base_interval=config.base_interval,
        reclaim=gc.collect if config.reclaim else None,
    )


class WorkerExecutor:
    """Executes coordinator commands against one source and one target."""

    def __init__(
        self,
        report: Reporter,
        gate_factory: GateFactory = default_gate,
        configure_logging: bool = False,
    ):
        """Initialize the executor.

        Args:
            report: Coroutine function delivering reports to the coordinator
            gate_factory: Builds the memory gate from the memory options
            configure_logging: Set up logging from the received options
                (only wanted in a separate worker process)
        """
        self.report = report
        self.gate_factory = gate_factory
        self.configure_logging = configure_logging

        self.state = WorkerState.UNINITIALIZED
        self.worker_id: int | None = None
        self.env: Environment | None = None
        self.source: Backend | None = None
        self.target: Backend | None = None
        self.transform: Transform | None = None
        self.gate: MemoryGate | None = None
        self.log: ContextualLogger = get_contextual_logger("engine.worker")

    # -------------------------------------------------------------------------
    # Message loop
    # -------------------------------------------------------------------------

    async def serve(self, receive: Receiver) -> None:
        """Handle messages until a Terminate has been processed."""
        while self.state is not WorkerState.TERMINATED:
            message = await receive()
            await self.handle(message)

    async def handle(self, message: Command) -> None:
        if isinstance(message, Initialize):
            await self._initialize(message)
        elif isinstance(message, Work):
            await self._work(message.unit)
        elif isinstance(message, Terminate):
            await self._terminate()
        else:
            raise TypeError(f"Unexpected message for worker: {message!r}")

    # -------------------------------------------------------------------------
    # Initialize
    # -------------------------------------------------------------------------

    async def _initialize(self, message: Initialize) -> None:
        env = message.environment
        opts = env.options
        self.worker_id = message.worker_id
        self.env = env
        self.log = get_contextual_logger("engine.worker", worker=self.worker_id)

        if self.configure_logging:
            setup_logging(
                level=opts.log.level,
                log_file=opts.log.file,
                json_format=opts.log.json_format,
                timestamps=opts.log.timestamps,
            )

        try:
            registry.discover(opts.drivers.dirs)
            self.source = registry.create(
                opts.drivers.source, BackendContext(worker_id=self.worker_id, role="source")
            )
            self.target = registry.create(
                opts.drivers.target, BackendContext(worker_id=self.worker_id, role="target")
            )
            self.transform = load_transform(opts.xform.file) if opts.xform.file else None
            self.gate = self.gate_factory(opts.memory)

            await self.source.prepare_transfer(env, True)
            if not opts.run.test:
                await self.target.prepare_transfer(env, False)
        except FatalError as e:
            self.log.error(f"Worker initialization failed: {e}")
            await self.report(Error(self.worker_id, str(e), exit_code=int(e.exit_code)))
            return
        except Exception as e:
            self.log.exception(f"Worker initialization failed: {e}")
            await self.report(Error(self.worker_id, str(e), exit_code=int(ExitCode.BACKEND_ERROR)))
            return

        self.state = WorkerState.READY
        self.log.debug(
            f"Worker ready: {opts.drivers.source} -> {opts.drivers.target}"
            f"{' (test mode)' if opts.run.test else ''}"
        )

    # -------------------------------------------------------------------------
    # Work
    # -------------------------------------------------------------------------

    async def _work(self, unit: WorkUnit) -> None:
        if self.state is not WorkerState.READY:
            await self.report(
                Error(
                    self.worker_id if self.worker_id is not None else -1,
                    f"Worker received work while {self.state.value}",
                    unit,
                    exit_code=int(ExitCode.UNCAUGHT),
                )
            )
            return

        self.state = WorkerState.WORKING
        try:
            result = await self._process(unit)
        except FatalError as e:
            self.log.error(f"Fatal error on unit {unit.offset}+{unit.size}: {e}")
            result = Error(self.worker_id, str(e), unit, exit_code=int(e.exit_code))
        finally:
            self.state = WorkerState.READY
        await self.report(result)

    async def _process(self, unit: WorkUnit) -> Report:
        assert self.env is not None and self.source is not None and self.target is not None
        assert self.gate is not None
        env = self.env
        opts = env.options
        span = f"[{unit.offset}, {unit.offset + unit.size})"

        await self.gate.await_capacity(opts.memory.limit)

        try:
            records = await with_retry(
                opts.errors.retry,
                lambda: self.source.get_data(env, unit.offset, unit.size),
                delay=opts.errors.retry_delay,
                label=f"Reading {span}",
            )
        except RetryExhaustedError as e:
            self.log.debug(f"Giving up on {span} after {e.attempts} read attempt(s)")
            return Error(self.worker_id, f"Reading {span} failed: {e.last_error}", unit)

        if not records:
            self.log.debug(f"Source returned an empty page at {unit.offset}")
            return Done(self.worker_id, unit, 0, memory=self.gate.latest, end_of_stream=True)

        records = apply_transform(self.transform, records)

        if not opts.run.test:
            try:
                await with_retry(
                    opts.errors.retry,
                    lambda: self.target.put_data(env, records),
                    delay=opts.errors.retry_delay,
                    label=f"Writing {span}",
                )
            except RetryExhaustedError as e:
                self.log.debug(f"Giving up on {span} after {e.attempts} write attempt(s)")
                return Error(self.worker_id, f"Writing {span} failed: {e.last_error}", unit)

        return Done(self.worker_id, unit, len(records), memory=self.gate.latest)

    # -------------------------------------------------------------------------
    # Terminate
    # -------------------------------------------------------------------------

    async def _terminate(self) -> None:
        if self.env is not None:
            for backend in (self.source, self.target):
                if backend is None:
                    continue
                try:
                    await backend.end(self.env)
                except Exception as e:
                    self.log.error(f"Closing {backend.info.id} {backend.context.role} failed: {e}")
        self.state = WorkerState.TERMINATED
        self.log.debug("Worker terminated")


# =============================================================================
# Process Entry Point
# =============================================================================


def worker_main(conn: Connection, index: int) -> None:
    """Entry point of a spawned worker process.

    Args:
        conn: Worker end of the duplex pipe to the coordinator
        index: Worker id, used for the process title
    """
    setproctitle(f"datapump:worker-{index:03d}")

    async def report(message: Report) -> None:
        conn.send(message)

    async def receive() -> Command:
        return await asyncio.to_thread(conn.recv)

    executor = WorkerExecutor(report, configure_logging=True)
    try:
        asyncio.run(executor.serve(receive))
    except EOFError:
        # Coordinator went away; nothing left to report to
        logger.debug(f"Worker {index} lost its coordinator, exiting")
    except KeyboardInterrupt:
        pass
    finally:
        conn.close()
