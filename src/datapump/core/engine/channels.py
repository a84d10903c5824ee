"""
Coordinator <-> worker channels.

``PipeChannel`` talks to a spawned worker process over a duplex pipe.
``LocalChannel`` runs a WorkerExecutor as a task on the coordinator's
event loop and hands the same message objects through asyncio queues.
Both raise EOFError from ``receive`` once the worker has gone away.
"""

from __future__ import annotations

import asyncio
import logging
import multiprocessing as mp
from concurrent.futures import ThreadPoolExecutor
from multiprocessing.connection import Connection
from multiprocessing.context import SpawnProcess
from typing import Protocol

from .messages import Command, Report
from .worker import GateFactory, WorkerExecutor, default_gate, worker_main

logger = logging.getLogger(__name__)

JOIN_TIMEOUT = 10.0  # seconds to wait for a worker to exit after Terminate


class Channel(Protocol):
    def send(self, message: Command) -> None: ...

    async def receive(self) -> Report: ...

    async def close(self) -> None: ...


# =============================================================================
# Worker Process Channel
# =============================================================================


class PipeChannel:
    """Channel to a worker running in its own process."""

    def __init__(self, conn: Connection, process: SpawnProcess, reader: ThreadPoolExecutor):
        self.conn = conn
        self.process = process
        self._reader = reader

    @classmethod
    def spawn(cls, index: int, reader: ThreadPoolExecutor) -> "PipeChannel":
        """Start a worker process connected through a fresh duplex pipe."""
        ctx = mp.get_context("spawn")
        parent_conn, child_conn = ctx.Pipe(duplex=True)
        process = ctx.Process(
            target=worker_main,
            args=(child_conn, index),
            name=f"datapump-worker-{index}",
            daemon=True,
        )
        process.start()
        # The child owns its end now
        child_conn.close()
        logger.debug(f"Spawned worker {index} (pid {process.pid})")
        return cls(parent_conn, process, reader)

    def send(self, message: Command) -> None:
        self.conn.send(message)

    async def receive(self) -> Report:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._reader, self.conn.recv)
        except (OSError, EOFError) as e:
            raise EOFError(f"Worker process {self.process.pid} closed its pipe") from e

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._reader, self.process.join, JOIN_TIMEOUT)
        if self.process.is_alive():
            logger.warning(f"Worker process {self.process.pid} did not exit, terminating it")
            self.process.terminate()
            await loop.run_in_executor(self._reader, self.process.join, JOIN_TIMEOUT)
        self.conn.close()


# =============================================================================
# In-Process Channel
# =============================================================================


class _Closed:
    pass


_CLOSED = _Closed()


class LocalChannel:
    """Channel to a WorkerExecutor running on the current event loop."""

    def __init__(self, gate_factory: GateFactory = default_gate):
        self._commands: asyncio.Queue[Command] = asyncio.Queue()
        self._reports: asyncio.Queue[Report | _Closed] = asyncio.Queue()
        self.executor = WorkerExecutor(self._reports.put, gate_factory=gate_factory)
        self._task = asyncio.create_task(self._run(), name="datapump-local-worker")

    async def _run(self) -> None:
        try:
            await self.executor.serve(self._commands.get)
        except Exception:
            logger.exception("In-process worker crashed")
        finally:
            self._reports.put_nowait(_CLOSED)

    def send(self, message: Command) -> None:
        if self._task.done():
            raise EOFError("In-process worker has stopped")
        self._commands.put_nowait(message)

    async def receive(self) -> Report:
        report = await self._reports.get()
        if isinstance(report, _Closed):
            # Keep returning EOF to any later reader
            self._reports.put_nowait(_CLOSED)
            raise EOFError("In-process worker has stopped")
        return report

    async def close(self) -> None:
        if not self._task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._task), JOIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("In-process worker did not stop, cancelling it")
                self._task.cancel()
