"""
Tests for datapump.core.engine.coordinator using fake channels.
"""

import asyncio
import logging

import pytest

from datapump.core.config.models import Environment
from datapump.core.engine.coordinator import Coordinator
from datapump.core.engine.memory import MemorySample
from datapump.core.engine.messages import Done, Error, Initialize, Terminate, Work, WorkUnit
from datapump.core.engine.worker import WorkerState
from datapump.core.errors import PoolError


class FakeChannel:
    """Records sent commands; reports are injected by the test."""

    def __init__(self):
        self.sent = []
        self.reports: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def send(self, message):
        self.sent.append(message)

    async def receive(self):
        report = await self.reports.get()
        if report is None:
            raise EOFError("gone")
        return report

    async def close(self):
        self.closed = True

    @property
    def work(self):
        return [m.unit for m in self.sent if isinstance(m, Work)]


def make_coordinator(workers: int, total: int):
    channels = [FakeChannel() for _ in range(workers)]
    coordinator = Coordinator(channels, total_expected=total)
    return coordinator, channels


def done(worker_id, offset, size, processed=None, ratio=None, end_of_stream=False):
    memory = MemorySample(heap_used=int(ratio * 100), heap_total=100, captured_at=0.0) if ratio else None
    return Done(
        worker_id,
        WorkUnit(offset, size),
        size if processed is None else processed,
        memory=memory,
        end_of_stream=end_of_stream,
    )


class TestDispatch:
    async def test_lowest_ready_worker_first(self):
        coordinator, channels = make_coordinator(3, 30)

        assert await coordinator.dispatch(0, 10) == 0
        assert await coordinator.dispatch(10, 10) == 1
        assert channels[0].work == [WorkUnit(0, 10)]
        assert channels[1].work == [WorkUnit(10, 10)]
        assert coordinator.handles[0].state is WorkerState.WORKING
        assert coordinator.handles[2].state is WorkerState.READY

    async def test_on_dispatched_receives_worker_id(self):
        coordinator, _ = make_coordinator(2, 10)
        accepted = []

        await coordinator.dispatch(0, 5, accepted.append)

        assert accepted == [0]

    async def test_busy_pool_defers_until_a_worker_is_ready(self):
        coordinator, channels = make_coordinator(2, 30)
        await coordinator.dispatch(0, 10)
        await coordinator.dispatch(10, 10)

        pending = asyncio.create_task(coordinator.dispatch(20, 10))
        await asyncio.sleep(0)
        assert not pending.done()

        await coordinator.receive(done(1, 10, 10))
        worker_id = await asyncio.wait_for(pending, 1)

        assert worker_id == 1
        assert channels[1].work == [WorkUnit(10, 10), WorkUnit(20, 10)]

    async def test_never_sends_second_unit_to_busy_worker(self):
        coordinator, channels = make_coordinator(2, 40)
        for offset in (0, 10):
            await coordinator.dispatch(offset, 10)
        waiting = [asyncio.create_task(coordinator.dispatch(o, 10)) for o in (20, 30)]
        await asyncio.sleep(0)

        await coordinator.receive(done(0, 0, 10))
        await asyncio.sleep(0.01)

        # Only one of the waiting units can have gone to worker 0
        assert len(channels[0].work) == 2
        assert len(channels[1].work) == 1

        await coordinator.receive(done(1, 10, 10))
        await asyncio.wait_for(asyncio.gather(*waiting), 1)
        assert len(channels[1].work) == 2

    async def test_raises_when_all_workers_terminated(self):
        coordinator, _ = make_coordinator(1, 10)
        await coordinator.shutdown()

        with pytest.raises(PoolError):
            await coordinator.dispatch(0, 5)

    async def test_invalid_unit_rejected(self):
        coordinator, _ = make_coordinator(1, 10)

        with pytest.raises(ValueError):
            await coordinator.dispatch(0, 0)


class TestCompletion:
    async def test_two_workers_total_ten(self):
        coordinator, channels = make_coordinator(2, 10)
        completed = []
        coordinator.on_complete(completed.append)

        await coordinator.dispatch(0, 5)
        await coordinator.dispatch(5, 5)
        await coordinator.receive(done(0, 0, 5))
        assert completed == []
        await coordinator.receive(done(1, 5, 5))

        assert len(completed) == 1
        assert coordinator.stats.processed == 10
        assert coordinator.completed
        for channel in channels:
            assert isinstance(channel.sent[-1], Terminate)

    async def test_fires_exactly_once(self):
        coordinator, _ = make_coordinator(1, 5)
        completed = []
        coordinator.on_complete(completed.append)

        await coordinator.dispatch(0, 5)
        await coordinator.receive(done(0, 0, 5))
        await coordinator.close_dispatch()

        assert len(completed) == 1

    async def test_waits_for_in_flight_units(self):
        coordinator, _ = make_coordinator(2, 10)
        completed = []
        coordinator.on_complete(completed.append)

        await coordinator.dispatch(0, 5)
        await coordinator.dispatch(5, 5)
        await coordinator.receive(done(0, 0, 5, processed=10))

        # Count reached but worker 1 is still busy
        assert completed == []

    async def test_close_dispatch_completes_short_run(self):
        coordinator, _ = make_coordinator(2, 100)
        completed = []
        coordinator.on_complete(completed.append)

        await coordinator.dispatch(0, 10)
        await coordinator.receive(done(0, 0, 10, processed=0, end_of_stream=True))
        assert coordinator.stats.exhausted
        assert completed == []

        await coordinator.close_dispatch()

        assert len(completed) == 1
        stats = await asyncio.wait_for(coordinator.wait_closed(), 1)
        assert stats.processed == 0

    async def test_listeners_added_late_do_not_fire(self):
        coordinator, _ = make_coordinator(1, 5)
        await coordinator.dispatch(0, 5)
        await coordinator.receive(done(0, 0, 5))

        late = []
        coordinator.on_complete(late.append)
        await coordinator.close_dispatch()

        assert late == []


class TestProgress:
    async def test_progress_listeners_in_order(self):
        coordinator, _ = make_coordinator(1, 10)
        calls = []
        coordinator.on_progress(lambda stats: calls.append(("first", stats.processed)))
        coordinator.on_progress(lambda stats: calls.append(("second", stats.processed)))

        await coordinator.dispatch(0, 4)
        await coordinator.receive(done(0, 0, 4))

        assert calls == [("first", 4), ("second", 4)]

    async def test_peak_memory_ratio(self):
        coordinator, _ = make_coordinator(2, 20)
        await coordinator.dispatch(0, 10)
        await coordinator.dispatch(10, 10)

        await coordinator.receive(done(0, 0, 10, ratio=0.7))
        await coordinator.receive(done(1, 10, 10, ratio=0.4))

        assert coordinator.stats.peak_memory_ratio == pytest.approx(0.7)


class TestErrors:
    async def test_error_routed_and_worker_ready_again(self):
        coordinator, _ = make_coordinator(2, 10)
        errors = []
        coordinator.on_error(errors.append)

        await coordinator.dispatch(0, 5)
        await coordinator.receive(Error(0, "read failed", WorkUnit(0, 5)))

        assert [e.message for e in errors] == ["read failed"]
        assert coordinator.handles[0].state is WorkerState.READY
        assert coordinator.stats.failed_units == 1
        assert not coordinator.completed

        # Worker 0 is eligible again
        assert await coordinator.dispatch(0, 5) == 0

    async def test_error_without_listener_is_logged(self, caplog, monkeypatch):
        coordinator, _ = make_coordinator(1, 10)
        await coordinator.dispatch(0, 5)

        # The datapump logger stops propagating once logging is set up
        monkeypatch.setattr(logging.getLogger("datapump"), "propagate", True)
        with caplog.at_level("ERROR", logger="datapump.core.engine.coordinator"):
            await coordinator.receive(Error(0, "nobody listening", WorkUnit(0, 5)))

        assert "nobody listening" in caplog.text

    async def test_lost_worker_is_reported_and_terminated(self):
        coordinator, channels = make_coordinator(2, 10)
        errors = []
        coordinator.on_error(errors.append)
        coordinator.start(Environment())
        assert all(isinstance(c.sent[0], Initialize) for c in channels)

        await coordinator.dispatch(0, 5)
        channels[0].reports.put_nowait(None)
        await asyncio.sleep(0.01)

        assert coordinator.handles[0].state is WorkerState.TERMINATED
        assert errors and errors[0].fatal
        assert coordinator.stats.failed_units == 1

        await coordinator.shutdown()
        assert all(c.closed for c in channels)


class TestListenerFailures:
    async def test_raising_listener_does_not_stall_the_run(self):
        coordinator, channels = make_coordinator(1, 10)
        seen = []

        def explode(stats):
            raise RuntimeError("listener blew up")

        coordinator.on_progress(explode)
        coordinator.on_progress(lambda stats: seen.append(stats.processed))
        coordinator.start(Environment())

        await coordinator.dispatch(0, 5)
        channels[0].reports.put_nowait(done(0, 0, 5))
        await coordinator.dispatch(5, 5)
        channels[0].reports.put_nowait(done(0, 5, 5))

        stats = await asyncio.wait_for(coordinator.wait_closed(), 1)

        assert stats.processed == 10
        assert coordinator.completed
        assert seen == [5, 10]
        await coordinator.shutdown()

    async def test_raising_error_listener_still_reaches_others(self):
        coordinator, _ = make_coordinator(1, 10)
        errors = []
        coordinator.on_error(lambda error: 1 / 0)
        coordinator.on_error(errors.append)

        await coordinator.dispatch(0, 5)
        await coordinator.receive(Error(0, "read failed", WorkUnit(0, 5)))

        assert [e.message for e in errors] == ["read failed"]
        assert coordinator.handles[0].state is WorkerState.READY


class TestCompletionOutcome:
    async def test_full_run_is_not_closed_early(self):
        coordinator, _ = make_coordinator(1, 5)
        outcomes = []
        coordinator.on_complete(lambda stats: outcomes.append(stats.closed_early))

        await coordinator.dispatch(0, 5)
        await coordinator.receive(done(0, 0, 5))

        assert outcomes == [False]

    async def test_closed_dispatch_marks_run_closed_early(self):
        coordinator, _ = make_coordinator(1, 10)
        outcomes = []
        coordinator.on_complete(lambda stats: outcomes.append(stats.closed_early))

        await coordinator.dispatch(0, 5)
        await coordinator.receive(Error(0, "read failed", WorkUnit(0, 5)))
        await coordinator.close_dispatch()

        assert outcomes == [True]
