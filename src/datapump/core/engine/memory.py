"""
Memory pressure gate.

Keeps a worker from running past its memory budget while touching the
process introspection APIs as rarely as possible: a sample stays valid
for ``(total / used) ** 2 * base_interval`` seconds, so sampling slows
down when there is plenty of headroom and speeds up as usage nears the
budget.
"""

from __future__ import annotations

import asyncio
import gc
import logging
import time
from dataclasses import dataclass
from typing import Callable

import psutil

logger = logging.getLogger(__name__)

DEFAULT_BASE_INTERVAL = 0.1  # seconds
RECLAIM_DELAY = 0.1  # seconds between checks while stalled

Probe = Callable[[], "tuple[int, int]"]


@dataclass(frozen=True)
class MemorySample:
    """Point-in-time memory usage."""

    heap_used: int
    heap_total: int
    captured_at: float

    @property
    def ratio(self) -> float:
        if self.heap_total <= 0:
            return 0.0
        return self.heap_used / self.heap_total

    @property
    def valid_for(self) -> float:
        """Multiplier for the base interval: (total / used) squared."""
        if self.heap_used <= 0:
            return float("inf")
        return (self.heap_total / self.heap_used) ** 2


def process_memory_probe(budget: int | None = None) -> Probe:
    """Build a probe reporting (rss, budget) for the current process.

    Args:
        budget: Memory budget in bytes. Defaults to total system memory.
    """
    process = psutil.Process()
    total = budget or int(psutil.virtual_memory().total)

    def probe() -> tuple[int, int]:
        return int(process.memory_info().rss), total

    return probe


class MemoryGate:
    """Adaptive check-and-stall gate for one worker."""

    def __init__(
        self,
        probe: Probe | None = None,
        base_interval: float = DEFAULT_BASE_INTERVAL,
        reclaim: Callable[[], object] | None = gc.collect,
        clock: Callable[[], float] = time.monotonic,
        reclaim_delay: float = RECLAIM_DELAY,
    ):
        """Initialize the gate.

        Args:
            probe: Callable returning (used, total) bytes
            base_interval: Validity window in seconds at a ratio of 1.0
            reclaim: Memory reclamation hook, or None if unavailable
            clock: Monotonic time source
            reclaim_delay: Pause between checks while over the limit
        """
        self.probe = probe or process_memory_probe()
        self.base_interval = base_interval
        self.reclaim = reclaim
        self.clock = clock
        self.reclaim_delay = reclaim_delay
        self._sample: MemorySample | None = None

    @property
    def latest(self) -> MemorySample | None:
        """The cached sample, without refreshing it."""
        return self._sample

    def _take_sample(self) -> MemorySample:
        used, total = self.probe()
        self._sample = MemorySample(heap_used=used, heap_total=total, captured_at=self.clock())
        return self._sample

    def sample(self) -> MemorySample:
        """Return the cached sample while it is valid, else a fresh one."""
        cached = self._sample
        if cached is None:
            return self._take_sample()
        next_check = cached.valid_for * self.base_interval
        if self.clock() - cached.captured_at < next_check:
            return cached
        return self._take_sample()

    async def await_capacity(self, limit: float) -> MemorySample:
        """Wait until usage drops below ``limit``.

        While over the limit the reclamation hook runs and the check is
        repeated after a short pause. Without a hook the gate lets the
        caller through immediately.

        Returns:
            The sample that allowed the caller to proceed
        """
        stalled = False
        while True:
            current = self.sample()
            if current.ratio < limit:
                if stalled:
                    logger.debug(f"Memory back under limit ({current.ratio:.2f} < {limit:.2f})")
                return current
            if self.reclaim is None:
                logger.debug("Memory over limit but no reclamation hook available, proceeding")
                return current
            if not stalled:
                logger.debug(f"Memory at {current.ratio:.2f} of budget, stalling until below {limit:.2f}")
                stalled = True
            self.reclaim()
            await asyncio.sleep(self.reclaim_delay)
