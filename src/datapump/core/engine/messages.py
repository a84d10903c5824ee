"""
Messages exchanged between the coordinator and its workers.

All messages are plain picklable dataclasses so the same objects travel
over a multiprocessing pipe or through an in-process queue.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from datapump.core.config.models import Environment

    from .memory import MemorySample


@dataclass(frozen=True)
class WorkUnit:
    """A contiguous slice ``[offset, offset + size)`` of the source stream."""

    offset: int
    size: int

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError(f"offset must be >= 0, got {self.offset}")
        if self.size <= 0:
            raise ValueError(f"size must be > 0, got {self.size}")


# Coordinator -> worker


@dataclass(frozen=True)
class Initialize:
    worker_id: int
    environment: Environment


@dataclass(frozen=True)
class Work:
    unit: WorkUnit


@dataclass(frozen=True)
class Terminate:
    pass


# Worker -> coordinator


@dataclass(frozen=True)
class Done:
    """A work unit finished.

    ``end_of_stream`` is set when the source returned an empty page, which
    is distinct from a page that merely held fewer records than asked for.
    """

    worker_id: int
    unit: WorkUnit
    processed: int
    memory: MemorySample | None = None
    end_of_stream: bool = False


@dataclass(frozen=True)
class Error:
    """A work unit failed after all retries.

    ``exit_code`` is set when the failure was fatal (a misbehaving
    transform, a broken backend contract) and must abort the run
    regardless of the ignore policy.
    """

    worker_id: int
    message: str
    unit: WorkUnit | None = None
    exit_code: int | None = None

    @property
    def fatal(self) -> bool:
        return self.exit_code is not None


Command = Union[Initialize, Work, Terminate]
Report = Union[Done, Error]
