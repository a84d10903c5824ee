"""CLI command modules."""

from . import drivers, run

__all__ = [
    "drivers",
    "run",
]
