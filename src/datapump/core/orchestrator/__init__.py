"""Orchestrator - transfer phases, health checks and abort policy."""

from .runner import Exporter, TransferSummary, run_transfer

__all__ = [
    "Exporter",
    "TransferSummary",
    "run_transfer",
]
