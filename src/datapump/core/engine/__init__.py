"""Parallel transfer engine: coordinator, workers, memory gate and retries."""

from .channels import Channel, LocalChannel, PipeChannel
from .coordinator import Coordinator, ProgressStats, WorkerHandle, start_pool
from .memory import MemoryGate, MemorySample, process_memory_probe
from .messages import Done, Error, Initialize, Terminate, Work, WorkUnit
from .retry import RetryExhaustedError, with_retry
from .transform import apply_transform, load_transform
from .worker import WorkerExecutor, WorkerState, default_gate, worker_main

__all__ = [
    # Coordinator
    "Coordinator",
    "ProgressStats",
    "WorkerHandle",
    "start_pool",
    # Channels
    "Channel",
    "LocalChannel",
    "PipeChannel",
    # Worker
    "WorkerExecutor",
    "WorkerState",
    "default_gate",
    "worker_main",
    # Messages
    "WorkUnit",
    "Initialize",
    "Work",
    "Terminate",
    "Done",
    "Error",
    # Memory
    "MemoryGate",
    "MemorySample",
    "process_memory_probe",
    # Retry
    "with_retry",
    "RetryExhaustedError",
    # Transform
    "load_transform",
    "apply_transform",
]
