"""Storage backend contract, registry and built-in implementations."""

from .base import (
    Backend,
    BackendContext,
    BackendError,
    BackendInfo,
    OptionSpec,
    ReadError,
    Record,
    SourceStats,
    TargetStats,
    WriteError,
)
from . import registry
from .noop_backend import NoOpBackend
from .jsonl_backend import JsonLinesBackend
from .sql_backend import SqlBackend
from .elasticsearch_backend import ElasticsearchBackend

__all__ = [
    # Base classes
    "Backend",
    "BackendContext",
    "BackendInfo",
    "OptionSpec",
    "Record",
    "SourceStats",
    "TargetStats",
    # Errors
    "BackendError",
    "ReadError",
    "WriteError",
    # Registry
    "registry",
    # Built-ins
    "NoOpBackend",
    "JsonLinesBackend",
    "SqlBackend",
    "ElasticsearchBackend",
]
