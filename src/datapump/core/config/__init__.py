"""Configuration loading and validation."""

from .models import (
    # Option groups
    DriversConfig,
    RunConfig,
    TransformConfig,
    MemoryConfig,
    ErrorsConfig,
    LogConfig,
    NetworkConfig,
    TransferOptions,
    # Runtime
    EndpointStats,
    HitStats,
    MemoryStats,
    Statistics,
    Environment,
)
from .loader import (
    ConfigError,
    flatten,
    inflate,
    load_options,
    merge_trees,
    parse_assignments,
    validate_options,
)

__all__ = [
    # Option groups
    "DriversConfig",
    "RunConfig",
    "TransformConfig",
    "MemoryConfig",
    "ErrorsConfig",
    "LogConfig",
    "NetworkConfig",
    "TransferOptions",
    # Runtime
    "EndpointStats",
    "HitStats",
    "MemoryStats",
    "Statistics",
    "Environment",
    # Loaders
    "ConfigError",
    "flatten",
    "inflate",
    "load_options",
    "merge_trees",
    "parse_assignments",
    "validate_options",
]
