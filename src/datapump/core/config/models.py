"""
Pydantic configuration models for datapump.

These models provide type-safe configuration with validation for:
- Backend selection (source / target / discovery dirs)
- Run behaviour (step size, concurrency, test mode)
- Memory gating, retry policy and logging
- The runtime Environment handed to every worker
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Option Groups
# =============================================================================


class DriversConfig(BaseModel):
    """Which backends to move data between."""

    source: str = Field(
        default="jsonl",
        description="Id of the backend to export data from",
    )
    target: str = Field(
        default="jsonl",
        description="Id of the backend to import data into",
    )
    dirs: list[str] = Field(
        default_factory=list,
        description="Extra directories searched for *_backend.py plugins",
    )


class RunConfig(BaseModel):
    """Throughput and phase switches."""

    test: bool = Field(
        default=False,
        description="Only read from the source, never write to the target",
    )
    step: int = Field(
        default=100,
        ge=1,
        description="Records fetched per work unit",
    )
    concurrency: int = Field(
        default=4,
        ge=1,
        description="Worker processes (used only if both backends are threadsafe)",
    )
    mapping: bool = Field(
        default=True,
        description="Copy schema/settings metadata before the data",
    )
    data: bool = Field(
        default=True,
        description="Copy the records themselves",
    )


class TransformConfig(BaseModel):
    """Optional per-record transform."""

    file: str | None = Field(
        default=None,
        description="Python file defining transform(record) -> record",
    )


class MemoryConfig(BaseModel):
    """Memory pressure gate settings."""

    limit: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Stall a worker while used/budget is at or above this ratio",
    )
    budget: int | None = Field(
        default=None,
        gt=0,
        description="Per-worker memory budget in bytes (default: total RAM)",
    )
    reclaim: bool = Field(
        default=True,
        description="Run the garbage collector while stalled",
    )
    base_interval: float = Field(
        default=0.1,
        gt=0.0,
        description="Sampling interval in seconds at a used/budget ratio of 1.0",
    )


class ErrorsConfig(BaseModel):
    """Retry and failure policy."""

    retry: int = Field(
        default=3,
        ge=0,
        description="Attempts per backend call (0 = a single unretried attempt)",
    )
    ignore: bool = Field(
        default=False,
        description="Skip work units whose retries are exhausted instead of aborting",
    )
    retry_delay: float = Field(
        default=0.0,
        ge=0.0,
        description="Fixed delay in seconds between attempts",
    )


class LogConfig(BaseModel):
    """Console and file logging."""

    debug: bool = False
    enabled: bool = True
    timestamps: bool = False
    file: str | None = None
    json_format: bool = True

    @property
    def level(self) -> str:
        if self.debug:
            return "DEBUG"
        return "INFO" if self.enabled else "ERROR"


class NetworkConfig(BaseModel):
    """Network client limits."""

    sockets: int = Field(
        default=30,
        ge=1,
        le=65535,
        description="Maximum concurrent connections per HTTP client",
    )


# =============================================================================
# Root Options
# =============================================================================


class TransferOptions(BaseModel):
    """Root option tree for a transfer run."""

    drivers: DriversConfig = Field(default_factory=DriversConfig)
    run: RunConfig = Field(default_factory=RunConfig)
    xform: TransformConfig = Field(default_factory=TransformConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    errors: ErrorsConfig = Field(default_factory=ErrorsConfig)
    log: LogConfig = Field(default_factory=LogConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)

    # Backend specific options, validated by the backends themselves
    source: dict[str, Any] = Field(default_factory=dict)
    target: dict[str, Any] = Field(default_factory=dict)

    mapping: dict[str, Any] | None = Field(
        default=None,
        description="Override the metadata reported by the source backend",
    )

    @field_validator("mapping", mode="before")
    @classmethod
    def parse_mapping(cls, v: Any) -> Any:
        """Accept a JSON string as well as a mapping."""
        if isinstance(v, str):
            import json

            try:
                return json.loads(v)
            except json.JSONDecodeError as e:
                raise ValueError(f"mapping is not valid JSON: {e}") from e
        return v


# =============================================================================
# Runtime Environment
# =============================================================================


class EndpointStats(BaseModel):
    """Status reported by a backend before the run."""

    version: str = "0.0"
    status: str = "red"
    total: int = 0
    extra: dict[str, Any] = Field(default_factory=dict)


class HitStats(BaseModel):
    processed: int = 0
    total: int = 0
    failed_units: int = 0


class MemoryStats(BaseModel):
    peak_ratio: float = 0.0


class Statistics(BaseModel):
    """Counters collected throughout a run. Only the coordinator's copy is authoritative."""

    source: EndpointStats = Field(default_factory=EndpointStats)
    target: EndpointStats = Field(default_factory=EndpointStats)
    hits: HitStats = Field(default_factory=HitStats)
    memory: MemoryStats = Field(default_factory=MemoryStats)


class Environment(BaseModel):
    """Options snapshot plus statistics, passed to every worker on Initialize."""

    options: TransferOptions = Field(default_factory=TransferOptions)
    statistics: Statistics = Field(default_factory=Statistics)
