"""
Backend base classes and data structures.

Defines the capability contract every storage backend implements. The
worker executor and the exporter only ever talk to backends through it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from datapump.core.config.models import Environment, TransferOptions


Record = dict[str, Any]


@dataclass(frozen=True)
class BackendInfo:
    """Identity of a backend."""

    id: str
    name: str
    version: str
    description: str = ""

    # Whether several worker processes may read/write concurrently
    threadsafe: bool = False


@dataclass
class OptionSpec:
    """Declaration of a backend option shown in help output."""

    help: str
    default: Any = None
    required: bool = False


@dataclass
class SourceStats:
    """Status information of a backend used as source."""

    version: str = "0.0"
    status: str = "red"
    total: int = 0
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class TargetStats:
    """Status information of a backend used as target."""

    version: str = "0.0"
    status: str = "red"
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class BackendContext:
    """Per-run, per-worker state owned by the worker executor.

    Backends keep cursors, clients and paging state here instead of on the
    module or class, so nothing leaks between runs or workers.
    """

    worker_id: int = 0
    role: str = "source"  # "source" or "target"
    cursor: Any = None
    client: Any = None
    state: dict[str, Any] = field(default_factory=dict)

    @property
    def is_source(self) -> bool:
        return self.role == "source"


class Backend(ABC):
    """Abstract base class for storage backends.

    Subclasses are registered by class; the registry creates one
    instance per worker and role with its own BackendContext.
    """

    info: BackendInfo

    def __init__(self, context: BackendContext | None = None):
        self.context = context or BackendContext()

    @classmethod
    def get_info(cls) -> BackendInfo:
        """Return id, name, version and description of this backend."""
        return cls.info

    @classmethod
    def option_specs(cls) -> dict[str, dict[str, OptionSpec]]:
        """Options understood under ``source.*`` and ``target.*``."""
        return {"source": {}, "target": {}}

    def verify_options(self, options: TransferOptions) -> list[str]:
        """Validate the options relevant to this backend.

        Returns:
            List of error messages (empty if valid)
        """
        return []

    async def reset(self, env: Environment) -> None:
        """Reinitialize backend-local state between runs."""
        self.context.cursor = None
        self.context.state.clear()

    @abstractmethod
    async def get_source_stats(self, env: Environment) -> SourceStats:
        """Report version, status and total record count of the source."""

    @abstractmethod
    async def get_target_stats(self, env: Environment) -> TargetStats:
        """Report version and status of the target."""

    @abstractmethod
    async def get_meta(self, env: Environment) -> dict[str, Any]:
        """Fetch schema/settings metadata from the source."""

    @abstractmethod
    async def put_meta(self, env: Environment, meta: dict[str, Any]) -> None:
        """Store schema/settings metadata on the target."""

    @abstractmethod
    async def get_data(
        self,
        env: Environment,
        offset: int | None = None,
        size: int | None = None,
    ) -> list[Record]:
        """Fetch a page of records.

        ``offset`` and ``size`` are pagination hints. A backend without
        native pagination may ignore them and page through its own cursor.
        An empty list means the source is exhausted.

        Raises:
            BackendError: On a (possibly transient) read failure
        """

    @abstractmethod
    async def put_data(self, env: Environment, records: list[Record]) -> None:
        """Store a page of records.

        Must tolerate records that were already written by an earlier
        attempt (overwrite or idempotent insert).

        Raises:
            BackendError: On a (possibly transient) write failure
        """

    async def prepare_transfer(self, env: Environment, is_source: bool) -> None:
        """Hook called in every worker before the first get/put."""

    async def end(self, env: Environment) -> None:
        """Hook called once per worker after the run to flush and close."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.info.id!r} role={self.context.role!r}>"


class BackendError(Exception):
    """Base exception for (retryable) backend failures."""

    def __init__(
        self,
        message: str,
        backend: str | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.backend = backend
        self.cause = cause


class ReadError(BackendError):
    """Error while fetching records from a source."""


class WriteError(BackendError):
    """Error while storing records on a target."""
