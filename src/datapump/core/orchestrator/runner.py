"""
Transfer runner orchestrator.

Coordinates the full export workflow:
verify → reset → stats → health → metadata → data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, NoReturn

from datapump.core.backends import registry
from datapump.core.backends.base import Backend, BackendContext
from datapump.core.config.loader import ConfigError
from datapump.core.config.models import EndpointStats, Environment, Statistics, TransferOptions
from datapump.core.engine.coordinator import ProgressListener, ProgressStats, start_pool
from datapump.core.engine.messages import Error
from datapump.core.engine.retry import with_retry
from datapump.core.engine.transform import load_transform
from datapump.core.engine.worker import GateFactory, default_gate
from datapump.core.errors import ExitCode, FatalError, PoolError, TransferError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TransferSummary:
    """Outcome of a transfer run."""

    statistics: Statistics
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None

    concurrency: int = 0
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.statistics.hits.processed

    @property
    def total(self) -> int:
        return self.statistics.hits.total

    @property
    def failed_units(self) -> int:
        return self.statistics.hits.failed_units

    @property
    def peak_memory_ratio(self) -> float:
        return self.statistics.memory.peak_ratio

    @property
    def duration_seconds(self) -> float | None:
        """Get run duration in seconds."""
        if self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "processed": self.processed,
            "total": self.total,
            "failed_units": self.failed_units,
            "peak_memory_ratio": self.peak_memory_ratio,
            "concurrency": self.concurrency,
            "skipped": list(self.skipped),
            "errors": list(self.errors),
            "duration_seconds": self.duration_seconds,
        }


class Exporter:
    """Runs one transfer from a source backend to a target backend.

    Coordinates:
    - Option verification against both backends
    - Reset, statistics and health checks
    - Metadata copy
    - The parallel data transfer through the worker pool
    """

    def __init__(
        self,
        options: TransferOptions,
        *,
        gate_factory: GateFactory = default_gate,
    ) -> None:
        """Initialize the exporter.

        Args:
            options: Validated transfer options
            gate_factory: Memory gate builder for in-process workers
        """
        self.options = options
        self.env = Environment(options=options)
        self.gate_factory = gate_factory

        self.source: Backend | None = None
        self.target: Backend | None = None

        self._progress_listeners: list[ProgressListener] = []
        self._worker_errors: list[Error] = []
        self._abort: Error | None = None

    def on_progress(self, listener: ProgressListener) -> None:
        """Register a listener called with ProgressStats after every unit."""
        self._progress_listeners.append(listener)

    async def run(self) -> TransferSummary:
        """Execute all phases of a transfer.

        Returns:
            TransferSummary with the final statistics

        Raises:
            FatalError: On invalid options, unhealthy backends or an
                aborted transfer; carries the process exit code
        """
        summary = TransferSummary(statistics=self.env.statistics)

        try:
            self._create_backends()
            self._verify_options()

            await self._phase("Resetting source", lambda: self.source.reset(self.env))
            await self._phase("Resetting target", lambda: self.target.reset(self.env))

            source_stats = await self._phase(
                "Reading source statistics", lambda: self.source.get_source_stats(self.env)
            )
            target_stats = await self._phase(
                "Reading target statistics", lambda: self.target.get_target_stats(self.env)
            )
            self.env.statistics.source = EndpointStats(
                version=source_stats.version,
                status=source_stats.status,
                total=source_stats.total,
                extra=source_stats.extra,
            )
            self.env.statistics.target = EndpointStats(
                version=target_stats.version,
                status=target_stats.status,
                extra=target_stats.extra,
            )

            self._check_source_health()
            self._check_target_health()

            if self.options.run.mapping:
                meta = await self._get_metadata()
                if self.options.run.test:
                    logger.info("Not storing metadata on the target because this is a test run")
                    summary.skipped.append("store metadata")
                else:
                    await self._phase("Storing metadata", lambda: self.target.put_meta(self.env, meta))
                    logger.info("Metadata on target is now ready")
            else:
                summary.skipped.append("metadata")

            if self.options.run.data:
                summary.concurrency = await self._transfer_data()
            else:
                summary.skipped.append("data")
        finally:
            summary.finished_at = _utcnow()
            summary.errors = [e.message for e in self._worker_errors]
            await self._close_backends()

        return summary

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    def _create_backends(self) -> None:
        drivers = self.options.drivers
        registry.discover(drivers.dirs)
        self.source = registry.create(drivers.source, BackendContext(role="source"))
        self.target = registry.create(drivers.target, BackendContext(role="target"))
        logger.debug(f"Transferring from [{drivers.source}] to [{drivers.target}]")

    def _verify_options(self) -> None:
        errors: list[str] = list(self.source.verify_options(self.options))
        if type(self.target) is not type(self.source):
            errors.extend(self.target.verify_options(self.options))
        if errors:
            for error in errors:
                logger.error(error)
            raise ConfigError("Invalid backend options", details="\n".join(errors))

        if self.options.xform.file:
            load_transform(self.options.xform.file)

    async def _phase(self, label: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run a pre-transfer backend call under the retry policy."""

        def give_up(error: BaseException) -> NoReturn:
            raise TransferError(f"{label} failed: {error}") from error

        logger.debug(label)
        return await with_retry(
            self.options.errors.retry,
            operation,
            give_up,
            delay=self.options.errors.retry_delay,
            label=label,
        )

    async def _close_backends(self) -> None:
        for backend in (self.source, self.target):
            if backend is None:
                continue
            try:
                await backend.end(self.env)
            except Exception as e:
                logger.warning(f"Closing {backend.info.id} {backend.context.role} failed: {e}")

    # -------------------------------------------------------------------------
    # Health and metadata
    # -------------------------------------------------------------------------

    def _check_source_health(self) -> None:
        stats = self.env.statistics.source
        if stats.status == "red":
            raise FatalError(
                "The source is reporting an error and cannot proceed",
                exit_code=ExitCode.NO_RECORDS,
            )
        if stats.total == 0:
            raise FatalError(
                "The source has not reported any records that can be exported. Not exporting.",
                exit_code=ExitCode.NO_RECORDS,
            )
        logger.info(f"Source [{self.options.drivers.source}] {stats.version} holds {stats.total} records")

    def _check_target_health(self) -> None:
        stats = self.env.statistics.target
        if stats.status == "red":
            raise TransferError("The target is reporting an error and cannot proceed")

    async def _get_metadata(self) -> dict[str, Any]:
        if self.options.mapping is not None:
            logger.debug("Using metadata overridden through options")
            return self.options.mapping
        return await self._phase("Fetching metadata", lambda: self.source.get_meta(self.env))

    # -------------------------------------------------------------------------
    # Data
    # -------------------------------------------------------------------------

    def _on_worker_error(self, error: Error) -> None:
        self._worker_errors.append(error)
        if error.fatal or not self.options.errors.ignore:
            logger.error(f"Worker {error.worker_id}: {error.message}")
            if self._abort is None:
                self._abort = error
        else:
            logger.warning(f"Skipping failed unit (worker {error.worker_id}): {error.message}")

    def _record(self, stats: ProgressStats) -> None:
        hits = self.env.statistics.hits
        hits.processed = stats.processed
        hits.failed_units = stats.failed_units
        self.env.statistics.memory.peak_ratio = stats.peak_memory_ratio

    async def _transfer_data(self) -> int:
        """Split the source into units and push them through the pool.

        Returns:
            Number of workers used
        """
        total = self.env.statistics.source.total
        self.env.statistics.hits.total = total
        step = min(self.options.run.step, total)

        concurrent = self.source.info.threadsafe and self.target.info.threadsafe
        concurrency = self.options.run.concurrency if concurrent else 1
        if not concurrent and self.options.run.concurrency > 1:
            logger.debug("Concurrency disabled because at least one backend is not threadsafe")

        logger.info(f"Starting data export with {concurrency} worker(s), {step} records per unit")
        coordinator = await start_pool(self.env, concurrency, gate_factory=self.gate_factory)
        coordinator.on_error(self._on_worker_error)
        coordinator.on_progress(self._record)
        for listener in self._progress_listeners:
            coordinator.on_progress(listener)

        pointer = 0
        try:
            while pointer < total and self._abort is None and not coordinator.stats.exhausted:
                await coordinator.dispatch(pointer, step)
                pointer += step
            await coordinator.close_dispatch()
            stats = await coordinator.wait_closed()
        except PoolError as e:
            raise TransferError(
                f"Worker pool failed: {e}",
                processed=coordinator.stats.processed,
                failed_units=coordinator.stats.failed_units,
            ) from e
        finally:
            await coordinator.shutdown()
            self._record(coordinator.stats)

        logger.debug(f"Worker loop finished with {stats.processed} of {total} records processed")

        if self._abort is not None:
            exit_code = self._abort.exit_code or ExitCode.BACKEND_ERROR
            raise TransferError(
                f"Transfer aborted: {self._abort.message}",
                exit_code=ExitCode(exit_code),
                processed=stats.processed,
                failed_units=stats.failed_units,
            )
        if not coordinator.completed:
            raise TransferError(
                "All workers exited before the transfer completed",
                processed=stats.processed,
                failed_units=stats.failed_units,
            )

        logger.info(f"Processed {stats.processed} records ({stats.percent:.0f}%)")
        return concurrency


async def run_transfer(
    options: TransferOptions,
    progress: ProgressListener | None = None,
) -> TransferSummary:
    """Convenience function to run a single transfer.

    Args:
        options: Validated transfer options
        progress: Optional progress listener

    Returns:
        TransferSummary with the final statistics
    """
    exporter = Exporter(options)
    if progress is not None:
        exporter.on_progress(progress)
    return await exporter.run()
