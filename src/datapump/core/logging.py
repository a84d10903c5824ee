"""
Logging infrastructure for datapump.

Provides:
- Structured JSON logging for file output
- Rich console output for terminal
- Contextual logging that stamps worker / backend context
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from rich.console import Console


ROOT_LOGGER = "datapump"

# Extra record attributes copied into JSON lines and console prefixes
CONTEXT_FIELDS = ("worker", "backend", "offset")


# =============================================================================
# JSON Formatter for File Logging
# =============================================================================


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "process": record.process,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key in CONTEXT_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data, default=str)


# =============================================================================
# Rich Console Handler
# =============================================================================


class RichConsoleHandler(logging.Handler):
    """Handler that outputs to a Rich console with level colouring."""

    STYLES = {
        logging.DEBUG: "dim",
        logging.INFO: "default",
        logging.WARNING: "yellow",
        logging.ERROR: "red",
        logging.CRITICAL: "bold red",
    }

    def __init__(
        self,
        console: "Console | None" = None,
        level: int = logging.INFO,
        timestamps: bool = False,
    ):
        super().__init__(level)
        if console is None:
            from rich.console import Console

            console = Console(stderr=True)
        self.console = console
        self.timestamps = timestamps

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
            style = self.STYLES.get(record.levelno, "default")

            prefix = ""
            if self.timestamps:
                stamp = datetime.fromtimestamp(record.created).isoformat(timespec="seconds")
                prefix += f"[dim][{stamp}][/dim] "
            if hasattr(record, "worker"):
                prefix += f"[cyan][worker {record.worker}][/cyan] "

            self.console.print(f"{prefix}[{style}]{message}[/{style}]", markup=True, highlight=False)

            if record.exc_info:
                self.console.print_exception()

        except Exception:
            self.handleError(record)


# =============================================================================
# Logger Configuration
# =============================================================================


def setup_logging(
    level: str = "INFO",
    log_file: Path | str | None = None,
    json_format: bool = True,
    rich_console: bool = True,
    timestamps: bool = False,
) -> logging.Logger:
    """Set up logging for datapump.

    Called once in the main process and again in every worker process
    with the options it receives on Initialize.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Path to log file (optional)
        json_format: Use JSON format for file logs
        rich_console: Use Rich for console output
        timestamps: Prefix console lines with a timestamp

    Returns:
        Root logger for datapump
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers.clear()
    logger.propagate = False

    if rich_console:
        console_handler: logging.Handler = RichConsoleHandler(timestamps=timestamps)
        console_handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        fmt = "%(levelname)s %(name)s: %(message)s"
        if timestamps:
            fmt = "%(asctime)s " + fmt
        console_handler.setFormatter(logging.Formatter(fmt))
    console_handler.setLevel(getattr(logging, level.upper()))
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)

        if json_format:
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s [%(levelname)s] %(process)d %(name)s: %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )

        logger.addHandler(file_handler)

    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (will be prefixed with 'datapump.')

    Returns:
        Logger instance
    """
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


# =============================================================================
# Contextual Logging Adapter
# =============================================================================


class ContextualLogger(logging.LoggerAdapter):
    """Logger adapter that adds worker/backend context to log records."""

    def __init__(
        self,
        logger: logging.Logger,
        worker: int | None = None,
        backend: str | None = None,
    ):
        super().__init__(logger, {})
        self.worker = worker
        self.backend = backend

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = dict(kwargs.get("extra") or {})

        if self.worker is not None:
            extra["worker"] = self.worker
        if self.backend:
            extra["backend"] = self.backend

        kwargs["extra"] = extra
        return msg, kwargs

    def with_context(
        self,
        worker: int | None = None,
        backend: str | None = None,
    ) -> "ContextualLogger":
        """Create a new logger with additional context."""
        return ContextualLogger(
            self.logger,
            worker=worker if worker is not None else self.worker,
            backend=backend or self.backend,
        )


def get_contextual_logger(
    name: str | None = None,
    worker: int | None = None,
    backend: str | None = None,
) -> ContextualLogger:
    """Get a contextual logger stamped with worker/backend context."""
    return ContextualLogger(get_logger(name), worker=worker, backend=backend)
