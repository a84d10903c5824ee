"""
Error taxonomy and process exit codes.

Transient failures are raised as ``BackendError`` (see backends.base) and
retried locally. Anything derived from ``FatalError`` is never retried and
carries the exit status the CLI terminates with.
"""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit statuses."""

    OK = 0
    NO_RECORDS = 1
    UNCAUGHT = 2
    OPTIONS_FILE_MISSING = 3
    BACKEND_ERROR = 4
    CONTRACT_INVALID = 10
    BACKEND_NOT_FOUND = 11
    OPTIONS_INVALID = 13
    TRANSFORM_FAILED = 14


class DataPumpError(Exception):
    """Base exception for all datapump errors."""


class FatalError(DataPumpError):
    """Unrecoverable error. Propagates without retry."""

    exit_code: ExitCode = ExitCode.UNCAUGHT

    def __init__(self, message: str, exit_code: ExitCode | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ContractError(FatalError):
    """A backend does not implement the capability contract."""

    exit_code = ExitCode.CONTRACT_INVALID


class UnknownBackendError(FatalError):
    """Requested backend id is not registered."""

    exit_code = ExitCode.BACKEND_NOT_FOUND


class TransformError(FatalError):
    """Transform file could not be loaded or raised while running."""

    exit_code = ExitCode.TRANSFORM_FAILED


class TransferError(FatalError):
    """The transfer was aborted."""

    exit_code = ExitCode.BACKEND_ERROR

    def __init__(
        self,
        message: str,
        exit_code: ExitCode | None = None,
        processed: int = 0,
        failed_units: int = 0,
    ):
        super().__init__(message, exit_code)
        self.processed = processed
        self.failed_units = failed_units


class PoolError(DataPumpError):
    """The worker pool can no longer accept work."""
