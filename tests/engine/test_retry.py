"""
Tests for datapump.core.engine.retry.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from datapump.core.errors import ContractError
from datapump.core.engine.retry import RetryExhaustedError, with_retry


class TestWithRetry:
    """Tests for with_retry."""

    async def test_success_on_first_attempt(self):
        operation = AsyncMock(return_value="ok")
        on_failure = MagicMock()

        result = await with_retry(3, operation, on_failure)

        assert result == "ok"
        assert operation.await_count == 1
        on_failure.assert_not_called()

    async def test_fails_twice_then_succeeds(self):
        operation = AsyncMock(side_effect=[OSError("boom"), OSError("boom"), "page"])
        on_failure = MagicMock()

        result = await with_retry(3, operation, on_failure)

        assert result == "page"
        assert operation.await_count == 3
        on_failure.assert_not_called()

    async def test_exhausted_calls_final_failure_once(self):
        error = OSError("still down")
        operation = AsyncMock(side_effect=error)
        on_failure = MagicMock(return_value="fallback")

        result = await with_retry(3, operation, on_failure)

        assert result == "fallback"
        assert operation.await_count == 3
        on_failure.assert_called_once_with(error)

    async def test_async_final_failure_is_awaited(self):
        operation = AsyncMock(side_effect=OSError("down"))
        on_failure = AsyncMock(return_value=42)

        result = await with_retry(2, operation, on_failure)

        assert result == 42
        on_failure.assert_awaited_once()

    async def test_zero_attempts_means_one_attempt(self):
        operation = AsyncMock(side_effect=OSError("down"))
        on_failure = MagicMock()

        await with_retry(0, operation, on_failure)

        assert operation.await_count == 1
        on_failure.assert_called_once()

    async def test_without_callback_raises(self):
        operation = AsyncMock(side_effect=ValueError("bad page"))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await with_retry(2, operation)

        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_error, ValueError)
        assert operation.await_count == 2

    async def test_fatal_errors_are_not_retried(self):
        operation = AsyncMock(side_effect=ContractError("broken backend"))
        on_failure = MagicMock()

        with pytest.raises(ContractError):
            await with_retry(5, operation, on_failure)

        assert operation.await_count == 1
        on_failure.assert_not_called()
