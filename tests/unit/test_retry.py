"""
Unit tests for src/core/retry.py

Tests failure classification and the transient retry logic with exponential backoff.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, Mock, patch

import aiohttp

from src.core.retry import (
    FailureKind,
    RelayRetryError,
    classify_failure,
    is_dead_room_error,
    is_transient_error,
    retry_on_transient,
)
from src.matrix.intent import MatrixRequestError


class TestRelayRetryError:
    def test_error_attributes(self):
        error = RelayRetryError(
            description="relaying $event",
            attempts=3,
            last_error=ValueError("original error")
        )

        assert error.description == "relaying $event"
        assert error.attempts == 3
        assert isinstance(error.last_error, ValueError)
        assert "relaying $event" in str(error)
        assert "3" in str(error)

    def test_error_without_last_error(self):
        error = RelayRetryError(description="sending", attempts=5, last_error=None)

        assert error.last_error is None
        assert "sending" in str(error)


class TestClassification:
    def test_no_known_servers_is_dead_room(self):
        error = MatrixRequestError(404, "M_UNKNOWN", "No known servers")
        assert is_dead_room_error(error) is True
        assert is_transient_error(error) is False
        assert classify_failure(error) is FailureKind.DEAD_ROOM

    def test_plain_exception_dead_room_message(self):
        assert is_dead_room_error(Exception("Join failed: no known servers")) is True

    def test_server_errors_are_transient(self):
        assert is_transient_error(MatrixRequestError(502, None, "Bad Gateway")) is True
        assert is_transient_error(MatrixRequestError(429, "M_LIMIT_EXCEEDED", "Too many requests")) is True

    def test_network_errors_are_transient(self):
        assert is_transient_error(asyncio.TimeoutError()) is True
        assert is_transient_error(aiohttp.ClientConnectionError("reset")) is True
        assert classify_failure(asyncio.TimeoutError()) is FailureKind.TRANSIENT

    def test_client_errors_are_permanent(self):
        error = MatrixRequestError(403, "M_FORBIDDEN", "You are not invited")
        assert is_transient_error(error) is False
        assert classify_failure(error) is FailureKind.PERMANENT
        assert classify_failure(ValueError("bad")) is FailureKind.PERMANENT

    def test_exhausted_retry_is_not_transient(self):
        assert is_transient_error(RelayRetryError("x", 3, asyncio.TimeoutError())) is False


class TestRetryOnTransient:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        mock_func = AsyncMock(return_value="success")

        result = await retry_on_transient(mock_func, "sending")

        assert result == "success"
        assert mock_func.call_count == 1

    @pytest.mark.asyncio
    async def test_sync_function(self):
        mock_func = Mock(return_value="sync result")

        result = await retry_on_transient(mock_func, "sending")

        assert result == "sync result"

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        mock_func = AsyncMock(side_effect=[
            MatrixRequestError(503, None, "Service Unavailable"),
            "success"
        ])

        with patch('src.core.retry.asyncio.sleep', new_callable=AsyncMock) as mock_sleep:
            result = await retry_on_transient(mock_func, "sending", max_retries=2, base_delay=1.0)

        assert result == "success"
        assert mock_func.call_count == 2
        mock_sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_exponential_backoff(self):
        mock_func = AsyncMock(side_effect=[
            asyncio.TimeoutError(),
            asyncio.TimeoutError(),
            asyncio.TimeoutError(),
            "success"
        ])

        with patch('src.core.retry.asyncio.sleep', new_callable=AsyncMock) as mock_sleep:
            result = await retry_on_transient(mock_func, "sending", max_retries=3, base_delay=1.0)

        assert result == "success"
        delays = [call.args[0] for call in mock_sleep.await_args_list]
        assert delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_delay_capped(self):
        mock_func = AsyncMock(side_effect=[asyncio.TimeoutError()] * 3 + ["ok"])

        with patch('src.core.retry.asyncio.sleep', new_callable=AsyncMock) as mock_sleep:
            await retry_on_transient(mock_func, "sending", max_retries=3, base_delay=4.0, max_delay=5.0)

        delays = [call.args[0] for call in mock_sleep.await_args_list]
        assert delays == [4.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_exhausted_raises_relay_retry_error(self):
        last = MatrixRequestError(502, None, "Bad Gateway")
        mock_func = AsyncMock(side_effect=last)

        with patch('src.core.retry.asyncio.sleep', new_callable=AsyncMock):
            with pytest.raises(RelayRetryError) as exc_info:
                await retry_on_transient(mock_func, "sending", max_retries=2)

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error is last
        assert mock_func.call_count == 3

    @pytest.mark.asyncio
    async def test_permanent_error_raised_immediately(self):
        mock_func = AsyncMock(side_effect=MatrixRequestError(403, "M_FORBIDDEN", "nope"))

        with patch('src.core.retry.asyncio.sleep', new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(MatrixRequestError):
                await retry_on_transient(mock_func, "sending")

        assert mock_func.call_count == 1
        mock_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_dead_room_not_retried(self):
        mock_func = AsyncMock(side_effect=MatrixRequestError(404, "M_UNKNOWN", "No known servers"))

        with pytest.raises(MatrixRequestError):
            await retry_on_transient(mock_func, "joining")

        assert mock_func.call_count == 1
