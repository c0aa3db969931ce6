"""
Retry utilities and failure classification for relay attempts.

Distinguishes transient federation / network failures (worth retrying with
exponential backoff) from the "room is dead" condition (handled by the room
lifecycle repair path) and from permanent errors (reported, never retried).
"""

import asyncio
import enum
import logging
from typing import TypeVar, Callable, Any, Optional

import aiohttp

from src.matrix.intent import MatrixRequestError

logger = logging.getLogger("puppet_bridge.retry")

T = TypeVar("T")

DEAD_ROOM_MESSAGES = ("no known servers",)


class FailureKind(enum.Enum):
    TRANSIENT = "transient"
    DEAD_ROOM = "dead_room"
    PERMANENT = "permanent"


class RelayRetryError(Exception):
    """
    Raised when a relay attempt kept failing with transient errors
    and all retry attempts have been exhausted.
    """
    def __init__(self, description: str, attempts: int, last_error: Optional[Exception] = None):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{description} still failing after {attempts} attempts: {last_error}"
        )


def is_dead_room_error(error: Exception) -> bool:
    """
    Check if a join failed because nobody reachable is left in the room.

    Homeservers answer "No known servers" when every member has left, and the
    room can never be joined again. The only way forward is a fresh room.
    """
    if isinstance(error, MatrixRequestError):
        text = f"{error.error} {error.errcode or ''}".lower()
    else:
        text = str(error).lower()
    return any(message in text for message in DEAD_ROOM_MESSAGES)


def is_transient_error(error: Exception) -> bool:
    """
    Check if an error is worth retrying.

    Timeouts, dropped connections, rate limiting and 5xx answers are transient.
    """
    if isinstance(error, RelayRetryError):
        return False
    if isinstance(error, (asyncio.TimeoutError, aiohttp.ClientConnectionError, aiohttp.ClientPayloadError)):
        return True
    if isinstance(error, MatrixRequestError):
        if is_dead_room_error(error):
            return False
        return error.status == 429 or error.errcode == "M_LIMIT_EXCEEDED" or error.status >= 500
    return False


def classify_failure(error: Exception) -> FailureKind:
    if is_dead_room_error(error):
        return FailureKind.DEAD_ROOM
    if is_transient_error(error):
        return FailureKind.TRANSIENT
    return FailureKind.PERMANENT


async def retry_on_transient(
    func: Callable[[], Any],
    description: str,
    max_retries: int = 2,
    base_delay: float = 1.0,
    max_delay: float = 8.0,
    logger_instance: Optional[logging.Logger] = None,
) -> Any:
    """
    Execute a function, re-invoking the whole attempt on transient errors.

    Uses exponential backoff: 1s, 2s, 4s (capped at max_delay).

    Args:
        func: The async or sync function to execute (will be awaited if async)
        description: What is being attempted (for logging/error messages)
        max_retries: Maximum number of retry attempts (default: 2)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 8.0)
        logger_instance: Optional logger (uses module logger if not provided)

    Returns:
        The result of the function call

    Raises:
        RelayRetryError: If all retries are exhausted on transient errors
        Exception: Any non-transient exception from the function, immediately
    """
    log = logger_instance or logger

    for attempt in range(max_retries + 1):
        try:
            result = func()
            if asyncio.iscoroutine(result):
                result = await result
            return result

        except Exception as e:
            if not is_transient_error(e):
                raise

            if attempt < max_retries:
                delay = min(base_delay * (2 ** attempt), max_delay)
                log.warning(
                    f"[RETRY] {description} failed transiently ({e}), "
                    f"attempt {attempt + 1}/{max_retries + 1}, "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue

            log.error(
                f"[RETRY] {description} still failing after "
                f"{max_retries + 1} attempts, giving up"
            )
            raise RelayRetryError(
                description=description,
                attempts=max_retries + 1,
                last_error=e
            ) from e
