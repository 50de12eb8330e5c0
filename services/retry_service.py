"""
Retry Service with Exponential Backoff
Shared backoff math for channel subscriptions and the fallback socket
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from config import Config

logger = logging.getLogger(__name__)


def backoff_delay_ms(attempt: int, base_ms: int = 1000, max_ms: int = 16000) -> int:
    """delay = min(base * 2^attempt, max)"""
    return min(base_ms * (2 ** attempt), max_ms)


class ReconnectBackoff:
    """
    Attempt counter for a reconnecting transport.

    next_delay() returns the delay before the next attempt and counts it, or
    None once max_attempts reconnects have been scheduled since the last
    successful open. reset() is called when a connection opens.
    """

    def __init__(self, base_ms: int = None, max_ms: int = None, max_attempts: int = None):
        self.base_ms = Config.SOCKET_RECONNECT_BASE_MS if base_ms is None else base_ms
        self.max_ms = Config.SOCKET_RECONNECT_MAX_MS if max_ms is None else max_ms
        self.max_attempts = Config.SOCKET_MAX_RECONNECT_ATTEMPTS if max_attempts is None else max_attempts
        self.attempt = 0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next_delay(self) -> Optional[float]:
        """Delay in seconds before the next attempt, None when exhausted"""
        if self.exhausted:
            return None
        delay_ms = backoff_delay_ms(self.attempt, self.base_ms, self.max_ms)
        self.attempt += 1
        return delay_ms / 1000.0

    def reset(self) -> None:
        self.attempt = 0


class RetryService:
    """Service for handling retries with exponential backoff"""

    @staticmethod
    async def retry_async(
        func: Callable[[], Awaitable[Any]],
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 16.0,
        jitter: bool = False,
        exceptions: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> Any:
        """
        Retry an async function with exponential backoff

        Args:
            func: Async function to retry
            max_attempts: Maximum number of attempts (including the first)
            initial_delay: Delay before the first retry in seconds
            max_delay: Maximum delay in seconds
            jitter: Add random jitter to prevent thundering herd
            exceptions: Tuple of exceptions to catch and retry
            sleep: Awaitable sleep (swapped out in tests)
        """
        attempt = 0
        while True:
            try:
                return await func()
            except exceptions as e:
                attempt += 1
                if attempt >= max_attempts:
                    logger.error(f"Max retry attempts ({max_attempts}) reached for {getattr(func, '__name__', func)}")
                    raise

                delay = min(initial_delay * (2 ** (attempt - 1)), max_delay)
                if jitter:
                    delay = delay * (0.5 + random.random())
                logger.warning(
                    f"🔄 Attempt {attempt}/{max_attempts} failed for {getattr(func, '__name__', func)}: {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await sleep(delay)
