"""
Exponential backoff retry with throttling detection
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from ..errors import PermanentRemoteError, TransientRemoteError

logger = logging.getLogger(__name__)

THROTTLE_KEYWORDS = ("throttle", "429", "rate limit")

Operation = Callable[[], Awaitable[Any]]
SleepFunc = Callable[[float], Awaitable[None]]


def is_throttling_error(error: BaseException) -> bool:
    """Heuristic throttling check on the error type and message"""
    if isinstance(error, TransientRemoteError):
        return True
    message = str(error).lower()
    return any(keyword in message for keyword in THROTTLE_KEYWORDS)


def _is_retryable(error: BaseException) -> bool:
    return not isinstance(error, PermanentRemoteError)


class wait_throttle_cooldown(wait_base):
    """Adds a fixed cooldown when the last attempt was throttled"""

    def __init__(self, cooldown: float):
        self.cooldown = cooldown

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed and is_throttling_error(outcome.exception()):
            return self.cooldown
        return 0.0


class Retrier:
    """
    Runs remote operations with bounded retries

    Wait before attempt k+1 (k 0-indexed) is 2^k * base_delay,
    plus throttle_cooldown when the failure looked like throttling.
    A throttled final attempt still gets its cooldown before giving up.
    """

    def __init__(
        self,
        max_retries: int = 1,
        base_delay: float = 5.0,
        throttle_cooldown: float = 30.0,
        sleep: Optional[SleepFunc] = None
    ):
        """
        Args:
            max_retries: Retries after the first attempt (default 1)
            base_delay: Backoff base in seconds
            throttle_cooldown: Extra pause in seconds after a throttled attempt
            sleep: Awaitable sleep (tests inject a recorder)
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.throttle_cooldown = throttle_cooldown
        self._sleep = sleep or asyncio.sleep

    def wait_for_attempt(self, attempt_index: int, throttled: bool = False) -> float:
        """Delay before the retry that follows 0-indexed attempt_index"""
        delay = (2 ** attempt_index) * self.base_delay
        if throttled:
            delay += self.throttle_cooldown
        return delay

    async def call(self, operation: Operation, description: str = "operation") -> Any:
        """
        Run operation until it succeeds or retries are exhausted

        Args:
            operation: Zero-argument coroutine factory
            description: Text used in log lines

        Returns:
            Result of the operation

        Raises:
            PermanentRemoteError: all attempts failed or the fault is non-retryable
        """
        total_attempts = self.max_retries + 1

        def _before(retry_state: RetryCallState) -> None:
            logger.info(f"{description}: attempt {retry_state.attempt_number}/{total_attempts}")

        def _after(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            throttled = " (throttled)" if is_throttling_error(error) else ""
            logger.warning(
                f"{description}: attempt {retry_state.attempt_number}/{total_attempts} failed{throttled}: {error}"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(total_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2)
            + wait_throttle_cooldown(self.throttle_cooldown),
            retry=retry_if_exception(_is_retryable),
            before=_before,
            after=_after,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            result = await retrying(operation)
        except PermanentRemoteError:
            raise
        except Exception as e:
            logger.error(f"{description}: giving up after {total_attempts} attempt(s): {e}")
            # tenacity stops before computing a wait, so the cooldown for a
            # throttled last attempt is applied here
            if is_throttling_error(e):
                logger.warning(f"{description}: throttled, cooling down {self.throttle_cooldown}s")
                await self._sleep(self.throttle_cooldown)
            raise PermanentRemoteError(f"{description} failed after {total_attempts} attempt(s): {e}") from e

        logger.info(f"{description}: succeeded")
        return result
