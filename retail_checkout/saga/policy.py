"""
Saga Service — timeouts and retries for downstream calls

Every call the orchestrator makes runs under a deadline. Steps that are safe
to repeat (they are keyed by an idempotency key) are retried with
exponential backoff when the downstream is unavailable or too slow.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from ..config import RETRY_ATTEMPTS, RETRY_BACKOFF_SECONDS, STEP_TIMEOUT_SECONDS
from ..errors import DownstreamUnavailableError, StepTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StepPolicy:
    timeout: float = STEP_TIMEOUT_SECONDS
    attempts: int = RETRY_ATTEMPTS
    backoff: float = RETRY_BACKOFF_SECONDS
    max_backoff: float = 5.0

    def delays(self):
        delay = self.backoff
        while True:
            yield delay
            delay = min(delay * 2, self.max_backoff)


async def with_timeout(
    call: Callable[[], Awaitable[T]],
    timeout: float,
    *,
    step: str,
    saga_id: str,
) -> T:
    try:
        return await asyncio.wait_for(call(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise StepTimeoutError(
            f"{step} timed out after {timeout:.1f}s", step=step, saga_id=saga_id
        ) from e


async def with_retry(
    call: Callable[[], Awaitable[T]],
    policy: StepPolicy,
    *,
    step: str,
    saga_id: str,
) -> T:
    """
    Call ``call`` under ``policy.timeout``, retrying DownstreamUnavailableError
    (timeouts included) up to ``policy.attempts`` times.
    """
    delays = policy.delays()
    for attempt in range(1, policy.attempts + 1):
        try:
            return await with_timeout(call, policy.timeout, step=step, saga_id=saga_id)
        except DownstreamUnavailableError as e:
            if attempt == policy.attempts:
                logger.warning(
                    "[saga=%s] %s failed after %d attempt(s): %s", saga_id, step, attempt, e.message
                )
                raise
            delay = next(delays)
            logger.warning(
                "[saga=%s] %s attempt %d/%d failed (%s); retrying in %.2fs",
                saga_id, step, attempt, policy.attempts, e.message, delay,
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
