import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    retries: int = 2
    base_delay: float = 0.5
    max_delay: float = 10.0
    max_jitter: float = 0.25

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt + 1`` (``attempt`` is zero-based)."""
        backoff = min(self.max_delay, self.base_delay * (2 ** attempt))
        return backoff + random.uniform(0, self.max_jitter)


DISPATCH_RETRY_POLICY = RetryPolicy(retries=2, base_delay=0.5, max_jitter=0.25)


def is_transient_http_status(status: int) -> bool:
    return status == 408 or status == 429 or 500 <= status <= 599


async def retry(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy = DISPATCH_RETRY_POLICY,
    *,
    should_retry: Callable[[BaseException], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation(attempt)`` up to ``policy.retries + 1`` times.

    The last error is re-raised once retries are exhausted, or immediately when
    ``should_retry`` says the error is not worth another try.
    """
    for attempt in range(policy.retries + 1):
        try:
            return await operation(attempt)
        except Exception as exc:
            if attempt >= policy.retries or (should_retry is not None and not should_retry(exc)):
                raise
            delay = policy.delay_for(attempt)
            logger.debug("retrying in %.3fs after attempt=%s error=%s", delay, attempt + 1, exc)
            await sleep(delay)
    raise RuntimeError("unreachable")
