import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from transfer_indexer.errors import TransientRpcError

log = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.8,
    retry_on: Tuple[Type[BaseException], ...] = (TransientRpcError,),
    label: str = "rpc",
) -> T:
    """
    Await `operation()` up to `attempts` times.

    Sleeps base_delay * attempt between tries (linear backoff, asyncio.sleep so
    other chains keep running). Only exceptions in `retry_on` are retried; anything
    else propagates on the first occurrence. The last error is re-raised once the
    budget is spent.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt == attempts:
                log.warning(f"[retry] {label} failed after {attempts} attempts: {e}")
                raise
            delay = base_delay * attempt
            log.info(f"[retry] {label} attempt {attempt}/{attempts} failed ({e}); sleeping {delay:.2f}s")
            await asyncio.sleep(delay)


class RetryPolicy:
    """Bundles the retry budget so collaborators share one configuration."""

    def __init__(self, attempts: int = 3, base_delay: float = 0.8):
        self.attempts = attempts
        self.base_delay = base_delay

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "rpc") -> T:
        return await with_retry(operation, self.attempts, self.base_delay, label=label)
