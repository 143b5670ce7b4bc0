"""
Bounded-concurrency batch executor with per-item retries.

Every step that fans out one external call per unit (one image per visual
slot, one narration clip per script section) goes through here:

  - items are split into batches of `batch_size`
  - a batch runs concurrently and resolves only when every item has either
    succeeded or exhausted its retries
  - a fixed pacing delay sits between batches
  - each item is attempted at most `1 + max_retries` times, with a
    2^(attempt-1) second backoff before each retry
  - if any item is still failing after its retries the whole run fails;
    slots are never dropped
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_BATCH_SIZE = 3
DEFAULT_MAX_RETRIES = 2
DEFAULT_BATCH_DELAY = 1.0  # seconds
BACKOFF_BASE = 1.0         # seconds, doubled per retry


class BatchItemError(RuntimeError):
    """One or more items failed after exhausting their retries."""

    def __init__(self, failures: list[tuple[int, BaseException]], attempts: int):
        self.failures = failures
        self.attempts = attempts
        first_index, first_error = failures[0]
        super().__init__(
            f"{len(failures)} item(s) failed after {attempts} attempt(s); "
            f"first failure at item {first_index}: {first_error}"
        )


def backoff_delay(retry_number: int, base: float = BACKOFF_BASE) -> float:
    """Delay before the n-th retry (1-based): 1s, 2s, 4s, ..."""
    return base * (2 ** (retry_number - 1))


async def call_with_retries(
    operation: Callable[[], Awaitable[R]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    on_retry: Optional[Callable[[int, BaseException], Awaitable[None]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> R:
    """
    Call `operation` until it succeeds or `max_retries` retries are used up.

    Returns the operation's result; re-raises the last exception otherwise.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            retries_used = attempt - 1
            if retries_used >= max_retries:
                logger.error(f"{label} failed after {attempt} attempt(s): {e}")
                raise
            delay = backoff_delay(retries_used + 1)
            logger.warning(
                f"{label} failed on attempt {attempt}/{max_retries + 1}: {e} "
                f"(retrying in {delay:.1f}s)"
            )
            if on_retry is not None:
                await on_retry(attempt, e)
            await sleep(delay)


async def run_in_batches(
    items: Sequence[T],
    operation: Callable[[T, int], Awaitable[R]],
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_retries: int = DEFAULT_MAX_RETRIES,
    batch_delay: float = DEFAULT_BATCH_DELAY,
    on_batch: Optional[Callable[[int, int, int], Awaitable[None]]] = None,
    on_retry: Optional[Callable[[int, int, BaseException], Awaitable[None]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> list[R]:
    """
    Run `operation(item, index)` for every item, `batch_size` at a time.

    Args:
        items:       Units of work, e.g. visual slots.
        operation:   Async per-item call. Raising means "this attempt failed".
        batch_size:  Maximum number of in-flight operations.
        max_retries: Retries per item after its first attempt.
        batch_delay: Pause between consecutive batches (seconds).
        on_batch:    Called with (batch_number, total_batches, batch_len).
        on_retry:    Called with (index, attempt, error) before each retry.
        sleep:       Injected for tests.

    Returns:
        Results in input order.

    Raises:
        BatchItemError: some item exhausted its retries. Raised once the batch
        containing it has fully resolved; later batches are not started.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")

    results: list[R] = []
    total_batches = (len(items) + batch_size - 1) // batch_size

    for start in range(0, len(items), batch_size):
        batch = items[start:start + batch_size]
        batch_number = start // batch_size + 1
        if on_batch is not None:
            await on_batch(batch_number, total_batches, len(batch))

        async def _run(item: T, index: int) -> R:
            async def _attempt() -> R:
                return await operation(item, index)

            async def _retry_hook(attempt: int, error: BaseException) -> None:
                if on_retry is not None:
                    await on_retry(index, attempt, error)

            return await call_with_retries(
                _attempt,
                max_retries=max_retries,
                on_retry=_retry_hook,
                sleep=sleep,
                label=f"item {index}",
            )

        outcomes = await asyncio.gather(
            *(_run(item, start + offset) for offset, item in enumerate(batch)),
            return_exceptions=True,
        )

        failures = [
            (start + offset, outcome)
            for offset, outcome in enumerate(outcomes)
            if isinstance(outcome, BaseException)
        ]
        if failures:
            raise BatchItemError(failures, attempts=max_retries + 1)

        results.extend(outcomes)

        if start + batch_size < len(items):
            await sleep(batch_delay)

    return results
