"""Bounded-concurrency helper: run coroutines over items in fixed-size batches."""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def chunked(items: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    """Yield consecutive slices of *items* of at most *size* elements."""
    if size < 1:
        raise ValueError(f"Batch size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield items[start : start + size]


async def gather_batch(
    batch: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
) -> list[tuple[T, R | None]]:
    """Run *worker* over one batch concurrently.

    A worker that raises contributes ``None`` for its item; the exception is
    logged and does not cancel the rest of the batch.
    """
    results = await asyncio.gather(*(worker(item) for item in batch), return_exceptions=True)
    paired: list[tuple[T, R | None]] = []
    for item, result in zip(batch, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.warning("Worker failed for %r: %s", item, result)
            paired.append((item, None))
        else:
            paired.append((item, result))
    return paired
