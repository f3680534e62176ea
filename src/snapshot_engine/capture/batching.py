"""Sequential batches of concurrent per-file operations."""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar, Union

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_BATCH_SIZE = 10


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[tuple[T, Union[R, BaseException]]]:
    """Runs `worker` over items in sequential batches.

    Items inside one batch run concurrently. A batch completes only once every
    operation in it has settled, and the next batch starts afterwards. A
    failing item never cancels its siblings: its exception is returned in
    place of a result.

    Args:
        items: The inputs to process.
        worker: Coroutine function applied to each item.
        batch_size: Maximum number of concurrent operations.

    Returns:
        (item, result-or-exception) pairs in input order.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    outcomes: list[tuple[T, Union[R, BaseException]]] = []
    for start in range(0, len(items), batch_size):
        batch = items[start : start + batch_size]
        results = await asyncio.gather(
            *(worker(item) for item in batch), return_exceptions=True
        )
        outcomes.extend(zip(batch, results))
    return outcomes
