import asyncio
from typing import AsyncIterator, Iterator, TypeVar

T = TypeVar("T")

_DONE = object()


async def iter_in_thread(it: Iterator[T]) -> AsyncIterator[T]:
    """Drain a blocking iterator one item at a time in a worker thread."""
    while True:
        item = await asyncio.to_thread(next, it, _DONE)
        if item is _DONE:
            return
        yield item  # type: ignore[misc]
