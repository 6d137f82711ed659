"""
Windowed worker pool for paced concurrent fetches
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar, Union

from src.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class WindowedWorkerPool:
    """
    Runs a coroutine per item in fixed-size windows.

    Items inside a window run concurrently; the next window starts only after
    every item of the current one has finished (result or exception) and
    `delay` seconds have passed. No sleep after the last window.

    Attributes:
        window: Maximum number of in-flight items
        delay: Pause between windows, in seconds
    """

    window: int = 10
    delay: float = 0.5

    def __post_init__(self):
        if self.window < 1:
            raise ValueError(f"window must be >= 1, got {self.window}")
        if self.delay < 0:
            raise ValueError(f"delay must be >= 0, got {self.delay}")

    def windows(self, items: Sequence[T]) -> List[Sequence[T]]:
        return [items[i:i + self.window] for i in range(0, len(items), self.window)]

    async def run(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
        on_window: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> List[Union[R, BaseException]]:
        """Return one entry per item in input order: the result or the raised exception.

        `on_window` is awaited after each window drains, before the pause.
        """
        results: List[Union[R, BaseException]] = []
        batches = self.windows(items)
        for index, batch in enumerate(batches, 1):
            outcomes = await asyncio.gather(*(worker(item) for item in batch), return_exceptions=True)
            results.extend(outcomes)

            done = min(index * self.window, len(items))
            if done % 100 == 0 or done == len(items):
                logger.info(f"Progress: {done}/{len(items)} ({round(done / len(items) * 100)}%)")

            if on_window is not None:
                await on_window()

            if index < len(batches) and self.delay > 0:
                await asyncio.sleep(self.delay)
        return results
