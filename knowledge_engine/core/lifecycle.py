"""Initialization helpers for lazily constructed handles."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class InitOnce(Generic[T]):
    """Run an async initializer at most once at a time.

    The first caller starts the initializer; concurrent callers await the same
    task. A failed run is forgotten so a later call can try again.
    """

    def __init__(self, initializer: Callable[[], Awaitable[T]]):
        self._initializer = initializer
        self._task: asyncio.Task[T] | None = None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done() and not self._task.cancelled() and self._task.exception() is None

    async def get(self) -> T:
        if self._task is None:
            self._task = asyncio.ensure_future(self._initializer())
        task = self._task
        try:
            return await asyncio.shield(task)
        except BaseException:
            if task.done() and self._task is task:
                self._task = None
            raise

    def reset(self) -> None:
        """Forget a finished initialization (used on shutdown)."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
