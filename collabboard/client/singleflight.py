from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Collapse concurrent calls into one shared in-flight operation.

    The first caller starts ``factory()`` as a task; callers arriving while it
    runs await that same task and receive its result or its exception. Each
    waiter is shielded, so cancelling one waiter never cancels the shared
    work. Once the task settles the handle is released and the next call
    starts fresh.
    """

    def __init__(self) -> None:
        self._task: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._task
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            task.add_done_callback(self._release)
            self._task = task
        return await asyncio.shield(task)

    def _release(self, task: asyncio.Task) -> None:
        if self._task is task:
            self._task = None
        # Mark the exception retrieved even when every waiter was cancelled
        if not task.cancelled():
            task.exception()

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
