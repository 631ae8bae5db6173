from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


async def promise_timeout(timeout_s: float | None, coro: Awaitable[T]) -> T:
    if timeout_s is None:
        return await coro
    return await asyncio.wait_for(coro, timeout=timeout_s)


async def cancel_suppress(task: asyncio.Task[Any] | None) -> None:
    if not task:
        return
    # Never cancel/await the current task: doing so raises
    # "Task cannot await on itself".
    if task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def ensure_task(coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
    return asyncio.create_task(coro, name=name)


class Debouncer:
    """
    Cancellable delayed call.

    Each `trigger()` restarts the timer; `callback` runs once `delay_s` has
    passed without another trigger. `cancel()` drops a scheduled call.
    """

    def __init__(
        self,
        delay_s: float,
        callback: Callable[[], Awaitable[object]],
        *,
        name: str | None = None,
    ) -> None:
        self.delay_s = delay_s
        self._callback = callback
        self._name = name
        self._task: asyncio.Task[None] | None = None

    @property
    def is_scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = ensure_task(self._fire(), name=self._name)

    async def _fire(self) -> None:
        await asyncio.sleep(self.delay_s)
        # Past the delay the call is committed; a retrigger now schedules a new one.
        self._task = None
        await self._callback()

    async def cancel(self) -> None:
        task, self._task = self._task, None
        await cancel_suppress(task)


class KeyedLocks:
    """One `asyncio.Lock` per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)
