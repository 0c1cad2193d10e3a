"""Per-engine task exclusion and cooperative cancellation."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from storyspine.exceptions import OperationCancelled

T = TypeVar("T")

TASK_CLASSES = ("summary", "vector", "anchor")


class TaskGuard:
    """At most one running task per class; a second acquire gets None, not a queue slot."""

    def __init__(self) -> None:
        self._running: set[str] = set()

    def acquire(self, name: str) -> Callable[[], None] | None:
        if name in self._running:
            return None
        self._running.add(name)
        released = False

        def release() -> None:
            nonlocal released
            if not released:
                released = True
                self._running.discard(name)

        return release

    def is_running(self, name: str) -> bool:
        return name in self._running

    @property
    def running(self) -> list[str]:
        return sorted(self._running)


class CancelToken:
    """Cancellation flag that also interrupts sleeps and in-flight awaits.

    Waiters are plain futures on the running loop, so one token can outlive
    several event loops.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._waiters: set[asyncio.Future[None]] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        for fut in list(self._waiters):
            if not fut.done():
                fut.set_result(None)

    def reset(self) -> None:
        self._cancelled = False
        self._waiters.clear()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled("operation cancelled")

    def _waiter(self) -> asyncio.Future[None]:
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.add(fut)
        fut.add_done_callback(self._waiters.discard)
        return fut

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; False when woken by cancellation."""
        if self._cancelled:
            return False
        waiter = self._waiter()
        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        finally:
            if not waiter.done():
                waiter.cancel()
        return False

    async def run(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless cancellation fires first, in which case it is abandoned."""
        self.raise_if_cancelled()
        task: asyncio.Future[Any] = asyncio.ensure_future(aw)
        waiter = self._waiter()
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        raise OperationCancelled("operation cancelled")
