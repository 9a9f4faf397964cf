"""Coordination primitives shared by the process handle and its relays.

- CancelToken: explicit cancellation signal handed to each relay at spawn time
- JoinGroup: counts outstanding relay loops, lets teardown wait for zero
- OnceResult: runs a coroutine exactly once and fans the outcome out to
  every caller

All three are bound to the running asyncio loop and are not thread-safe;
callers from other threads must hop onto the loop first
(``loop.call_soon_threadsafe``).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

__all__ = [
    "CancelToken",
    "JoinGroup",
    "OnceResult",
]

T = TypeVar("T")


class CancelToken:
    """One-shot cancellation signal.

    Example:
        token = CancelToken()
        relay = asyncio.create_task(relay_stream(..., token=token, ...))
        token.cancel()  # relay stops at its next suspension point
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Fire the signal. Calling it again has no effect."""
        self._event.set()

    async def wait(self) -> None:
        """Block until the signal fires."""
        await self._event.wait()


class JoinGroup:
    """Counting join primitive (wait-group).

    ``add()`` is called before a loop is spawned and ``done()`` from the
    loop's ``finally`` block, so ``wait()`` returns only after every loop
    has actually left its body.
    """

    def __init__(self) -> None:
        self._count = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def count(self) -> int:
        return self._count

    def add(self, n: int = 1) -> None:
        if n < 1:
            raise ValueError(f"JoinGroup.add() needs a positive count, got {n}")
        self._count += n
        self._idle.clear()

    def done(self) -> None:
        if self._count <= 0:
            raise RuntimeError("JoinGroup.done() called more times than add()")
        self._count -= 1
        if self._count == 0:
            self._idle.set()

    async def wait(self) -> None:
        await self._idle.wait()


class OnceResult(Generic[T]):
    """Single-fire barrier around a coroutine factory.

    The first ``get()`` starts ``factory()`` as a task. Every caller, first
    or not, awaits that same task and observes the identical return value
    or exception. The task is shielded: a caller that gets cancelled (for
    example by ``asyncio.wait_for``) stops waiting, but the underlying
    operation keeps running for everybody else.
    """

    def __init__(self, factory: Callable[[], Awaitable[T]]) -> None:
        self._factory = factory
        self._task: asyncio.Future[T] | None = None

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def get(self) -> T:
        if self._task is None:
            self._task = asyncio.ensure_future(self._factory())
        return await asyncio.shield(self._task)
