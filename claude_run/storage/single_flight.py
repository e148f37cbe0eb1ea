"""Keyed request coalescing for concurrent identical reads."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Share one in-progress computation between callers using the same key.

    The first caller for a key starts the computation as a task; callers that
    arrive while it runs await the same task and receive its result or its
    exception. The key is released when the task finishes, so the next call
    starts a fresh computation. Cancelling a waiter never cancels the shared
    task.
    """

    def __init__(self) -> None:
        self._calls: dict[str, asyncio.Task[T]] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def in_flight(self, key: str) -> bool:
        return key in self._calls

    async def run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(self._execute(key, fn))
            task.add_done_callback(_retrieve_exception)
            task.add_done_callback(lambda done, key=key: self._release(key, done))
            self._calls[key] = task
        return await asyncio.shield(task)

    async def _execute(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        finally:
            self._calls.pop(key, None)

    def _release(self, key: str, task: asyncio.Task) -> None:
        # Covers a task cancelled before its first step.
        if self._calls.get(key) is task:
            del self._calls[key]


def _retrieve_exception(task: asyncio.Task) -> None:
    # Waiters may all be gone by the time the task fails.
    if not task.cancelled():
        task.exception()
