"""Change watcher using watchfiles.

Watches history.jsonl and the session logs under projects/, settles bursts of
writes per path, and publishes typed change events to subscribers.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from watchfiles import Change, awatch

from claude_run import config
from claude_run.paths import (
    HISTORY_FILENAME,
    PROJECTS_DIRNAME,
    is_history_path,
    is_session_file,
    session_id_from_path,
)

logger = logging.getLogger("claude_run.watcher")


# ── Events ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HistoryChanged:
    pass


@dataclass(frozen=True)
class SessionChanged:
    session_id: str
    path: Path


@dataclass(frozen=True)
class ProjectChanged:
    project_id: str


ChangeEvent = Union[HistoryChanged, SessionChanged, ProjectChanged]
ChangeHandler = Callable[[ChangeEvent], None]


def classify(path: str | Path) -> list[ChangeEvent]:
    """Map a settled path to the events it stands for, in emission order."""
    path = Path(path)
    if is_history_path(path):
        return [HistoryChanged()]
    if is_session_file(path.name):
        return [
            SessionChanged(session_id=session_id_from_path(path), path=path),
            ProjectChanged(project_id=path.parent.name),
        ]
    return []


# ── Publish / subscribe ────────────────────────────────────────────

class Subscription:
    def __init__(self, bus: ChangeBus, handler: ChangeHandler):
        self._bus = bus
        self.handler = handler

    @property
    def active(self) -> bool:
        return self._bus._is_subscribed(self)

    def close(self) -> None:
        self._bus._unsubscribe(self)


class ChangeBus:
    """Delivers change events to every subscriber, synchronously and in order."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def __len__(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, handler: ChangeHandler) -> Subscription:
        subscription = Subscription(self, handler)
        self._subscriptions.append(subscription)
        return subscription

    def listen(self) -> EventStream:
        return EventStream(self)

    def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions):
            try:
                subscription.handler(event)
            except Exception as e:
                logger.error(f"Change handler failed for {event}: {e}")

    def _is_subscribed(self, subscription: Subscription) -> bool:
        return any(s is subscription for s in self._subscriptions)

    def _unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions = [s for s in self._subscriptions if s is not subscription]


class EventStream:
    """Queue-backed subscription for async consumers.

    Use as an async context manager so the subscription is released when the
    consumer goes away.
    """

    def __init__(self, bus: ChangeBus):
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._subscription = bus.subscribe(self._queue.put_nowait)

    async def get(self) -> ChangeEvent:
        return await self._queue.get()

    def close(self) -> None:
        self._subscription.close()

    @property
    def closed(self) -> bool:
        return not self._subscription.active

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self.get()

    async def __aenter__(self) -> EventStream:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


# ── Debounce ───────────────────────────────────────────────────────

class Debouncer:
    """Per-key settle timers: each touch restarts the key's timer."""

    def __init__(self, delay_ms: int, callback: Callable[[str], None]):
        self.delay = max(0, delay_ms) / 1000
        self.callback = callback
        self._timers: dict[str, asyncio.TimerHandle] = {}

    @property
    def pending(self) -> int:
        return len(self._timers)

    def touch(self, key: str) -> None:
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.delay, self._fire, key)

    def cancel_all(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    def _fire(self, key: str) -> None:
        # Drop the key first so the callback may touch it again.
        self._timers.pop(key, None)
        try:
            self.callback(key)
        except Exception as e:
            logger.error(f"Debounced callback failed for {key}: {e}")


# ── Watcher ────────────────────────────────────────────────────────

class ChangeWatcher:
    """Background watcher that turns raw filesystem events into change events.

    Uses `watchfiles` (Rust-accelerated) for efficient watching.
    """

    def __init__(
        self,
        claude_dir: Path | str,
        bus: ChangeBus,
        debounce_ms: int = config.DEBOUNCE_MS,
        use_polling: bool = config.USE_POLLING,
        poll_interval_ms: int = config.POLL_INTERVAL_MS,
        retry_seconds: float = config.WATCH_RETRY_SECONDS,
    ):
        self.root = Path(claude_dir).expanduser().resolve()
        self.projects_dir = self.root / PROJECTS_DIRNAME
        self.history_path = self.root / HISTORY_FILENAME
        self.bus = bus
        self.debounce_ms = debounce_ms
        self.use_polling = use_polling
        self.poll_interval_ms = poll_interval_ms
        self.retry_seconds = retry_seconds
        self.debouncer = Debouncer(debounce_ms, self._emit)
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    async def start(self) -> None:
        """Start watching in a background task.

        A missing root is not an error: the task waits for it to appear.
        """
        if self._running:
            logger.warning("File watcher already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop())
        logger.info(f"File watcher started for {self.root}")

    async def stop(self) -> None:
        """Stop the file watcher and drop pending notifications."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.debouncer.cancel_all()
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def watch_filter(self, change: Change, path: str) -> bool:
        """Accept creates and modifications of the history log and of paths
        at most two levels below projects/ (project dir, then session log)."""
        if change not in (Change.added, Change.modified):
            return False
        candidate = Path(path)
        if candidate == self.history_path:
            return True
        try:
            relative = candidate.relative_to(self.projects_dir)
        except ValueError:
            return False
        return 1 <= len(relative.parts) <= 2

    def handle_path(self, path: str) -> None:
        self.debouncer.touch(path)

    def _emit(self, path: str) -> None:
        for event in classify(path):
            self.bus.publish(event)

    def _announce_existing(self) -> None:
        """Touch logs that were written before watching began."""
        if self.history_path.is_file():
            self.handle_path(str(self.history_path))
        if self.projects_dir.is_dir():
            for session_path in sorted(self.projects_dir.glob("*/*.jsonl")):
                self.handle_path(str(session_path))

    async def _wait_for_root(self) -> bool:
        """Block until the root exists. Returns False if stopped first."""
        if self.root.is_dir():
            return True
        logger.info(f"Watch root {self.root} does not exist yet, waiting for it")
        while self._running:
            await asyncio.sleep(self.retry_seconds)
            if self.root.is_dir():
                logger.info(f"Watch root {self.root} appeared")
                self._announce_existing()
                return True
        return False

    async def _watch_loop(self) -> None:
        """Main watching loop. Restarts the underlying watch after errors."""
        logger.info(f"Watching {self.history_path} and {self.projects_dir}")
        while self._running:
            try:
                if not await self._wait_for_root():
                    break
                async for changes in awatch(
                    self.root,
                    watch_filter=self.watch_filter,
                    debounce=self.debounce_ms,
                    stop_event=self._stop_event,
                    force_polling=self.use_polling,
                    poll_delay_ms=self.poll_interval_ms,
                    recursive=True,
                ):
                    if not self._running:
                        break
                    for _, path in sorted(changes, key=lambda change: change[1]):
                        self.handle_path(path)
            except asyncio.CancelledError:
                logger.info("File watcher task cancelled")
                raise
            except Exception as e:
                logger.error(f"File watcher error: {e}")
                if self._running:
                    await asyncio.sleep(self.retry_seconds)
                continue
            if self._running and not self.root.is_dir():
                # Root removed under us; go back to waiting for it.
                continue
            break
        self._running = False
