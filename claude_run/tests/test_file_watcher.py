import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from watchfiles import Change

from claude_run.storage import file_watcher
from claude_run.storage.file_watcher import (
    ChangeBus,
    ChangeWatcher,
    Debouncer,
    HistoryChanged,
    ProjectChanged,
    SessionChanged,
    classify,
)


class ClassifyTests(unittest.TestCase):
    def test_history_log(self) -> None:
        self.assertEqual(classify("/home/me/.claude/history.jsonl"), [HistoryChanged()])

    def test_session_log_emits_session_then_project(self) -> None:
        path = Path("/home/me/.claude/projects/-work-app/abc.jsonl")
        self.assertEqual(
            classify(path),
            [SessionChanged(session_id="abc", path=path), ProjectChanged(project_id="-work-app")],
        )

    def test_other_files_are_ignored(self) -> None:
        self.assertEqual(classify("/home/me/.claude/projects/-work-app"), [])
        self.assertEqual(classify("/home/me/.claude/projects/-work-app/notes.md"), [])


class ChangeBusTests(unittest.IsolatedAsyncioTestCase):
    async def test_subscribers_receive_events_in_order(self) -> None:
        bus = ChangeBus()
        first: list = []
        second: list = []
        bus.subscribe(first.append)
        bus.subscribe(second.append)

        events = [HistoryChanged(), ProjectChanged(project_id="p")]
        for event in events:
            bus.publish(event)

        self.assertEqual(first, events)
        self.assertEqual(second, events)

    async def test_failing_handler_does_not_block_others(self) -> None:
        bus = ChangeBus()
        received: list = []

        def broken(event):
            raise ValueError("boom")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        with self.assertLogs("claude_run.watcher", level="ERROR"):
            bus.publish(HistoryChanged())
        self.assertEqual(received, [HistoryChanged()])

    async def test_closed_subscription_stops_delivery(self) -> None:
        bus = ChangeBus()
        received: list = []
        subscription = bus.subscribe(received.append)
        self.assertTrue(subscription.active)

        subscription.close()
        subscription.close()
        bus.publish(HistoryChanged())

        self.assertFalse(subscription.active)
        self.assertEqual(received, [])
        self.assertEqual(len(bus), 0)

    async def test_event_stream_unsubscribes_on_exit(self) -> None:
        bus = ChangeBus()
        async with bus.listen() as stream:
            self.assertEqual(len(bus), 1)
            bus.publish(HistoryChanged())
            bus.publish(ProjectChanged(project_id="p"))
            self.assertEqual(await stream.get(), HistoryChanged())
            self.assertEqual(await stream.get(), ProjectChanged(project_id="p"))
        self.assertEqual(len(bus), 0)
        self.assertTrue(stream.closed)

    async def test_closing_one_stream_leaves_others_subscribed(self) -> None:
        bus = ChangeBus()
        leaving = bus.listen()
        staying = bus.listen()
        leaving.close()

        bus.publish(HistoryChanged())
        self.assertEqual(await asyncio.wait_for(staying.get(), timeout=1), HistoryChanged())
        staying.close()


class DebouncerTests(unittest.IsolatedAsyncioTestCase):
    async def test_burst_for_one_key_fires_once(self) -> None:
        fired: list[str] = []
        debouncer = Debouncer(20, fired.append)

        for _ in range(5):
            debouncer.touch("/a")
            await asyncio.sleep(0.005)
        self.assertEqual(fired, [])
        self.assertEqual(debouncer.pending, 1)

        await asyncio.sleep(0.1)
        self.assertEqual(fired, ["/a"])
        self.assertEqual(debouncer.pending, 0)

    async def test_keys_settle_independently(self) -> None:
        fired: list[str] = []
        debouncer = Debouncer(10, fired.append)
        debouncer.touch("/a")
        debouncer.touch("/b")
        debouncer.touch("/a")
        await asyncio.sleep(0.1)
        self.assertEqual(sorted(fired), ["/a", "/b"])

    async def test_key_is_removed_before_callback(self) -> None:
        seen_pending: list[int] = []
        debouncer: Debouncer

        def callback(key: str) -> None:
            seen_pending.append(debouncer.pending)

        debouncer = Debouncer(5, callback)
        debouncer.touch("/a")
        await asyncio.sleep(0.05)
        self.assertEqual(seen_pending, [0])

    async def test_cancel_all_drops_pending_timers(self) -> None:
        fired: list[str] = []
        debouncer = Debouncer(10, fired.append)
        debouncer.touch("/a")
        debouncer.cancel_all()
        await asyncio.sleep(0.05)
        self.assertEqual(fired, [])


class ChangeWatcherTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name).resolve()
        (self.root / "projects").mkdir()
        self.bus = ChangeBus()
        self.events: list = []
        self.bus.subscribe(self.events.append)

    def test_watch_filter_limits_paths_and_change_kinds(self) -> None:
        watcher = ChangeWatcher(self.root, self.bus)
        history = str(self.root / "history.jsonl")
        session = str(self.root / "projects" / "-p" / "s.jsonl")

        self.assertTrue(watcher.watch_filter(Change.modified, history))
        self.assertTrue(watcher.watch_filter(Change.added, session))
        self.assertTrue(watcher.watch_filter(Change.added, str(self.root / "projects" / "-p")))
        self.assertFalse(watcher.watch_filter(Change.deleted, session))
        self.assertFalse(watcher.watch_filter(Change.modified, str(self.root / "projects" / "-p" / "sub" / "x.jsonl")))
        self.assertFalse(watcher.watch_filter(Change.modified, str(self.root / "todos" / "x.json")))

    async def test_write_burst_becomes_one_notification(self) -> None:
        watcher = ChangeWatcher(self.root, self.bus, debounce_ms=10)
        path = str(self.root / "projects" / "-p" / "s1.jsonl")

        for _ in range(10):
            watcher.handle_path(path)
        await asyncio.sleep(0.1)

        self.assertEqual(
            self.events,
            [SessionChanged(session_id="s1", path=Path(path)), ProjectChanged(project_id="-p")],
        )

    async def test_history_write_emits_history_changed(self) -> None:
        watcher = ChangeWatcher(self.root, self.bus, debounce_ms=5)
        watcher.handle_path(str(self.root / "history.jsonl"))
        await asyncio.sleep(0.05)
        self.assertEqual(self.events, [HistoryChanged()])

    async def test_missing_root_is_awaited_then_watched(self) -> None:
        root = self.root / "absent"
        watcher = ChangeWatcher(root, self.bus, debounce_ms=10, use_polling=True, poll_interval_ms=50, retry_seconds=0.05)
        await watcher.start()
        self.addAsyncCleanup(watcher.stop)
        self.assertTrue(watcher.is_running)
        await asyncio.sleep(0.1)
        self.assertEqual(self.events, [])

        root.mkdir()
        (root / "history.jsonl").write_text('{"project": "/p", "timestamp": 1, "display": "hi"}\n', encoding="utf-8")

        for _ in range(50):
            await asyncio.sleep(0.1)
            if HistoryChanged() in self.events:
                break
        self.assertIn(HistoryChanged(), self.events)
        self.assertTrue(watcher.is_running)

    async def test_watch_error_is_logged_and_watching_resumes(self) -> None:
        session = str(self.root / "projects" / "-p" / "s1.jsonl")
        calls = 0

        async def flaky_awatch(*paths, stop_event=None, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("watch backend failed")
            yield {(Change.modified, session)}
            await stop_event.wait()

        watcher = ChangeWatcher(self.root, self.bus, debounce_ms=5, retry_seconds=0)
        with patch.object(file_watcher, "awatch", flaky_awatch):
            with self.assertLogs("claude_run.watcher", level="ERROR") as logs:
                await watcher.start()
                self.addAsyncCleanup(watcher.stop)
                for _ in range(50):
                    await asyncio.sleep(0.02)
                    if self.events:
                        break

        self.assertEqual(calls, 2)
        self.assertTrue(any("watch backend failed" in line for line in logs.output))
        self.assertTrue(watcher.is_running)
        self.assertEqual(
            self.events,
            [SessionChanged(session_id="s1", path=Path(session)), ProjectChanged(project_id="-p")],
        )

    async def test_detects_appends_on_disk(self) -> None:
        watcher = ChangeWatcher(self.root, self.bus, debounce_ms=10, use_polling=True, poll_interval_ms=50)
        session = self.root / "projects" / "-p" / "live.jsonl"
        session.parent.mkdir()
        session.write_text("", encoding="utf-8")

        await watcher.start()
        self.addAsyncCleanup(watcher.stop)
        self.assertTrue(watcher.is_running)

        for _ in range(50):
            with session.open("a", encoding="utf-8") as f:
                f.write('{"type": "user"}\n')
            await asyncio.sleep(0.1)
            if any(isinstance(e, SessionChanged) for e in self.events):
                break

        changed = [e for e in self.events if isinstance(e, SessionChanged)]
        self.assertTrue(changed)
        self.assertEqual(changed[0].session_id, "live")

        await watcher.stop()
        self.assertFalse(watcher.is_running)


if __name__ == "__main__":
    unittest.main()
