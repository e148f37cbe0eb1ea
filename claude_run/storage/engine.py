"""Storage engine: session listing, full reads and incremental reads.

``ClaudeStorage`` owns the file index, the history cache and the in-flight
request table. Nothing outside this module mutates them; watcher
notifications reach them through ``attach()``.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from claude_run.models import ConversationMessage, Session, StreamResult
from claude_run.observability import start_span
from claude_run.parsers.conversation import ConversationReader
from claude_run.parsers.stream import StreamReader
from claude_run.paths import HISTORY_FILENAME, PROJECTS_DIRNAME
from claude_run.storage.file_index import FileIndex
from claude_run.storage.file_watcher import (
    ChangeBus,
    ChangeEvent,
    HistoryChanged,
    SessionChanged,
    Subscription,
)
from claude_run.storage.history_cache import HistoryCache
from claude_run.storage.session_resolver import SessionResolver
from claude_run.storage.single_flight import SingleFlight

logger = logging.getLogger("claude_run.storage")


class ClaudeStorage:
    def __init__(self, claude_dir: Path | str):
        self.root = Path(claude_dir).expanduser()
        self.projects_dir = self.root / PROJECTS_DIRNAME
        self.history_path = self.root / HISTORY_FILENAME

        self.file_index = FileIndex(self.projects_dir)
        self.history = HistoryCache(self.history_path)
        self.resolver = SessionResolver(self.projects_dir, self.history)
        self.conversations = ConversationReader(self.file_index)
        self.streams = StreamReader(self.file_index)
        self._pending: SingleFlight = SingleFlight()

    async def init(self) -> None:
        """Build the file index and warm the history cache."""
        with start_span("storage.init", {"claude.dir": str(self.root)}):
            await asyncio.gather(self.file_index.build(), self.history.entries())
        logger.info("Storage ready at %s", self.root)

    # ── Queries ────────────────────────────────────────────────────

    async def list_sessions(self) -> list[Session]:
        sessions = await self._pending.run(
            f"sessions:{self.history.generation}", self.resolver.list_sessions
        )
        return list(sessions)

    async def list_projects(self) -> list[str]:
        return await self.resolver.list_projects()

    async def read_all(self, session_id: str) -> list[ConversationMessage]:
        messages = await self._pending.run(
            f"conversation:{session_id}",
            lambda: self.conversations.read_all(session_id),
        )
        return list(messages)

    async def read_from(self, session_id: str, offset: int = 0) -> StreamResult:
        return await self.streams.read_from(session_id, offset)

    async def find_session_file(self, session_id: str) -> Optional[Path]:
        return await self.file_index.locate(session_id)

    # ── Mutations driven by change notifications ───────────────────

    def invalidate_history(self) -> None:
        self.history.invalidate()

    def add_to_file_index(self, session_id: str, path: Path | str) -> None:
        self.file_index.add(session_id, path)

    def handle_change(self, event: ChangeEvent) -> None:
        if isinstance(event, HistoryChanged):
            self.invalidate_history()
        elif isinstance(event, SessionChanged):
            self.add_to_file_index(event.session_id, event.path)

    def attach(self, bus: ChangeBus) -> Subscription:
        """Keep the history cache and file index in step with ``bus``."""
        return bus.subscribe(self.handle_change)
