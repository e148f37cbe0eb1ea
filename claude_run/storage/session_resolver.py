"""Rebuild the session list from history entries."""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

import aiofiles.os

from claude_run.models import HistoryEntry, Session
from claude_run.observability import record_scan
from claude_run.paths import encode_project_path, project_name, session_id_from_path
from claude_run.storage.file_index import list_session_files
from claude_run.storage.history_cache import HistoryCache

logger = logging.getLogger("claude_run.storage")

# (filename, mtime in ms) in listing order
_Candidates = list[tuple[str, float]]


def closest_by_mtime(candidates: _Candidates, timestamp: float) -> Optional[str]:
    """Pick the filename whose mtime is nearest ``timestamp``.

    Equal distances keep the earlier candidate, so ties follow listing order.
    """
    closest: Optional[str] = None
    closest_diff = float("inf")
    for name, mtime in candidates:
        diff = abs(mtime - timestamp)
        if diff < closest_diff:
            closest_diff = diff
            closest = name
    return closest


class SessionResolver:
    """Derives sessions and projects from the history log.

    History entries written without a ``sessionId`` are matched to the session
    log in their project directory whose modification time is closest to the
    entry timestamp. This is an approximation: it is the only signal available
    without reading every candidate log.
    """

    def __init__(self, projects_dir: Path, history: HistoryCache):
        self.projects_dir = projects_dir
        self.history = history

    async def list_sessions(self) -> list[Session]:
        started = time.perf_counter()
        entries = await self.history.entries()
        sessions: list[Session] = []
        seen_ids: set[str] = set()
        candidates_by_dir: dict[str, Optional[_Candidates]] = {}

        for entry in entries:
            session_id = entry.sessionId
            if not session_id:
                session_id = await self._resolve_missing_id(entry, candidates_by_dir)

            if not session_id or session_id in seen_ids:
                continue

            seen_ids.add(session_id)
            sessions.append(
                Session(
                    id=session_id,
                    display=entry.display,
                    timestamp=entry.timestamp,
                    project=entry.project,
                    projectName=project_name(entry.project),
                )
            )

        sessions.sort(key=lambda s: s.timestamp, reverse=True)
        record_scan("session_list", "success", (time.perf_counter() - started) * 1000)
        return sessions

    async def list_projects(self) -> list[str]:
        entries = await self.history.entries()
        return sorted({entry.project for entry in entries if entry.project})

    async def find_session_by_timestamp(self, project: str, timestamp: float) -> Optional[str]:
        candidates = await self._candidates(encode_project_path(project))
        if not candidates:
            return None
        closest = closest_by_mtime(candidates, timestamp)
        return session_id_from_path(closest) if closest else None

    async def _resolve_missing_id(
        self,
        entry: HistoryEntry,
        candidates_by_dir: dict[str, Optional[_Candidates]],
    ) -> Optional[str]:
        # One listing per project directory per request.
        encoded = encode_project_path(entry.project)
        if encoded not in candidates_by_dir:
            candidates_by_dir[encoded] = await self._candidates(encoded)
        candidates = candidates_by_dir[encoded]
        if not candidates:
            return None
        closest = closest_by_mtime(candidates, entry.timestamp)
        return session_id_from_path(closest) if closest else None

    async def _candidates(self, encoded_project: str) -> Optional[_Candidates]:
        project_dir = self.projects_dir / encoded_project
        try:
            names = await list_session_files(project_dir)
        except OSError:
            # Project directory missing or unreadable.
            return None

        stats = await asyncio.gather(
            *(aiofiles.os.stat(project_dir / name) for name in names),
            return_exceptions=True,
        )
        candidates: _Candidates = []
        for name, stat in zip(names, stats):
            if isinstance(stat, OSError):
                logger.debug("Skipping %s/%s: %s", project_dir, name, stat)
                continue
            if isinstance(stat, BaseException):
                raise stat
            candidates.append((name, stat.st_mtime_ns / 1_000_000))
        return candidates
