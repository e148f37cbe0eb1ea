"""Session id -> session log path index.

Built once from every project directory, then repaired on lookup misses and
extended by watcher notifications. Entries are never removed during a run.
"""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

import aiofiles.os

from claude_run.observability import record_scan
from claude_run.paths import SESSION_SUFFIX, is_session_file, session_id_from_path

logger = logging.getLogger("claude_run.storage")


async def list_project_dirs(projects_dir: Path) -> list[Path]:
    """Return the project directories under ``projects_dir`` in name order.

    A missing projects directory yields an empty list.
    """
    try:
        names = await aiofiles.os.listdir(projects_dir)
    except FileNotFoundError:
        return []
    except OSError as e:
        logger.warning(f"Cannot list projects directory {projects_dir}: {e}")
        return []

    dirs: list[Path] = []
    for name in sorted(names):
        path = projects_dir / name
        if await aiofiles.os.path.isdir(path):
            dirs.append(path)
    return dirs


async def list_session_files(project_dir: Path) -> list[str]:
    """Return session log filenames in ``project_dir``. Raises OSError if unreadable."""
    names = await aiofiles.os.listdir(project_dir)
    return [name for name in sorted(names) if is_session_file(name)]


class FileIndex:
    def __init__(self, projects_dir: Path):
        self.projects_dir = projects_dir
        self._paths: dict[str, Path] = {}

    def __len__(self) -> int:
        return len(self._paths)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._paths

    def add(self, session_id: str, path: Path | str) -> None:
        self._paths[session_id] = Path(path)

    async def build(self) -> int:
        """Index every session log in every project directory."""
        started = time.perf_counter()
        project_dirs = await list_project_dirs(self.projects_dir)
        listings = await asyncio.gather(*(self._safe_listing(d) for d in project_dirs))

        for project_dir, names in zip(project_dirs, listings):
            for name in names:
                self._paths[session_id_from_path(name)] = project_dir / name

        record_scan("file_index_build", "success", (time.perf_counter() - started) * 1000)
        logger.info("File index built: %d sessions in %d projects", len(self._paths), len(project_dirs))
        return len(self._paths)

    async def locate(self, session_id: str) -> Optional[Path]:
        """Return the log path for ``session_id``, scanning all projects on a miss."""
        cached = self._paths.get(session_id)
        if cached is not None:
            return cached
        if not session_id:
            return None

        started = time.perf_counter()
        target = f"{session_id}{SESSION_SUFFIX}"
        # The owning project is unknown here, so every project directory is checked.
        project_dirs = await list_project_dirs(self.projects_dir)
        listings = await asyncio.gather(*(self._safe_listing(d) for d in project_dirs))

        for project_dir, names in zip(project_dirs, listings):
            if target in names:
                path = project_dir / target
                self._paths[session_id] = path
                record_scan("file_index_fallback", "hit", (time.perf_counter() - started) * 1000)
                return path

        record_scan("file_index_fallback", "miss", (time.perf_counter() - started) * 1000)
        return None

    async def _safe_listing(self, project_dir: Path) -> list[str]:
        try:
            return await list_session_files(project_dir)
        except OSError as e:
            # Directory removed or unreadable between listing and reading.
            logger.debug("Skipping project directory %s: %s", project_dir, e)
            return []
