"""Parsed view of history.jsonl with explicit invalidation."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import aiofiles
from pydantic import ValidationError

from claude_run.models import HistoryEntry
from claude_run.observability import record_scan
from claude_run.storage.single_flight import SingleFlight

logger = logging.getLogger("claude_run.storage")


@dataclass(frozen=True)
class Fresh:
    entries: tuple[HistoryEntry, ...]


@dataclass(frozen=True)
class Invalidated:
    pass


CacheState = Union[Fresh, Invalidated]


def parse_history_lines(content: str) -> list[HistoryEntry]:
    """Parse history records, skipping blank, malformed and non-object lines."""
    entries: list[HistoryEntry] = []
    for line in content.split("\n"):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            # The producer may be mid-append.
            continue
        if not isinstance(record, dict):
            continue
        try:
            entries.append(HistoryEntry.model_validate(record))
        except ValidationError:
            logger.debug("Skipping invalid history record: %.80s", line)
    return entries


class HistoryCache:
    """Memoized history entries in file (append) order.

    The cache starts ``Invalidated``; the first ``entries()`` call reads the
    log and moves it to ``Fresh``. ``invalidate()`` drops back to
    ``Invalidated`` without reading; the next ``entries()`` reloads.
    """

    def __init__(self, history_path: Path):
        self.history_path = history_path
        self._state: CacheState = Invalidated()
        self._generation = 0
        self._loads: SingleFlight[list[HistoryEntry]] = SingleFlight()

    @property
    def state(self) -> CacheState:
        return self._state

    @property
    def generation(self) -> int:
        """Bumped by every ``invalidate()``."""
        return self._generation

    def invalidate(self) -> None:
        self._state = Invalidated()
        self._generation += 1

    async def entries(self) -> list[HistoryEntry]:
        state = self._state
        if isinstance(state, Fresh):
            return list(state.entries)
        # A call made after invalidate() never joins a load started before it.
        generation = self._generation
        entries = await self._loads.run(
            f"history:{generation}", lambda: self._reload(generation)
        )
        return list(entries)

    async def _reload(self, generation: int) -> list[HistoryEntry]:
        entries = await self._load()
        # An invalidation that arrived mid-read wins; the next call re-reads.
        if generation == self._generation:
            self._state = Fresh(tuple(entries))
        return entries

    async def _load(self) -> list[HistoryEntry]:
        started = time.perf_counter()
        try:
            async with aiofiles.open(self.history_path, "r", encoding="utf-8", errors="replace") as f:
                content = await f.read()
        except FileNotFoundError:
            record_scan("history_load", "missing", (time.perf_counter() - started) * 1000)
            return []

        entries = parse_history_lines(content)
        record_scan("history_load", "success", (time.perf_counter() - started) * 1000)
        logger.debug("Loaded %d history entries from %s", len(entries), self.history_path)
        return entries
