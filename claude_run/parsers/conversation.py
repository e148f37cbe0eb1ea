"""Full-file parse of a session log into display order."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

import aiofiles

from claude_run.models import ConversationMessage
from claude_run.storage.file_index import FileIndex

logger = logging.getLogger("claude_run.storage")

MESSAGE_TYPES = frozenset({"user", "assistant"})
SUMMARY_TYPE = "summary"


def parse_record(line: str) -> Optional[Any]:
    """Decode one JSONL line, or None if it is not valid JSON."""
    try:
        return json.loads(line)
    except json.JSONDecodeError:
        return None


def record_type(record: Any) -> str:
    if isinstance(record, dict):
        value = record.get("type")
        if isinstance(value, str):
            return value
    return ""


def parse_conversation(content: str) -> list[ConversationMessage]:
    """Return user/assistant records in file order with summaries at the head.

    Every summary is inserted in front of what has been collected so far, so
    several summaries end up in reverse file order.
    """
    messages: list[ConversationMessage] = []
    for line in content.split("\n"):
        if not line.strip():
            continue
        record = parse_record(line)
        kind = record_type(record)
        if kind in MESSAGE_TYPES:
            messages.append(ConversationMessage.model_validate(record))
        elif kind == SUMMARY_TYPE:
            messages.insert(0, ConversationMessage.model_validate(record))
    return messages


class ConversationReader:
    def __init__(self, file_index: FileIndex):
        self.file_index = file_index

    async def read_all(self, session_id: str) -> list[ConversationMessage]:
        path = await self.file_index.locate(session_id)
        if path is None:
            return []
        return await self.read_path(path)

    async def read_path(self, path: Path) -> list[ConversationMessage]:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
                content = await f.read()
        except OSError as e:
            logger.error(f"Error reading conversation {path}: {e}")
            return []
        return parse_conversation(content)
