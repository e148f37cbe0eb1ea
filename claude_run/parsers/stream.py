"""Byte-offset incremental reads of session logs that are still being written."""
from __future__ import annotations

import logging

import aiofiles
import aiofiles.os

from claude_run.models import ConversationMessage, StreamResult
from claude_run.observability import record_stream_read
from claude_run.parsers.conversation import MESSAGE_TYPES, parse_record, record_type
from claude_run.storage.file_index import FileIndex

logger = logging.getLogger("claude_run.storage")


def parse_stream_chunk(chunk: bytes) -> tuple[list[ConversationMessage], int]:
    """Parse complete records from the front of ``chunk``.

    Returns the user/assistant messages and the number of bytes consumed.
    Each line accounts for its bytes plus one newline. Parsing stops at the
    first line that is not valid JSON and that line is not consumed: it is
    presumed to be a partial write and is offered again on the next read.
    """
    lines = chunk.split(b"\n")
    if lines and lines[-1] == b"":
        lines.pop()

    messages: list[ConversationMessage] = []
    consumed = 0
    for raw in lines:
        line_bytes = len(raw) + 1
        text = raw.decode("utf-8", errors="replace")
        if not text.strip():
            consumed += line_bytes
            continue
        record = parse_record(text)
        if record is None:
            break
        consumed += line_bytes
        if record_type(record) in MESSAGE_TYPES:
            messages.append(ConversationMessage.model_validate(record))
    return messages, consumed


class StreamReader:
    def __init__(self, file_index: FileIndex):
        self.file_index = file_index

    async def read_from(self, session_id: str, offset: int = 0) -> StreamResult:
        path = await self.file_index.locate(session_id)
        if path is None:
            return StreamResult(messages=[], nextOffset=0)

        offset = max(0, offset)
        try:
            size = (await aiofiles.os.stat(path)).st_size
            if offset >= size:
                return StreamResult(messages=[], nextOffset=offset)

            async with aiofiles.open(path, "rb") as f:
                await f.seek(offset)
                chunk = await f.read(size - offset)
        except OSError as e:
            logger.error(f"Error reading conversation stream {path}: {e}")
            return StreamResult(messages=[], nextOffset=offset)

        messages, consumed = parse_stream_chunk(chunk)
        record_stream_read(consumed, len(messages))
        return StreamResult(messages=messages, nextOffset=min(offset + consumed, size))
