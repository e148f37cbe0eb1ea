"""Pydantic models for history entries, sessions and conversation records."""
from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional

# ── History / session models ───────────────────────────────────────

class HistoryEntry(BaseModel):
    """One line of history.jsonl. Unknown producer fields are ignored."""
    model_config = ConfigDict(extra="ignore")

    project: str = ""
    timestamp: int = 0
    display: str = ""
    sessionId: Optional[str] = None


class Session(BaseModel):
    id: str
    display: str = ""
    timestamp: int = 0
    project: str = ""
    projectName: str = ""


# ── Conversation models ────────────────────────────────────────────

class ConversationMessage(BaseModel):
    """A session-log record. Only ``type`` is interpreted; everything else passes through."""
    model_config = ConfigDict(extra="allow")

    type: str = ""

    def payload(self) -> dict:
        """Return the record as it was read from the log."""
        return self.model_dump(exclude_unset=True)


class StreamResult(BaseModel):
    messages: list[ConversationMessage] = Field(default_factory=list)
    nextOffset: int = 0
