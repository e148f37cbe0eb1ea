"""HTTP + server-sent-event routes over the storage engine."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from claude_run import config
from claude_run.models import Session
from claude_run.storage.engine import ClaudeStorage
from claude_run.storage.file_watcher import ChangeBus, EventStream, HistoryChanged, SessionChanged

logger = logging.getLogger("claude_run.api")

api_router = APIRouter(prefix="/api", tags=["sessions"])

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _get_storage(request: Request) -> ClaudeStorage:
    storage = getattr(request.app.state, "storage", None)
    if not storage:
        raise HTTPException(status_code=503, detail="Storage not initialized")
    return storage


def _get_bus(request: Request) -> ChangeBus:
    bus = getattr(request.app.state, "change_bus", None)
    if bus is None:
        raise HTTPException(status_code=503, detail="Change watcher not initialized")
    return bus


def format_sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _heartbeat() -> str:
    return format_sse("heartbeat", {"timestamp": int(time.time() * 1000)})


async def session_list_events(
    storage: ClaudeStorage,
    events: EventStream,
    heartbeat_seconds: float = config.HEARTBEAT_SECONDS,
) -> AsyncIterator[str]:
    """Full session list, then only new or re-timestamped sessions on history changes."""
    known: dict[str, int] = {}
    try:
        sessions = await storage.list_sessions()
        known = {s.id: s.timestamp for s in sessions}
        yield format_sse("sessions", [s.model_dump() for s in sessions])

        while True:
            try:
                event = await asyncio.wait_for(events.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield _heartbeat()
                continue
            if not isinstance(event, HistoryChanged):
                continue

            try:
                sessions = await storage.list_sessions()
            except Exception as e:
                logger.warning(f"Session stream closed after list failure: {e}")
                return

            updated = [s for s in sessions if known.get(s.id) != s.timestamp]
            for s in sessions:
                known[s.id] = s.timestamp
            if updated:
                yield format_sse("sessionsUpdate", [s.model_dump() for s in updated])
    finally:
        events.close()


async def conversation_events(
    storage: ClaudeStorage,
    session_id: str,
    offset: int,
    events: EventStream,
    heartbeat_seconds: float = config.HEARTBEAT_SECONDS,
) -> AsyncIterator[str]:
    """Messages from ``offset`` on, then whatever each change to the session appends."""
    try:
        result = await storage.read_from(session_id, offset)
        offset = result.nextOffset
        yield format_sse("messages", [m.payload() for m in result.messages])

        while True:
            try:
                event = await asyncio.wait_for(events.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield _heartbeat()
                continue
            if not isinstance(event, SessionChanged) or event.session_id != session_id:
                continue

            result = await storage.read_from(session_id, offset)
            offset = result.nextOffset
            if result.messages:
                yield format_sse("messages", [m.payload() for m in result.messages])
    finally:
        events.close()


@api_router.get("/sessions", response_model=list[Session])
async def list_sessions(request: Request):
    """Return all sessions, most recent first."""
    return await _get_storage(request).list_sessions()


@api_router.get("/projects", response_model=list[str])
async def list_projects(request: Request):
    return await _get_storage(request).list_projects()


@api_router.get("/sessions/stream")
async def stream_sessions(request: Request):
    storage = _get_storage(request)
    # Subscribe before the first listing so no history change is missed.
    events = _get_bus(request).listen()
    return StreamingResponse(
        session_list_events(storage, events),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@api_router.get("/conversation/{session_id}")
async def get_conversation(session_id: str, request: Request) -> list[dict]:
    """Return the whole conversation, summaries first."""
    messages = await _get_storage(request).read_all(session_id)
    return [m.payload() for m in messages]


@api_router.get("/conversation/{session_id}/stream")
async def stream_conversation(
    session_id: str,
    request: Request,
    offset: int = Query(0, ge=0, description="Byte offset returned by a previous read"),
):
    storage = _get_storage(request)
    events = _get_bus(request).listen()
    return StreamingResponse(
        conversation_events(storage, session_id, offset, events),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )
