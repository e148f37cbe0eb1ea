"""Observability helpers."""

from claude_run.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_scan,
    record_stream_read,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_scan",
    "record_stream_read",
]
