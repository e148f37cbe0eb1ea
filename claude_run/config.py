"""claude-run backend configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


# Root of the log tree: <root>/history.jsonl and <root>/projects/
CLAUDE_DIR = Path(os.getenv("CLAUDE_RUN_DIR", str(Path.home() / ".claude"))).expanduser()

# Change watcher tuning
DEBOUNCE_MS = _env_int("CLAUDE_RUN_DEBOUNCE_MS", 20)
USE_POLLING = _env_bool("CLAUDE_RUN_USE_POLLING", False)
POLL_INTERVAL_MS = _env_int("CLAUDE_RUN_POLL_INTERVAL_MS", 100)
WATCH_RETRY_SECONDS = _env_int("CLAUDE_RUN_WATCH_RETRY_SECONDS", 1)

# Live streams
HEARTBEAT_SECONDS = _env_int("CLAUDE_RUN_HEARTBEAT_SECONDS", 30)

# Observability
OTEL_ENABLED = _env_bool("CLAUDE_RUN_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("CLAUDE_RUN_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("CLAUDE_RUN_OTEL_SERVICE_NAME", "claude-run")
PROM_PORT = _env_int("CLAUDE_RUN_PROM_PORT", 0)

# Server settings
DEV_MODE = _env_bool("CLAUDE_RUN_DEV", False)
HOST = os.getenv("CLAUDE_RUN_HOST", "127.0.0.1")
PORT = _env_int("CLAUDE_RUN_PORT", 12001)

# CORS (dev UI only)
FRONTEND_ORIGIN = os.getenv("CLAUDE_RUN_FRONTEND_ORIGIN", "http://localhost:12000")
