"""claude-run FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from claude_run import config
from claude_run.routers.api import api_router
from claude_run.storage.engine import ClaudeStorage
from claude_run.storage.file_watcher import ChangeBus, ChangeWatcher
from claude_run.observability import initialize as initialize_observability, shutdown as shutdown_observability

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("claude_run")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("claude-run backend starting up (root=%s)", config.CLAUDE_DIR)
    initialize_observability(app)

    # 1. Storage engine and change bus
    storage = ClaudeStorage(config.CLAUDE_DIR)
    bus = ChangeBus()
    app.state.storage = storage
    app.state.change_bus = bus

    # 2. Engine handlers go first so caches are current when stream consumers wake
    app.state.storage_subscription = storage.attach(bus)

    # 3. Build the file index and load history
    await storage.init()

    # 4. Start File Watcher
    watcher = ChangeWatcher(config.CLAUDE_DIR, bus)
    app.state.watcher = watcher
    await watcher.start()

    yield

    logger.info("claude-run backend shutting down")
    await watcher.stop()
    app.state.storage_subscription.close()
    shutdown_observability(app)


app = FastAPI(
    title="claude-run API",
    description="Session listing and live conversation streams over Claude logs",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for the Vite dev server
if config.DEV_MODE:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.FRONTEND_ORIGIN],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

app.include_router(api_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    storage = getattr(app.state, "storage", None)
    watcher = getattr(app.state, "watcher", None)
    return {
        "status": "ok",
        "watcher": "running" if watcher is not None and watcher.is_running else "stopped",
        "indexedSessions": len(storage.file_index) if storage is not None else 0,
    }


def run() -> None:
    """Serve the app on CLAUDE_RUN_HOST:CLAUDE_RUN_PORT."""
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT, log_level="info")


if __name__ == "__main__":
    run()
