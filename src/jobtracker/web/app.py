"""FastAPI application for the job tracker sync engine.

Creates the FastAPI app with:
- Lifespan context manager for dependency initialization and scheduler
- The /api router (sync trigger, sync status, health)

The sync scheduler runs in the same process and event loop as uvicorn:
APScheduler's AsyncIOScheduler fires the cadence job on the loop, and the
on-demand worker is a task on the same loop.

Usage:
    from jobtracker.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from jobtracker.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup, clean up on shutdown.

    On startup:
    1. Load config
    2. Initialize database
    3. Initialize the Anthropic client and sync orchestrator
    4. Start the sync scheduler

    On shutdown:
    - Stop the scheduler and its worker
    """
    import anthropic

    from jobtracker.config import get_config
    from jobtracker.core.errors import ConfigLoadError, ConfigValidationError, DatabaseError
    from jobtracker.db.store import DatabaseStore
    from jobtracker.engine.scheduler import SyncScheduler
    from jobtracker.engine.sync import build_orchestrator

    app.state.config = None
    app.state.store = None
    app.state.orchestrator = None
    app.state.scheduler = None

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        yield
        return

    app.state.config = config

    # 2. Initialize database
    try:
        store = DatabaseStore(config.database.path)
        await store.initialize()
    except DatabaseError as e:
        logger.error("database_init_failed", error=str(e))
        yield
        return

    app.state.store = store

    # 3. Initialize orchestrator
    scheduler = None
    try:
        anthropic_client = anthropic.Anthropic(max_retries=3)
        orchestrator = build_orchestrator(config, store, anthropic_client)
        app.state.orchestrator = orchestrator
        scheduler = SyncScheduler(orchestrator, store, config)
    except anthropic.AnthropicError as e:
        logger.error("sync_engine_init_failed", error=str(e))

    # 4. Start scheduler
    if scheduler is not None:
        await scheduler.start()
        app.state.scheduler = scheduler

    yield

    # Shutdown
    if scheduler is not None:
        await scheduler.shutdown()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from jobtracker.web.routes import VERSION, api_router

    app = FastAPI(
        title="Job Tracker Sync",
        description="Gmail reconciliation engine for tracked job applications",
        version=VERSION,
        lifespan=lifespan,
    )

    app.include_router(api_router)

    return app
