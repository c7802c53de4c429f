"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan and stored
on app.state for concurrent access by the web routes and the scheduler.

Usage:
    from jobtracker.web.dependencies import get_current_user

    @router.get("/sync/status")
    async def sync_status(user: User = Depends(get_current_user)):
        ...
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

# Resolved at runtime: FastAPI inspects these annotations
from jobtracker.config_schema import AppConfig
from jobtracker.db.store import DatabaseStore, User
from jobtracker.engine.scheduler import SyncScheduler
from jobtracker.engine.sync import SyncOrchestrator


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state (503 if unavailable)."""
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return store


def get_config(request: Request) -> AppConfig:
    """Get the current AppConfig from app state."""
    return request.app.state.config


def get_scheduler(request: Request) -> SyncScheduler | None:
    """Get the SyncScheduler from app state (None if it failed to start)."""
    return getattr(request.app.state, "scheduler", None)


def get_orchestrator(request: Request) -> SyncOrchestrator | None:
    """Get the SyncOrchestrator from app state."""
    return getattr(request.app.state, "orchestrator", None)


async def get_current_user(
    request: Request,
    store: DatabaseStore = Depends(get_store),
) -> User:
    """Resolve the caller from an ``Authorization: Bearer <session token>`` header."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing bearer token")

    user = await store.get_user_by_session_token(token.strip())
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return user
