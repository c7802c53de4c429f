"""HTTP routes for the sync engine.

All routes live on api_router (prefix /api) and use FastAPI dependency
injection to access shared state:
- POST /api/sync/gmail: queue an on-demand sync for the caller
- GET  /api/sync/status: watermark and latest run for the caller
- GET  /api/health: liveness for Docker and monitoring
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from jobtracker.core.errors import DatabaseError, NoCredentialError
from jobtracker.core.logging import get_logger
from jobtracker.db.store import DatabaseStore, User
from jobtracker.engine.scheduler import SyncScheduler
from jobtracker.engine.sync import SyncOrchestrator
from jobtracker.web.dependencies import (
    get_current_user,
    get_orchestrator,
    get_scheduler,
    get_store,
)

logger = get_logger(__name__)

VERSION = "0.1.0"

api_router = APIRouter(prefix="/api")


def _iso(value) -> str | None:
    return value.isoformat() if value else None


@api_router.post("/sync/gmail", status_code=202)
async def trigger_gmail_sync(
    user: User = Depends(get_current_user),
    scheduler: SyncScheduler | None = Depends(get_scheduler),
) -> dict[str, Any]:
    """Queue a Gmail sync for the caller. Returns before the sync runs."""
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Sync scheduler not available")

    try:
        return await scheduler.trigger_manual_sync(user.id)
    except NoCredentialError:
        raise HTTPException(status_code=400, detail="Gmail not connected") from None
    except DatabaseError as e:
        logger.error("manual_sync_trigger_failed", owner_id=user.id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to queue sync") from None


@api_router.get("/sync/status")
async def sync_status(
    user: User = Depends(get_current_user),
    store: DatabaseStore = Depends(get_store),
    scheduler: SyncScheduler | None = Depends(get_scheduler),
    orchestrator: SyncOrchestrator | None = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Report the caller's watermark and most recent sync run."""
    latest = await store.get_latest_sync_run(user.id)

    latest_run = None
    if latest is not None:
        latest_run = {
            "id": latest.id,
            "trigger": latest.triggered_by,
            "status": latest.status,
            "started_at": _iso(latest.started_at),
            "finished_at": _iso(latest.finished_at),
            "fetched": latest.fetched,
            "created": latest.created,
            "updated": latest.updated,
            "skipped": latest.skipped,
            "error": latest.error,
        }

    return {
        "gmail_connected": user.has_mailbox,
        "last_sync_at": _iso(user.last_sync_at),
        "running": orchestrator.is_running(user.id) if orchestrator else False,
        "next_scheduled_sync": _iso(scheduler.next_cadence_run()) if scheduler else None,
        "latest_run": latest_run,
    }


@api_router.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """Health check endpoint for Docker and monitoring."""
    store = getattr(request.app.state, "store", None)
    scheduler = getattr(request.app.state, "scheduler", None)
    scheduler_running = bool(scheduler and scheduler.started)

    return {
        "status": "healthy" if store is not None and scheduler_running else "degraded",
        "database": store is not None,
        "scheduler_running": scheduler_running,
        "version": VERSION,
    }
