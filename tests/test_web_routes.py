"""Tests for web routes and API endpoints.

Tests the FastAPI application routes using httpx AsyncClient, covering
the sync trigger, sync status and health endpoints.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from jobtracker.config_schema import AppConfig
from jobtracker.core.errors import DatabaseError
from jobtracker.db.store import DatabaseStore
from jobtracker.engine.scheduler import SyncScheduler
from jobtracker.engine.sync import SyncSummary
from jobtracker.web.app import create_app

SESSION = "session-token-123"
AUTH = {"Authorization": f"Bearer {SESSION}"}

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Return an initialized DatabaseStore."""
    s = DatabaseStore(data_dir / "test_web.db")
    await s.initialize()
    return s


@pytest.fixture
async def owner_id(store: DatabaseStore) -> str:
    """A signed-in owner with Gmail connected."""
    user = await store.upsert_user("candidate@example.com")
    await store.set_session_token(user.id, SESSION)
    await store.set_mailbox_credential(user.id, "refresh-token")
    return user.id


@pytest.fixture
def orchestrator() -> MagicMock:
    mock = MagicMock()
    mock.is_running.return_value = False
    mock.run_sync = AsyncMock(
        side_effect=lambda owner_id, credential, watermark, trigger="manual": SyncSummary(
            run_id="run-1", owner_id=owner_id, trigger=trigger
        )
    )
    return mock


@pytest.fixture
async def scheduler(orchestrator: MagicMock, store: DatabaseStore, sample_config: AppConfig):
    s = SyncScheduler(orchestrator, store, sample_config)
    yield s
    await s.shutdown()


@pytest.fixture
def app(
    store: DatabaseStore,
    sample_config: AppConfig,
    scheduler: SyncScheduler,
    orchestrator: MagicMock,
) -> FastAPI:
    """Create a FastAPI app with test dependencies."""
    test_app = create_app()

    # Override app state with test dependencies
    test_app.state.store = store
    test_app.state.config = sample_config
    test_app.state.orchestrator = orchestrator
    test_app.state.scheduler = scheduler

    return test_app


@pytest.fixture
async def client(app: FastAPI) -> AsyncClient:
    """Return an httpx AsyncClient for the test app."""
    # Override lifespan to avoid real initialization
    app.router.lifespan_context = _noop_lifespan
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@asynccontextmanager
async def _noop_lifespan(app: FastAPI):
    """No-op lifespan that preserves existing app.state."""
    yield


# ---------------------------------------------------------------------------
# Tests: POST /api/sync/gmail
# ---------------------------------------------------------------------------


async def test_trigger_sync_returns_202(
    client: AsyncClient,
    owner_id: str,
    scheduler: SyncScheduler,
    orchestrator: MagicMock,
):
    """A connected owner gets 202 and the sync runs in the background."""
    response = await client.post("/api/sync/gmail", headers=AUTH)

    assert response.status_code == 202
    assert response.json() == {"accepted": True}

    await scheduler.wait_for_pending()
    orchestrator.run_sync.assert_awaited_once()
    assert orchestrator.run_sync.call_args.args[0] == owner_id


async def test_trigger_sync_without_gmail_returns_400(
    client: AsyncClient,
    store: DatabaseStore,
    owner_id: str,
):
    """An owner with no stored credential is told to connect Gmail."""
    await store.set_mailbox_credential(owner_id, None)

    response = await client.post("/api/sync/gmail", headers=AUTH)

    assert response.status_code == 400
    assert response.json()["detail"] == "Gmail not connected"


@pytest.mark.parametrize(
    "headers",
    [{}, {"Authorization": "Bearer wrong-token"}, {"Authorization": f"Basic {SESSION}"}],
)
async def test_trigger_sync_requires_session(
    client: AsyncClient,
    owner_id: str,
    headers: dict[str, str],
):
    """Missing or unknown sessions are rejected with 401."""
    response = await client.post("/api/sync/gmail", headers=headers)
    assert response.status_code == 401


async def test_trigger_sync_without_scheduler_returns_503(
    client: AsyncClient,
    app: FastAPI,
    owner_id: str,
):
    """The endpoint degrades to 503 when the scheduler failed to start."""
    app.state.scheduler = None

    response = await client.post("/api/sync/gmail", headers=AUTH)

    assert response.status_code == 503


async def test_trigger_sync_database_error_returns_500(
    client: AsyncClient,
    app: FastAPI,
    owner_id: str,
):
    """Store failures while queueing surface as 500."""
    broken = MagicMock()
    broken.trigger_manual_sync = AsyncMock(side_effect=DatabaseError("locked"))
    app.state.scheduler = broken

    response = await client.post("/api/sync/gmail", headers=AUTH)

    assert response.status_code == 500


# ---------------------------------------------------------------------------
# Tests: GET /api/sync/status
# ---------------------------------------------------------------------------


async def test_sync_status_before_first_sync(client: AsyncClient, owner_id: str):
    """A never-synced owner reports no watermark and no runs."""
    response = await client.get("/api/sync/status", headers=AUTH)

    assert response.status_code == 200
    data: dict[str, Any] = response.json()
    assert data["gmail_connected"] is True
    assert data["last_sync_at"] is None
    assert data["latest_run"] is None
    assert data["running"] is False


async def test_sync_status_reports_latest_run(
    client: AsyncClient,
    store: DatabaseStore,
    owner_id: str,
):
    """Watermark and latest run counts are reported."""
    await store.update_watermark(owner_id, datetime(2025, 3, 1, 8, 0, tzinfo=UTC))
    await store.start_sync_run("run-42", owner_id, "scheduled")
    await store.finish_sync_run("run-42", "success", fetched=5, created=2, updated=1, skipped=2)

    response = await client.get("/api/sync/status", headers=AUTH)

    data = response.json()
    assert data["last_sync_at"].startswith("2025-03-01T08:00:00")
    assert data["latest_run"]["id"] == "run-42"
    assert data["latest_run"]["status"] == "success"
    assert data["latest_run"]["created"] == 2


async def test_sync_status_requires_session(client: AsyncClient):
    response = await client.get("/api/sync/status")
    assert response.status_code == 401


# ---------------------------------------------------------------------------
# Tests: GET /api/health
# ---------------------------------------------------------------------------


async def test_health_degraded_until_scheduler_started(client: AsyncClient):
    """Health reports degraded while the cadence job is not running."""
    response = await client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "degraded"
    assert data["database"] is True
    assert data["scheduler_running"] is False


async def test_health_healthy_with_running_scheduler(
    client: AsyncClient,
    scheduler: SyncScheduler,
):
    """Health reports healthy once the scheduler is started."""
    await scheduler.start()

    response = await client.get("/api/health")

    data = response.json()
    assert data["status"] == "healthy"
    assert data["scheduler_running"] is True


async def test_health_without_database(client: AsyncClient, app: FastAPI):
    """Missing store is reported, not raised."""
    app.state.store = None

    response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["database"] is False
