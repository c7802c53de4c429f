"""Tests for the sync orchestrator.

The mail source and extractor are mocked; the reconciler and store are
real so records, timelines and watermarks can be checked end to end.
"""

import asyncio
import json
from collections.abc import Iterator
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import aiosqlite
import anthropic
import httpx
import pytest
import structlog

from jobtracker.config_schema import AppConfig
from jobtracker.core.errors import (
    AuthenticationError,
    DatabaseError,
    MailTransportError,
    OracleError,
)
from jobtracker.core.logging import get_correlation_id
from jobtracker.db.store import DatabaseStore
from jobtracker.engine.reconciler import Reconciler
from jobtracker.engine.sync import SyncOrchestrator, build_orchestrator
from jobtracker.extractor.fact_extractor import ExtractedFact, FactExtractor
from jobtracker.mail.messages import RawEmail

# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------


def _make_email(message_id: str, sender: str, subject: str) -> RawEmail:
    return RawEmail(
        sender=sender,
        to="candidate@example.com",
        subject=subject,
        date="Mon, 03 Mar 2025 10:00:00 +0000",
        body="...",
        message_id=message_id,
        conversation_id=f"thread-{message_id}",
    )


def _fact_for(email: RawEmail, company: str, status: str) -> ExtractedFact:
    return ExtractedFact(
        company=company,
        role="Backend Engineer",
        status=status,
        confidence=0.9,
        applied_date=date(2025, 3, 3),
        sender=email.sender,
        subject=email.subject,
        conversation_id=email.conversation_id,
        message_id=email.message_id,
    )


ATLASSIAN_ACK = _make_email("m1", "Careers <jobs@atlassian.com>", "Thank you for applying")
ATLASSIAN_INTERVIEW = _make_email("m2", "Sarah <sarah@atlassian.com>", "Interview invitation")
NEWSLETTER = _make_email("m3", "News <news@weekly.io>", "Your application for our newsletter")
CANVA_ACK = _make_email("m4", "Canva <talent@canva.com>", "Application received")

FACTS = {
    "m1": _fact_for(ATLASSIAN_ACK, "Atlassian", "Acknowledged"),
    "m2": _fact_for(ATLASSIAN_INTERVIEW, "Atlassian", "Interview"),
    "m3": None,
    "m4": _fact_for(CANVA_ACK, "Canva", "Acknowledged"),
}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    s = DatabaseStore(data_dir / "test_sync.db")
    await s.initialize()
    return s


@pytest.fixture
async def owner_id(store: DatabaseStore) -> str:
    user = await store.upsert_user("candidate@example.com")
    await store.set_mailbox_credential(user.id, "refresh-token")
    return user.id


@pytest.fixture
def mail_source() -> MagicMock:
    source = MagicMock()
    source.fetch_candidate_emails.side_effect = lambda credential, since: iter(
        [ATLASSIAN_ACK, ATLASSIAN_INTERVIEW, NEWSLETTER, CANVA_ACK]
    )
    return source


@pytest.fixture
def extractor() -> AsyncMock:
    mock = AsyncMock()
    mock.extract.side_effect = lambda email: FACTS[email.message_id]
    return mock


@pytest.fixture
def orchestrator(
    mail_source: MagicMock, extractor: AsyncMock, store: DatabaseStore
) -> SyncOrchestrator:
    return SyncOrchestrator(mail_source, extractor, Reconciler(store), store)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestRunSync:
    async def test_counts_and_records(
        self, orchestrator: SyncOrchestrator, store: DatabaseStore, owner_id: str
    ) -> None:
        summary = await orchestrator.run_sync(owner_id, "refresh-token", None)

        assert summary.fetched == 4
        assert summary.created == 2
        assert summary.updated == 1
        assert summary.skipped == 1
        assert summary.created + summary.updated + summary.skipped == summary.fetched

        records = {r.company: r for r in await store.list_records(owner_id)}
        assert set(records) == {"Atlassian", "Canva"}
        assert records["Atlassian"].status == "Interview"
        assert records["Canva"].status == "Acknowledged"

    async def test_advances_watermark_and_records_run(
        self, orchestrator: SyncOrchestrator, store: DatabaseStore, owner_id: str
    ) -> None:
        before = datetime.now(UTC)

        summary = await orchestrator.run_sync(owner_id, "refresh-token", None, trigger="cli")

        user = await store.get_user(owner_id)
        assert user.last_sync_at >= before - timedelta(seconds=1)

        run = await store.get_latest_sync_run(owner_id)
        assert run.id == summary.run_id
        assert run.status == "success"
        assert run.triggered_by == "cli"
        assert (run.fetched, run.created, run.updated, run.skipped) == (4, 2, 1, 1)
        assert get_correlation_id() is None

    async def test_passes_credential_and_watermark_to_source(
        self, orchestrator: SyncOrchestrator, mail_source: MagicMock, owner_id: str
    ) -> None:
        watermark = datetime(2025, 3, 1, tzinfo=UTC)

        await orchestrator.run_sync(owner_id, "refresh-token", watermark)

        mail_source.fetch_candidate_emails.assert_called_once_with("refresh-token", watermark)

    async def test_second_run_is_idempotent(
        self, orchestrator: SyncOrchestrator, store: DatabaseStore, owner_id: str
    ) -> None:
        await orchestrator.run_sync(owner_id, "refresh-token", None)
        records_before = await store.list_records(owner_id)

        summary = await orchestrator.run_sync(owner_id, "refresh-token", None)

        assert (summary.created, summary.updated, summary.skipped) == (0, 0, 4)
        records_after = await store.list_records(owner_id)
        assert [(r.id, r.status) for r in records_after] == [
            (r.id, r.status) for r in records_before
        ]

    async def test_empty_mailbox(
        self,
        orchestrator: SyncOrchestrator,
        mail_source: MagicMock,
        store: DatabaseStore,
        owner_id: str,
    ) -> None:
        mail_source.fetch_candidate_emails.side_effect = lambda credential, since: iter([])

        summary = await orchestrator.run_sync(owner_id, "refresh-token", None)

        assert summary.fetched == 0
        assert (await store.get_user(owner_id)).last_sync_at is not None


class TestFailures:
    async def test_auth_failure_propagates_and_keeps_watermark(
        self,
        orchestrator: SyncOrchestrator,
        mail_source: MagicMock,
        store: DatabaseStore,
        owner_id: str,
    ) -> None:
        mail_source.fetch_candidate_emails.side_effect = AuthenticationError("revoked")

        with pytest.raises(AuthenticationError):
            await orchestrator.run_sync(owner_id, "refresh-token", None)

        assert (await store.get_user(owner_id)).last_sync_at is None
        run = await store.get_latest_sync_run(owner_id)
        assert run.status == "failed"
        assert "AuthenticationError" in run.error

    async def test_mid_stream_transport_failure_keeps_partial_work(
        self,
        orchestrator: SyncOrchestrator,
        mail_source: MagicMock,
        store: DatabaseStore,
        owner_id: str,
    ) -> None:
        def broken_stream(credential: str, since: datetime | None) -> Iterator[RawEmail]:
            def emails() -> Iterator[RawEmail]:
                yield ATLASSIAN_ACK
                raise MailTransportError("Gmail unavailable", status_code=503)

            return emails()

        mail_source.fetch_candidate_emails.side_effect = broken_stream

        with pytest.raises(MailTransportError):
            await orchestrator.run_sync(owner_id, "refresh-token", None)

        assert len(await store.list_records(owner_id)) == 1
        assert (await store.get_user(owner_id)).last_sync_at is None

    async def test_oracle_errors_are_skips(
        self, orchestrator: SyncOrchestrator, extractor: AsyncMock, owner_id: str
    ) -> None:
        def flaky(email: RawEmail) -> ExtractedFact | None:
            if email.message_id == "m2":
                raise OracleError("overloaded", message_id="m2")
            return FACTS[email.message_id]

        extractor.extract.side_effect = flaky

        summary = await orchestrator.run_sync(owner_id, "refresh-token", None)

        assert summary.fetched == 4
        assert (summary.created, summary.updated, summary.skipped) == (2, 0, 2)

    async def test_reconcile_errors_are_skips(
        self, mail_source: MagicMock, extractor: AsyncMock, store: DatabaseStore, owner_id: str
    ) -> None:
        reconciler = AsyncMock()
        reconciler.reconcile.side_effect = DatabaseError("locked")
        orchestrator = SyncOrchestrator(mail_source, extractor, reconciler, store)

        summary = await orchestrator.run_sync(owner_id, "refresh-token", None)

        assert summary.skipped == summary.fetched == 4
        assert (await store.get_user(owner_id)).last_sync_at is not None


class TestSingleFlight:
    async def test_concurrent_runs_share_one_execution(
        self,
        mail_source: MagicMock,
        extractor: AsyncMock,
        store: DatabaseStore,
        owner_id: str,
    ) -> None:
        release = asyncio.Event()

        async def slow_extract(email: RawEmail) -> ExtractedFact | None:
            await release.wait()
            return FACTS[email.message_id]

        extractor.extract.side_effect = slow_extract
        orchestrator = SyncOrchestrator(mail_source, extractor, Reconciler(store), store)

        first = asyncio.create_task(orchestrator.run_sync(owner_id, "refresh-token", None))
        await asyncio.sleep(0.05)
        assert orchestrator.is_running(owner_id)

        second = asyncio.create_task(orchestrator.run_sync(owner_id, "refresh-token", None))
        await asyncio.sleep(0)
        release.set()

        summary_a, summary_b = await asyncio.gather(first, second)

        assert summary_a.run_id == summary_b.run_id
        mail_source.fetch_candidate_emails.assert_called_once()
        assert len(await store.list_records(owner_id)) == 2
        assert not orchestrator.is_running(owner_id)

    async def test_different_owners_run_independently(
        self, orchestrator: SyncOrchestrator, store: DatabaseStore, owner_id: str
    ) -> None:
        other = await store.upsert_user("other@example.com")

        summaries = await asyncio.gather(
            orchestrator.run_sync(owner_id, "refresh-token", None),
            orchestrator.run_sync(other.id, "other-token", None),
        )

        assert summaries[0].run_id != summaries[1].run_id
        assert len(await store.list_records(owner_id)) == 2
        assert len(await store.list_records(other.id)) == 2


def test_build_orchestrator_wires_components(sample_config: AppConfig, data_dir: Path) -> None:
    store = DatabaseStore(data_dir / "unused.db")

    orchestrator = build_orchestrator(sample_config, store, MagicMock())

    assert isinstance(orchestrator, SyncOrchestrator)
    assert not orchestrator.is_running("anyone")


class TestRunBookkeeping:
    async def test_unexpected_error_still_finishes_run_as_failed(
        self,
        orchestrator: SyncOrchestrator,
        mail_source: MagicMock,
        store: DatabaseStore,
        owner_id: str,
    ) -> None:
        mail_source.fetch_candidate_emails.side_effect = RuntimeError("iterator exploded")

        with pytest.raises(RuntimeError):
            await orchestrator.run_sync(owner_id, "refresh-token", None)

        run = await store.get_latest_sync_run(owner_id)
        assert run.status == "failed"
        assert "RuntimeError" in run.error
        assert (await store.get_user(owner_id)).last_sync_at is None

    async def test_log_context_carries_run_and_owner(
        self, orchestrator: SyncOrchestrator, extractor: AsyncMock, owner_id: str
    ) -> None:
        seen: list[dict] = []

        def record_context(email: RawEmail) -> ExtractedFact | None:
            seen.append(structlog.contextvars.get_contextvars())
            return FACTS[email.message_id]

        extractor.extract.side_effect = record_context

        summary = await orchestrator.run_sync(owner_id, "refresh-token", None, trigger="cli")

        assert seen[0]["sync_run_id"] == summary.run_id
        assert seen[0]["owner_id"] == owner_id
        assert seen[0]["trigger"] == "cli"
        assert "sync_run_id" not in structlog.contextvars.get_contextvars()


class TestWithRealExtractor:
    async def test_response_validation_error_is_a_skip(
        self,
        mail_source: MagicMock,
        store: DatabaseStore,
        owner_id: str,
        sample_config: AppConfig,
    ) -> None:
        mail_source.fetch_candidate_emails.side_effect = lambda credential, since: iter(
            [ATLASSIAN_ACK, CANVA_ACK]
        )
        answer = {"company": "Canva", "role": "Designer", "confidence": 0.9}
        client = MagicMock()
        client.messages.create.side_effect = [
            anthropic.APIResponseValidationError(
                response=httpx.Response(
                    200, request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")
                ),
                body=None,
            ),
            SimpleNamespace(
                content=[SimpleNamespace(type="text", text=json.dumps(answer))],
                usage=SimpleNamespace(input_tokens=10, output_tokens=5),
            ),
        ]
        orchestrator = SyncOrchestrator(
            mail_source, FactExtractor(client, sample_config), Reconciler(store), store
        )

        summary = await orchestrator.run_sync(owner_id, "refresh-token", None)

        assert (summary.fetched, summary.skipped, summary.created) == (2, 1, 1)
        assert (await store.get_latest_sync_run(owner_id)).status == "success"
        assert (await store.get_user(owner_id)).last_sync_at is not None


class TestRecordWritesAreAtomic:
    async def test_failed_event_insert_leaves_no_record(
        self,
        orchestrator: SyncOrchestrator,
        mail_source: MagicMock,
        store: DatabaseStore,
        owner_id: str,
    ) -> None:
        mail_source.fetch_candidate_emails.side_effect = lambda credential, since: iter(
            [ATLASSIAN_ACK]
        )

        with patch.object(
            store, "_insert_event_row", AsyncMock(side_effect=aiosqlite.OperationalError("full"))
        ):
            summary = await orchestrator.run_sync(owner_id, "refresh-token", None)

        assert (summary.created, summary.skipped) == (0, 1)
        assert await store.list_records(owner_id) == []

        # The next run creates the record together with its event
        summary = await orchestrator.run_sync(owner_id, "refresh-token", None)

        records = await store.list_records(owner_id)
        assert summary.created == 1
        assert len(await store.get_timeline(records[0].id)) == 1

    async def test_failed_event_insert_keeps_previous_status(
        self,
        orchestrator: SyncOrchestrator,
        mail_source: MagicMock,
        store: DatabaseStore,
        owner_id: str,
    ) -> None:
        mail_source.fetch_candidate_emails.side_effect = lambda credential, since: iter(
            [ATLASSIAN_ACK]
        )
        await orchestrator.run_sync(owner_id, "refresh-token", None)
        mail_source.fetch_candidate_emails.side_effect = lambda credential, since: iter(
            [ATLASSIAN_INTERVIEW]
        )

        with patch.object(
            store, "_insert_event_row", AsyncMock(side_effect=aiosqlite.OperationalError("full"))
        ):
            summary = await orchestrator.run_sync(owner_id, "refresh-token", None)

        assert (summary.updated, summary.skipped) == (0, 1)
        [record] = await store.list_records(owner_id)
        assert record.status == "Acknowledged"
        assert len(await store.get_timeline(record.id)) == 1
