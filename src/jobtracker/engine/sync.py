"""Sync orchestrator: one owner's mailbox into their application records.

Pipeline for one run:
1. Generate a sync_run_id and set it as the log correlation ID
2. Fetch candidate emails bounded by the owner's watermark
3. For each email, in mailbox order: extract facts, then reconcile
4. On full completion, advance the watermark to now (UTC)
5. Record the run outcome in sync_runs

Fetch faults (credential rejected, Gmail unreachable) end the run, leave
the watermark untouched and propagate. Faults that concern a single email
are counted as skips, so created + updated + skipped == fetched always.

Runs for the same owner are single-flight: a run requested while one is in
flight joins it and receives the same summary.

Usage:
    from jobtracker.engine.sync import SyncOrchestrator

    orchestrator = SyncOrchestrator(mail_source, extractor, reconciler, store)
    summary = await orchestrator.run_sync(owner_id, credential, last_sync_at)
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from jobtracker.core.errors import (
    DatabaseError,
    MailTransportError,
    OracleError,
    RecordValidationError,
)
from jobtracker.core.logging import bind_sync_context, clear_sync_context, get_logger

if TYPE_CHECKING:
    import anthropic

    from jobtracker.config_schema import AppConfig
    from jobtracker.db.store import DatabaseStore
    from jobtracker.engine.reconciler import Reconciler
    from jobtracker.extractor.fact_extractor import FactExtractor
    from jobtracker.mail.messages import MailSource, RawEmail

logger = get_logger(__name__)


@dataclass
class SyncSummary:
    """Counts for one sync run."""

    run_id: str
    owner_id: str
    trigger: str = "manual"
    created: int = 0
    updated: int = 0
    skipped: int = 0
    fetched: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SyncOrchestrator:
    """Runs the fetch -> extract -> reconcile pipeline for one owner.

    Attributes:
        _mail_source: Candidate email source (blocking; driven via to_thread)
        _extractor: Claude fact extractor
        _reconciler: Record reconciler
        _store: Database store for watermarks and run history
        _in_flight: Running sync task per owner
    """

    def __init__(
        self,
        mail_source: MailSource,
        extractor: FactExtractor,
        reconciler: Reconciler,
        store: DatabaseStore,
    ):
        self._mail_source = mail_source
        self._extractor = extractor
        self._reconciler = reconciler
        self._store = store
        self._in_flight: dict[str, asyncio.Task[SyncSummary]] = {}

    def is_running(self, owner_id: str) -> bool:
        """Whether a sync for this owner is currently in flight."""
        task = self._in_flight.get(owner_id)
        return task is not None and not task.done()

    async def run_sync(
        self,
        owner_id: str,
        credential: str,
        watermark: datetime | None,
        trigger: str = "manual",
    ) -> SyncSummary:
        """Sync one owner's mailbox, or join the sync already running for them.

        Args:
            owner_id: Owner whose records are reconciled
            credential: The owner's Gmail refresh token
            watermark: Last successful sync time, or None for a first sync
            trigger: What requested the run (scheduled, manual, cli)

        Returns:
            SyncSummary with created/updated/skipped/fetched counts

        Raises:
            AuthenticationError: If the credential is rejected while fetching
            MailTransportError: If Gmail cannot be reached while fetching
        """
        existing = self._in_flight.get(owner_id)
        if existing is not None and not existing.done():
            logger.info("sync_joined_in_flight", owner_id=owner_id, trigger=trigger)
            return await asyncio.shield(existing)

        task = asyncio.create_task(self._run(owner_id, credential, watermark, trigger))
        self._in_flight[owner_id] = task
        task.add_done_callback(lambda t: self._forget(owner_id, t))
        return await asyncio.shield(task)

    def _forget(self, owner_id: str, task: asyncio.Task[SyncSummary]) -> None:
        if self._in_flight.get(owner_id) is task:
            del self._in_flight[owner_id]

    async def _run(
        self,
        owner_id: str,
        credential: str,
        watermark: datetime | None,
        trigger: str,
    ) -> SyncSummary:
        run_id = str(uuid.uuid4())
        bind_sync_context(run_id, owner_id=owner_id, trigger=trigger)
        start_time = time.monotonic()
        summary = SyncSummary(run_id=run_id, owner_id=owner_id, trigger=trigger)

        logger.info(
            "sync_start",
            owner_id=owner_id,
            trigger=trigger,
            watermark=watermark.isoformat() if watermark else None,
        )
        await self._record_start(run_id, owner_id, trigger)

        try:
            emails = await asyncio.to_thread(
                self._mail_source.fetch_candidate_emails,
                credential,
                watermark,
            )

            while True:
                # Each message body is fetched lazily by the iterator
                email = await asyncio.to_thread(next, emails, None)
                if email is None:
                    break

                summary.fetched += 1
                action = await self._process_email(owner_id, email)
                if action == "created":
                    summary.created += 1
                elif action == "updated":
                    summary.updated += 1
                else:
                    summary.skipped += 1

            await self._store.update_watermark(owner_id, datetime.now(UTC))

        except Exception as e:
            # Any escape ends the run; the sync_runs row must not stay "running"
            summary.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.error(
                "sync_failed",
                owner_id=owner_id,
                error=str(e),
                error_type=type(e).__name__,
                fetched=summary.fetched,
            )
            await self._record_finish(summary, "failed", error=f"{type(e).__name__}: {e}")
            clear_sync_context()
            raise

        summary.duration_ms = int((time.monotonic() - start_time) * 1000)
        await self._record_finish(summary, "success")

        logger.info(
            "sync_complete",
            owner_id=owner_id,
            duration_ms=summary.duration_ms,
            fetched=summary.fetched,
            created=summary.created,
            updated=summary.updated,
            skipped=summary.skipped,
        )
        clear_sync_context()
        return summary

    async def _process_email(self, owner_id: str, email: RawEmail) -> str:
        """Extract and reconcile one email. Returns created, updated or skipped."""
        try:
            fact = await self._extractor.extract(email)
        except (OracleError, MailTransportError) as e:
            logger.warning(
                "email_extraction_failed",
                message_id=email.message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return "skipped"

        if fact is None:
            logger.debug("email_not_actionable", message_id=email.message_id)
            return "skipped"

        try:
            outcome = await self._reconciler.reconcile(owner_id, fact)
        except (DatabaseError, RecordValidationError) as e:
            logger.warning(
                "email_reconcile_failed",
                message_id=email.message_id,
                company=fact.company,
                error=str(e),
                error_type=type(e).__name__,
            )
            return "skipped"

        return outcome.action

    async def _record_start(self, run_id: str, owner_id: str, trigger: str) -> None:
        try:
            await self._store.start_sync_run(run_id, owner_id, trigger)
        except DatabaseError as e:
            logger.warning("sync_run_record_failed", error=str(e))

    async def _record_finish(
        self,
        summary: SyncSummary,
        status: str,
        error: str | None = None,
    ) -> None:
        try:
            await self._store.finish_sync_run(
                summary.run_id,
                status,
                fetched=summary.fetched,
                created=summary.created,
                updated=summary.updated,
                skipped=summary.skipped,
                error=error,
            )
        except DatabaseError as e:
            logger.warning("sync_run_record_failed", error=str(e))


def build_orchestrator(
    config: AppConfig,
    store: DatabaseStore,
    anthropic_client: anthropic.Anthropic,
) -> SyncOrchestrator:
    """Wire a SyncOrchestrator from configuration and shared clients."""
    from jobtracker.engine.reconciler import Reconciler
    from jobtracker.extractor.fact_extractor import FactExtractor
    from jobtracker.mail.messages import MailSource

    return SyncOrchestrator(
        mail_source=MailSource(config.google, config.sync),
        extractor=FactExtractor(anthropic_client, config, store),
        reconciler=Reconciler(store),
        store=store,
    )
