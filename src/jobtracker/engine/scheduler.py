"""Background sync scheduling: cadence job and on-demand queue.

Two triggers feed the sync orchestrator:
- Cadence: an APScheduler interval job that walks every owner with a
  stored Gmail credential, one at a time, with a short pause between owners
- On-demand: trigger_manual_sync() puts the owner on an asyncio.Queue that
  a single worker task drains; an owner already waiting in the queue is
  not queued twice

No orchestrator fault ever escapes either loop. A failed owner is logged
and retried on the next cadence.

Usage:
    from jobtracker.engine.scheduler import SyncScheduler

    scheduler = SyncScheduler(orchestrator, store, config)
    await scheduler.start()
    await scheduler.trigger_manual_sync(owner_id)
    ...
    await scheduler.shutdown()
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from jobtracker.core.errors import DatabaseError, JobTrackerError, NoCredentialError
from jobtracker.core.logging import get_logger

if TYPE_CHECKING:
    from jobtracker.config_schema import AppConfig
    from jobtracker.db.store import DatabaseStore, MailboxAccount
    from jobtracker.engine.sync import SyncOrchestrator, SyncSummary

logger = get_logger(__name__)

CADENCE_JOB_ID = "gmail_sync_cadence"


@dataclass
class CadenceResult:
    """Result of one cadence pass over all connected owners."""

    owners: int = 0
    succeeded: int = 0
    failed: int = 0
    logs_pruned: int = 0
    summaries: list[SyncSummary] = field(default_factory=list)


class SyncScheduler:
    """Owns the cadence job and the on-demand sync worker.

    Attributes:
        _orchestrator: Runs one owner's sync
        _store: Credential store used to enumerate and look up owners
        _config: Application configuration (sync and llm_logging sections)
        _scheduler: APScheduler instance once started
        _queue: On-demand owner queue, created on first use
        _queued: Owners currently waiting in the queue
        _worker: Task draining the queue
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        store: DatabaseStore,
        config: AppConfig,
    ):
        self._orchestrator = orchestrator
        self._store = store
        self._config = config
        self._scheduler: AsyncIOScheduler | None = None
        self._queue: asyncio.Queue[str] | None = None
        self._queued: set[str] = set()
        self._worker: asyncio.Task[None] | None = None

    @property
    def started(self) -> bool:
        return self._scheduler is not None

    def next_cadence_run(self) -> datetime | None:
        """When the cadence job fires next, if scheduled."""
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(CADENCE_JOB_ID)
        return job.next_run_time if job else None

    async def start(self) -> None:
        """Start the cadence job and the on-demand worker. Safe to call repeatedly."""
        self._ensure_worker()
        if self._scheduler is not None:
            return

        sync_config = self._config.sync
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self.run_cadence,
            "interval",
            hours=sync_config.interval_hours,
            id=CADENCE_JOB_ID,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(UTC) + timedelta(seconds=sync_config.first_run_delay_seconds),
        )
        scheduler.start()
        self._scheduler = scheduler

        logger.info(
            "scheduler_started",
            interval_hours=sync_config.interval_hours,
            first_run_delay_seconds=sync_config.first_run_delay_seconds,
        )

    async def shutdown(self) -> None:
        """Stop the cadence job and the worker. Queued owners are dropped."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("scheduler_stopped")

        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None

        self._queue = None
        self._queued.clear()

    def _ensure_worker(self) -> asyncio.Queue[str]:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._worker_loop(self._queue), name="sync-worker")
        return self._queue

    # =========================================================================
    # On-demand trigger
    # =========================================================================

    async def trigger_manual_sync(self, owner_id: str) -> dict[str, Any]:
        """Queue a sync for one owner and return immediately.

        Returns:
            {"accepted": True}

        Raises:
            NoCredentialError: If the owner has no stored Gmail credential
        """
        user = await self._store.get_user(owner_id)
        if user is None or not user.gmail_refresh_token:
            raise NoCredentialError(
                f"Cannot sync owner {owner_id}: Gmail is not connected. "
                "Connect Gmail first, then retry the sync.",
                owner_id=owner_id,
            )

        queue = self._ensure_worker()
        if owner_id in self._queued:
            logger.info("manual_sync_already_queued", owner_id=owner_id)
            return {"accepted": True}

        self._queued.add(owner_id)
        queue.put_nowait(owner_id)
        logger.info("manual_sync_queued", owner_id=owner_id, queue_size=queue.qsize())
        return {"accepted": True}

    async def wait_for_pending(self) -> None:
        """Block until every queued on-demand sync has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def _worker_loop(self, queue: asyncio.Queue[str]) -> None:
        while True:
            owner_id = await queue.get()
            self._queued.discard(owner_id)
            try:
                user = await self._store.get_user(owner_id)
                if user is None or not user.gmail_refresh_token:
                    logger.warning("manual_sync_credential_gone", owner_id=owner_id)
                    continue
                await self._sync_owner(
                    owner_id,
                    user.gmail_refresh_token,
                    user.last_sync_at,
                    trigger="manual",
                )
            except DatabaseError as e:
                logger.error("manual_sync_lookup_failed", owner_id=owner_id, error=str(e))
            finally:
                queue.task_done()

    # =========================================================================
    # Cadence
    # =========================================================================

    async def run_cadence(self) -> CadenceResult:
        """Sync every owner with a stored credential, sequentially."""
        result = CadenceResult()

        try:
            accounts = await self._store.get_users_with_mailbox_credential()
        except DatabaseError as e:
            logger.error("cadence_enumeration_failed", error=str(e))
            return result

        result.owners = len(accounts)
        logger.info("cadence_start", owners=result.owners)

        for index, account in enumerate(accounts):
            if index:
                await asyncio.sleep(self._config.sync.user_delay_seconds)

            summary = await self._sync_account(account)
            if summary is None:
                result.failed += 1
            else:
                result.succeeded += 1
                result.summaries.append(summary)

        try:
            result.logs_pruned = await self._store.prune_llm_logs(
                self._config.llm_logging.retention_days
            )
        except DatabaseError as e:
            logger.warning("log_pruning_failed", error=str(e))

        logger.info(
            "cadence_complete",
            owners=result.owners,
            succeeded=result.succeeded,
            failed=result.failed,
            logs_pruned=result.logs_pruned,
        )
        return result

    async def _sync_account(self, account: MailboxAccount) -> SyncSummary | None:
        return await self._sync_owner(
            account.owner_id,
            account.credential,
            account.last_sync_at,
            trigger="scheduled",
        )

    async def _sync_owner(
        self,
        owner_id: str,
        credential: str,
        watermark: datetime | None,
        trigger: str,
    ) -> SyncSummary | None:
        """Run one owner's sync; any failure is logged and reported as None."""
        try:
            return await self._orchestrator.run_sync(owner_id, credential, watermark, trigger=trigger)
        except JobTrackerError as e:
            logger.error(
                "owner_sync_failed",
                owner_id=owner_id,
                trigger=trigger,
                error=str(e),
                error_type=type(e).__name__,
            )
        except Exception as e:
            logger.exception(
                "owner_sync_crashed",
                owner_id=owner_id,
                trigger=trigger,
                error=str(e),
            )
        return None
