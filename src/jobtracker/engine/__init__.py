"""Email reconciliation engines.

This package provides the core sync pipeline:
- Reconciler: merges extracted facts into application records
- Sync orchestrator: fetch -> extract -> reconcile for one owner
- Scheduler: cadence job plus on-demand sync queue
"""

from jobtracker.engine.reconciler import (
    STATUS_ORDER,
    Reconciler,
    ReconcileOutcome,
    company_domain,
    derive_match_domain,
    extract_domain,
    status_rank,
)
from jobtracker.engine.scheduler import CadenceResult, SyncScheduler
from jobtracker.engine.sync import SyncOrchestrator, SyncSummary, build_orchestrator

__all__ = [
    # Reconciler
    "STATUS_ORDER",
    "Reconciler",
    "ReconcileOutcome",
    "company_domain",
    "derive_match_domain",
    "extract_domain",
    "status_rank",
    # Sync
    "SyncOrchestrator",
    "SyncSummary",
    "build_orchestrator",
    # Scheduler
    "CadenceResult",
    "SyncScheduler",
]
