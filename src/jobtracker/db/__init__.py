"""Database layer for the job application tracker.

This module provides SQLite database access with async operations.

Usage:
    from jobtracker.db import DatabaseStore

    store = DatabaseStore("data/jobtracker.db")
    await store.initialize()

    # Create an application record
    record = await store.insert_record(
        owner_id=user.id,
        company="Atlassian",
        role="Senior Engineer",
        domain="atlassian",
    )

    # Add an audit entry
    await store.append_timeline_event(record.id, "note", "Referred by Sam")
"""

from jobtracker.db.models import (
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from jobtracker.db.store import (
    APPLICATION_STATUSES,
    PRIORITIES,
    ApplicationRecord,
    DatabaseStore,
    LLMLogEntry,
    MailboxAccount,
    SyncRun,
    TimelineEvent,
    User,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "APPLICATION_STATUSES",
    "PRIORITIES",
    # Dataclasses
    "User",
    "MailboxAccount",
    "ApplicationRecord",
    "TimelineEvent",
    "SyncRun",
    "LLMLogEntry",
]
