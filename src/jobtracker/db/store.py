"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for the job application tracker. It uses aiosqlite for async
access and returns typed dataclasses.

Every record query is scoped by owner. The store does no cross-owner
locking; ownership filters keep users isolated.

Usage:
    from jobtracker.db.store import DatabaseStore

    store = DatabaseStore("data/jobtracker.db")
    await store.initialize()

    # Credential store
    accounts = await store.get_users_with_mailbox_credential()

    # Record store
    record = await store.find_by_owner_and_domain_like(owner_id, "atlassian")
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from jobtracker.core.errors import DatabaseError, RecordValidationError
from jobtracker.core.logging import get_correlation_id, get_logger
from jobtracker.db.models import init_database

logger = get_logger(__name__)

# Type aliases
ApplicationStatus = Literal[
    "Applied",
    "Acknowledged",
    "Screening",
    "Interview",
    "Offer",
    "Rejected",
]

Priority = Literal["Dream Job", "High", "Medium", "Backup"]

TimelineKind = Literal["applied", "status", "email", "note"]

SyncRunStatus = Literal["running", "success", "failed"]

APPLICATION_STATUSES: tuple[str, ...] = (
    "Applied",
    "Acknowledged",
    "Screening",
    "Interview",
    "Offer",
    "Rejected",
)
PRIORITIES: tuple[str, ...] = ("Dream Job", "High", "Medium", "Backup")
TIMELINE_KINDS: tuple[str, ...] = ("applied", "status", "email", "note")


@dataclass
class User:
    """User record from the database."""

    id: str
    email: str
    name: str | None = None
    gmail_refresh_token: str | None = None
    session_token: str | None = None
    last_sync_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def has_mailbox(self) -> bool:
        return bool(self.gmail_refresh_token)


@dataclass(frozen=True)
class MailboxAccount:
    """An owner with a connected mailbox, as enumerated by the scheduler."""

    owner_id: str
    email: str
    credential: str
    last_sync_at: datetime | None = None


@dataclass
class ApplicationRecord:
    """Application record from the database."""

    id: str
    owner_id: str
    company: str
    role: str
    status: ApplicationStatus = "Applied"
    domain: str | None = None
    source: str | None = None
    salary: str | None = None
    priority: Priority = "Medium"
    url: str | None = None
    recruiter_name: str | None = None
    recruiter_email: str | None = None
    recruiter_phone: str | None = None
    notes: str | None = None
    conversation_id: str | None = None
    applied_date: date | None = None
    last_updated: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class TimelineEvent:
    """Timeline event from the database. Never mutated after insert."""

    id: int
    record_id: str
    kind: TimelineKind
    description: str
    date: date | None = None
    created_at: datetime | None = None


@dataclass
class SyncRun:
    """Sync run history entry from the database."""

    id: str
    owner_id: str
    triggered_by: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    status: SyncRunStatus = "running"
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    error: str | None = None


@dataclass
class LLMLogEntry:
    """LLM request log entry from the database."""

    id: int
    timestamp: datetime
    model: str | None = None
    message_id: str | None = None
    sync_run_id: str | None = None
    prompt_json: dict[str, Any] | None = None
    response_text: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration_ms: int | None = None
    error: str | None = None


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning("invalid_stored_datetime", value=value)
        return None
    # Rows written by SQLite defaults are naive UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        logger.warning("invalid_stored_date", value=value)
        return None


def _now() -> datetime:
    return datetime.now(UTC)


def _check_status(status: str) -> None:
    if status not in APPLICATION_STATUSES:
        raise RecordValidationError(
            f"Invalid status {status!r}. Must be one of: {', '.join(APPLICATION_STATUSES)}"
        )


def _check_event(kind: str, description: str) -> None:
    if kind not in TIMELINE_KINDS:
        raise RecordValidationError(
            f"Invalid timeline kind {kind!r}. Must be one of: {', '.join(TIMELINE_KINDS)}"
        )
    if not description or not description.strip():
        raise RecordValidationError("Timeline event description cannot be empty")


def _new_record(
    owner_id: str,
    company: str,
    role: str,
    status: str = "Applied",
    domain: str | None = None,
    source: str | None = None,
    priority: str = "Medium",
    notes: str | None = None,
    recruiter_name: str | None = None,
    recruiter_email: str | None = None,
    recruiter_phone: str | None = None,
    salary: str | None = None,
    url: str | None = None,
    conversation_id: str | None = None,
    applied_date: date | None = None,
) -> ApplicationRecord:
    """Validate inputs and build an unsaved ApplicationRecord."""
    company = (company or "").strip()
    role = (role or "").strip()
    if not company or not role:
        raise RecordValidationError(
            "Cannot create application: company and role are required "
            f"(got company={company!r}, role={role!r})"
        )
    _check_status(status)
    if priority not in PRIORITIES:
        raise RecordValidationError(
            f"Invalid priority {priority!r}. Must be one of: {', '.join(PRIORITIES)}"
        )

    now = _now()
    return ApplicationRecord(
        id=uuid.uuid4().hex,
        owner_id=owner_id,
        company=company,
        role=role,
        status=status,  # type: ignore[arg-type]
        domain=domain.lower() if domain else None,
        source=source,
        salary=salary,
        priority=priority,  # type: ignore[arg-type]
        url=url,
        recruiter_name=recruiter_name,
        recruiter_email=recruiter_email,
        recruiter_phone=recruiter_phone,
        notes=notes,
        conversation_id=conversation_id,
        applied_date=applied_date or now.date(),
        last_updated=now,
        created_at=now,
    )


class DatabaseStore:
    """Database store for all job tracker data.

    Provides async operations for the credential store (users, watermarks),
    the record store (applications, timeline events), and sync/LLM logs.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        """Initialize the database store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        - busy_timeout: 10s for concurrent access from the scheduler and web routes
        - foreign_keys: ON so timeline rows cannot outlive their record
        - synchronous: NORMAL (safe with WAL, faster writes)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Users / credential store
    # =========================================================================

    async def upsert_user(
        self,
        email: str,
        name: str | None = None,
        user_id: str | None = None,
    ) -> User:
        """Create a user, or return the existing one with the same email.

        Args:
            email: Google account email
            name: Display name
            user_id: Explicit ID (generated when omitted)

        Returns:
            The stored User
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO users (id, email, name, created_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(email) DO UPDATE SET
                        name = COALESCE(excluded.name, users.name)
                    """,
                    (user_id or uuid.uuid4().hex, email, name, _now().isoformat()),
                )
                await db.commit()

                cursor = await db.execute("SELECT * FROM users WHERE email = ?", (email,))
                row = await cursor.fetchone()
                return self._row_to_user(row)

        except aiosqlite.Error as e:
            logger.error("Failed to upsert user", error=str(e))
            raise DatabaseError(f"Failed to upsert user: {e}") from e

    async def get_user(self, owner_id: str) -> User | None:
        """Get a user by ID."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM users WHERE id = ?", (owner_id,))
                row = await cursor.fetchone()
                return self._row_to_user(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get user", owner_id=owner_id, error=str(e))
            raise DatabaseError(f"Failed to get user {owner_id}: {e}") from e

    async def get_user_by_session_token(self, session_token: str) -> User | None:
        """Resolve the owner of a session token issued by the auth layer."""
        if not session_token:
            return None
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM users WHERE session_token = ?", (session_token,)
                )
                row = await cursor.fetchone()
                return self._row_to_user(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to resolve session token", error=str(e))
            raise DatabaseError(f"Failed to resolve session token: {e}") from e

    async def set_session_token(self, owner_id: str, session_token: str | None) -> None:
        """Store (or clear) the owner's session token."""
        await self._update_user_column(owner_id, "session_token", session_token)

    async def set_mailbox_credential(self, owner_id: str, credential: str | None) -> None:
        """Store (or clear, disconnecting the mailbox) the owner's Gmail refresh token."""
        await self._update_user_column(owner_id, "gmail_refresh_token", credential)
        logger.info(
            "mailbox_credential_updated",
            owner_id=owner_id,
            connected=credential is not None,
        )

    async def _update_user_column(self, owner_id: str, column: str, value: str | None) -> None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"UPDATE users SET {column} = ? WHERE id = ?",  # noqa: S608
                    (value, owner_id),
                )
                await db.commit()
                if cursor.rowcount == 0:
                    raise DatabaseError(f"Cannot update {column}: user {owner_id} does not exist")

        except aiosqlite.Error as e:
            logger.error("Failed to update user", owner_id=owner_id, column=column, error=str(e))
            raise DatabaseError(f"Failed to update {column} for user {owner_id}: {e}") from e

    async def get_users_with_mailbox_credential(self) -> list[MailboxAccount]:
        """List every owner with a stored Gmail refresh token.

        Returns:
            MailboxAccount entries ordered by user creation time
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT id, email, gmail_refresh_token, last_sync_at
                    FROM users
                    WHERE gmail_refresh_token IS NOT NULL AND gmail_refresh_token != ''
                    ORDER BY created_at, id
                    """
                )
                rows = await cursor.fetchall()
                return [
                    MailboxAccount(
                        owner_id=row["id"],
                        email=row["email"],
                        credential=row["gmail_refresh_token"],
                        last_sync_at=_parse_datetime(row["last_sync_at"]),
                    )
                    for row in rows
                ]

        except aiosqlite.Error as e:
            logger.error("Failed to list mailbox accounts", error=str(e))
            raise DatabaseError(f"Failed to list mailbox accounts: {e}") from e

    async def update_watermark(self, owner_id: str, timestamp: datetime) -> None:
        """Advance the owner's sync watermark.

        Args:
            owner_id: Owner whose sync completed
            timestamp: Completion time (stored as UTC ISO-8601)
        """
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE users SET last_sync_at = ? WHERE id = ?",
                    (timestamp.astimezone(UTC).isoformat(), owner_id),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to update watermark", owner_id=owner_id, error=str(e))
            raise DatabaseError(f"Failed to update watermark for {owner_id}: {e}") from e

    def _row_to_user(self, row: aiosqlite.Row) -> User:
        """Convert a database row to a User dataclass."""
        return User(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            gmail_refresh_token=row["gmail_refresh_token"],
            session_token=row["session_token"],
            last_sync_at=_parse_datetime(row["last_sync_at"]),
            created_at=_parse_datetime(row["created_at"]),
        )

    # =========================================================================
    # Application records
    # =========================================================================

    async def insert_record(
        self,
        owner_id: str,
        company: str,
        role: str,
        **fields: Any,
    ) -> ApplicationRecord:
        """Insert a new application record.

        Accepts the optional ApplicationRecord columns as keyword arguments
        (status, domain, source, priority, notes, recruiter_*, salary, url,
        conversation_id, applied_date).

        Raises:
            RecordValidationError: If company or role is empty, or status/priority
                is not one of the allowed values
            DatabaseError: If the insert fails
        """
        record = _new_record(owner_id, company, role, **fields)

        try:
            async with self._db() as db:
                await self._insert_record_row(db, record)
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to insert record", owner_id=owner_id, error=str(e))
            raise DatabaseError(f"Failed to insert application record: {e}") from e

        logger.debug("record_inserted", record_id=record.id, owner_id=owner_id)
        return record

    async def create_record_with_event(
        self,
        owner_id: str,
        company: str,
        role: str,
        event_kind: str,
        event_description: str,
        event_date: date | None = None,
        **fields: Any,
    ) -> tuple[ApplicationRecord, TimelineEvent]:
        """Insert a record and its first timeline event in one transaction.

        Either both rows are committed or neither is.

        Raises:
            RecordValidationError: If the record or event fails validation
            DatabaseError: If either insert fails
        """
        record = _new_record(owner_id, company, role, **fields)
        _check_event(event_kind, event_description)
        now = _now()
        event_date = event_date or now.date()

        try:
            async with self._db() as db:
                await self._insert_record_row(db, record)
                event_id = await self._insert_event_row(
                    db, record.id, event_kind, event_description, event_date, now
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to create record with event", owner_id=owner_id, error=str(e))
            raise DatabaseError(f"Failed to create application record: {e}") from e

        logger.debug("record_inserted", record_id=record.id, owner_id=owner_id)
        event = TimelineEvent(
            id=event_id,
            record_id=record.id,
            kind=event_kind,  # type: ignore[arg-type]
            description=event_description,
            date=event_date,
            created_at=now,
        )
        return record, event

    async def _insert_record_row(self, db: aiosqlite.Connection, record: ApplicationRecord) -> None:
        await db.execute(
            """
            INSERT INTO applications (
                id, user_id, company, domain, role, status, source,
                salary, priority, url, recruiter_name, recruiter_email,
                recruiter_phone, notes, gmail_thread_id, applied_date,
                last_updated, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.owner_id,
                record.company,
                record.domain,
                record.role,
                record.status,
                record.source,
                record.salary,
                record.priority,
                record.url,
                record.recruiter_name,
                record.recruiter_email,
                record.recruiter_phone,
                record.notes,
                record.conversation_id,
                record.applied_date.isoformat() if record.applied_date else None,
                record.last_updated.isoformat(),
                record.created_at.isoformat(),
            ),
        )

    async def find_by_owner_and_domain_like(
        self,
        owner_id: str,
        domain: str,
    ) -> ApplicationRecord | None:
        """Find the owner's record whose domain contains ``domain``.

        Case-insensitive substring match ("atlassian" matches
        "atlassian.com"). When several records match, the oldest wins.

        Args:
            owner_id: Owner to search within
            domain: Matching key derived from the email

        Returns:
            The matching record, or None
        """
        needle = (domain or "").strip().lower()
        if not needle:
            return None

        # Escape LIKE wildcards so the key is matched literally
        escaped = needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM applications
                    WHERE user_id = ?
                      AND LOWER(domain) LIKE ? ESCAPE '\\'
                    ORDER BY created_at ASC, rowid ASC
                    LIMIT 1
                    """,
                    (owner_id, f"%{escaped}%"),
                )
                row = await cursor.fetchone()
                return self._row_to_record(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to find record by domain", owner_id=owner_id, error=str(e))
            raise DatabaseError(f"Failed to find record by domain: {e}") from e

    async def update_record_status(
        self,
        record_id: str,
        status: str,
        timestamp: datetime | None = None,
    ) -> None:
        """Set a record's status and last-updated time.

        Raises:
            RecordValidationError: If status is not a known value
            DatabaseError: If the record doesn't exist or the update fails
        """
        _check_status(status)
        timestamp = timestamp or _now()

        try:
            async with self._db() as db:
                await self._set_status_row(db, record_id, status, timestamp)
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to update record status", record_id=record_id, error=str(e))
            raise DatabaseError(f"Failed to update status of record {record_id}: {e}") from e

    async def advance_status_with_event(
        self,
        record_id: str,
        status: str,
        event_kind: str,
        event_description: str,
        event_date: date | None = None,
        timestamp: datetime | None = None,
    ) -> TimelineEvent:
        """Set a record's status and append its timeline event in one transaction.

        Raises:
            RecordValidationError: If status or event fails validation
            DatabaseError: If the record doesn't exist or either write fails
        """
        _check_status(status)
        _check_event(event_kind, event_description)
        now = _now()
        timestamp = timestamp or now
        event_date = event_date or now.date()

        try:
            async with self._db() as db:
                await self._set_status_row(db, record_id, status, timestamp)
                event_id = await self._insert_event_row(
                    db, record_id, event_kind, event_description, event_date, now
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to advance record status", record_id=record_id, error=str(e))
            raise DatabaseError(f"Failed to update status of record {record_id}: {e}") from e

        return TimelineEvent(
            id=event_id,
            record_id=record_id,
            kind=event_kind,  # type: ignore[arg-type]
            description=event_description,
            date=event_date,
            created_at=now,
        )

    async def _set_status_row(
        self,
        db: aiosqlite.Connection,
        record_id: str,
        status: str,
        timestamp: datetime,
    ) -> None:
        cursor = await db.execute(
            "UPDATE applications SET status = ?, last_updated = ? WHERE id = ?",
            (status, timestamp.isoformat(), record_id),
        )
        # Raised before commit, so the connection closes with nothing written
        if cursor.rowcount == 0:
            raise DatabaseError(f"Cannot update status: record {record_id} does not exist")

    async def get_record(self, record_id: str) -> ApplicationRecord | None:
        """Get a record by ID."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM applications WHERE id = ?", (record_id,))
                row = await cursor.fetchone()
                return self._row_to_record(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get record", record_id=record_id, error=str(e))
            raise DatabaseError(f"Failed to get record {record_id}: {e}") from e

    async def list_records(self, owner_id: str) -> list[ApplicationRecord]:
        """List an owner's records, newest application first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM applications
                    WHERE user_id = ?
                    ORDER BY applied_date DESC, created_at DESC
                    """,
                    (owner_id,),
                )
                rows = await cursor.fetchall()
                return [self._row_to_record(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to list records", owner_id=owner_id, error=str(e))
            raise DatabaseError(f"Failed to list records: {e}") from e

    def _row_to_record(self, row: aiosqlite.Row) -> ApplicationRecord:
        """Convert a database row to an ApplicationRecord dataclass."""
        return ApplicationRecord(
            id=row["id"],
            owner_id=row["user_id"],
            company=row["company"],
            role=row["role"],
            status=row["status"],
            domain=row["domain"],
            source=row["source"],
            salary=row["salary"],
            priority=row["priority"],
            url=row["url"],
            recruiter_name=row["recruiter_name"],
            recruiter_email=row["recruiter_email"],
            recruiter_phone=row["recruiter_phone"],
            notes=row["notes"],
            conversation_id=row["gmail_thread_id"],
            applied_date=_parse_date(row["applied_date"]),
            last_updated=_parse_datetime(row["last_updated"]),
            created_at=_parse_datetime(row["created_at"]),
        )

    # =========================================================================
    # Timeline events
    # =========================================================================

    async def append_timeline_event(
        self,
        record_id: str,
        kind: str,
        description: str,
        event_date: date | None = None,
    ) -> TimelineEvent:
        """Append an immutable timeline event to a record.

        Raises:
            RecordValidationError: If kind is unknown or description is empty
            DatabaseError: If the insert fails (including unknown record)
        """
        _check_event(kind, description)
        now = _now()
        event_date = event_date or now.date()

        try:
            async with self._db() as db:
                event_id = await self._insert_event_row(
                    db, record_id, kind, description, event_date, now
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to append timeline event", record_id=record_id, error=str(e))
            raise DatabaseError(f"Failed to append timeline event to {record_id}: {e}") from e

        return TimelineEvent(
            id=event_id,
            record_id=record_id,
            kind=kind,  # type: ignore[arg-type]
            description=description,
            date=event_date,
            created_at=now,
        )

    async def _insert_event_row(
        self,
        db: aiosqlite.Connection,
        record_id: str,
        kind: str,
        description: str,
        event_date: date,
        now: datetime,
    ) -> int:
        cursor = await db.execute(
            """
            INSERT INTO timeline_events (application_id, type, description, date, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (record_id, kind, description, event_date.isoformat(), now.isoformat()),
        )
        return cursor.lastrowid

    async def get_timeline(self, record_id: str) -> list[TimelineEvent]:
        """Get a record's timeline in insertion order."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM timeline_events WHERE application_id = ? ORDER BY id",
                    (record_id,),
                )
                rows = await cursor.fetchall()
                return [
                    TimelineEvent(
                        id=row["id"],
                        record_id=row["application_id"],
                        kind=row["type"],
                        description=row["description"],
                        date=_parse_date(row["date"]),
                        created_at=_parse_datetime(row["created_at"]),
                    )
                    for row in rows
                ]

        except aiosqlite.Error as e:
            logger.error("Failed to get timeline", record_id=record_id, error=str(e))
            raise DatabaseError(f"Failed to get timeline for {record_id}: {e}") from e

    # =========================================================================
    # Sync runs
    # =========================================================================

    async def start_sync_run(
        self,
        run_id: str,
        owner_id: str,
        triggered_by: str,
        started_at: datetime | None = None,
    ) -> None:
        """Record the start of a sync run."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO sync_runs (id, user_id, triggered_by, started_at, status)
                    VALUES (?, ?, ?, ?, 'running')
                    """,
                    (run_id, owner_id, triggered_by, (started_at or _now()).isoformat()),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to record sync start", run_id=run_id, error=str(e))
            raise DatabaseError(f"Failed to record sync run start: {e}") from e

    async def finish_sync_run(
        self,
        run_id: str,
        status: SyncRunStatus,
        fetched: int = 0,
        created: int = 0,
        updated: int = 0,
        skipped: int = 0,
        error: str | None = None,
    ) -> None:
        """Record the outcome of a sync run."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE sync_runs SET
                        finished_at = ?, status = ?, fetched = ?, created = ?,
                        updated = ?, skipped = ?, error = ?
                    WHERE id = ?
                    """,
                    (
                        _now().isoformat(),
                        status,
                        fetched,
                        created,
                        updated,
                        skipped,
                        error[:1000] if error else None,
                        run_id,
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to record sync finish", run_id=run_id, error=str(e))
            raise DatabaseError(f"Failed to record sync run outcome: {e}") from e

    async def get_latest_sync_run(self, owner_id: str) -> SyncRun | None:
        """Get the owner's most recently started sync run."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM sync_runs WHERE user_id = ?
                    ORDER BY started_at DESC, rowid DESC LIMIT 1
                    """,
                    (owner_id,),
                )
                row = await cursor.fetchone()
                if not row:
                    return None
                return SyncRun(
                    id=row["id"],
                    owner_id=row["user_id"],
                    triggered_by=row["triggered_by"],
                    started_at=_parse_datetime(row["started_at"]),
                    finished_at=_parse_datetime(row["finished_at"]),
                    status=row["status"],
                    fetched=row["fetched"],
                    created=row["created"],
                    updated=row["updated"],
                    skipped=row["skipped"],
                    error=row["error"],
                )

        except aiosqlite.Error as e:
            logger.error("Failed to get latest sync run", owner_id=owner_id, error=str(e))
            raise DatabaseError(f"Failed to get latest sync run: {e}") from e

    # =========================================================================
    # LLM request logging
    # =========================================================================

    async def log_llm_request(
        self,
        model: str,
        prompt: dict[str, Any] | None,
        response_text: str | None,
        input_tokens: int | None,
        output_tokens: int | None,
        duration_ms: int,
        message_id: str | None = None,
        error: str | None = None,
    ) -> int:
        """Log a Claude extraction call.

        The current sync_run_id is attached from the logging context.

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_request_log (
                        model, message_id, sync_run_id, prompt_json, response_text,
                        input_tokens, output_tokens, duration_ms, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        model,
                        message_id,
                        get_correlation_id(),
                        json.dumps(prompt) if prompt else None,
                        response_text,
                        input_tokens,
                        output_tokens,
                        duration_ms,
                        error,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("Failed to log LLM request", error=str(e))
            raise DatabaseError(f"Failed to log LLM request: {e}") from e

    async def get_llm_logs(
        self,
        limit: int = 100,
        sync_run_id: str | None = None,
    ) -> list[LLMLogEntry]:
        """Get LLM logs, newest first, optionally for one sync run."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM llm_request_log WHERE 1=1"
                params: list[Any] = []

                if sync_run_id:
                    query += " AND sync_run_id = ?"
                    params.append(sync_run_id)

                query += " ORDER BY id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_llm_log(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get LLM logs", error=str(e))
            raise DatabaseError(f"Failed to get LLM logs: {e}") from e

    async def prune_llm_logs(self, retention_days: int) -> int:
        """Delete LLM logs older than the retention window.

        Returns:
            Number of rows deleted
        """
        cutoff = datetime.now(UTC).replace(tzinfo=None) - timedelta(days=retention_days)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM llm_request_log WHERE timestamp < ?",
                    (cutoff.strftime("%Y-%m-%d %H:%M:%S"),),
                )
                await db.commit()
                deleted = cursor.rowcount

            if deleted:
                logger.info("llm_logs_pruned", deleted=deleted, retention_days=retention_days)
            return deleted

        except aiosqlite.Error as e:
            logger.error("Failed to prune LLM logs", error=str(e))
            raise DatabaseError(f"Failed to prune LLM logs: {e}") from e

    def _row_to_llm_log(self, row: aiosqlite.Row) -> LLMLogEntry:
        """Convert a database row to an LLMLogEntry dataclass."""
        prompt_json = None
        if row["prompt_json"]:
            try:
                prompt_json = json.loads(row["prompt_json"])
            except json.JSONDecodeError:
                logger.warning("invalid_llm_log_prompt_json", log_id=row["id"])

        return LLMLogEntry(
            id=row["id"],
            timestamp=_parse_datetime(row["timestamp"]) or _now(),
            model=row["model"],
            message_id=row["message_id"],
            sync_run_id=row["sync_run_id"],
            prompt_json=prompt_json,
            response_text=row["response_text"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            duration_ms=row["duration_ms"],
            error=row["error"],
        )
