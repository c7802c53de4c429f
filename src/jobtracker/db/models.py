"""SQLite database schema and initialization for the job application tracker.

Tables:
- users: Mailbox owners, their Gmail refresh token and sync watermark
- applications: Tracked job applications (one row per company/role)
- timeline_events: Append-only audit trail per application
- sync_runs: One row per sync orchestrator run
- llm_request_log: Claude extraction calls for debugging

Usage:
    from jobtracker.db.models import init_database

    await init_database("data/jobtracker.db")
"""

import stat
from pathlib import Path

import aiosqlite

from jobtracker.core.errors import DatabaseError
from jobtracker.core.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

-- Mailbox owners. Rows are created by the auth layer after Google sign-in.
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    name TEXT,
    gmail_refresh_token TEXT,               -- NULL = mailbox not connected
    session_token TEXT UNIQUE,              -- Opaque bearer issued by the auth layer
    last_sync_at DATETIME,                  -- Watermark: last fully successful sync (UTC)
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_users_session_token ON users(session_token);

-- Tracked applications
CREATE TABLE IF NOT EXISTS applications (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    company TEXT NOT NULL,
    domain TEXT,                            -- Reconciliation matching key (lowercase, may be partial)
    role TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'Applied'
        CHECK (status IN ('Applied','Acknowledged','Screening','Interview','Offer','Rejected')),
    source TEXT,
    salary TEXT,
    priority TEXT NOT NULL DEFAULT 'Medium'
        CHECK (priority IN ('Dream Job','High','Medium','Backup')),
    url TEXT,
    recruiter_name TEXT,
    recruiter_email TEXT,
    recruiter_phone TEXT,
    notes TEXT,
    gmail_thread_id TEXT,                   -- Conversation the record was imported from
    applied_date DATE,
    last_updated DATETIME,
    created_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_applications_user ON applications(user_id);
CREATE INDEX IF NOT EXISTS idx_applications_user_domain ON applications(user_id, domain);

-- Append-only audit trail
CREATE TABLE IF NOT EXISTS timeline_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    application_id TEXT NOT NULL REFERENCES applications(id) ON DELETE CASCADE,
    type TEXT NOT NULL CHECK (type IN ('applied','status','email','note')),
    description TEXT NOT NULL,
    date DATE,                              -- Effective date of the event
    created_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_timeline_application ON timeline_events(application_id);

-- Sync run history for the status endpoint and diagnosis
CREATE TABLE IF NOT EXISTS sync_runs (
    id TEXT PRIMARY KEY,                    -- sync_run_id (also the log correlation ID)
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    triggered_by TEXT,                      -- 'scheduled', 'manual', 'cli'
    started_at DATETIME,
    finished_at DATETIME,
    status TEXT DEFAULT 'running',          -- 'running', 'success', 'failed'
    fetched INTEGER DEFAULT 0,
    created INTEGER DEFAULT 0,
    updated INTEGER DEFAULT 0,
    skipped INTEGER DEFAULT 0,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_runs_user_started ON sync_runs(user_id, started_at DESC);

-- Claude extraction calls
CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    model TEXT,
    message_id TEXT,                        -- Gmail message ID being extracted
    sync_run_id TEXT,
    prompt_json TEXT,
    response_text TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    error TEXT                              -- NULL on success
);

CREATE INDEX IF NOT EXISTS idx_llm_log_timestamp ON llm_request_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_llm_log_sync_run ON llm_request_log(sync_run_id);
"""

REQUIRED_TABLES = (
    "users",
    "applications",
    "timeline_events",
    "sync_runs",
    "llm_request_log",
)


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist and all tables and
    indexes. Safe to call on every startup.

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Refresh tokens live in this file: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "Database initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error(
            "Database initialization failed",
            db_path=str(db_path),
            error=str(e),
        )
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that all required tables exist."""
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}

            missing = set(REQUIRED_TABLES) - existing_tables
            if missing:
                logger.warning(
                    "Missing database tables",
                    missing=sorted(missing),
                    db_path=str(db_path),
                )
                return False

            return True

    except aiosqlite.Error as e:
        logger.error(
            "Schema verification failed",
            db_path=str(db_path),
            error=str(e),
        )
        return False
