"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import sqlite3
import asyncio
import logging
from pathlib import Path

from centralhub.config import DB_PATH, DB_TIMEOUT

logger = logging.getLogger(__name__)

# Module-level connection (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


async def _connect(path: str) -> aiosqlite.Connection:
    """Open ``path`` with Row results, a busy timeout and (for files) WAL journaling."""
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(path, timeout=DB_TIMEOUT)
    db.row_factory = aiosqlite.Row
    if path != ":memory:":
        # Readers (API) are not blocked by the cycle's writes
        await db.execute("PRAGMA journal_mode=WAL")
    await init_schema(db)
    return db


async def get_db() -> aiosqlite.Connection:
    """Shared connection for the API, the poller and the CLI; opened on first use."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                _db = await _connect(DB_PATH)
                logger.info(f"Hub database ready at {DB_PATH}")
    return _db


async def close_db() -> None:
    global _db
    db, _db = _db, None
    if db is not None:
        await db.close()
        logger.info("Hub database closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Agent registry: one row per end-user agent, never hard-deleted
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS agents (
            name            TEXT PRIMARY KEY,
            callback_url    TEXT NOT NULL,
            status          TEXT NOT NULL DEFAULT 'pending',
            email           TEXT,
            sheet_id        TEXT,
            registered_at   TEXT NOT NULL,
            updated_at      TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_agents_status ON agents(status);

        -- ----------------------------------------------------------------
        -- Pending requests: open conversations and the channel messages
        -- that must be deleted when they close.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS pending_requests (
            request_id          TEXT PRIMARY KEY,
            user                TEXT NOT NULL,
            conversation_id     TEXT NOT NULL,
            kind                TEXT NOT NULL,
            tracked_message_ids TEXT NOT NULL DEFAULT '[]',
            created_at          TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_pending_conversation
            ON pending_requests(user, conversation_id);

        -- ----------------------------------------------------------------
        -- Result queue: written by the external workflow engine,
        -- advanced new -> dispatched -> completed by the hub.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS results (
            id                  INTEGER PRIMARY KEY AUTOINCREMENT,
            item_id             TEXT NOT NULL,
            agent_name          TEXT NOT NULL,
            assigned_labels     TEXT NOT NULL DEFAULT '',
            external_message_id TEXT,
            status              TEXT NOT NULL DEFAULT 'new',
            created_at          TEXT NOT NULL,
            dispatched_at       TEXT,
            completed_at        TEXT,
            attempts            INTEGER NOT NULL DEFAULT 0,
            last_error          TEXT
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_results_conversation
            ON results(agent_name, item_id);
        CREATE INDEX IF NOT EXISTS idx_results_status
            ON results(status);

        -- ----------------------------------------------------------------
        -- Activity log: append-only, pruned by the retention sweeper.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS activity_log (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            kind            TEXT NOT NULL,
            agent_name      TEXT,
            conversation_id TEXT,
            detail          TEXT,
            created_at      TEXT NOT NULL
        );

        -- ----------------------------------------------------------------
        -- Cycle lease: single-row guard against overlapping cycles
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS cycle_lease (
            id          INTEGER PRIMARY KEY CHECK (id = 1),
            holder      TEXT,
            acquired_at TEXT
        );
        INSERT OR IGNORE INTO cycle_lease (id, holder, acquired_at) VALUES (1, NULL, NULL);
    """)
    await db.commit()

    # ── Safe migration: add new columns to existing DBs ──────────────────────
    for col, typedef in [
        ("attempts", "INTEGER NOT NULL DEFAULT 0"),
        ("last_error", "TEXT"),
    ]:
        try:
            await db.execute(f"ALTER TABLE results ADD COLUMN {col} {typedef}")
            await db.commit()
            logger.info(f"Migration: added column 'results.{col}'")
        except sqlite3.OperationalError:
            pass  # Column already exists

    logger.info("Schema initialized.")
