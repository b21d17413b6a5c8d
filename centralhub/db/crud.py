"""
CRUD operations for CentralHub.
All functions are async and receive the aiosqlite connection from the caller.
"""
import json
import uuid
import logging
import sqlite3
from datetime import datetime, timezone, timedelta
from typing import Optional

import aiosqlite

from centralhub.db.models import RegisteredAgent, PendingRequest, ResultRecord, ActivityEntry

logger = logging.getLogger(__name__)

AGENT_STATUSES = {"pending", "active", "inactive"}
RESULT_STATUSES = {"new", "dispatched", "completed", "failed"}
PENDING_KINDS = {"registration", "item", "test"}


class DuplicateRegistration(Exception):
    """Raised when an agent re-registers with the callback URL it already has."""

    def __init__(self, name: str, status: str) -> None:
        self.name = name
        self.status = status
        super().__init__(f"Agent '{name}' already registered (status={status})")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(s) if s else None


def _cutoff(hours: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()


# ─────────────────────────────────────────────
# Agent registry
# ─────────────────────────────────────────────

async def agent_get(db: aiosqlite.Connection, name: str) -> Optional[RegisteredAgent]:
    async with db.execute("SELECT * FROM agents WHERE name = ?", (name,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_agent(row)


async def agent_register(
    db: aiosqlite.Connection,
    name: str,
    callback_url: str,
    email: Optional[str] = None,
    sheet_id: Optional[str] = None,
) -> tuple[RegisteredAgent, bool]:
    """
    Create or re-register an agent. Returns ``(agent, created)``.

    - Unknown name: a new row in status ``pending``.
    - Known name with a different callback URL, or currently ``inactive``:
      URL updated and status reset to ``pending`` so the confirm handshake
      runs again.
    - Known name, same URL, status pending/active: raises DuplicateRegistration.
    """
    existing = await agent_get(db, name)
    now = _now()

    if existing is None:
        await db.execute(
            "INSERT INTO agents (name, callback_url, status, email, sheet_id, registered_at, updated_at) "
            "VALUES (?, ?, 'pending', ?, ?, ?, ?)",
            (name, callback_url, email, sheet_id, now, now),
        )
        await db.commit()
        logger.info(f"Agent registered: '{name}' -> {callback_url}")
        return RegisteredAgent(
            name=name, callback_url=callback_url, status="pending",
            registered_at=_parse_dt(now), updated_at=_parse_dt(now),
            email=email, sheet_id=sheet_id,
        ), True

    if existing.callback_url == callback_url and existing.status in ("pending", "active"):
        raise DuplicateRegistration(name, existing.status)

    await db.execute(
        "UPDATE agents SET callback_url = ?, status = 'pending', email = COALESCE(?, email), "
        "sheet_id = COALESCE(?, sheet_id), updated_at = ? WHERE name = ?",
        (callback_url, email, sheet_id, now, name),
    )
    await db.commit()
    logger.info(f"Agent re-registered: '{name}' {existing.callback_url} -> {callback_url} (was {existing.status})")
    return await agent_get(db, name), False


async def agent_activate(db: aiosqlite.Connection, name: str) -> bool:
    """Advance an agent pending -> active. Returns False if it was not pending."""
    async with db.execute(
        "UPDATE agents SET status = 'active', updated_at = ? WHERE name = ? AND status = 'pending'",
        (_now(), name),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    return updated > 0


async def agent_deactivate(db: aiosqlite.Connection, name: str) -> bool:
    async with db.execute(
        "UPDATE agents SET status = 'inactive', updated_at = ? WHERE name = ? AND status != 'inactive'",
        (_now(), name),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    if updated:
        logger.info(f"Agent deactivated: '{name}'")
    return updated > 0


async def agent_list(db: aiosqlite.Connection, status: Optional[str] = None) -> list[RegisteredAgent]:
    if status:
        async with db.execute("SELECT * FROM agents WHERE status = ? ORDER BY registered_at", (status,)) as cur:
            rows = await cur.fetchall()
    else:
        async with db.execute("SELECT * FROM agents ORDER BY registered_at") as cur:
            rows = await cur.fetchall()
    return [_row_to_agent(r) for r in rows]


def _row_to_agent(row: aiosqlite.Row) -> RegisteredAgent:
    return RegisteredAgent(
        name=row["name"],
        callback_url=row["callback_url"],
        status=row["status"],
        registered_at=_parse_dt(row["registered_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        email=row["email"],
        sheet_id=row["sheet_id"],
    )


# ─────────────────────────────────────────────
# Pending requests (open conversations)
# ─────────────────────────────────────────────

async def pending_open(
    db: aiosqlite.Connection,
    user: str,
    conversation_id: str,
    kind: str,
    message_ids: list[str],
) -> PendingRequest:
    """
    Open a conversation, or extend the tracked message ids of the one already
    open for ``(user, conversation_id)``. There is never more than one row per key.
    """
    if kind not in PENDING_KINDS:
        raise ValueError(f"Invalid pending kind '{kind}'. Must be one of {PENDING_KINDS}")

    existing = await pending_get(db, user, conversation_id)
    if existing is not None:
        merged = list(dict.fromkeys(existing.tracked_message_ids + list(message_ids)))
        if merged != existing.tracked_message_ids:
            await db.execute(
                "UPDATE pending_requests SET tracked_message_ids = ? WHERE request_id = ?",
                (json.dumps(merged), existing.request_id),
            )
            await db.commit()
            existing.tracked_message_ids = merged
        return existing

    rid = str(uuid.uuid4())
    now = _now()
    tracked = list(dict.fromkeys(message_ids))
    try:
        await db.execute(
            "INSERT INTO pending_requests (request_id, user, conversation_id, kind, tracked_message_ids, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (rid, user, conversation_id, kind, json.dumps(tracked), now),
        )
        await db.commit()
    except sqlite3.IntegrityError:
        # UNIQUE(user, conversation_id): another writer opened it first
        logger.info(f"Pending request for ({user}, {conversation_id}) already open, reusing it")
        return await pending_get(db, user, conversation_id)
    logger.debug(f"Pending request opened: {rid} kind={kind} ({user}, {conversation_id})")
    return PendingRequest(
        request_id=rid, user=user, conversation_id=conversation_id, kind=kind,
        tracked_message_ids=tracked, created_at=_parse_dt(now),
    )


async def pending_get(db: aiosqlite.Connection, user: str, conversation_id: str) -> Optional[PendingRequest]:
    async with db.execute(
        "SELECT * FROM pending_requests WHERE user = ? AND conversation_id = ?",
        (user, conversation_id),
    ) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_pending(row)


async def pending_delete(db: aiosqlite.Connection, request_id: str) -> bool:
    async with db.execute("DELETE FROM pending_requests WHERE request_id = ?", (request_id,)) as cur:
        deleted = cur.rowcount
    await db.commit()
    return deleted > 0


async def pending_list(db: aiosqlite.Connection) -> list[PendingRequest]:
    async with db.execute("SELECT * FROM pending_requests ORDER BY created_at") as cur:
        rows = await cur.fetchall()
    return [_row_to_pending(r) for r in rows]


def _row_to_pending(row: aiosqlite.Row) -> PendingRequest:
    return PendingRequest(
        request_id=row["request_id"],
        user=row["user"],
        conversation_id=row["conversation_id"],
        kind=row["kind"],
        tracked_message_ids=json.loads(row["tracked_message_ids"] or "[]"),
        created_at=_parse_dt(row["created_at"]),
    )


# ─────────────────────────────────────────────
# Result queue
# ─────────────────────────────────────────────

async def result_create(
    db: aiosqlite.Connection,
    item_id: str,
    agent_name: str,
    assigned_labels: str,
    external_message_id: Optional[str] = None,
) -> ResultRecord:
    """
    Insert a ``new`` result for ``(agent_name, item_id)``.
    Idempotent: a second write for the same key returns the existing row unchanged.
    """
    now = _now()
    try:
        await db.execute(
            "INSERT INTO results (item_id, agent_name, assigned_labels, external_message_id, status, created_at) "
            "VALUES (?, ?, ?, ?, 'new', ?)",
            (item_id, agent_name, assigned_labels, external_message_id, now),
        )
        await db.commit()
    except sqlite3.IntegrityError:
        logger.info(f"Result for ({agent_name}, {item_id}) already exists, keeping existing row")
        return await result_get(db, agent_name, item_id)
    logger.info(f"Result queued: {item_id} for '{agent_name}' labels={assigned_labels!r}")
    return ResultRecord(
        item_id=item_id, agent_name=agent_name, assigned_labels=assigned_labels,
        external_message_id=external_message_id, status="new", created_at=_parse_dt(now),
    )


async def result_get(db: aiosqlite.Connection, agent_name: str, item_id: str) -> Optional[ResultRecord]:
    async with db.execute(
        "SELECT * FROM results WHERE agent_name = ? AND item_id = ?",
        (agent_name, item_id),
    ) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_result(row)


async def result_list(
    db: aiosqlite.Connection,
    status: Optional[str] = None,
    limit: int = 500,
) -> list[ResultRecord]:
    if status:
        if status not in RESULT_STATUSES:
            raise ValueError(f"Invalid result status '{status}'. Must be one of {RESULT_STATUSES}")
        async with db.execute(
            "SELECT * FROM results WHERE status = ? ORDER BY created_at ASC LIMIT ?",
            (status, limit),
        ) as cur:
            rows = await cur.fetchall()
    else:
        async with db.execute("SELECT * FROM results ORDER BY created_at DESC LIMIT ?", (limit,)) as cur:
            rows = await cur.fetchall()
    return [_row_to_result(r) for r in rows]


async def result_mark_dispatched(db: aiosqlite.Connection, agent_name: str, item_id: str) -> bool:
    """new -> dispatched. Returns False if the row was not ``new``."""
    async with db.execute(
        "UPDATE results SET status = 'dispatched', dispatched_at = ?, last_error = NULL "
        "WHERE agent_name = ? AND item_id = ? AND status = 'new'",
        (_now(), agent_name, item_id),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    return updated > 0


async def result_record_failure(
    db: aiosqlite.Connection,
    agent_name: str,
    item_id: str,
    error: str,
    max_attempts: int = 0,
) -> str:
    """
    Count a failed dispatch. The row stays ``new`` unless ``max_attempts`` > 0
    and has been reached, in which case it is dead-lettered to ``failed``.
    Returns the resulting status.
    """
    async with db.execute(
        "UPDATE results SET attempts = attempts + 1, last_error = ? "
        "WHERE agent_name = ? AND item_id = ? AND status = 'new' RETURNING attempts",
        (error[:500], agent_name, item_id),
    ) as cur:
        row = await cur.fetchone()
    await db.commit()
    if row is None:
        return "missing"
    if max_attempts > 0 and row["attempts"] >= max_attempts:
        await db.execute(
            "UPDATE results SET status = 'failed', completed_at = ? "
            "WHERE agent_name = ? AND item_id = ? AND status = 'new'",
            (_now(), agent_name, item_id),
        )
        await db.commit()
        logger.warning(f"Result {item_id} for '{agent_name}' dead-lettered after {row['attempts']} attempts")
        return "failed"
    return "new"


async def result_mark_completed(db: aiosqlite.Connection, agent_name: str, item_id: str) -> bool:
    """new|dispatched -> completed. Only the conversation closer calls this."""
    async with db.execute(
        "UPDATE results SET status = 'completed', completed_at = ? "
        "WHERE agent_name = ? AND item_id = ? AND status IN ('new', 'dispatched')",
        (_now(), agent_name, item_id),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    return updated > 0


async def result_counts(db: aiosqlite.Connection) -> dict[str, int]:
    counts = {s: 0 for s in sorted(RESULT_STATUSES)}
    async with db.execute("SELECT status, COUNT(*) AS cnt FROM results GROUP BY status") as cur:
        for row in await cur.fetchall():
            counts[row["status"]] = row["cnt"]
    return counts


def _row_to_result(row: aiosqlite.Row) -> ResultRecord:
    return ResultRecord(
        item_id=row["item_id"],
        agent_name=row["agent_name"],
        assigned_labels=row["assigned_labels"],
        external_message_id=row["external_message_id"],
        status=row["status"],
        created_at=_parse_dt(row["created_at"]),
        dispatched_at=_parse_dt(row["dispatched_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        attempts=row["attempts"],
        last_error=row["last_error"],
    )


# ─────────────────────────────────────────────
# Activity log
# ─────────────────────────────────────────────

async def activity_log(
    db: aiosqlite.Connection,
    kind: str,
    agent_name: Optional[str] = None,
    conversation_id: Optional[str] = None,
    detail: Optional[dict] = None,
) -> None:
    await db.execute(
        "INSERT INTO activity_log (kind, agent_name, conversation_id, detail, created_at) VALUES (?, ?, ?, ?, ?)",
        (kind, agent_name, conversation_id, json.dumps(detail) if detail else None, _now()),
    )
    await db.commit()


async def activity_list(db: aiosqlite.Connection, limit: int = 100) -> list[ActivityEntry]:
    async with db.execute("SELECT * FROM activity_log ORDER BY id DESC LIMIT ?", (limit,)) as cur:
        rows = await cur.fetchall()
    return [ActivityEntry(
        id=row["id"],
        kind=row["kind"],
        agent_name=row["agent_name"],
        conversation_id=row["conversation_id"],
        detail=row["detail"],
        created_at=_parse_dt(row["created_at"]),
    ) for row in rows]


# ─────────────────────────────────────────────
# Retention sweep
# ─────────────────────────────────────────────

async def sweep_expired(db: aiosqlite.Connection, retention_hours: float = 24) -> dict[str, int]:
    """
    Delete terminal results (completed / failed), orphaned pending requests and
    activity entries older than the retention window. Registration handshakes
    of agents that are still pending are kept.
    """
    cutoff = _cutoff(retention_hours)
    async with db.execute(
        "DELETE FROM results WHERE status IN ('completed', 'failed') "
        "AND COALESCE(completed_at, created_at) < ?",
        (cutoff,),
    ) as cur:
        results = cur.rowcount
    # A registration handshake stays open while its agent is still pending
    async with db.execute(
        "DELETE FROM pending_requests WHERE created_at < ? "
        "AND NOT (kind = 'registration' AND EXISTS ("
        "SELECT 1 FROM agents WHERE agents.name = pending_requests.user AND agents.status = 'pending'))",
        (cutoff,),
    ) as cur:
        pending = cur.rowcount
    async with db.execute("DELETE FROM activity_log WHERE created_at < ?", (cutoff,)) as cur:
        activity = cur.rowcount
    await db.commit()
    if results or pending or activity:
        logger.debug(f"Swept {results} results, {pending} pending requests, {activity} activity entries.")
    return {"results": results, "pending": pending, "activity": activity}


# ─────────────────────────────────────────────
# Cycle lease (overlap guard)
# ─────────────────────────────────────────────

async def lease_acquire(db: aiosqlite.Connection, holder: str, stale_after_seconds: int) -> bool:
    """
    Take the single cycle lease. Succeeds if nobody holds it, or the current
    holder acquired it more than ``stale_after_seconds`` ago.
    """
    stale = (datetime.now(timezone.utc) - timedelta(seconds=stale_after_seconds)).isoformat()
    async with db.execute(
        "UPDATE cycle_lease SET holder = ?, acquired_at = ? "
        "WHERE id = 1 AND (holder IS NULL OR acquired_at < ?)",
        (holder, _now(), stale),
    ) as cur:
        acquired = cur.rowcount
    await db.commit()
    return acquired > 0


async def lease_release(db: aiosqlite.Connection, holder: str) -> None:
    await db.execute(
        "UPDATE cycle_lease SET holder = NULL, acquired_at = NULL WHERE id = 1 AND holder = ?",
        (holder,),
    )
    await db.commit()
