"""
Unit tests for the registry, pending-request and result stores, the retention
sweep and the cycle lease. Uses an in-memory SQLite database per test.
"""
from datetime import datetime, timezone, timedelta

import aiosqlite
import pytest

from centralhub.db import crud
from centralhub.db.crud import DuplicateRegistration
from centralhub.db import database
from centralhub.db.database import init_schema


async def _make_db() -> aiosqlite.Connection:
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await init_schema(db)
    return db


async def _backdate(db, table: str, column: str, hours_ago: float) -> None:
    old = (datetime.now(timezone.utc) - timedelta(hours=hours_ago)).isoformat()
    await db.execute(f"UPDATE {table} SET {column} = ?", (old,))
    await db.commit()


# ─────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_agent_register_creates_pending_agent():
    db = await _make_db()
    try:
        agent, created = await crud.agent_register(db, "alice", "https://a.example/hook", email="a@example.com")
        assert created is True
        assert agent.status == "pending"
        assert agent.email == "a@example.com"
        assert (await crud.agent_get(db, "alice")).callback_url == "https://a.example/hook"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_agent_register_same_url_is_duplicate():
    db = await _make_db()
    try:
        await crud.agent_register(db, "alice", "https://a.example/hook")
        with pytest.raises(DuplicateRegistration) as exc_info:
            await crud.agent_register(db, "alice", "https://a.example/hook")
        assert exc_info.value.status == "pending"
        assert len(await crud.agent_list(db)) == 1
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_agent_register_new_url_resets_to_pending():
    db = await _make_db()
    try:
        await crud.agent_register(db, "alice", "https://a.example/old", sheet_id="s1")
        assert await crud.agent_activate(db, "alice") is True

        agent, created = await crud.agent_register(db, "alice", "https://a.example/new")
        assert created is False
        assert agent.callback_url == "https://a.example/new"
        assert agent.status == "pending"
        assert agent.sheet_id == "s1"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_inactive_agent_same_url_reregisters():
    db = await _make_db()
    try:
        await crud.agent_register(db, "alice", "https://a.example/hook")
        await crud.agent_deactivate(db, "alice")
        agent, created = await crud.agent_register(db, "alice", "https://a.example/hook")
        assert created is False
        assert agent.status == "pending"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_agent_activate_only_from_pending():
    db = await _make_db()
    try:
        await crud.agent_register(db, "alice", "https://a.example/hook")
        assert await crud.agent_activate(db, "alice") is True
        assert await crud.agent_activate(db, "alice") is False
        await crud.agent_deactivate(db, "alice")
        assert await crud.agent_activate(db, "alice") is False
        assert (await crud.agent_get(db, "alice")).status == "inactive"
        assert await crud.agent_activate(db, "nobody") is False
    finally:
        await db.close()


# ─────────────────────────────────────────────
# Pending requests
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_pending_open_is_unique_per_conversation_and_merges_ids():
    db = await _make_db()
    try:
        first = await crud.pending_open(db, "alice", "e1", "item", ["m1"])
        second = await crud.pending_open(db, "alice", "e1", "item", ["m1", "m2"])
        assert second.request_id == first.request_id
        assert second.tracked_message_ids == ["m1", "m2"]

        rows = await crud.pending_list(db)
        assert len(rows) == 1
        assert rows[0].tracked_message_ids == ["m1", "m2"]

        assert await crud.pending_delete(db, first.request_id) is True
        assert await crud.pending_get(db, "alice", "e1") is None
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_pending_open_rejects_unknown_kind():
    db = await _make_db()
    try:
        with pytest.raises(ValueError):
            await crud.pending_open(db, "alice", "e1", "bogus", [])
    finally:
        await db.close()


# ─────────────────────────────────────────────
# Result queue
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_result_create_is_idempotent():
    db = await _make_db()
    try:
        r1 = await crud.result_create(db, "e1", "alice", "Work", "ext-1")
        r2 = await crud.result_create(db, "e1", "alice", "Other", "ext-2")
        assert r1.status == "new"
        assert r2.assigned_labels == "Work"
        assert len(await crud.result_list(db)) == 1
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_result_transitions_are_monotonic():
    db = await _make_db()
    try:
        await crud.result_create(db, "e1", "alice", "Work")
        assert await crud.result_mark_dispatched(db, "alice", "e1") is True
        assert await crud.result_mark_dispatched(db, "alice", "e1") is False

        row = await crud.result_get(db, "alice", "e1")
        assert row.status == "dispatched"
        assert row.dispatched_at is not None

        assert await crud.result_mark_completed(db, "alice", "e1") is True
        assert await crud.result_mark_completed(db, "alice", "e1") is False
        assert await crud.result_mark_dispatched(db, "alice", "e1") is False
        assert (await crud.result_get(db, "alice", "e1")).status == "completed"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_result_failure_keeps_new_without_cap():
    db = await _make_db()
    try:
        await crud.result_create(db, "e1", "alice", "Work")
        for _ in range(5):
            assert await crud.result_record_failure(db, "alice", "e1", "HTTP 500", max_attempts=0) == "new"
        row = await crud.result_get(db, "alice", "e1")
        assert row.status == "new"
        assert row.attempts == 5
        assert row.last_error == "HTTP 500"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_result_failure_dead_letters_at_cap():
    db = await _make_db()
    try:
        await crud.result_create(db, "e1", "alice", "Work")
        assert await crud.result_record_failure(db, "alice", "e1", "boom", max_attempts=2) == "new"
        assert await crud.result_record_failure(db, "alice", "e1", "boom", max_attempts=2) == "failed"
        assert (await crud.result_get(db, "alice", "e1")).status == "failed"
        assert await crud.result_list(db, status="new") == []
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_result_counts_and_invalid_status():
    db = await _make_db()
    try:
        await crud.result_create(db, "e1", "alice", "Work")
        await crud.result_create(db, "e2", "alice", "Home")
        await crud.result_mark_dispatched(db, "alice", "e2")
        counts = await crud.result_counts(db)
        assert counts["new"] == 1
        assert counts["dispatched"] == 1
        assert counts["completed"] == 0
        with pytest.raises(ValueError):
            await crud.result_list(db, status="bogus")
    finally:
        await db.close()


# ─────────────────────────────────────────────
# Retention sweep
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sweep_removes_only_old_terminal_rows():
    db = await _make_db()
    try:
        await crud.result_create(db, "done-old", "alice", "Work")
        await crud.result_mark_completed(db, "alice", "done-old")
        await crud.pending_open(db, "alice", "orphan", "item", ["m1"])
        await crud.activity_log(db, "test.entry", "alice")
        await _backdate(db, "results", "completed_at", hours_ago=25)
        await _backdate(db, "pending_requests", "created_at", hours_ago=25)
        await _backdate(db, "activity_log", "created_at", hours_ago=25)

        await crud.result_create(db, "done-fresh", "alice", "Work")
        await crud.result_mark_completed(db, "alice", "done-fresh")
        await crud.result_create(db, "new-old", "alice", "Work")
        await _backdate(db, "results", "created_at", hours_ago=48)

        swept = await crud.sweep_expired(db, retention_hours=24)
        assert swept == {"results": 1, "pending": 1, "activity": 1}

        remaining = {r.item_id for r in await crud.result_list(db)}
        assert remaining == {"done-fresh", "new-old"}
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_sweep_keeps_open_handshake_of_pending_agent():
    db = await _make_db()
    try:
        await crud.agent_register(db, "alice", "https://a.example/hook")
        await crud.agent_register(db, "bob", "https://b.example/hook")
        await crud.agent_activate(db, "bob")
        await crud.pending_open(db, "alice", "reg-a", "registration", ["m1"])
        await crud.pending_open(db, "bob", "reg-b", "registration", ["m2"])
        await _backdate(db, "pending_requests", "created_at", hours_ago=48)

        swept = await crud.sweep_expired(db, retention_hours=24)
        assert swept["pending"] == 1
        assert await crud.pending_get(db, "alice", "reg-a") is not None
        assert await crud.pending_get(db, "bob", "reg-b") is None
    finally:
        await db.close()


# ─────────────────────────────────────────────
# Cycle lease
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_lease_is_exclusive_until_released():
    db = await _make_db()
    try:
        assert await crud.lease_acquire(db, "cycle-a", stale_after_seconds=600) is True
        assert await crud.lease_acquire(db, "cycle-b", stale_after_seconds=600) is False
        await crud.lease_release(db, "cycle-b")   # not the holder: no effect
        assert await crud.lease_acquire(db, "cycle-b", stale_after_seconds=600) is False
        await crud.lease_release(db, "cycle-a")
        assert await crud.lease_acquire(db, "cycle-b", stale_after_seconds=600) is True
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_stale_lease_can_be_taken_over():
    db = await _make_db()
    try:
        assert await crud.lease_acquire(db, "crashed", stale_after_seconds=600) is True
        await _backdate(db, "cycle_lease", "acquired_at", hours_ago=1)
        assert await crud.lease_acquire(db, "fresh", stale_after_seconds=600) is True
    finally:
        await db.close()


# ─────────────────────────────────────────────
# Shared connection
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_get_db_opens_file_database_once_in_wal_mode(monkeypatch, tmp_path):
    path = tmp_path / "nested" / "hub.db"
    monkeypatch.setattr(database, "DB_PATH", str(path))
    monkeypatch.setattr(database, "_db", None)
    db = await database.get_db()
    try:
        assert await database.get_db() is db
        async with db.execute("PRAGMA journal_mode") as cur:
            row = await cur.fetchone()
        assert row[0] == "wal"
        assert path.exists()
        assert await crud.lease_acquire(db, "x", stale_after_seconds=600) is True
    finally:
        await database.close_db()
    assert database._db is None
