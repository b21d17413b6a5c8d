"""
CentralHub main entry point.

Starts a FastAPI HTTP server that:
  1. Runs the polling cycle on a fixed interval (from the app lifespan)
  2. Exposes a manual "run once now" endpoint for operators
  3. Provides read-only views of the registry, result queue, pending
     conversations and activity log, plus the result ingest endpoint used by
     the external workflow engine
"""
import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from centralhub import config
from centralhub.callbacks import AgentClient
from centralhub.channel import ChannelError, MemoryChannel, build_channel
from centralhub.classifier import TEST_TYPE, format_message
from centralhub.cycle.orchestrator import run_cycle, run_forever
from centralhub.db import crud
from centralhub.db.database import get_db, close_db

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("centralhub")

DB_TIMEOUT = config.DB_TIMEOUT


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = await get_db()
    app.state.channel = build_channel()
    app.state.agents = AgentClient()
    app.state.poller = None
    if config.POLL_INTERVAL > 0:
        app.state.poller = asyncio.create_task(
            run_forever(db, app.state.channel, app.state.agents, config.POLL_INTERVAL)
        )
    else:
        logger.info("Recurring cycle disabled (POLL_INTERVAL=0); use POST /api/cycle/run")
    logger.info(f"{config.HUB_NAME} running at http://{config.HOST}:{config.PORT} "
                f"(channel={config.CHANNEL_BACKEND})")
    yield
    if app.state.poller is not None:
        app.state.poller.cancel()
        try:
            await app.state.poller
        except asyncio.CancelledError:
            pass
    await app.state.agents.aclose()
    await app.state.channel.aclose()
    await close_db()


app = FastAPI(
    title="CentralHub",
    description="Coordinator between end-user agents and the classification workflow.",
    version=config.HUB_VERSION,
    lifespan=lifespan,
)


async def _db():
    try:
        return await asyncio.wait_for(get_db(), timeout=DB_TIMEOUT)
    except asyncio.TimeoutError:
        raise HTTPException(status_code=503, detail="Database operation timeout")


async def _bounded(coro):
    try:
        return await asyncio.wait_for(coro, timeout=DB_TIMEOUT)
    except asyncio.TimeoutError:
        raise HTTPException(status_code=503, detail="Database operation timeout")


# ─────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────

@app.get("/api/agents")
async def api_agents(status: str | None = None):
    db = await _db()
    agents = await _bounded(crud.agent_list(db, status=status))
    return [{"name": a.name, "callback_url": a.callback_url, "status": a.status,
             "email": a.email, "sheet_id": a.sheet_id,
             "registered_at": a.registered_at.isoformat()} for a in agents]


@app.post("/api/agents/{name}/deactivate")
async def api_agent_deactivate(name: str):
    db = await _db()
    ok = await _bounded(crud.agent_deactivate(db, name))
    if ok:
        await crud.activity_log(db, "agent.deactivated", name)
    return {"ok": ok}


# ─────────────────────────────────────────────
# Result queue
# ─────────────────────────────────────────────

class ResultCreate(BaseModel):
    item_id: str
    agent_name: str
    assigned_labels: str
    external_message_id: str | None = None


@app.get("/api/results")
async def api_results(status: str | None = None, limit: int = 200):
    db = await _db()
    try:
        rows = await _bounded(crud.result_list(db, status=status, limit=limit))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [_result_json(r) for r in rows]


@app.post("/api/results", status_code=201)
async def api_create_result(body: ResultCreate):
    db = await _db()
    r = await _bounded(crud.result_create(
        db, body.item_id, body.agent_name, body.assigned_labels, body.external_message_id,
    ))
    return _result_json(r)


def _result_json(r) -> dict:
    return {
        "item_id": r.item_id, "agent_name": r.agent_name, "assigned_labels": r.assigned_labels,
        "external_message_id": r.external_message_id, "status": r.status,
        "created_at": r.created_at.isoformat(),
        "dispatched_at": r.dispatched_at.isoformat() if r.dispatched_at else None,
        "attempts": r.attempts, "last_error": r.last_error,
    }


# ─────────────────────────────────────────────
# Conversations, stats, activity
# ─────────────────────────────────────────────

@app.get("/api/pending")
async def api_pending():
    db = await _db()
    rows = await _bounded(crud.pending_list(db))
    return [{"request_id": p.request_id, "user": p.user, "conversation_id": p.conversation_id,
             "kind": p.kind, "tracked_message_ids": p.tracked_message_ids,
             "created_at": p.created_at.isoformat()} for p in rows]


@app.get("/api/stats")
async def api_stats():
    db = await _db()
    results = await _bounded(crud.result_counts(db))
    pending = await _bounded(crud.pending_list(db))
    agents = await _bounded(crud.agent_list(db))
    by_status = {"pending": 0, "active": 0, "inactive": 0}
    for a in agents:
        by_status[a.status] = by_status.get(a.status, 0) + 1
    return {"results": results, "pending_requests": len(pending), "agents": by_status}


@app.get("/api/activity")
async def api_activity(limit: int = 100):
    db = await _db()
    entries = await _bounded(crud.activity_list(db, limit=limit))
    return [{"id": e.id, "kind": e.kind, "agent_name": e.agent_name,
             "conversation_id": e.conversation_id,
             "detail": json.loads(e.detail) if e.detail else None,
             "created_at": e.created_at.isoformat()} for e in entries]


# ─────────────────────────────────────────────
# Operator actions
# ─────────────────────────────────────────────

@app.post("/api/cycle/run")
async def api_run_cycle(request: Request):
    """Run one cycle now. Returns skipped=true if a cycle is already in flight."""
    db = await _db()
    report = await run_cycle(db, request.app.state.channel, request.app.state.agents)
    return report.to_dict()


class OperatorTestMessage(BaseModel):
    user: str
    conversation_id: str | None = None
    body: str = "Connectivity test from the hub. Reply with status: closed."


@app.post("/api/test-message", status_code=201)
async def api_test_message(body: OperatorTestMessage, request: Request):
    conversation_id = body.conversation_id or f"test-{uuid.uuid4().hex[:8]}"
    text = format_message(body.user, conversation_id, TEST_TYPE, body=body.body)
    try:
        message_id = await request.app.state.channel.append(text)
    except ChannelError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"message_id": message_id, "conversation_id": conversation_id}


class ChannelPost(BaseModel):
    text: str
    author: str = "agent"


@app.post("/api/channel/messages", status_code=201)
async def api_channel_post(body: ChannelPost, request: Request):
    """Local development only: post into the in-memory channel as an agent would."""
    channel = request.app.state.channel
    if not isinstance(channel, MemoryChannel):
        raise HTTPException(status_code=400, detail="Only available with the memory channel backend")
    message_id = await channel.append(body.text, author=body.author)
    return {"message_id": message_id}


# ─────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────

class SettingsUpdate(BaseModel):
    HOST: str | None = None
    PORT: int | None = None
    POLL_INTERVAL: int | None = None
    FETCH_LIMIT: int | None = None
    READY_TYPE: str | None = None
    RETENTION_HOURS: int | None = None
    DISPATCH_MAX_ATTEMPTS: int | None = None
    CHANNEL_BACKEND: str | None = None
    CHAT_SPACE: str | None = None
    CHAT_CREDENTIALS: str | None = None


@app.get("/api/settings")
async def api_settings():
    return config.get_config_dict()


@app.put("/api/settings")
async def api_update_settings(body: SettingsUpdate):
    """Persist to data/config.json. Values take effect on the next restart."""
    changes = body.model_dump(exclude_none=True)
    try:
        config.save_config_dict(changes)
    except (OSError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "saved": sorted(changes), "restart_required": True}


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "service": config.HUB_NAME, "version": config.HUB_VERSION}


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("centralhub.main:app", host=config.HOST, port=config.PORT, reload=True)
