"""
Cycle orchestrator: one polling cycle over one fetched batch, plus the
recurring loop that drives it.

A cycle holds the sqlite cycle lease for its whole run. A tick that finds the
lease taken (by a slow previous cycle, a manual run, or another process)
returns immediately with ``skipped=True``.
"""
import asyncio
import logging
import os
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from centralhub import config
from centralhub.callbacks import AgentClient
from centralhub.channel import Channel, ChannelError, ChannelUnavailable
from centralhub.classifier import classify_batch
from centralhub.cycle.closer import close_conversations
from centralhub.cycle.dispatch import dispatch_results
from centralhub.cycle.registration import handle_registrations
from centralhub.cycle.sweeper import sweep
from centralhub.cycle.trigger import annotate_ready, open_test_conversations
from centralhub.db import crud

logger = logging.getLogger(__name__)


@dataclass
class CycleSettings:
    fetch_limit: int = config.FETCH_LIMIT
    ready_type: str = config.READY_TYPE
    retention_hours: float = config.RETENTION_HOURS
    max_attempts: int = config.DISPATCH_MAX_ATTEMPTS
    channel_timeout: float = config.CHANNEL_TIMEOUT
    lease_timeout: int = config.LEASE_TIMEOUT


@dataclass
class CycleReport:
    cycle_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    aborted: bool = False
    error: Optional[str] = None
    counts: dict[str, int] = field(default_factory=dict)

    def merge(self, stats: dict[str, int]) -> None:
        for k, v in stats.items():
            self.counts[k] = self.counts.get(k, 0) + v

    def to_dict(self) -> dict:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "skipped": self.skipped,
            "aborted": self.aborted,
            "error": self.error,
            "counts": dict(self.counts),
        }


async def run_cycle(
    db: aiosqlite.Connection,
    channel: Channel,
    agents: AgentClient,
    settings: Optional[CycleSettings] = None,
) -> CycleReport:
    settings = settings or CycleSettings()
    report = CycleReport(cycle_id=uuid.uuid4().hex[:8], started_at=datetime.now(timezone.utc))
    holder = f"{socket.gethostname()}:{os.getpid()}:{report.cycle_id}"

    if not await crud.lease_acquire(db, holder, settings.lease_timeout):
        logger.info(f"Cycle {report.cycle_id} skipped: another cycle holds the lease")
        report.skipped = True
        return report

    try:
        await _run_locked(db, channel, agents, settings, report)
    finally:
        await crud.lease_release(db, holder)
        report.finished_at = datetime.now(timezone.utc)

    if not report.aborted:
        busy = {k: v for k, v in report.counts.items() if v}
        logger.info(f"Cycle {report.cycle_id} done: {busy or 'nothing to do'}")
    return report


async def _run_locked(
    db: aiosqlite.Connection,
    channel: Channel,
    agents: AgentClient,
    settings: CycleSettings,
    report: CycleReport,
) -> None:
    try:
        messages = await asyncio.wait_for(channel.list(settings.fetch_limit), timeout=settings.channel_timeout)
    except (ChannelError, asyncio.TimeoutError) as e:
        if not isinstance(e, ChannelUnavailable):
            e = ChannelUnavailable(f"{type(e).__name__}: {e}")
        report.aborted = True
        report.error = str(e)
        logger.error(f"Cycle {report.cycle_id} aborted: {e}")
        await crud.activity_log(db, "cycle.aborted", detail={"cycle_id": report.cycle_id, "error": str(e)})
        return

    batch = classify_batch(messages, settings.ready_type, channel.marker)
    report.merge({"fetched": len(messages), "parsed": len(batch.all), "dropped": batch.dropped})

    # Conversations closing in this batch are not triggered or reopened
    closing = {r.key for r in batch.closed}
    ready = [r for r in batch.ready if r.key not in closing]
    tests = [r for r in batch.tests if r.key not in closing]

    report.merge(await handle_registrations(db, agents, batch.registrations))
    report.merge(await close_conversations(db, channel, agents, batch))
    report.merge(await annotate_ready(db, channel, ready))
    report.merge(await open_test_conversations(db, tests))
    report.merge(await dispatch_results(db, agents, settings.max_attempts))
    report.merge(await sweep(db, settings.retention_hours))


async def run_forever(
    db: aiosqlite.Connection,
    channel: Channel,
    agents: AgentClient,
    interval: float = config.POLL_INTERVAL,
    settings: Optional[CycleSettings] = None,
) -> None:
    """Run a cycle every ``interval`` seconds until cancelled."""
    logger.info(f"Polling cycle started (interval={interval}s)")
    while True:
        try:
            await run_cycle(db, channel, agents, settings)
        except Exception as exc:
            logger.error(f"Cycle loop error: {type(exc).__name__}: {exc}")
        await asyncio.sleep(interval)
