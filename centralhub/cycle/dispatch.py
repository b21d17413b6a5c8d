"""
Result dispatcher.

Driven purely by the result queue, not by the channel batch: every ``new``
row is offered to its agent once per cycle. A failed call leaves the row
``new`` for the next cycle. Dispatched rows wait for their conversation to
close before they complete.
"""
import logging

import aiosqlite

from centralhub.callbacks import AgentClient, CallbackError
from centralhub.config import DISPATCH_MAX_ATTEMPTS
from centralhub.db import crud
from centralhub.db.models import RegisteredAgent, ResultRecord

logger = logging.getLogger(__name__)


class DispatchFailure(Exception):
    """An apply_labels callback failed for one result row."""

    def __init__(self, item_id: str, agent_name: str, reason: str) -> None:
        self.item_id = item_id
        self.agent_name = agent_name
        self.reason = reason
        super().__init__(f"Dispatch of {item_id} to '{agent_name}' failed: {reason}")


async def dispatch_results(
    db: aiosqlite.Connection,
    agents: AgentClient,
    max_attempts: int = DISPATCH_MAX_ATTEMPTS,
) -> dict[str, int]:
    stats = {"dispatched": 0, "dispatch_failures": 0, "dispatch_skipped": 0, "dead_lettered": 0}
    rows = await crud.result_list(db, status="new")
    for row in rows:
        try:
            agent = await crud.agent_get(db, row.agent_name)
            if agent is None or agent.status == "inactive":
                stats["dispatch_skipped"] += 1
                logger.info(
                    f"Skipping result {row.item_id}: agent '{row.agent_name}' is "
                    f"{'unknown' if agent is None else agent.status}"
                )
                continue
            await _dispatch_one(db, agents, agent, row)
            stats["dispatched"] += 1
        except DispatchFailure as e:
            stats["dispatch_failures"] += 1
            logger.warning(str(e))
            if await _record_failure(db, row, e.reason, max_attempts) == "failed":
                stats["dead_lettered"] += 1
        except Exception as e:
            stats["dispatch_failures"] += 1
            logger.warning(f"Dispatch of {row.item_id} to '{row.agent_name}' errored: {type(e).__name__}: {e}")
    return stats


async def _record_failure(db: aiosqlite.Connection, row: ResultRecord, reason: str, max_attempts: int) -> str:
    try:
        status = await crud.result_record_failure(db, row.agent_name, row.item_id, reason, max_attempts)
        if status == "failed":
            await crud.activity_log(db, "result.dead_lettered", row.agent_name, row.item_id, {"error": reason})
        return status
    except Exception as e:
        logger.warning(f"Could not record dispatch failure for {row.item_id}: {type(e).__name__}: {e}")
        return "unknown"


async def _dispatch_one(
    db: aiosqlite.Connection,
    agents: AgentClient,
    agent: RegisteredAgent,
    row: ResultRecord,
) -> None:
    try:
        await agents.call(
            agent.callback_url,
            "apply_labels",
            itemId=row.item_id,
            assignedLabels=row.assigned_labels,
            externalMessageId=row.external_message_id,
        )
    except CallbackError as e:
        raise DispatchFailure(row.item_id, row.agent_name, e.reason) from e

    if await crud.result_mark_dispatched(db, row.agent_name, row.item_id):
        await crud.activity_log(db, "result.dispatched", row.agent_name, row.item_id,
                                {"labels": row.assigned_labels})
