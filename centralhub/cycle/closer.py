"""
Conversation closer.

Every conversation, whatever it was for (registration handshake, ad-hoc test,
item classification), ends the same way: a message with ``status: closed``
for its ``(user, conversation_id)``. On seeing one, the hub deletes every
channel message belonging to the conversation, completes the matching
result, activates a pending registration, confirms to the agent and drops
the pending request.
"""
import logging

import aiosqlite

from centralhub.callbacks import AgentClient, CallbackError
from centralhub.channel import Channel, ChannelError, DeleteResult
from centralhub.classifier import ClassifiedBatch
from centralhub.db import crud

logger = logging.getLogger(__name__)


async def close_conversations(
    db: aiosqlite.Connection,
    channel: Channel,
    agents: AgentClient,
    batch: ClassifiedBatch,
) -> dict[str, int]:
    stats = {
        "closed": 0, "deleted": 0, "delete_errors": 0,
        "completed": 0, "completed_undelivered": 0, "activated": 0, "close_errors": 0,
    }
    seen: set[tuple[str, str]] = set()
    for record in batch.closed:
        if not record.user or not record.conversation_id:
            continue
        key = (record.user, record.conversation_id)
        if key in seen:
            continue
        seen.add(key)
        try:
            await _close_one(db, channel, agents, batch, record.user, record.conversation_id, stats)
        except Exception as e:
            stats["close_errors"] += 1
            logger.warning(
                f"Closing conversation ({record.user}, {record.conversation_id}) failed: "
                f"{type(e).__name__}: {e}"
            )
            continue
        stats["closed"] += 1
    return stats


async def _close_one(
    db: aiosqlite.Connection,
    channel: Channel,
    agents: AgentClient,
    batch: ClassifiedBatch,
    user: str,
    conversation_id: str,
    stats: dict[str, int],
) -> None:
    message_ids = [r.source_message_id for r in batch.for_conversation(user, conversation_id)]
    result = await crud.result_get(db, user, conversation_id)
    if result is not None and result.external_message_id:
        message_ids.append(result.external_message_id)
    pending = await crud.pending_get(db, user, conversation_id)
    if pending is not None:
        message_ids.extend(pending.tracked_message_ids)
    message_ids = list(dict.fromkeys(message_ids))

    try:
        deleted = await channel.delete(message_ids)
    except ChannelError as e:
        deleted = DeleteResult(errors=[(mid, str(e)) for mid in message_ids])
    for mid, error in deleted.errors:
        logger.warning(f"Could not delete {mid} for ({user}, {conversation_id}): {error}")
    stats["deleted"] += deleted.deleted_count
    stats["delete_errors"] += len(deleted.errors)

    if result is not None and await crud.result_mark_completed(db, user, conversation_id):
        stats["completed"] += 1
        if result.status == "new":
            stats["completed_undelivered"] += 1
            logger.warning(f"Result {conversation_id} for '{user}' closed before its labels were delivered")
            await crud.activity_log(db, "result.closed_undelivered", user, conversation_id, {
                "labels": result.assigned_labels,
                "attempts": result.attempts,
                "last_error": result.last_error,
            })

    if pending is not None:
        if pending.kind == "registration" and await crud.agent_activate(db, user):
            stats["activated"] += 1
            logger.info(f"Agent '{user}' activated")
        await _confirm_close(db, agents, user, conversation_id, pending.kind)
        await crud.pending_delete(db, pending.request_id)

    await crud.activity_log(db, "conversation.closed", user, conversation_id, {
        "deleted": deleted.deleted_count,
        "delete_errors": len(deleted.errors),
        "result": result.item_id if result else None,
        "pending_kind": pending.kind if pending else None,
    })


async def _confirm_close(
    db: aiosqlite.Connection,
    agents: AgentClient,
    user: str,
    conversation_id: str,
    kind: str,
) -> None:
    agent = await crud.agent_get(db, user)
    if agent is None:
        logger.info(f"No registered agent '{user}' to confirm close of {conversation_id}")
        return
    action = "registration_complete" if kind == "registration" else "conversation_closed"
    try:
        await agents.call(
            agent.callback_url,
            action,
            agentName=user,
            conversationId=conversation_id,
            kind=kind,
            status=agent.status,
        )
    except CallbackError as e:
        logger.warning(f"{action} callback to '{user}' failed: {e.reason}")
        await crud.activity_log(db, "callback.failed", user, conversation_id,
                                {"action": action, "error": e.reason})
