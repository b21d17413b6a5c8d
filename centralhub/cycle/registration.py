"""
Registration handler.

A REGISTER message opens a registration conversation: the agent is stored as
``pending`` and told to post a closing message. It only becomes ``active``
when that conversation closes (see closer.py).
"""
import logging

import aiosqlite

from centralhub.callbacks import AgentClient, CallbackError
from centralhub.classifier import parse_registration_body
from centralhub.db import crud
from centralhub.db.crud import DuplicateRegistration
from centralhub.db.models import ParsedRecord

logger = logging.getLogger(__name__)

CONFIRM_INSTRUCTIONS = (
    "Registration received. Post a message with status: closed for this "
    "conversation_id to finish registering."
)


async def handle_registrations(
    db: aiosqlite.Connection,
    agents: AgentClient,
    records: list[ParsedRecord],
) -> dict[str, int]:
    stats = {"registered": 0, "reregistered": 0, "reopened": 0, "duplicates": 0, "registration_errors": 0}
    for record in records:
        try:
            outcome = await _register_one(db, agents, record)
        except Exception as e:
            stats["registration_errors"] += 1
            logger.warning(
                f"Registration failed for user={record.user} conversation={record.conversation_id}: "
                f"{type(e).__name__}: {e}"
            )
            continue
        if outcome in stats:
            stats[outcome] += 1
    return stats


async def _register_one(db: aiosqlite.Connection, agents: AgentClient, record: ParsedRecord) -> str:
    name, conversation_id = record.user, record.conversation_id
    info = parse_registration_body(record.body)
    webhook = info.get("webhook")
    if not name or not webhook:
        logger.warning(f"REGISTER message {record.source_message_id} has no user or webhook, skipping")
        return "registration_errors"

    outcome = "registered"
    try:
        _, created = await crud.agent_register(
            db, name, webhook, email=info.get("email"), sheet_id=info.get("sheet_id"),
        )
        if not created:
            outcome = "reregistered"
    except DuplicateRegistration as e:
        open_handshake = await crud.pending_get(db, name, conversation_id)
        if open_handshake is not None:
            # Keep the repeat message attached to the open handshake so it is cleaned up on close
            await crud.pending_open(db, name, conversation_id, "registration", [record.source_message_id])
        if e.status != "pending" or open_handshake is not None:
            logger.info(f"Duplicate registration ignored: {e}")
            return "duplicates"
        logger.info(f"Agent '{name}' is pending with no open handshake, reopening {conversation_id}")
        outcome = "reopened"

    await crud.pending_open(db, name, conversation_id, "registration", [record.source_message_id])
    await crud.activity_log(
        db, f"agent.{outcome}", name, conversation_id,
        {"webhook": webhook, "email": info.get("email")},
    )

    try:
        await agents.call(
            webhook,
            "registration_confirmed",
            agentName=name,
            conversationId=conversation_id,
            message=CONFIRM_INSTRUCTIONS,
        )
    except CallbackError as e:
        # One-shot: re-posting REGISTER reopens the handshake and confirms again
        logger.warning(f"registration_confirmed callback to '{name}' failed: {e.reason}")
        await crud.activity_log(db, "callback.failed", name, conversation_id,
                                {"action": "registration_confirmed", "error": e.reason})

    return outcome
