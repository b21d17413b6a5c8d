"""
Trigger annotator.

The external workflow engine watches the channel for the trigger reaction.
The reaction is also the only record of "already triggered": nothing here is
remembered between cycles, so re-running a cycle never fires twice.
"""
import logging

import aiosqlite

from centralhub.channel import Channel, ChannelError
from centralhub.db import crud
from centralhub.db.models import ParsedRecord

logger = logging.getLogger(__name__)


async def annotate_ready(
    db: aiosqlite.Connection,
    channel: Channel,
    records: list[ParsedRecord],
) -> dict[str, int]:
    stats = {"annotated": 0, "already_annotated": 0, "annotate_errors": 0}
    for record in records:
        try:
            outcome = await channel.annotate(record.source_message_id)
        except ChannelError as e:
            stats["annotate_errors"] += 1
            logger.warning(
                f"Annotate failed for {record.source_message_id} "
                f"({record.user}, {record.conversation_id}): {e}"
            )
            continue

        if outcome.already_annotated:
            stats["already_annotated"] += 1
        else:
            stats["annotated"] += 1

        if not record.user or not record.conversation_id:
            continue
        try:
            await crud.pending_open(db, record.user, record.conversation_id, "item",
                                    [record.source_message_id])
            if not outcome.already_annotated:
                await crud.activity_log(db, "item.triggered", record.user, record.conversation_id,
                                        {"message_id": record.source_message_id})
        except Exception as e:
            logger.warning(
                f"Could not track item conversation ({record.user}, {record.conversation_id}): "
                f"{type(e).__name__}: {e}"
            )
    return stats


async def open_test_conversations(db: aiosqlite.Connection, records: list[ParsedRecord]) -> dict[str, int]:
    """TEST messages are not triggered; they only open a conversation for the closer to finish."""
    stats = {"tests_opened": 0}
    for record in records:
        if not record.user or not record.conversation_id:
            continue
        try:
            await crud.pending_open(db, record.user, record.conversation_id, "test",
                                    [record.source_message_id])
        except Exception as e:
            logger.warning(
                f"Could not open test conversation ({record.user}, {record.conversation_id}): "
                f"{type(e).__name__}: {e}"
            )
            continue
        stats["tests_opened"] += 1
    return stats
