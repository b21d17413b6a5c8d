"""
Message classifier: the only place raw channel text is interpreted.

Every producer on the channel writes messages in the header format::

    user: alice
    conversation_id: 18c2f0
    type: ITEM_READY
    status: processing

    <free-form body>

Older agents still post the legacy one-liners ``@agent:[id] TYPE`` and
``[id] TYPE``; anything else is kept as untyped body text with no user.
The rest of the hub only ever sees ParsedRecord objects.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from centralhub.config import READY_TYPE, ANNOTATION_EMOJI
from centralhub.db.models import ChannelMessage, ParsedRecord

logger = logging.getLogger(__name__)

HEADER_KEYS = ("user", "conversation_id", "type", "status")
REQUIRED_KEYS = ("user", "conversation_id", "type")
STATUSES = ("processing", "closed")

REGISTER_TYPE = "REGISTER"
TEST_TYPE = "TEST"

_HEADER_LINE = re.compile(r"^\s*([A-Za-z_]+)\s*:\s*(.*?)\s*$")
_LEGACY_AGENT = re.compile(r"^@(?P<user>[^:\s\[]+):\[(?P<cid>[^\]]+)\]\s+(?P<type>[A-Za-z_]+)\s*$")
_LEGACY_BARE = re.compile(r"^\[(?P<cid>[^\]]+)\]\s+(?P<type>[A-Za-z_]+)\s*$")
_KV_LINE = re.compile(r"^\s*([A-Za-z_]+)\s*=\s*(.*?)\s*$")


class ParseFailure(Exception):
    """Raised when a message looks structured but cannot be turned into a record."""

    def __init__(self, message_id: str, reason: str) -> None:
        self.message_id = message_id
        self.reason = reason
        super().__init__(f"Cannot parse message {message_id}: {reason}")


@dataclass
class ClassifiedBatch:
    registrations: list[ParsedRecord] = field(default_factory=list)
    closed: list[ParsedRecord] = field(default_factory=list)
    ready: list[ParsedRecord] = field(default_factory=list)
    tests: list[ParsedRecord] = field(default_factory=list)
    all: list[ParsedRecord] = field(default_factory=list)
    dropped: int = 0

    def for_conversation(self, user: str, conversation_id: str) -> list[ParsedRecord]:
        return [r for r in self.all if r.user == user and r.conversation_id == conversation_id]


def _split_header(text: str) -> tuple[dict[str, str], str]:
    """Split ``text`` at the first blank line; return recognized header keys and the body."""
    lines = text.strip("\n").splitlines()
    header: dict[str, str] = {}
    body_start = len(lines)
    for i, line in enumerate(lines):
        if not line.strip():
            body_start = i + 1
            break
        m = _HEADER_LINE.match(line)
        if m and m.group(1).lower() in HEADER_KEYS:
            header.setdefault(m.group(1).lower(), m.group(2))
    body = "\n".join(lines[body_start:]).strip()
    return header, body


def _parse_legacy(msg: ChannelMessage) -> Optional[ParsedRecord]:
    first, _, rest = msg.text.strip().partition("\n")
    m = _LEGACY_AGENT.match(first.strip())
    if m:
        user = m.group("user")
    else:
        m = _LEGACY_BARE.match(first.strip())
        if not m:
            return None
        user = msg.author or None
    return ParsedRecord(
        user=user,
        conversation_id=m.group("cid").strip(),
        type=m.group("type").upper(),
        status="processing",
        body=rest.strip(),
        source_message_id=msg.id,
        fmt="legacy",
    )


def parse_message(msg: ChannelMessage, marker: str = ANNOTATION_EMOJI) -> ParsedRecord:
    """Turn one channel message into a ParsedRecord. Raises ParseFailure."""
    if not msg.id:
        raise ParseFailure("<none>", "message has no id")
    text = msg.text or ""
    annotated = marker in (msg.annotations or [])

    header, body = _split_header(text)
    if all(header.get(k) for k in REQUIRED_KEYS):
        status = (header.get("status") or "processing").lower()
        if status not in STATUSES:
            raise ParseFailure(msg.id, f"unknown status '{status}'")
        return ParsedRecord(
            user=header["user"],
            conversation_id=header["conversation_id"],
            type=header["type"].upper(),
            status=status,
            body=body,
            source_message_id=msg.id,
            fmt="header",
            annotated=annotated,
        )

    record = _parse_legacy(msg)
    if record is None:
        record = ParsedRecord(
            user=None, conversation_id=None, type=None, status="processing",
            body=text.strip(), source_message_id=msg.id, fmt="bare",
        )
    record.annotated = annotated
    return record


def classify_batch(
    messages: list[ChannelMessage],
    ready_type: str = READY_TYPE,
    marker: str = ANNOTATION_EMOJI,
) -> ClassifiedBatch:
    batch = ClassifiedBatch()
    for msg in messages:
        try:
            record = parse_message(msg, marker)
        except ParseFailure as e:
            batch.dropped += 1
            logger.warning(f"Dropping message: {e}")
            continue

        batch.all.append(record)
        if record.status == "closed":
            batch.closed.append(record)
        elif record.type == REGISTER_TYPE:
            batch.registrations.append(record)
        elif record.type == ready_type and not record.annotated:
            batch.ready.append(record)
        elif record.type == TEST_TYPE:
            batch.tests.append(record)

    logger.debug(
        f"Classified {len(batch.all)} messages: {len(batch.registrations)} register, "
        f"{len(batch.closed)} closed, {len(batch.ready)} ready, {len(batch.tests)} test, "
        f"{batch.dropped} dropped"
    )
    return batch


def parse_registration_body(body: str) -> dict[str, str]:
    """Read the ``email=`` / ``webhook=`` / ``sheetId=`` lines of a REGISTER message."""
    info: dict[str, str] = {}
    for line in body.splitlines():
        m = _KV_LINE.match(line)
        if not m:
            continue
        key = m.group(1).lower()
        if key == "email":
            info["email"] = m.group(2)
        elif key == "webhook":
            info["webhook"] = m.group(2)
        elif key == "sheetid":
            info["sheet_id"] = m.group(2)
    return info


def format_message(user: str, conversation_id: str, type_: str, status: str = "processing", body: str = "") -> str:
    """Render a message in the header format (used for hub-authored posts and tests)."""
    text = f"user: {user}\nconversation_id: {conversation_id}\ntype: {type_}\nstatus: {status}\n"
    return f"{text}\n{body}" if body else text
