"""
Data models (dataclasses) for CentralHub.
These are plain Python objects shared by the channel, the stores and the cycle handlers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class ChannelMessage:
    id: str
    author: str
    text: str
    created_at: Optional[datetime] = None
    annotations: list[str] = field(default_factory=list)   # emoji / marker strings


@dataclass
class ParsedRecord:
    """
    One classified channel message. Produced by the classifier once per cycle
    and never persisted.
    """
    user: Optional[str]
    conversation_id: Optional[str]
    type: Optional[str]
    status: str                  # processing | closed
    body: str
    source_message_id: str
    fmt: str = "header"          # header | legacy | bare
    annotated: bool = False

    @property
    def key(self) -> tuple[Optional[str], Optional[str]]:
        return (self.user, self.conversation_id)


@dataclass
class RegisteredAgent:
    name: str
    callback_url: str
    status: str                  # pending | active | inactive
    registered_at: datetime
    updated_at: datetime
    email: Optional[str] = None
    sheet_id: Optional[str] = None


@dataclass
class PendingRequest:
    request_id: str
    user: str
    conversation_id: str
    kind: str                    # registration | item | test
    tracked_message_ids: list[str]
    created_at: datetime


@dataclass
class ResultRecord:
    item_id: str
    agent_name: str
    assigned_labels: str
    external_message_id: Optional[str]
    status: str                  # new | dispatched | completed | failed
    created_at: datetime
    dispatched_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempts: int = 0
    last_error: Optional[str] = None


@dataclass
class ActivityEntry:
    """Append-only activity log row; the operator-facing record of what each cycle did."""
    id: int
    kind: str                    # agent.registered | result.dispatched | conversation.closed | ...
    agent_name: Optional[str]
    conversation_id: Optional[str]
    detail: Optional[str]        # JSON string
    created_at: datetime
