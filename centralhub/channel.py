"""
Channel port: the shared, multi-writer message log the hub polls.

The hub only ever lists, appends, annotates and deletes. Two backends:

- ``MemoryChannel``: in-process log, used by tests and local runs.
- ``ChatChannel``: a Google Chat space over the REST v1 API, authenticated
  with google-auth credentials. The trigger annotation is an emoji reaction
  on the message.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import google.auth
import httpx
from google.auth.credentials import Credentials
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from centralhub.config import (
    ANNOTATION_EMOJI,
    CHANNEL_BACKEND,
    CHANNEL_TIMEOUT,
    CHAT_API_BASE,
    CHAT_CREDENTIALS,
    CHAT_SCOPES,
    CHAT_SPACE,
    HUB_NAME,
)
from centralhub.db.models import ChannelMessage

logger = logging.getLogger(__name__)


class ChannelError(Exception):
    """A channel operation failed."""


class ChannelUnavailable(ChannelError):
    """Raised when the batch fetch fails; nothing downstream can run without it."""


class DeleteNotFound(ChannelError):
    """The message was already gone. Callers treat this as a successful delete."""

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__(f"Message not found: {message_id}")


@dataclass
class AnnotateResult:
    already_annotated: bool


@dataclass
class DeleteResult:
    deleted_count: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)   # (message_id, error)


class Channel:
    """Narrow interface every channel backend implements."""

    marker: str = ANNOTATION_EMOJI

    async def list(self, limit: int) -> list[ChannelMessage]:
        raise NotImplementedError

    async def append(self, text: str) -> str:
        raise NotImplementedError

    async def annotate(self, message_id: str) -> AnnotateResult:
        raise NotImplementedError

    async def delete(self, message_ids: list[str]) -> DeleteResult:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


# ─────────────────────────────────────────────
# In-memory backend
# ─────────────────────────────────────────────

class MemoryChannel(Channel):
    def __init__(self, marker: str = ANNOTATION_EMOJI) -> None:
        self.marker = marker
        self._messages: dict[str, ChannelMessage] = {}
        self._ids = itertools.count(1)

    async def list(self, limit: int) -> list[ChannelMessage]:
        newest_first = list(reversed(self._messages.values()))
        return newest_first[:limit]

    async def append(self, text: str, author: str = HUB_NAME) -> str:
        mid = f"msg-{next(self._ids)}"
        self._messages[mid] = ChannelMessage(
            id=mid, author=author, text=text, created_at=datetime.now(timezone.utc),
        )
        return mid

    async def annotate(self, message_id: str) -> AnnotateResult:
        msg = self._messages.get(message_id)
        if msg is None:
            raise ChannelError(f"Cannot annotate missing message {message_id}")
        if self.marker in msg.annotations:
            return AnnotateResult(already_annotated=True)
        msg.annotations.append(self.marker)
        return AnnotateResult(already_annotated=False)

    async def delete(self, message_ids: list[str]) -> DeleteResult:
        result = DeleteResult()
        for mid in message_ids:
            if self._messages.pop(mid, None) is None:
                logger.debug(f"Delete {mid}: already gone")
            result.deleted_count += 1
        return result

    def get(self, message_id: str) -> Optional[ChannelMessage]:
        return self._messages.get(message_id)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._messages

    def __len__(self) -> int:
        return len(self._messages)


# ─────────────────────────────────────────────
# Google Chat backend
# ─────────────────────────────────────────────

class GoogleCredentialsAuth(httpx.Auth):
    """
    Bearer auth from google-auth credentials. The access token is refreshed
    whenever it is missing or expired, and once more if the API answers 401.
    ``Credentials.refresh`` is blocking, so it runs in a worker thread.
    """

    def __init__(self, credentials: Credentials, refresh_request: Optional[object] = None) -> None:
        self._credentials = credentials
        self._refresh_request = refresh_request if refresh_request is not None else GoogleAuthRequest()
        self._lock = asyncio.Lock()

    async def _refresh(self, force: bool = False) -> None:
        async with self._lock:
            if force or not self._credentials.valid:
                await asyncio.to_thread(self._credentials.refresh, self._refresh_request)
                logger.debug("Chat API access token refreshed")

    async def async_auth_flow(self, request: httpx.Request):
        await self._refresh()
        request.headers["Authorization"] = f"Bearer {self._credentials.token}"
        response = yield request
        if response.status_code == 401:
            await self._refresh(force=True)
            request.headers["Authorization"] = f"Bearer {self._credentials.token}"
            yield request


def load_chat_credentials(credentials_path: str = CHAT_CREDENTIALS, scopes=CHAT_SCOPES) -> Credentials:
    """Service-account key file if given, otherwise Application Default Credentials."""
    if credentials_path:
        return service_account.Credentials.from_service_account_file(credentials_path, scopes=list(scopes))
    credentials, _ = google.auth.default(scopes=list(scopes))
    return credentials


class ChatChannel(Channel):
    """
    Google Chat space over REST v1. Message ids are full resource names
    (``spaces/AAA/messages/BBB``).
    """

    def __init__(
        self,
        space: str,
        auth: Optional[httpx.Auth] = None,
        api_base: str = CHAT_API_BASE,
        marker: str = ANNOTATION_EMOJI,
        timeout: float = CHANNEL_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not space.startswith("spaces/"):
            space = f"spaces/{space}"
        self.space = space
        self.marker = marker
        self._client = httpx.AsyncClient(
            base_url=api_base.rstrip("/") + "/",
            auth=auth,
            timeout=timeout,
            transport=transport,
        )

    async def list(self, limit: int) -> list[ChannelMessage]:
        try:
            resp = await self._client.get(
                f"{self.space}/messages",
                params={"pageSize": limit, "orderBy": "createTime desc"},
            )
        except (httpx.HTTPError, GoogleAuthError) as e:
            raise ChannelUnavailable(f"Channel fetch failed: {type(e).__name__}: {e}") from e
        if resp.status_code != 200:
            raise ChannelUnavailable(f"Channel fetch failed: HTTP {resp.status_code} {resp.text[:200]}")
        return [self._to_message(m) for m in resp.json().get("messages", [])]

    async def append(self, text: str) -> str:
        try:
            resp = await self._client.post(f"{self.space}/messages", json={"text": text})
        except (httpx.HTTPError, GoogleAuthError) as e:
            raise ChannelError(f"Append failed: {type(e).__name__}: {e}") from e
        if resp.status_code != 200:
            raise ChannelError(f"Append failed: HTTP {resp.status_code} {resp.text[:200]}")
        return resp.json()["name"]

    async def annotate(self, message_id: str) -> AnnotateResult:
        try:
            resp = await self._client.post(
                f"{message_id}/reactions",
                json={"emoji": {"unicode": self.marker}},
            )
        except (httpx.HTTPError, GoogleAuthError) as e:
            raise ChannelError(f"Annotate {message_id} failed: {type(e).__name__}: {e}") from e
        if resp.status_code == 409:
            return AnnotateResult(already_annotated=True)
        if resp.status_code != 200:
            raise ChannelError(f"Annotate {message_id} failed: HTTP {resp.status_code} {resp.text[:200]}")
        return AnnotateResult(already_annotated=False)

    async def delete(self, message_ids: list[str]) -> DeleteResult:
        result = DeleteResult()
        for mid in message_ids:
            try:
                await self._delete_one(mid)
            except DeleteNotFound:
                logger.debug(f"Delete {mid}: already gone")
            except ChannelError as e:
                result.errors.append((mid, str(e)))
                continue
            result.deleted_count += 1
        return result

    async def _delete_one(self, message_id: str) -> None:
        try:
            resp = await self._client.delete(message_id)
        except (httpx.HTTPError, GoogleAuthError) as e:
            raise ChannelError(f"{type(e).__name__}: {e}") from e
        if resp.status_code == 404:
            raise DeleteNotFound(message_id)
        if resp.status_code != 200:
            raise ChannelError(f"HTTP {resp.status_code} {resp.text[:200]}")

    async def aclose(self) -> None:
        await self._client.aclose()

    def _to_message(self, raw: dict) -> ChannelMessage:
        annotations = [
            s.get("emoji", {}).get("unicode")
            for s in raw.get("emojiReactionSummaries", [])
            if s.get("emoji", {}).get("unicode")
        ]
        return ChannelMessage(
            id=raw["name"],
            author=(raw.get("sender") or {}).get("displayName", ""),
            text=raw.get("text", ""),
            created_at=_parse_create_time(raw.get("createTime")),
            annotations=annotations,
        )


def build_channel() -> Channel:
    """Create the channel backend selected by CENTRALHUB_CHANNEL_BACKEND."""
    if CHANNEL_BACKEND == "chat":
        if not CHAT_SPACE:
            raise ValueError("CENTRALHUB_CHAT_SPACE must be set for the chat channel backend")
        return ChatChannel(CHAT_SPACE, auth=GoogleCredentialsAuth(load_chat_credentials()))
    if CHANNEL_BACKEND != "memory":
        raise ValueError(f"Unknown channel backend '{CHANNEL_BACKEND}'")
    return MemoryChannel()


def _parse_create_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
