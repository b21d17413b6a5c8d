"""
Unit tests for the channel backends.
ChatChannel runs against httpx.MockTransport with fake google-auth
credentials; no network access.
"""
import json

import httpx
import pytest
from google.auth.exceptions import RefreshError

from centralhub import channel as channel_mod
from centralhub.channel import (
    ChannelError,
    ChannelUnavailable,
    ChatChannel,
    GoogleCredentialsAuth,
    MemoryChannel,
    load_chat_credentials,
)

MARK = "\U0001F916"
SPACE = "spaces/AAA"


class FakeCredentials:
    """Stands in for google.auth credentials: each refresh mints tok-1, tok-2, ..."""

    def __init__(self, fail: bool = False) -> None:
        self.token = None
        self.valid = False
        self.refreshes = 0
        self.fail = fail

    def refresh(self, request) -> None:
        if self.fail:
            raise RefreshError("invalid_grant: account disabled")
        self.refreshes += 1
        self.token = f"tok-{self.refreshes}"
        self.valid = True


def _chat(handler, credentials=None) -> ChatChannel:
    auth = GoogleCredentialsAuth(credentials or FakeCredentials(), refresh_request=object())
    return ChatChannel(SPACE, auth=auth, api_base="https://chat.test/v1", marker=MARK,
                       transport=httpx.MockTransport(handler))


# ─────────────────────────────────────────────
# MemoryChannel
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_memory_list_is_newest_first_and_limited():
    ch = MemoryChannel(marker=MARK)
    ids = [await ch.append(f"m{i}", author="bot") for i in range(3)]
    listed = await ch.list(limit=2)
    assert [m.id for m in listed] == [ids[2], ids[1]]
    assert listed[0].author == "bot"


@pytest.mark.asyncio
async def test_memory_annotate_is_idempotent():
    ch = MemoryChannel(marker=MARK)
    mid = await ch.append("hello")
    assert (await ch.annotate(mid)).already_annotated is False
    assert (await ch.annotate(mid)).already_annotated is True
    assert ch.get(mid).annotations == [MARK]


@pytest.mark.asyncio
async def test_memory_annotate_missing_message_raises():
    ch = MemoryChannel(marker=MARK)
    with pytest.raises(ChannelError):
        await ch.annotate("msg-404")


@pytest.mark.asyncio
async def test_memory_delete_counts_missing_as_deleted():
    ch = MemoryChannel(marker=MARK)
    mid = await ch.append("hello")
    result = await ch.delete([mid, "msg-404"])
    assert result.deleted_count == 2
    assert result.errors == []
    assert mid not in ch
    assert len(ch) == 0


# ─────────────────────────────────────────────
# ChatChannel
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_chat_list_maps_messages():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        seen["pageSize"] = request.url.params.get("pageSize")
        return httpx.Response(200, json={"messages": [{
            "name": f"{SPACE}/messages/m1",
            "sender": {"displayName": "Alice Agent"},
            "text": "user: alice\nconversation_id: e1\ntype: ITEM_READY",
            "createTime": "2026-01-02T03:04:05Z",
            "emojiReactionSummaries": [{"emoji": {"unicode": MARK}, "reactionCount": 1}],
        }]})

    ch = _chat(handler)
    try:
        messages = await ch.list(limit=50)
    finally:
        await ch.aclose()

    assert seen == {"path": "/v1/spaces/AAA/messages", "auth": "Bearer tok-1", "pageSize": "50"}
    assert len(messages) == 1
    msg = messages[0]
    assert msg.id == f"{SPACE}/messages/m1"
    assert msg.author == "Alice Agent"
    assert msg.annotations == [MARK]
    assert msg.created_at.year == 2026


@pytest.mark.asyncio
async def test_chat_list_failure_is_channel_unavailable():
    ch = _chat(lambda request: httpx.Response(503, text="down"))
    try:
        with pytest.raises(ChannelUnavailable):
            await ch.list(limit=10)
    finally:
        await ch.aclose()


@pytest.mark.asyncio
async def test_chat_list_transport_error_is_channel_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    ch = _chat(handler)
    try:
        with pytest.raises(ChannelUnavailable):
            await ch.list(limit=10)
    finally:
        await ch.aclose()


@pytest.mark.asyncio
async def test_chat_append_returns_resource_name():
    def handler(request):
        assert json.loads(request.content) == {"text": "hi"}
        return httpx.Response(200, json={"name": f"{SPACE}/messages/new"})

    ch = _chat(handler)
    try:
        assert await ch.append("hi") == f"{SPACE}/messages/new"
    finally:
        await ch.aclose()


@pytest.mark.asyncio
async def test_chat_annotate_conflict_means_already_annotated():
    responses = iter([200, 409])

    def handler(request):
        assert request.url.path.endswith("/reactions")
        assert json.loads(request.content) == {"emoji": {"unicode": MARK}}
        return httpx.Response(next(responses), json={})

    ch = _chat(handler)
    try:
        assert (await ch.annotate(f"{SPACE}/messages/m1")).already_annotated is False
        assert (await ch.annotate(f"{SPACE}/messages/m1")).already_annotated is True
    finally:
        await ch.aclose()


@pytest.mark.asyncio
async def test_chat_delete_not_found_is_success_other_errors_collected():
    def handler(request):
        if request.url.path.endswith("/gone"):
            return httpx.Response(404, json={})
        if request.url.path.endswith("/broken"):
            return httpx.Response(500, text="oops")
        return httpx.Response(200, json={})

    ch = _chat(handler)
    try:
        result = await ch.delete([f"{SPACE}/messages/ok", f"{SPACE}/messages/gone", f"{SPACE}/messages/broken"])
    finally:
        await ch.aclose()

    assert result.deleted_count == 2
    assert [mid for mid, _ in result.errors] == [f"{SPACE}/messages/broken"]
    assert "HTTP 500" in result.errors[0][1]


def test_chat_space_prefix_is_added():
    ch = ChatChannel("AAA")
    assert ch.space == SPACE


# ─────────────────────────────────────────────
# Chat API credentials
# ─────────────────────────────────────────────

def _record_auth(seen: list):
    def handler(request):
        seen.append(request.headers.get("Authorization"))
        return httpx.Response(200, json={"messages": []})
    return handler


@pytest.mark.asyncio
async def test_token_is_refreshed_only_when_expired():
    creds = FakeCredentials()
    seen = []
    ch = _chat(_record_auth(seen), creds)
    try:
        await ch.list(limit=10)
        await ch.list(limit=10)
        creds.valid = False   # access token expired
        await ch.list(limit=10)
    finally:
        await ch.aclose()
    assert seen == ["Bearer tok-1", "Bearer tok-1", "Bearer tok-2"]
    assert creds.refreshes == 2


@pytest.mark.asyncio
async def test_unauthorized_response_refreshes_and_retries_once():
    creds = FakeCredentials()
    seen = []

    def handler(request):
        seen.append(request.headers.get("Authorization"))
        if request.headers.get("Authorization") == "Bearer tok-1":
            return httpx.Response(401, json={"error": {"status": "UNAUTHENTICATED"}})
        return httpx.Response(200, json={"messages": []})

    ch = _chat(handler, creds)
    try:
        assert await ch.list(limit=10) == []
    finally:
        await ch.aclose()
    assert seen == ["Bearer tok-1", "Bearer tok-2"]


@pytest.mark.asyncio
async def test_refresh_failure_is_channel_unavailable():
    ch = _chat(_record_auth([]), FakeCredentials(fail=True))
    try:
        with pytest.raises(ChannelUnavailable) as exc_info:
            await ch.list(limit=10)
        with pytest.raises(ChannelError):
            await ch.append("hi")
    finally:
        await ch.aclose()
    assert "RefreshError" in str(exc_info.value)


def test_load_credentials_from_service_account_file(monkeypatch):
    calls = {}

    def from_file(path, scopes):
        calls["args"] = (path, scopes)
        return "sa-creds"

    monkeypatch.setattr(channel_mod.service_account.Credentials, "from_service_account_file", from_file)
    creds = load_chat_credentials("/etc/hub/sa.json", ("https://www.googleapis.com/auth/chat.bot",))
    assert creds == "sa-creds"
    assert calls["args"] == ("/etc/hub/sa.json", ["https://www.googleapis.com/auth/chat.bot"])


def test_load_credentials_falls_back_to_application_default(monkeypatch):
    monkeypatch.setattr(channel_mod.google.auth, "default", lambda scopes: ("adc-creds", "proj"))
    assert load_chat_credentials("", ("scope",)) == "adc-creds"
