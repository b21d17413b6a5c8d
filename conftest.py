"""
Shared fixtures for the CentralHub unit tests.

Nothing here needs a running server: stores use an in-memory SQLite database,
the channel is a MemoryChannel, and agent webhooks are answered by an
httpx.MockTransport that records every callback.
"""
import json
import os
import sys

import httpx
import pytest

# Make the checkout importable when pytest runs from a console script
_REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)

from centralhub.callbacks import AgentClient  # noqa: E402
from centralhub.channel import MemoryChannel  # noqa: E402


class AgentRecorder:
    """Fake agent webhooks. Per-URL responses can be set to a status code or "timeout"."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.responses: dict[str, object] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        payload = json.loads(request.content)
        self.calls.append((url, payload))
        response = self.responses.get(url, 200)
        if response == "timeout":
            raise httpx.ReadTimeout("agent did not answer", request=request)
        if response == "not-json":
            return httpx.Response(200, text="<html>ok</html>")
        return httpx.Response(response, json={"ok": response == 200})

    def client(self) -> AgentClient:
        return AgentClient(transport=httpx.MockTransport(self.handler))

    def actions(self, action: str | None = None) -> list[dict]:
        return [p for _, p in self.calls if action is None or p["action"] == action]


@pytest.fixture
def channel() -> MemoryChannel:
    return MemoryChannel()


@pytest.fixture
def recorder() -> AgentRecorder:
    return AgentRecorder()
