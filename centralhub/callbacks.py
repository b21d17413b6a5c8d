"""
Agent RPC callbacks (hub -> agent).

Every callback is a JSON POST of ``{action, ...fields, timestamp}`` to the
agent's registered webhook. Success means HTTP 200 with a JSON body; anything
else raises a CallbackError subclass.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from centralhub.config import CALLBACK_TIMEOUT, HUB_NAME, HUB_VERSION

logger = logging.getLogger(__name__)


class CallbackError(Exception):
    """Base class for failed agent callbacks."""

    def __init__(self, url: str, action: str, reason: str) -> None:
        self.url = url
        self.action = action
        self.reason = reason
        super().__init__(f"{action} -> {url}: {reason}")


class CallbackUnreachable(CallbackError):
    """Transport error or timeout: the agent never answered."""


class CallbackRejected(CallbackError):
    """The agent answered, but not with HTTP 200 and a JSON body."""

    def __init__(self, url: str, action: str, reason: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(url, action, reason)


class AgentClient:
    """
    Thin async wrapper over ``httpx.AsyncClient`` for agent webhooks.

    Agent webhooks are commonly Apps Script web apps, which answer a POST with
    a redirect to the rendered response, so redirects are followed.
    """

    def __init__(
        self,
        timeout: float = CALLBACK_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
            headers={"User-Agent": f"{HUB_NAME}/{HUB_VERSION}"},
        )

    async def call(self, url: str, action: str, **fields: Any) -> dict:
        payload = {
            "action": action,
            **fields,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            resp = await self._client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise CallbackUnreachable(url, action, f"timeout: {e}") from e
        except httpx.HTTPError as e:
            raise CallbackUnreachable(url, action, f"{type(e).__name__}: {e}") from e

        if resp.status_code != 200:
            raise CallbackRejected(url, action, f"HTTP {resp.status_code} {resp.text[:200]}", resp.status_code)
        try:
            body = resp.json()
        except ValueError as e:
            raise CallbackRejected(url, action, f"non-JSON response: {resp.text[:200]}", resp.status_code) from e

        logger.debug(f"Callback {action} -> {url} ok")
        return body if isinstance(body, dict) else {"result": body}

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AgentClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
