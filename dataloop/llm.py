"""Model completion streaming.

Defines the ``ModelStream`` protocol the controller consumes, the shared
``CancellationToken`` and ``OpenRouterModel``, an OpenAI-compatible
chat-completions client that streams server-sent events over httpx.
"""

import asyncio
import json
import logging
from typing import AsyncIterator, Optional, Protocol, Sequence

import httpx

from dataloop.errors import ModelError, RoundCancelled
from dataloop.models import ConversationTurn

logger = logging.getLogger(__name__)


class CancellationToken:
    """One shared cancellation signal for a chain."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RoundCancelled("Cancelled")

    async def wait(self) -> None:
        await self._event.wait()


class ModelStream(Protocol):
    """Yields incremental text for a conversation.

    Implementations raise ModelError on transport/API failures and
    RoundCancelled once *cancel* fires.
    """

    def stream(
        self,
        messages: list[dict],
        *,
        system: str,
        cancel: CancellationToken,
    ) -> AsyncIterator[str]: ...


def to_messages(turns: Sequence[ConversationTurn], max_turns: int = 0) -> list[dict]:
    """Chat-completions messages for the last *max_turns* turns (0 = all)."""
    selected = list(turns)
    if max_turns > 0 and len(selected) > max_turns:
        selected = selected[-max_turns:]
    return [{"role": t.role, "content": t.content} for t in selected]


class OpenRouterModel:
    """Streaming client for an OpenAI-compatible ``/chat/completions`` API.

    Args:
        model: Model identifier sent with every request.
        api_key: Bearer token (may be empty for local servers).
        base_url: API root, e.g. ``https://openrouter.ai/api/v1``.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        model: str,
        api_key: str = "",
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def stream(
        self,
        messages: list[dict],
        *,
        system: str,
        cancel: CancellationToken,
    ) -> AsyncIterator[str]:
        cancel.raise_if_cancelled()
        payload = {
            "model": self.model,
            "stream": True,
            "messages": [{"role": "system", "content": system}, *messages],
        }
        try:
            async with self._client.stream(
                "POST", "/chat/completions", json=payload, headers=self._headers()
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode(errors="replace")
                    raise ModelError(
                        f"Model API returned {response.status_code}: {body[:300]}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    cancel.raise_if_cancelled()
                    text = _parse_sse_line(line)
                    if text is None:
                        continue
                    if text == "":
                        break
                    yield text
        except httpx.HTTPError as e:
            raise ModelError(f"Model request failed: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


def _parse_sse_line(line: str) -> Optional[str]:
    """Text delta carried by one SSE line.

    Returns:
        The delta text, "" at end of stream, or None for lines without text.

    Raises:
        ModelError: If the event carries an API error.
    """
    if not line.startswith("data:"):
        return None
    data = line[len("data:") :].strip()
    if data == "[DONE]":
        return ""
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Ignoring malformed SSE payload: %s", data[:80])
        return None
    if not isinstance(event, dict):
        logger.debug("Ignoring non-object SSE payload: %s", data[:80])
        return None
    if "error" in event:
        error = event["error"]
        message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
        raise ModelError(f"Model API error: {message}")
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) and content else None
