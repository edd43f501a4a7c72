"""Agent provider that talks to a JSON HTTP endpoint."""

from __future__ import annotations

from typing import Any, Optional

import httpx
from loguru import logger

from ..errors import ProviderError
from .provider import AgentReply, Conversation, TextCallback, reply_from_dict

RETRYABLE_STATUS = frozenset({408, 409, 425, 429})


class HttpAgentProvider:
    """POST `{model, thinking_level, phase, conversation, instruction}` and parse the reply.

    Expected response bodies:
        {"type": "tool_use", "tool": "read_file", "arguments": {"path": "README.md"}}
        {"type": "final", "text": "Implemented the feature"}
    An optional `"progress"` string is forwarded to `on_text`.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 300.0,
        headers: Optional[dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.endpoint = endpoint
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def send(
        self,
        conversation: Conversation,
        instruction: str,
        *,
        on_text: Optional[TextCallback] = None,
    ) -> AgentReply:
        payload: dict[str, Any] = {
            "model": conversation.model,
            "thinking_level": conversation.thinking_level,
            "phase": conversation.phase,
            "conversation": conversation.messages,
            "instruction": instruction,
        }
        try:
            response = await self._client.post(self.endpoint, json=payload)
        except httpx.TimeoutException as exc:
            raise ProviderError(f"Agent endpoint timed out: {exc}", transient=True) from exc
        except httpx.TransportError as exc:
            raise ProviderError(f"Agent endpoint unreachable: {exc}", transient=True) from exc

        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS:
            raise ProviderError(f"Agent endpoint returned {response.status_code}", transient=True)
        if response.status_code >= 400:
            raise ProviderError(f"Agent endpoint rejected request ({response.status_code}): {response.text[:200]}", transient=False)

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError("Agent endpoint returned invalid JSON", transient=False) from exc
        if not isinstance(data, dict):
            raise ProviderError("Agent endpoint returned a non-object reply", transient=False)

        progress = data.get("progress")
        if on_text is not None and isinstance(progress, str) and progress:
            on_text(progress)
        logger.debug("Agent reply for {}: {}", conversation.feature_id, data.get("type"))
        return reply_from_dict(data)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
