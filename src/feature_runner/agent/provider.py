"""Agent provider abstraction and a deterministic scripted provider.

A provider answers each turn with either a tool-use request or a final answer.
Transport failures raise `ProviderError`; `transient=True` means the run loop
may retry the same turn.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Union

from ..domain.models import Feature
from ..errors import ProviderError

TextCallback = Callable[[str], None]


@dataclass(frozen=True)
class ToolUseRequest:
    tool: str
    arguments: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"call-{uuid.uuid4().hex[:8]}")


@dataclass(frozen=True)
class FinalAnswer:
    text: str


AgentReply = Union[ToolUseRequest, FinalAnswer]


@dataclass
class Conversation:
    feature_id: str
    phase: str = "execute"
    model: Optional[str] = None
    thinking_level: Optional[str] = None
    messages: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "phase": self.phase,
            "model": self.model,
            "thinking_level": self.thinking_level,
            "messages": list(self.messages),
        }


class AgentProvider(Protocol):
    async def send(
        self,
        conversation: Conversation,
        instruction: str,
        *,
        on_text: Optional[TextCallback] = None,
    ) -> AgentReply:
        ...


def reply_from_dict(data: dict[str, Any]) -> AgentReply:
    """Parse `{"type": "tool_use", "tool": ..., "arguments": {...}}` or `{"type": "final", "text": ...}`.

    The short scripted forms `{"tool": ...}` and `{"final": ...}` are accepted too.
    """
    kind = str(data.get("type") or "")
    if kind == "tool_use" or (not kind and "tool" in data):
        tool = data.get("tool") or data.get("name")
        if not tool:
            raise ProviderError("tool_use reply without a tool name", transient=False)
        arguments = data.get("arguments", data.get("args")) or {}
        if not isinstance(arguments, dict):
            raise ProviderError("tool_use arguments must be an object", transient=False)
        call_id = str(data.get("id") or f"call-{uuid.uuid4().hex[:8]}")
        return ToolUseRequest(tool=str(tool), arguments=dict(arguments), id=call_id)
    if kind == "final" or (not kind and "final" in data):
        text = data.get("text", data.get("final"))
        return FinalAnswer(text=str(text or ""))
    if kind == "error" or "error" in data:
        raise ProviderError(str(data.get("error") or data.get("message") or "provider error"), transient=bool(data.get("transient", True)))
    raise ProviderError(f"Unrecognized provider reply: {sorted(data)}", transient=False)


ScriptItem = Union[AgentReply, ProviderError, dict]


class ScriptedProvider:
    """Replays a fixed list of replies, one per `send`.

    Items may be `ToolUseRequest`, `FinalAnswer`, a `ProviderError` (raised),
    or the dict forms accepted by `reply_from_dict`. Once the script runs out,
    `default` is replayed forever (or a generic final answer if unset).
    Planning sessions draw from `plan_script` instead.
    """

    def __init__(
        self,
        script: Optional[list[ScriptItem]] = None,
        *,
        plan_script: Optional[list[ScriptItem]] = None,
        default: Optional[ScriptItem] = None,
        delay: float = 0.0,
    ) -> None:
        self._scripts: dict[str, list[ScriptItem]] = {
            "execute": list(script or []),
            "plan": list(plan_script or []),
        }
        self._default = default
        self._delay = delay
        self.calls: list[tuple[str, str]] = []

    @classmethod
    def for_feature(cls, feature: Feature) -> "ScriptedProvider":
        """Build from `metadata["scripted_turns"]` and `metadata["scripted_plan"]`."""
        meta = feature.metadata if isinstance(feature.metadata, dict) else {}
        turns = meta.get("scripted_turns")
        plan = meta.get("scripted_plan")
        plan_script: list[ScriptItem] = []
        if isinstance(plan, str):
            plan_script = [FinalAnswer(plan)]
        elif isinstance(plan, list):
            plan_script = list(plan)
        default = meta.get("scripted_default")
        return cls(
            list(turns) if isinstance(turns, list) else None,
            plan_script=plan_script,
            default=default if isinstance(default, dict) else None,
            delay=float(meta.get("scripted_delay") or 0.0),
        )

    async def send(
        self,
        conversation: Conversation,
        instruction: str,
        *,
        on_text: Optional[TextCallback] = None,
    ) -> AgentReply:
        self.calls.append((conversation.phase, instruction))
        if self._delay:
            await asyncio.sleep(self._delay)
        script = self._scripts.get(conversation.phase, self._scripts["execute"])
        if script:
            item = script.pop(0)
        elif self._default is not None:
            item = self._default
        elif conversation.phase == "plan":
            item = FinalAnswer(f"Plan: implement {conversation.feature_id}")
        else:
            item = FinalAnswer("Completed")

        if isinstance(item, ProviderError):
            raise item
        reply = reply_from_dict(item) if isinstance(item, dict) else item
        if isinstance(reply, FinalAnswer) and on_text is not None and reply.text:
            on_text(reply.text)
        return reply
