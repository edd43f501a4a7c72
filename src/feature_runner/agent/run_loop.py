"""Drive one feature's multi-turn agent session inside its workspace.

The loop alternates between asking the provider for the next step and
executing the requested tool. It never touches the feature's lifecycle state:
it returns a `RunOutcome` and the orchestrator commits the matching
transition. Every turn, tool call and terminal condition is published on the
event bus before `run` returns, so observers always see the cause before the
state change.

Cancellation is cooperative. The token is checked before each provider call,
after each reply, and before each tool call; an in-flight tool call finishes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from loguru import logger

from ..constants import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_MAX_SECONDS,
    DEFAULT_MAX_TURNS,
    DEFAULT_PROVIDER_MAX_RETRIES,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
)
from ..domain.models import EventKind, RunContext, ToolKind
from ..errors import ExecutionError, MaxTurnsExceeded, ProviderError, ToolNotPermitted
from ..events.bus import EventBus
from ..logging_utils import truncate
from .prompts import build_execute_instruction, build_plan_instruction, format_tool_result
from .provider import AgentProvider, AgentReply, Conversation, FinalAnswer, ToolUseRequest
from .tools import ToolDispatcher, ToolResult

EVENT_OUTPUT_LIMIT = 4000

Sleep = Callable[[float], Awaitable[None]]


class RunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RunLoopConfig:
    max_turns: int = DEFAULT_MAX_TURNS
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_PROVIDER_MAX_RETRIES
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_base_seconds * (2**attempt), self.backoff_max_seconds)


@dataclass(frozen=True)
class RunOutcome:
    status: RunStatus
    summary: Optional[str] = None
    error: Optional[str] = None
    turns: int = 0
    tool_uses: int = 0


class _Cancelled(Exception):
    pass


class RunLoop:
    def __init__(
        self,
        bus: EventBus,
        dispatcher: ToolDispatcher,
        config: Optional[RunLoopConfig] = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.bus = bus
        self.dispatcher = dispatcher
        self.config = config or RunLoopConfig()
        self._sleep = sleep

    async def run(
        self,
        ctx: RunContext,
        provider: AgentProvider,
        *,
        phase: str = "execute",
        allowed: Optional[frozenset[ToolKind]] = None,
    ) -> RunOutcome:
        """Run the session until a final answer, failure, turn cap or cancellation."""
        allowed = self.dispatcher.allowed if allowed is None else allowed
        feature = ctx.feature
        conversation = Conversation(
            feature_id=feature.id,
            phase=phase,
            model=feature.model,
            thinking_level=feature.thinking_level,
        )
        if phase == "plan":
            instruction = build_plan_instruction(feature, allowed)
        else:
            instruction = build_execute_instruction(feature, allowed)
        logger.info("Starting {} session for feature {} in {}", phase, feature.id, ctx.workspace.path)

        try:
            while True:
                self._check_cancel(ctx)
                if ctx.turns >= self.config.max_turns:
                    raise MaxTurnsExceeded(self.config.max_turns)
                ctx.turns += 1
                self.bus.emit(EventKind.PROGRESS, feature.id, {"phase": phase, "turn": ctx.turns})

                conversation.messages.append({"role": "user", "content": instruction})
                reply = await self._send(ctx, provider, conversation, instruction)
                self._check_cancel(ctx)

                if isinstance(reply, FinalAnswer):
                    conversation.messages.append({"role": "assistant", "content": reply.text})
                    return self._finish(ctx, phase, RunStatus.COMPLETED, summary=reply.text)

                conversation.messages.append(
                    {"role": "assistant", "tool_use": {"id": reply.id, "tool": reply.tool, "arguments": reply.arguments}}
                )
                result = await self._invoke(ctx, reply, allowed)
                instruction = format_tool_result(reply, result)
        except _Cancelled:
            return self._finish(ctx, phase, RunStatus.STOPPED, error=ctx.cancel_token.reason)
        except ExecutionError as exc:
            logger.warning("Feature {} {} session failed: {}", feature.id, phase, exc)
            return self._finish(ctx, phase, RunStatus.FAILED, error=exc.describe(), code=exc.code)

    @staticmethod
    def _check_cancel(ctx: RunContext) -> None:
        if ctx.cancel_token.cancelled:
            raise _Cancelled()

    async def _send(
        self,
        ctx: RunContext,
        provider: AgentProvider,
        conversation: Conversation,
        instruction: str,
    ) -> AgentReply:
        feature_id = ctx.feature_id

        def on_text(chunk: str) -> None:
            if chunk:
                self.bus.emit(EventKind.PROGRESS, feature_id, {"phase": conversation.phase, "text": chunk})

        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(
                    provider.send(conversation, instruction, on_text=on_text),
                    timeout=self.config.request_timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = ProviderError(
                    f"Provider request timed out after {self.config.request_timeout_seconds:g}s", transient=True
                )
            except ProviderError as exc:
                error = exc
            except OSError as exc:
                error = ProviderError(f"Provider transport error: {exc}", transient=True)

            if not error.transient or attempt >= self.config.max_retries:
                raise error
            delay = self.config.backoff(attempt)
            attempt += 1
            logger.warning(
                "Feature {} provider error (attempt {}/{}), retrying in {:.1f}s: {}",
                feature_id,
                attempt,
                self.config.max_retries,
                delay,
                error,
            )
            await self._sleep(delay)
            self._check_cancel(ctx)

    async def _invoke(self, ctx: RunContext, request: ToolUseRequest, allowed: frozenset[ToolKind]) -> ToolResult:
        feature_id = ctx.feature_id
        self.bus.emit(
            EventKind.TOOL_USE,
            feature_id,
            {"id": request.id, "tool": request.tool, "arguments": request.arguments, "turn": ctx.turns},
        )
        self._check_cancel(ctx)
        try:
            result = await self.dispatcher.invoke(request, ctx.workspace.path, allowed=allowed)
        except ToolNotPermitted:
            ctx.tool_uses.append({"turn": ctx.turns, "tool": request.tool, "arguments": request.arguments, "denied": True})
            raise
        except OSError as exc:
            result = ToolResult(f"{exc.__class__.__name__}: {exc}", is_error=True)
        ctx.tool_uses.append(
            {"turn": ctx.turns, "tool": request.tool, "arguments": request.arguments, "is_error": result.is_error}
        )
        self.bus.emit(
            EventKind.TOOL_RESULT,
            feature_id,
            {
                "id": request.id,
                "tool": request.tool,
                "is_error": result.is_error,
                "output": truncate(result.output, EVENT_OUTPUT_LIMIT),
            },
        )
        return result

    def _finish(
        self,
        ctx: RunContext,
        phase: str,
        status: RunStatus,
        *,
        summary: Optional[str] = None,
        error: Optional[str] = None,
        code: Optional[str] = None,
    ) -> RunOutcome:
        feature_id = ctx.feature_id
        if status == RunStatus.FAILED:
            self.bus.emit(EventKind.ERROR, feature_id, {"phase": phase, "code": code, "message": error})
        self.bus.emit(
            EventKind.DONE,
            feature_id,
            {"phase": phase, "outcome": status.value, "turns": ctx.turns, "summary": summary, "error": error},
        )
        logger.info("Feature {} {} session ended: {} after {} turn(s)", feature_id, phase, status.value, ctx.turns)
        return RunOutcome(status=status, summary=summary, error=error, turns=ctx.turns, tool_uses=len(ctx.tool_uses))
