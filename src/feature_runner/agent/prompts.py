"""Build the instructions sent to the agent for planning and execution turns."""

from __future__ import annotations

from typing import Iterable

from ..domain.models import Feature, PlanningMode, ToolKind
from .provider import ToolUseRequest
from .tools import ToolResult


def _tool_block(allowed: Iterable[ToolKind]) -> str:
    names = sorted(kind.value for kind in allowed)
    return "\n".join(f"- {name}" for name in names) if names else "- (none)"


def build_plan_instruction(feature: Feature, allowed: Iterable[ToolKind]) -> str:
    depth = (
        "Keep the plan short: a handful of concrete steps."
        if feature.planning_mode == PlanningMode.LITE
        else "Cover the files to change, the approach for each, and how the result will be verified."
    )
    return f"""Your task is to plan the implementation of a feature. Do not modify any files.

Feature: {feature.title or feature.id}
Description:
{feature.description or "(no description)"}

Tools available (read-only):
{_tool_block(allowed)}

{depth}
Reply with the final plan as your answer when you are done exploring.
"""


def build_execute_instruction(feature: Feature, allowed: Iterable[ToolKind]) -> str:
    plan_block = f"\nApproved plan:\n{feature.plan}\n" if feature.plan else ""
    return f"""Your task is to implement a feature in the current workspace.

Feature: {feature.title or feature.id}
Description:
{feature.description or "(no description)"}
{plan_block}
Tools available:
{_tool_block(allowed)}

All paths are relative to the workspace root. Work in small steps and check your changes.
When the feature is complete, reply with a short summary of what changed as your final answer.
"""


def format_tool_result(request: ToolUseRequest, result: ToolResult) -> str:
    status = "error" if result.is_error else "ok"
    return f"Tool result for {request.tool} ({request.id}) [{status}]:\n{result.output}"
