from .http_provider import HttpAgentProvider
from .provider import AgentProvider, Conversation, FinalAnswer, ScriptedProvider, ToolUseRequest, reply_from_dict
from .run_loop import RunLoop, RunLoopConfig, RunOutcome, RunStatus
from .tools import ToolDispatcher, ToolResult, build_tool_table, resolve_in_root

__all__ = [
    "AgentProvider",
    "Conversation",
    "FinalAnswer",
    "ToolUseRequest",
    "ScriptedProvider",
    "HttpAgentProvider",
    "reply_from_dict",
    "RunLoop",
    "RunLoopConfig",
    "RunOutcome",
    "RunStatus",
    "ToolDispatcher",
    "ToolResult",
    "build_tool_table",
    "resolve_in_root",
]
