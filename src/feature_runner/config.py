"""Load optional runner configuration from `.feature_runner/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from .constants import (
    CONFIG_FILE,
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BRANCH_PREFIX,
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_CONCURRENCY,
    DEFAULT_EVENT_BUFFER_SIZE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_TURNS,
    DEFAULT_PROVIDER_MAX_RETRIES,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    STATE_DIR_NAME,
    WORKTREES_DIR,
)
from .domain.models import ToolKind
from .errors import ConfigError


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        return {}, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except yaml.YAMLError as exc:
        return {}, f"{path.name}: YAMLError: {exc}"
    if data is None:
        return {}, None
    if not isinstance(data, dict):
        return {}, f"{path.name}: expected object, got {type(data).__name__}"
    return data, None


def _as_int(value: Any, default: int, *, minimum: int) -> int:
    try:
        return max(int(value), minimum)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float, *, minimum: float = 0.0) -> float:
    try:
        return max(float(value), minimum)
    except (TypeError, ValueError):
        return default


def _parse_tools(raw: Any) -> frozenset[ToolKind]:
    if raw is None:
        return frozenset(ToolKind)
    if not isinstance(raw, list):
        raise ConfigError("orchestrator.allowed_tools must be a list of tool names")
    kinds: set[ToolKind] = set()
    for name in raw:
        try:
            kinds.add(ToolKind(str(name)))
        except ValueError:
            valid = ", ".join(kind.value for kind in ToolKind)
            raise ConfigError(f"Unknown tool '{name}' in allowed_tools (valid: {valid})") from None
    return frozenset(kinds)


@dataclass(frozen=True)
class RunnerConfig:
    concurrency: int = DEFAULT_CONCURRENCY
    max_turns: int = DEFAULT_MAX_TURNS
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    provider_max_retries: int = DEFAULT_PROVIDER_MAX_RETRIES
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    allowed_tools: frozenset[ToolKind] = field(default_factory=lambda: frozenset(ToolKind))
    integration_branch: Optional[str] = None
    branch_prefix: str = DEFAULT_BRANCH_PREFIX
    worktrees_dir: Path = Path(STATE_DIR_NAME) / WORKTREES_DIR
    verify_command: Optional[str] = None
    command_timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS
    event_buffer_size: int = DEFAULT_EVENT_BUFFER_SIZE
    log_level: str = DEFAULT_LOG_LEVEL
    project_id: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "RunnerConfig":
        orch = raw.get("orchestrator") or {}
        if not isinstance(orch, dict):
            raise ConfigError("orchestrator block must be a mapping")
        prefix = str(orch.get("branch_prefix") or DEFAULT_BRANCH_PREFIX)
        return cls(
            concurrency=_as_int(orch.get("concurrency"), DEFAULT_CONCURRENCY, minimum=1),
            max_turns=_as_int(orch.get("max_turns"), DEFAULT_MAX_TURNS, minimum=1),
            request_timeout_seconds=_as_float(
                orch.get("request_timeout_seconds"), DEFAULT_REQUEST_TIMEOUT_SECONDS, minimum=0.001
            ),
            provider_max_retries=_as_int(orch.get("provider_max_retries"), DEFAULT_PROVIDER_MAX_RETRIES, minimum=0),
            backoff_base_seconds=_as_float(orch.get("backoff_base_seconds"), DEFAULT_BACKOFF_BASE_SECONDS),
            allowed_tools=_parse_tools(orch.get("allowed_tools")),
            integration_branch=orch.get("integration_branch") or None,
            branch_prefix=prefix if prefix.endswith("/") else prefix + "/",
            worktrees_dir=Path(orch.get("worktrees_dir") or Path(STATE_DIR_NAME) / WORKTREES_DIR),
            verify_command=orch.get("verify_command") or None,
            command_timeout_seconds=_as_float(
                orch.get("command_timeout_seconds"), DEFAULT_COMMAND_TIMEOUT_SECONDS, minimum=0.001
            ),
            event_buffer_size=_as_int(orch.get("event_buffer_size"), DEFAULT_EVENT_BUFFER_SIZE, minimum=1),
            log_level=str(raw.get("log_level") or DEFAULT_LOG_LEVEL),
            project_id=raw.get("project_id") or None,
        )


def resolve_runner_config(project_dir: Path) -> RunnerConfig:
    """Load and parse the config file, raising `ConfigError` if it cannot be read."""
    raw, err = load_runner_config(project_dir)
    if err:
        raise ConfigError(err)
    return RunnerConfig.from_dict(raw)
