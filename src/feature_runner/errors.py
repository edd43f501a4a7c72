"""Error taxonomy shared by the scheduler, workspaces, run loop and state machine."""

from __future__ import annotations

from typing import Iterable


class FeatureRunnerError(Exception):
    """Base class for every error the runner raises on purpose."""

    @property
    def code(self) -> str:
        return type(self).__name__

    def describe(self) -> str:
        """Return the `"<code>: <message>"` form stored on a feature's error field."""
        return f"{self.code}: {self}"


class ConfigError(FeatureRunnerError):
    pass


class FeatureNotFound(FeatureRunnerError):
    def __init__(self, feature_id: str) -> None:
        self.feature_id = feature_id
        super().__init__(f"Feature not found: {feature_id}")


# Scheduling


class SchedulingError(FeatureRunnerError):
    pass


class CycleDetected(SchedulingError):
    def __init__(self, feature_ids: Iterable[str]) -> None:
        self.feature_ids = list(feature_ids)
        super().__init__(f"Dependency cycle among: {', '.join(self.feature_ids)}")


class UnresolvedDependency(SchedulingError):
    def __init__(self, feature_id: str, missing: Iterable[str]) -> None:
        self.feature_id = feature_id
        self.missing = list(missing)
        super().__init__(f"Feature {feature_id} depends on unknown feature(s): {', '.join(self.missing)}")


# Resources


class ResourceError(FeatureRunnerError):
    pass


class WorkspaceConflict(ResourceError):
    def __init__(self, branch: str) -> None:
        self.branch = branch
        super().__init__(f"Branch already exists: {branch}")


class MergeConflict(ResourceError):
    def __init__(self, branch: str, into: str, detail: str = "") -> None:
        self.branch = branch
        self.into = into
        self.detail = detail
        message = f"Merging {branch} into {into} conflicted"
        if detail:
            message += f": {detail}"
        super().__init__(message)


# Execution


class ExecutionError(FeatureRunnerError):
    pass


class ToolNotPermitted(ExecutionError):
    def __init__(self, tool: str, reason: str = "not in the allow-list") -> None:
        self.tool = tool
        self.reason = reason
        super().__init__(f"Tool '{tool}' is not permitted: {reason}")


class ToolValidationError(ExecutionError):
    """Malformed tool arguments; reported back to the agent rather than failing the run."""


class MaxTurnsExceeded(ExecutionError):
    def __init__(self, max_turns: int) -> None:
        self.max_turns = max_turns
        super().__init__(f"No final answer after {max_turns} turns")


class ProviderError(ExecutionError):
    def __init__(self, message: str, *, transient: bool = True) -> None:
        self.transient = transient
        super().__init__(message)


# State machine


class InvalidTransition(FeatureRunnerError):
    def __init__(self, state: str, trigger: str, feature_id: str | None = None) -> None:
        self.state = state
        self.trigger = trigger
        self.feature_id = feature_id
        target = f" for feature {feature_id}" if feature_id else ""
        super().__init__(f"Trigger '{trigger}' is not allowed from state '{state}'{target}")
