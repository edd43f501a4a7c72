"""Define features, workspaces, run contexts and the events they emit."""

from __future__ import annotations

import copy
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


class FeatureStatus(str, Enum):
    """Lifecycle state of a feature."""

    PENDING = "pending"
    PLANNING = "planning"
    PLAN_AWAITING_APPROVAL = "plan_awaiting_approval"
    PLAN_APPROVED = "plan_approved"
    RUNNING = "running"
    AWAITING_VERIFICATION = "awaiting_verification"
    VERIFIED = "verified"
    FAILED = "failed"
    STOPPED = "stopped"


class Trigger(str, Enum):
    """Named inputs that move a feature between lifecycle states."""

    SUBMIT_FOR_PLANNING = "submit-for-planning"
    PLAN_READY_AUTO = "plan-ready(auto-approve)"
    PLAN_READY_APPROVAL = "plan-ready(approval-required)"
    PLAN_FAILED = "plan-failed"
    APPROVE_PLAN = "approve-plan"
    START_EXECUTION = "start-execution"
    REJECT_PLAN = "reject-plan"
    AGENT_DONE = "agent-done"
    VERIFY_PASS = "verify-pass"
    VERIFY_FAIL = "verify-fail"
    RUNTIME_ERROR = "runtime-error"
    USER_STOP = "user-stop"
    RETRY = "retry"
    RESUME = "resume"


class PlanningMode(str, Enum):
    SKIP = "skip"
    LITE = "lite"
    FULL = "full"


class ToolKind(str, Enum):
    READ_FILE = "read_file"
    WRITE_FILE = "write_file"
    EDIT_FILE = "edit_file"
    LIST_FILES = "list_files"
    SEARCH = "search"
    RUN_COMMAND = "run_command"


READ_ONLY_TOOLS = frozenset({ToolKind.READ_FILE, ToolKind.LIST_FILES, ToolKind.SEARCH})


class EventKind(str, Enum):
    PROGRESS = "progress"
    TOOL_USE = "tool-use"
    TOOL_RESULT = "tool-result"
    STATE_CHANGED = "state-changed"
    ERROR = "error"
    DONE = "done"
    RESYNC = "resync"


def _coerce_enum(enum_cls: type[Enum], value: Any, default: Enum) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value))
    except ValueError:
        return default


@dataclass
class Feature:
    id: str = field(default_factory=lambda: _id("feature"))
    title: str = ""
    description: str = ""
    project_id: str = "default"
    status: FeatureStatus = FeatureStatus.PENDING
    dependencies: list[str] = field(default_factory=list)
    branch_name: Optional[str] = None

    model: Optional[str] = None
    thinking_level: Optional[str] = None
    planning_mode: PlanningMode = PlanningMode.SKIP
    require_plan_approval: bool = False
    plan: Optional[str] = None
    verify_command: Optional[str] = None

    error: Optional[str] = None
    summary: Optional[str] = None

    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["planning_mode"] = self.planning_mode.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Feature":
        """Build a feature from a persisted mapping; unknown keys land in `metadata`."""
        known = set(cls.__dataclass_fields__)
        metadata = dict(data.get("metadata") or {})
        for key, value in data.items():
            if key not in known:
                metadata.setdefault(key, value)
        return cls(
            id=str(data.get("id") or _id("feature")),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            project_id=str(data.get("project_id") or "default"),
            status=_coerce_enum(FeatureStatus, data.get("status"), FeatureStatus.PENDING),
            dependencies=[str(dep) for dep in list(data.get("dependencies") or [])],
            branch_name=data.get("branch_name"),
            model=data.get("model"),
            thinking_level=data.get("thinking_level"),
            planning_mode=_coerce_enum(PlanningMode, data.get("planning_mode"), PlanningMode.SKIP),
            require_plan_approval=bool(data.get("require_plan_approval", False)),
            plan=data.get("plan"),
            verify_command=data.get("verify_command"),
            error=data.get("error"),
            summary=data.get("summary"),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            metadata=metadata,
        )

    def copy(self) -> "Feature":
        return copy.deepcopy(self)


@dataclass(frozen=True)
class Event:
    """Immutable notification about one feature; `seq` is stamped by the bus.

    `payload` is a read-only view over a private copy, shared by every
    subscriber. Nested values are treated as read-only too; `to_dict` hands
    out a mutable deep copy.
    """

    kind: EventKind
    feature_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)
    seq: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", MappingProxyType(copy.deepcopy(dict(self.payload))))

    def with_seq(self, seq: int) -> "Event":
        return replace(self, seq=seq)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "feature_id": self.feature_id,
            "payload": copy.deepcopy(dict(self.payload)),
            "timestamp": self.timestamp,
            "seq": self.seq,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            kind=EventKind(str(data.get("kind"))),
            feature_id=str(data.get("feature_id") or ""),
            payload=dict(data.get("payload") or {}),
            timestamp=str(data.get("timestamp") or now_iso()),
            seq=int(data.get("seq") or 0),
        )


@dataclass
class Workspace:
    feature_id: str
    branch: str
    path: Path
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"feature_id": self.feature_id, "branch": self.branch, "path": str(self.path), "created_at": self.created_at}


class CancellationToken:
    """Cooperative stop flag polled by the run loop at its suspension points."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Stopped by user") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class RunContext:
    feature: Feature
    workspace: Workspace
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    turns: int = 0
    tool_uses: list[dict[str, Any]] = field(default_factory=list)
    started_at: str = field(default_factory=now_iso)

    @property
    def feature_id(self) -> str:
        return self.feature.id
