from .models import (
    READ_ONLY_TOOLS,
    CancellationToken,
    Event,
    EventKind,
    Feature,
    FeatureStatus,
    PlanningMode,
    RunContext,
    ToolKind,
    Trigger,
    Workspace,
)

__all__ = [
    "Feature",
    "FeatureStatus",
    "Trigger",
    "PlanningMode",
    "ToolKind",
    "READ_ONLY_TOOLS",
    "Event",
    "EventKind",
    "Workspace",
    "RunContext",
    "CancellationToken",
]
