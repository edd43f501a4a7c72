"""Dependency-aware feature orchestrator driving a coding agent in per-feature git worktrees."""

from __future__ import annotations

from .orchestrator import Orchestrator, build_orchestrator

__all__ = ["Orchestrator", "build_orchestrator", "__version__"]

__version__ = "0.1.0"
