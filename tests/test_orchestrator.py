"""End-to-end scheduling scenarios against an in-memory store and fake VCS."""

from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from feature_runner.agent import Conversation, FinalAnswer, ScriptedProvider, ToolUseRequest
from feature_runner.config import RunnerConfig
from feature_runner.constants import INTERRUPTED_ERROR
from feature_runner.domain.models import EventKind, Feature, FeatureStatus, PlanningMode
from feature_runner.errors import CycleDetected, FeatureNotFound, InvalidTransition, SchedulingError, UnresolvedDependency
from feature_runner.events import EventBus
from feature_runner.orchestrator import Orchestrator
from feature_runner.storage import InMemoryFeatureStore
from feature_runner.workspace import WorkspaceManager

from helpers import FakeVcs, feature, transitions

S = FeatureStatus


class GatedProvider:
    """Answers every turn once `gate` is set; `replies` are returned first."""

    def __init__(self, gate: asyncio.Event, replies: Optional[list[Any]] = None) -> None:
        self.gate = gate
        self.replies = list(replies or [])
        self.sends = 0
        self.waiting = asyncio.Event()

    async def send(self, conversation: Conversation, instruction: str, *, on_text: Optional[Callable[[str], None]] = None):
        self.sends += 1
        if self.replies:
            return self.replies.pop(0)
        self.waiting.set()
        await self.gate.wait()
        return FinalAnswer(f"{conversation.feature_id} done")


def _build(
    tmp_path: Path,
    features: list[Feature],
    *,
    provider_factory: Optional[Callable[[Feature], Any]] = None,
    **config: Any,
) -> tuple[Orchestrator, FakeVcs, EventBus, InMemoryFeatureStore]:
    store = InMemoryFeatureStore(features)
    vcs = FakeVcs(tmp_path)
    bus = EventBus(buffer_size=10_000)
    orch = Orchestrator(
        store,
        WorkspaceManager(vcs),
        bus,
        config=RunnerConfig(**config),
        provider_factory=provider_factory,
    )
    return orch, vcs, bus, store


async def _until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def test_dependent_waits_for_verified_dependency(tmp_path: Path) -> None:
    async def _run() -> None:
        gate = asyncio.Event()
        orch, vcs, bus, _ = _build(
            tmp_path,
            [feature("a"), feature("b", "a")],
            provider_factory=lambda f: GatedProvider(gate),
            verify_command="true",
        )
        sub = bus.subscribe()
        assert orch.order() == ["a", "b"]
        assert await orch.start() == ["a"]
        await _until(lambda: orch.get("a").status == S.RUNNING)
        assert orch.get("b").status == S.PENDING
        assert await orch.tick() == []

        gate.set()
        await orch.wait_idle()
        assert orch.get("a").status == S.VERIFIED
        assert orch.get("b").status == S.VERIFIED
        assert vcs.merged == [("feature/a", "main"), ("feature/b", "main")]

        events = sub.drain()
        a_verified = next(
            i for i, e in enumerate(events)
            if e.feature_id == "a" and e.kind == EventKind.STATE_CHANGED and e.payload["to"] == "verified"
        )
        b_started = next(i for i, e in enumerate(events) if e.feature_id == "b" and e.kind == EventKind.STATE_CHANGED)
        assert a_verified < b_started

    asyncio.run(_run())


def test_manual_verification_unblocks_next_tick(tmp_path: Path) -> None:
    async def _run() -> None:
        orch, _, _, _ = _build(tmp_path, [feature("a"), feature("b", "a")])
        await orch.start()
        await orch.wait_idle()
        assert orch.get("a").status == S.AWAITING_VERIFICATION
        assert orch.get("a").summary == "Completed"
        assert await orch.tick() == []

        await orch.verify("a", True)
        assert orch.get("a").status == S.VERIFIED
        assert orch.get("b").branch_name == "feature/b"
        await orch.wait_idle()
        assert orch.get("b").status == S.AWAITING_VERIFICATION

    asyncio.run(_run())


def test_concurrency_limit_is_respected(tmp_path: Path) -> None:
    async def _run() -> None:
        gate = asyncio.Event()
        orch, vcs, _, _ = _build(
            tmp_path,
            [feature("a"), feature("b"), feature("c")],
            provider_factory=lambda f: GatedProvider(gate),
            concurrency=2,
            verify_command="true",
        )
        assert await orch.start() == ["a", "b"]
        assert orch.active_count() == 2
        assert orch.get("c").status == S.PENDING

        gate.set()
        await orch.wait_idle()
        assert [orch.get(fid).status for fid in "abc"] == [S.VERIFIED] * 3
        assert vcs.max_concurrent_mutations == 1

    asyncio.run(_run())


def test_stop_mid_run_keeps_workspace(tmp_path: Path) -> None:
    async def _run() -> None:
        gate = asyncio.Event()
        provider = GatedProvider(
            gate,
            [ToolUseRequest("write_file", {"path": "first.txt", "content": "1"})],
        )
        orch, vcs, bus, _ = _build(tmp_path, [feature("f")], provider_factory=lambda f: provider)
        await orch.start()
        await asyncio.wait_for(provider.waiting.wait(), timeout=2)
        path = orch.workspaces.get("f").path

        await orch.stop("f")
        assert orch.get("f").status == S.RUNNING
        gate.set()
        await orch.wait_idle()

        f = orch.get("f")
        assert f.status == S.STOPPED
        assert (path / "first.txt").exists()
        assert "feature/f" in vcs.branches
        assert vcs.merged == []
        assert orch.workspaces.get("f") is None

        assert await orch.discard_workspace("f") is True
        assert not path.exists()

    asyncio.run(_run())


def test_stop_reaches_stopped_before_next_tool_call(tmp_path: Path) -> None:
    async def _run() -> None:
        orch, _, _, _ = _build(tmp_path, [feature("f")])

        class StopWhileAnswering:
            async def send(self, conversation, instruction, *, on_text=None):
                await orch.stop("f")
                return ToolUseRequest("write_file", {"path": "never.txt", "content": "x"})

        orch.provider_factory = lambda f: StopWhileAnswering()
        await orch.start()
        await orch.wait_idle()
        assert orch.get("f").status == S.STOPPED
        assert not (tmp_path / "feature-f" / "never.txt").exists()
        assert (tmp_path / "feature-f").is_dir()

    asyncio.run(_run())


def test_turn_cap_fails_feature_and_publishes_first(tmp_path: Path) -> None:
    async def _run() -> None:
        orch, vcs, bus, store = _build(
            tmp_path,
            [feature("e", metadata={"scripted_default": {"tool": "list_files", "arguments": {}}})],
        )
        sub = bus.subscribe()
        await orch.start()
        await orch.wait_idle()

        e = orch.get("e")
        assert e.status == S.FAILED
        assert e.error is not None and e.error.startswith("MaxTurnsExceeded:")
        assert store.get("e").status == S.FAILED
        assert "feature/e" not in vcs.branches
        assert e.metadata["runs"][-1]["turns"] == 20
        assert e.metadata["runs"][-1]["outcome"] == "failed"

        events = [ev for ev in sub.drain() if ev.feature_id == "e"]
        error_idx = next(i for i, ev in enumerate(events) if ev.kind == EventKind.ERROR)
        done_idx = next(i for i, ev in enumerate(events) if ev.kind == EventKind.DONE)
        failed_idx = next(
            i for i, ev in enumerate(events)
            if ev.kind == EventKind.STATE_CHANGED and ev.payload["to"] == "failed"
        )
        assert error_idx < done_idx < failed_idx
        assert transitions(events, "e") == ["planning", "running", "failed"]

    asyncio.run(_run())


def test_plan_approval_flow(tmp_path: Path) -> None:
    async def _run() -> None:
        f = feature(
            "f",
            planning_mode=PlanningMode.LITE,
            require_plan_approval=True,
            metadata={"scripted_plan": "1. add endpoint"},
        )
        orch, _, bus, _ = _build(tmp_path, [f], verify_command="true")
        sub = bus.subscribe()
        await orch.start()
        await orch.wait_idle()
        assert orch.get("f").status == S.PLAN_AWAITING_APPROVAL
        assert orch.get("f").plan == "1. add endpoint"
        assert orch.active_count() == 0
        assert orch.workspaces.get("f") is not None

        await orch.approve_plan("f")
        await orch.wait_idle()
        assert orch.get("f").status == S.VERIFIED
        assert transitions(sub.drain(), "f") == [
            "planning",
            "plan_awaiting_approval",
            "plan_approved",
            "running",
            "awaiting_verification",
            "verified",
        ]
        phases = [run["phase"] for run in orch.get("f").metadata["runs"]]
        assert phases == ["plan", "execute"]

    asyncio.run(_run())


def test_edit_while_awaiting_approval_rejects_plan(tmp_path: Path) -> None:
    async def _run() -> None:
        f = feature(
            "f",
            planning_mode=PlanningMode.FULL,
            require_plan_approval=True,
            metadata={"scripted_plan": "plan"},
        )
        orch, vcs, bus, _ = _build(tmp_path, [f])
        sub = bus.subscribe()
        await orch.start()
        await orch.wait_idle()

        await orch.update_feature("f", {"description": "new scope"})
        await orch.wait_idle()
        updated = orch.get("f")
        assert updated.description == "new scope"
        assert updated.status == S.PLAN_AWAITING_APPROVAL
        assert transitions(sub.drain(), "f") == [
            "planning",
            "plan_awaiting_approval",
            "pending",
            "planning",
            "plan_awaiting_approval",
        ]
        assert vcs.branches == {"feature/f"}

    asyncio.run(_run())


def test_reject_plan_requeues(tmp_path: Path) -> None:
    async def _run() -> None:
        f = feature("f", planning_mode=PlanningMode.LITE, require_plan_approval=True)
        orch, _, _, _ = _build(tmp_path, [f])
        await orch.start()
        await orch.wait_idle()
        await orch.reject_plan("f")
        await orch.wait_idle()
        assert orch.get("f").status == S.PLAN_AWAITING_APPROVAL
        assert len(orch.get("f").metadata["runs"]) == 2

    asyncio.run(_run())


def test_merge_conflict_fails_and_keeps_workspace(tmp_path: Path) -> None:
    async def _run() -> None:
        orch, vcs, _, _ = _build(tmp_path, [feature("f")], verify_command="true")
        vcs.conflicting.add("feature/f")
        await orch.start()
        await orch.wait_idle()

        f = orch.get("f")
        assert f.status == S.FAILED
        assert f.error is not None and f.error.startswith("MergeConflict:")
        assert (tmp_path / "feature-f").is_dir()
        assert vcs.merged == []

        vcs.conflicting.clear()
        await orch.retry("f")
        await orch.wait_idle()
        assert orch.get("f").status == S.VERIFIED
        assert orch.get("f").error is None

    asyncio.run(_run())


def test_failing_verify_command_fails_feature(tmp_path: Path) -> None:
    async def _run() -> None:
        orch, vcs, _, _ = _build(tmp_path, [feature("f")], verify_command="echo broken; exit 1")
        await orch.start()
        await orch.wait_idle()
        f = orch.get("f")
        assert f.status == S.FAILED
        assert f.error is not None and "exit code 1" in f.error and "broken" in f.error
        assert vcs.branches == set()

    asyncio.run(_run())


def test_stop_is_rejected_while_branch_is_merging(tmp_path: Path) -> None:
    async def _run() -> None:
        orch, vcs, _, _ = _build(tmp_path, [feature("a"), feature("b", "a")], verify_command="true")
        vcs.merge_delay = 0.2
        await orch.start()
        await asyncio.wait_for(vcs.merging.wait(), timeout=2)

        with pytest.raises(InvalidTransition):
            await orch.stop("a")
        await orch.wait_idle()
        assert orch.get("a").status == S.VERIFIED
        assert orch.get("a").error is None
        assert orch.get("b").status == S.VERIFIED
        assert vcs.merged == [("feature/a", "main"), ("feature/b", "main")]

    asyncio.run(_run())


def test_manual_verify_merge_cannot_be_stopped_or_verified_twice(tmp_path: Path) -> None:
    async def _run() -> None:
        orch, vcs, _, _ = _build(tmp_path, [feature("a")])
        await orch.start()
        await orch.wait_idle()
        assert orch.get("a").status == S.AWAITING_VERIFICATION

        vcs.merge_delay = 0.2
        verifying = asyncio.create_task(orch.verify("a", True))
        await asyncio.wait_for(vcs.merging.wait(), timeout=2)
        with pytest.raises(InvalidTransition):
            await orch.stop("a")
        with pytest.raises(InvalidTransition):
            await orch.verify("a", True)

        await verifying
        assert orch.get("a").status == S.VERIFIED
        assert vcs.merged == [("feature/a", "main")]

    asyncio.run(_run())


def test_merge_failure_during_manual_verify_fails_feature(tmp_path: Path) -> None:
    async def _run() -> None:
        orch, vcs, bus, store = _build(tmp_path, [feature("a")])
        await orch.start()
        await orch.wait_idle()
        sub = bus.subscribe()

        vcs.commit_error = subprocess.CalledProcessError(1, ["git", "commit"], stderr="hook rejected")
        await orch.verify("a", True)

        a = orch.get("a")
        assert a.status == S.FAILED
        assert a.error is not None and a.error.startswith("MergeFailed: CalledProcessError")
        assert store.get("a").status == S.FAILED
        assert vcs.merged == []
        assert (tmp_path / "feature-a").is_dir()
        errors = [ev for ev in sub.drain() if ev.kind == EventKind.ERROR]
        assert errors and errors[0].payload["phase"] == "merge"

        vcs.commit_error = None
        await orch.retry("a")
        await orch.wait_idle()
        assert orch.get("a").status == S.AWAITING_VERIFICATION

    asyncio.run(_run())


def test_unexpected_driver_error_discards_workspace(tmp_path: Path) -> None:
    class BrokenProvider:
        async def send(self, conversation: Conversation, instruction: str, *, on_text: Any = None) -> Any:
            raise RuntimeError("provider state corrupted")

    async def _run() -> None:
        orch, vcs, _, _ = _build(tmp_path, [feature("x")], provider_factory=lambda f: BrokenProvider())
        await orch.start()
        await orch.wait_idle()

        x = orch.get("x")
        assert x.status == S.FAILED
        assert x.error == "InternalError: RuntimeError: provider state corrupted"
        assert vcs.branches == set()
        assert not (tmp_path / "feature-x").exists()
        assert orch.workspaces.get("x") is None

    asyncio.run(_run())


def test_failed_dependency_blocks_dependent(tmp_path: Path) -> None:
    async def _run() -> None:
        a = feature("a", metadata={"scripted_turns": [{"type": "error", "error": "invalid key", "transient": False}]})
        orch, _, _, _ = _build(tmp_path, [a, feature("b", "a")])
        await orch.start()
        await orch.wait_idle()
        assert orch.get("a").status == S.FAILED
        assert orch.get("a").error == "ProviderError: invalid key"
        assert orch.get("b").status == S.PENDING
        assert orch.blocked() == {"b": [{"id": "a", "status": "failed"}]}

    asyncio.run(_run())


def test_restart_recovers_interrupted_and_orphaned_work(tmp_path: Path) -> None:
    async def _run() -> None:
        features = [
            feature("run", status=S.RUNNING),
            feature("done", status=S.VERIFIED),
            feature("wait", status=S.AWAITING_VERIFICATION),
        ]
        orch, vcs, _, store = _build(tmp_path, features)
        for fid in ("run", "done", "wait", "ghost"):
            await vcs.create_worktree(f"feature/{fid}", "main")

        assert await orch.start() == []
        assert orch.get("run").status == S.STOPPED
        assert orch.get("run").error == INTERRUPTED_ERROR
        assert store.get("run").status == S.STOPPED
        assert vcs.branches == {"feature/run", "feature/wait"}
        assert orch.workspaces.get("wait") is not None

        await orch.verify("wait", True)
        assert orch.get("wait").status == S.VERIFIED
        assert vcs.merged == [("feature/wait", "main")]

        await orch.resume("run")
        await orch.wait_idle()
        assert orch.get("run").status == S.AWAITING_VERIFICATION

    asyncio.run(_run())


def test_commands_reject_inapplicable_states(tmp_path: Path) -> None:
    async def _run() -> None:
        orch, _, _, _ = _build(tmp_path, [feature("a", status=S.VERIFIED), feature("b", status=S.FAILED)])
        await orch.start()
        with pytest.raises(InvalidTransition):
            await orch.retry("a")
        with pytest.raises(InvalidTransition):
            await orch.approve_plan("b")
        with pytest.raises(InvalidTransition):
            await orch.stop("b")
        with pytest.raises(InvalidTransition):
            await orch.verify("b", True)
        with pytest.raises(InvalidTransition):
            await orch.update_feature("a", {"title": "x"})
        with pytest.raises(FeatureNotFound):
            await orch.stop("missing")

    asyncio.run(_run())


def test_create_validates_dependencies(tmp_path: Path) -> None:
    async def _run() -> None:
        orch, _, _, store = _build(tmp_path, [feature("a", status=S.VERIFIED)])
        await orch.start()
        with pytest.raises(UnresolvedDependency):
            await orch.create_feature({"id": "b", "dependencies": ["ghost"]})
        with pytest.raises(SchedulingError):
            await orch.create_feature({"id": "a"})
        created = await orch.create_feature({"id": "b", "title": "B", "dependencies": ["a"]})
        assert created.project_id == "default"
        assert store.get("b") is not None
        await orch.wait_idle()
        assert orch.get("b").status == S.AWAITING_VERIFICATION

    asyncio.run(_run())


def test_dependency_edit_cannot_introduce_cycle(tmp_path: Path) -> None:
    async def _run() -> None:
        orch, _, _, _ = _build(tmp_path, [feature("a", status=S.FAILED), feature("b", "a", status=S.STOPPED)])
        await orch.start()
        with pytest.raises(CycleDetected):
            await orch.update_feature("a", {"dependencies": ["b"]})
        assert orch.get("a").dependencies == []

    asyncio.run(_run())


def test_cyclic_backlog_is_reported_once(tmp_path: Path) -> None:
    async def _run() -> None:
        orch, _, bus, _ = _build(tmp_path, [feature("c", "d"), feature("d", "c")])
        sub = bus.subscribe()
        assert await orch.start() == []
        assert await orch.tick() == []
        errors = [e for e in sub.drain() if e.kind == EventKind.ERROR]
        assert len(errors) == 1
        assert errors[0].feature_id == "*"
        assert errors[0].payload["feature_ids"] == ["c", "d"]
        assert orch.scheduling_error is not None and orch.scheduling_error.startswith("CycleDetected:")

    asyncio.run(_run())


def test_delete_respects_dependents(tmp_path: Path) -> None:
    async def _run() -> None:
        orch, _, _, store = _build(tmp_path, [feature("a", status=S.FAILED), feature("b", "a", status=S.STOPPED)])
        await orch.start()
        with pytest.raises(SchedulingError):
            await orch.delete_feature("a")
        await orch.delete_feature("b")
        await orch.delete_feature("a")
        assert orch.features() == []
        assert store.load("default") == []

    asyncio.run(_run())


def test_shutdown_stops_running_features(tmp_path: Path) -> None:
    async def _run() -> None:
        orch, _, _, _ = _build(
            tmp_path,
            [feature("a"), feature("b")],
            provider_factory=lambda f: ScriptedProvider(default={"tool": "list_files"}, delay=0.01),
            max_turns=10_000,
        )
        await orch.start()
        await _until(lambda: orch.get("a").status == S.RUNNING and orch.get("b").status == S.RUNNING)
        await orch.shutdown()
        assert orch.get("a").status == S.STOPPED
        assert orch.get("b").status == S.STOPPED
        assert await orch.tick() == []

    asyncio.run(_run())
