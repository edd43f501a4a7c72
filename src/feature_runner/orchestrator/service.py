"""Composition root: admits ready features and drives each through its lifecycle.

The orchestrator owns the in-memory feature aggregate. Every state change goes
through `_commit`, which applies the transition table, writes the feature
through to the store and publishes a `state-changed` event. Each admitted
feature gets one asyncio task (`_drive`) that plans, executes, verifies and
merges it; the task ends as soon as the feature reaches a state that waits on
something outside the orchestrator (plan approval, manual verification) or a
terminal state, and every task end re-ticks the scheduler.
"""

from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from ..agent.provider import AgentProvider, ScriptedProvider
from ..agent.run_loop import RunLoop, RunLoopConfig, RunOutcome, RunStatus
from ..agent.tools import ToolDispatcher, run_shell
from ..config import RunnerConfig
from ..constants import (
    EVENTS_FILE,
    FEATURES_FILE,
    FEATURES_LOCK_FILE,
    INTERRUPTED_ERROR,
    STATE_DIR_NAME,
    VERIFY_OUTPUT_TAIL,
)
from ..domain.models import (
    READ_ONLY_TOOLS,
    CancellationToken,
    EventKind,
    Feature,
    FeatureStatus,
    PlanningMode,
    RunContext,
    Trigger,
    Workspace,
    now_iso,
)
from ..errors import (
    FeatureNotFound,
    FeatureRunnerError,
    InvalidTransition,
    MergeConflict,
    SchedulingError,
)
from ..events.bus import EventBus
from ..events.log import EventLog
from ..lifecycle.state_machine import (
    ACTIVE_STATES,
    EDITABLE_STATES,
    WORKSPACE_STATES,
    apply_transition,
    next_state,
)
from ..logging_utils import tail
from ..scheduling.resolver import blocking_dependencies, compute_order, is_ready
from ..storage.file_store import YamlFeatureStore
from ..storage.interfaces import FeatureStore
from ..workspace.git import GitVcsProvider
from ..workspace.manager import ReleaseOutcome, WorkspaceManager

S = FeatureStatus
T = Trigger

ProviderFactory = Callable[[Feature], AgentProvider]

EDITABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "dependencies",
        "model",
        "thinking_level",
        "planning_mode",
        "require_plan_approval",
        "verify_command",
        "metadata",
    }
)
# Errors a VCS provider may raise while creating or tearing down a worktree.
WORKSPACE_ERRORS = (FeatureRunnerError, subprocess.CalledProcessError, OSError, RuntimeError)


class Orchestrator:
    def __init__(
        self,
        store: FeatureStore,
        workspaces: WorkspaceManager,
        bus: EventBus,
        *,
        config: Optional[RunnerConfig] = None,
        project_id: str = "default",
        provider_factory: Optional[ProviderFactory] = None,
        run_loop: Optional[RunLoop] = None,
    ) -> None:
        self.store = store
        self.workspaces = workspaces
        self.bus = bus
        self.config = config or RunnerConfig()
        self.project_id = project_id
        self.provider_factory: ProviderFactory = provider_factory or ScriptedProvider.for_feature
        if run_loop is None:
            dispatcher = ToolDispatcher(self.config.allowed_tools, command_timeout=self.config.command_timeout_seconds)
            run_loop = RunLoop(
                bus,
                dispatcher,
                RunLoopConfig(
                    max_turns=self.config.max_turns,
                    request_timeout_seconds=self.config.request_timeout_seconds,
                    max_retries=self.config.provider_max_retries,
                    backoff_base_seconds=self.config.backoff_base_seconds,
                ),
            )
        self.run_loop = run_loop

        self._features: dict[str, Feature] = {}
        self._runs: dict[str, asyncio.Task[None]] = {}
        self._tokens: dict[str, CancellationToken] = {}
        # Features whose branch is being merged; stop and verify are rejected until it settles.
        self._merging: set[str] = set()
        self._tick_lock = asyncio.Lock()
        self._closing = False
        self.scheduling_error: Optional[str] = None
        self.bus.set_snapshot_provider(self.snapshot)

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    async def start(self) -> list[str]:
        """Load the backlog, recover from an unclean exit and run the first tick."""
        self._features = {f.id: f for f in self.store.load(self.project_id)}
        logger.info("Loaded {} feature(s) for project {}", len(self._features), self.project_id)
        self._recover_interrupted()
        discarded = await self.workspaces.recover(self._features.values())
        if discarded:
            logger.info("Discarded {} orphaned workspace(s): {}", len(discarded), ", ".join(discarded))
        return await self.tick()

    def _recover_interrupted(self) -> None:
        for feature in self._features.values():
            if feature.status in ACTIVE_STATES:
                logger.warning("Feature {} was {} when the orchestrator stopped", feature.id, feature.status.value)
                self._commit(feature, T.USER_STOP, error=INTERRUPTED_ERROR)

    async def shutdown(self) -> None:
        """Cancel every run cooperatively and wait for the drivers to finish."""
        self._closing = True
        for token in list(self._tokens.values()):
            token.cancel("Orchestrator shutdown")
        await self.wait_idle()

    async def wait_idle(self) -> None:
        while self._runs:
            await asyncio.gather(*list(self._runs.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def snapshot(self) -> list[dict[str, Any]]:
        return [feature.to_dict() for feature in self._features.values()]

    def get(self, feature_id: str) -> Feature:
        try:
            return self._features[feature_id]
        except KeyError:
            raise FeatureNotFound(feature_id) from None

    def features(self) -> list[Feature]:
        return list(self._features.values())

    def order(self) -> list[str]:
        return compute_order(list(self._features.values()))

    def active_count(self) -> int:
        return sum(1 for feature in self._features.values() if feature.status in ACTIVE_STATES)

    def is_running(self, feature_id: str) -> bool:
        return feature_id in self._runs

    def blocked(self) -> dict[str, list[dict[str, str]]]:
        """Pending features that cannot start until a Failed/Stopped dependency is dealt with."""
        states = {fid: f.status for fid, f in self._features.items()}
        report: dict[str, list[dict[str, str]]] = {}
        for feature in self._features.values():
            if feature.status != S.PENDING:
                continue
            deps = blocking_dependencies(feature, states)
            if deps:
                report[feature.id] = [{"id": dep, "status": states[dep].value} for dep in deps]
        return report

    async def diff(self, feature_id: str) -> str:
        self.get(feature_id)
        return await self.workspaces.diff(feature_id)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def tick(self) -> list[str]:
        """Admit ready features in resolver order while slots are free; return the admitted ids."""
        async with self._tick_lock:
            if self._closing:
                return []
            features = list(self._features.values())
            try:
                order = compute_order(features)
            except SchedulingError as exc:
                self._report_scheduling_error(exc)
                return []
            self.scheduling_error = None

            states = {f.id: f.status for f in features}
            admitted: list[str] = []
            for feature_id in order:
                if self.active_count() >= self.config.concurrency:
                    break
                if feature_id in self._runs:
                    continue
                feature = self._features[feature_id]
                if feature.status == S.PENDING and is_ready(feature, states):
                    started = await self._admit(feature)
                elif feature.status == S.PLAN_APPROVED:
                    started = await self._admit_approved(feature)
                else:
                    continue
                if started:
                    admitted.append(feature_id)
                    states[feature_id] = feature.status
            if admitted:
                logger.info("Admitted {}", ", ".join(admitted))
            return admitted

    def _report_scheduling_error(self, exc: SchedulingError) -> None:
        message = exc.describe()
        if message == self.scheduling_error:
            return
        self.scheduling_error = message
        ids = getattr(exc, "feature_ids", None) or [getattr(exc, "feature_id", "*")]
        logger.error("Scheduling pass aborted: {}", message)
        self.bus.emit(EventKind.ERROR, "*", {"code": exc.code, "message": message, "feature_ids": ids})

    async def _admit(self, feature: Feature) -> bool:
        try:
            workspace = await self.workspaces.acquire(feature)
        except WORKSPACE_ERRORS as exc:
            message = exc.describe() if isinstance(exc, FeatureRunnerError) else f"{exc.__class__.__name__}: {exc}"
            logger.error("Could not acquire a workspace for feature {}: {}", feature.id, message)
            self.bus.emit(EventKind.ERROR, feature.id, {"phase": "acquire", "message": message})
            feature.error = message
            feature.updated_at = now_iso()
            self.store.save(feature)
            return False
        feature.branch_name = workspace.branch
        self._commit(feature, T.SUBMIT_FOR_PLANNING)
        self._spawn(feature, workspace, CancellationToken(), plan=True)
        return True

    async def _admit_approved(self, feature: Feature) -> bool:
        workspace = self.workspaces.get(feature.id)
        if workspace is None:
            try:
                workspace = await self.workspaces.acquire(feature)
            except WORKSPACE_ERRORS as exc:
                logger.error("Could not restore the workspace for approved feature {}: {}", feature.id, exc)
                return False
            feature.branch_name = workspace.branch
        self._commit(feature, T.START_EXECUTION)
        self._spawn(feature, workspace, CancellationToken(), plan=False)
        return True

    def _spawn(self, feature: Feature, workspace: Workspace, token: CancellationToken, *, plan: bool) -> None:
        self._tokens[feature.id] = token
        self._runs[feature.id] = asyncio.create_task(
            self._drive(feature, workspace, token, plan=plan), name=f"feature-{feature.id}"
        )

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def _drive(self, feature: Feature, workspace: Workspace, token: CancellationToken, *, plan: bool) -> None:
        provider: Optional[AgentProvider] = None
        try:
            provider = self.provider_factory(feature)
            if plan and not await self._plan(feature, workspace, token, provider):
                return
            if feature.status != S.RUNNING:
                return
            if not await self._execute(feature, workspace, token, provider):
                return
            await self._auto_verify(feature, workspace, token)
        except Exception as exc:
            logger.exception("Driver for feature {} failed unexpectedly", feature.id)
            await self._fail_unexpected(feature, exc)
        finally:
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()
            self._runs.pop(feature.id, None)
            self._tokens.pop(feature.id, None)
            if not self._closing:
                await self.tick()

    async def _plan(self, feature: Feature, workspace: Workspace, token: CancellationToken, provider: AgentProvider) -> bool:
        """Run the planning phase; return True when execution should follow immediately."""
        if feature.planning_mode == PlanningMode.SKIP:
            self._commit(feature, T.PLAN_READY_AUTO)
            return True

        ctx = RunContext(feature=feature, workspace=workspace, cancel_token=token)
        allowed = READ_ONLY_TOOLS & self.config.allowed_tools
        outcome = await self.run_loop.run(ctx, provider, phase="plan", allowed=frozenset(allowed))
        self._record_run(feature, ctx, "plan", outcome)
        if outcome.status == RunStatus.STOPPED:
            self._stop_in_place(feature)
            return False
        if outcome.status == RunStatus.FAILED:
            self._commit(feature, T.PLAN_FAILED, error=outcome.error)
            await self._discard(feature)
            return False
        feature.plan = outcome.summary
        if feature.require_plan_approval:
            self._commit(feature, T.PLAN_READY_APPROVAL)
            return False
        self._commit(feature, T.PLAN_READY_AUTO)
        return True

    async def _execute(self, feature: Feature, workspace: Workspace, token: CancellationToken, provider: AgentProvider) -> bool:
        ctx = RunContext(feature=feature, workspace=workspace, cancel_token=token)
        outcome = await self.run_loop.run(ctx, provider, phase="execute")
        self._record_run(feature, ctx, "execute", outcome)
        if outcome.status == RunStatus.STOPPED:
            self._stop_in_place(feature)
            return False
        if outcome.status == RunStatus.FAILED:
            self._commit(feature, T.RUNTIME_ERROR, error=outcome.error)
            await self._discard(feature)
            return False
        feature.summary = outcome.summary
        self._commit(feature, T.AGENT_DONE)
        return True

    async def _auto_verify(self, feature: Feature, workspace: Workspace, token: CancellationToken) -> None:
        command = feature.verify_command or self.config.verify_command
        if not command:
            logger.info("Feature {} awaits manual verification", feature.id)
            return
        if token.cancelled:
            return
        self.bus.emit(EventKind.PROGRESS, feature.id, {"phase": "verify", "command": command})
        exit_code, output = await run_shell(command, cwd=workspace.path, timeout=self.config.command_timeout_seconds)
        if feature.status != S.AWAITING_VERIFICATION:
            # Stopped while the command ran.
            return
        if exit_code == 0:
            await self._verify_pass(feature)
            return
        reason = "timed out" if exit_code is None else f"exit code {exit_code}"
        await self._verify_fail(feature, f"VerificationFailed: `{command}` {reason}\n{tail(output, VERIFY_OUTPUT_TAIL)}")

    async def _verify_pass(self, feature: Feature) -> None:
        workspace = self.workspaces.get(feature.id)
        if workspace is None:
            logger.warning("Feature {} has no live workspace to merge", feature.id)
        else:
            title = feature.title or feature.id
            self._merging.add(feature.id)
            try:
                await self.workspaces.release(
                    workspace, ReleaseOutcome.MERGE, commit_message=f"feature: {feature.id} {title}"
                )
            except MergeConflict as exc:
                logger.warning("Feature {} verified but did not merge: {}", feature.id, exc)
                self.bus.emit(EventKind.ERROR, feature.id, {"phase": "merge", "code": exc.code, "message": str(exc)})
                self._commit(feature, T.VERIFY_FAIL, error=exc.describe())
                return
            except WORKSPACE_ERRORS as exc:
                message = f"MergeFailed: {exc.__class__.__name__}: {exc}"
                logger.error("Feature {} verified but the merge failed: {}", feature.id, exc)
                self.bus.emit(EventKind.ERROR, feature.id, {"phase": "merge", "code": "MergeFailed", "message": message})
                self._commit(feature, T.VERIFY_FAIL, error=message)
                # Left on disk for inspection, like a conflicting merge.
                self.workspaces.detach(feature.id)
                return
            finally:
                self._merging.discard(feature.id)
        self._commit(feature, T.VERIFY_PASS)

    async def _verify_fail(self, feature: Feature, error: str) -> None:
        self.bus.emit(EventKind.ERROR, feature.id, {"phase": "verify", "message": error})
        self._commit(feature, T.VERIFY_FAIL, error=error)
        await self._discard(feature)

    async def _fail_unexpected(self, feature: Feature, exc: Exception) -> None:
        trigger = {
            S.PLANNING: T.PLAN_FAILED,
            S.RUNNING: T.RUNTIME_ERROR,
            S.AWAITING_VERIFICATION: T.VERIFY_FAIL,
        }.get(feature.status)
        if trigger is None:
            return
        message = exc.describe() if isinstance(exc, FeatureRunnerError) else f"InternalError: {exc.__class__.__name__}: {exc}"
        self.bus.emit(EventKind.ERROR, feature.id, {"phase": "internal", "message": message})
        self._commit(feature, trigger, error=message)
        await self._discard(feature)

    def _stop_in_place(self, feature: Feature) -> None:
        self._commit(feature, T.USER_STOP, error=None)
        # Stopped workspaces stay on disk until discard_workspace or the next acquire.
        self.workspaces.detach(feature.id)

    async def _discard(self, feature: Feature) -> None:
        try:
            await self.workspaces.discard(feature.id)
        except WORKSPACE_ERRORS as exc:
            logger.warning("Could not discard workspace of feature {}: {}", feature.id, exc)

    def _record_run(self, feature: Feature, ctx: RunContext, phase: str, outcome: RunOutcome) -> None:
        runs = feature.metadata.setdefault("runs", [])
        runs.append(
            {
                "phase": phase,
                "started_at": ctx.started_at,
                "finished_at": now_iso(),
                "outcome": outcome.status.value,
                "turns": outcome.turns,
                "tool_uses": outcome.tool_uses,
            }
        )

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _commit(self, feature: Feature, trigger: Trigger, *, error: Optional[str] = None) -> None:
        previous = apply_transition(feature, trigger, error=error)
        self.store.save(feature)
        logger.info("Feature {}: {} -> {} ({})", feature.id, previous.value, feature.status.value, trigger.value)
        self.bus.emit(
            EventKind.STATE_CHANGED,
            feature.id,
            {"from": previous.value, "to": feature.status.value, "trigger": trigger.value, "error": feature.error},
        )

    async def create_feature(self, data: dict[str, Any]) -> Feature:
        """Add a Pending feature; its dependencies must resolve without a cycle."""
        feature = Feature.from_dict({**data, "project_id": self.project_id, "status": S.PENDING.value})
        feature.error = None
        feature.branch_name = None
        if feature.id in self._features:
            raise SchedulingError(f"Feature id already exists: {feature.id}")
        compute_order([*self._features.values(), feature])
        self._features[feature.id] = feature
        self.store.save(feature)
        self.bus.emit(EventKind.STATE_CHANGED, feature.id, {"from": None, "to": feature.status.value, "trigger": "create"})
        await self.tick()
        return feature

    async def update_feature(self, feature_id: str, changes: dict[str, Any]) -> Feature:
        """Edit a feature that is not in flight.

        Editing a feature whose plan awaits approval rejects that plan, so any
        plan that is later approved was generated from the current description.
        """
        feature = self.get(feature_id)
        if feature.status not in EDITABLE_STATES or feature_id in self._runs:
            raise InvalidTransition(feature.status.value, "update", feature_id)
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise SchedulingError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

        merged = {**feature.to_dict(), **changes}
        updated = Feature.from_dict(merged)
        compute_order([updated if f.id == feature_id else f for f in self._features.values()])

        if feature.status == S.PLAN_AWAITING_APPROVAL:
            await self._discard(feature)
            self._commit(updated, T.REJECT_PLAN)
        else:
            updated.updated_at = now_iso()
            self.store.save(updated)
        self._features[feature_id] = updated
        await self.tick()
        return updated

    async def delete_feature(self, feature_id: str) -> None:
        feature = self.get(feature_id)
        if feature.status in ACTIVE_STATES or feature_id in self._runs:
            raise InvalidTransition(feature.status.value, "delete", feature_id)
        dependents = [f.id for f in self._features.values() if feature_id in f.dependencies]
        if dependents:
            raise SchedulingError(f"Feature {feature_id} is a dependency of: {', '.join(dependents)}")
        await self._discard(feature)
        del self._features[feature_id]
        self.store.delete(feature_id)
        self.bus.emit(EventKind.STATE_CHANGED, feature_id, {"from": feature.status.value, "to": None, "trigger": "delete"})
        await self.tick()

    async def approve_plan(self, feature_id: str) -> Feature:
        feature = self.get(feature_id)
        self._commit(feature, T.APPROVE_PLAN)
        await self.tick()
        return feature

    async def reject_plan(self, feature_id: str) -> Feature:
        feature = self.get(feature_id)
        next_state(feature.status, T.REJECT_PLAN, feature_id=feature_id)
        await self._discard(feature)
        self._commit(feature, T.REJECT_PLAN)
        await self.tick()
        return feature

    async def stop(self, feature_id: str) -> Feature:
        """Request a cooperative stop.

        For a feature inside an agent session the transition happens at the run
        loop's next suspension point; otherwise it is applied at once.
        """
        feature = self.get(feature_id)
        next_state(feature.status, T.USER_STOP, feature_id=feature_id)
        if feature_id in self._merging:
            # The branch is already landing on the integration branch.
            raise InvalidTransition(feature.status.value, T.USER_STOP.value, feature_id)
        token = self._tokens.get(feature_id)
        if token is not None:
            token.cancel()
        if feature.status == S.AWAITING_VERIFICATION or token is None:
            self._stop_in_place(feature)
        return feature

    async def retry(self, feature_id: str) -> Feature:
        feature = self.get(feature_id)
        self._commit(feature, T.RETRY)
        await self.tick()
        return feature

    async def resume(self, feature_id: str) -> Feature:
        feature = self.get(feature_id)
        self._commit(feature, T.RESUME)
        await self.tick()
        return feature

    async def verify(self, feature_id: str, passed: bool, *, detail: Optional[str] = None) -> Feature:
        feature = self.get(feature_id)
        trigger = T.VERIFY_PASS if passed else T.VERIFY_FAIL
        next_state(feature.status, trigger, feature_id=feature_id)
        if feature_id in self._runs or feature_id in self._merging:
            # Automatic verification or an earlier merge is still in flight.
            raise InvalidTransition(feature.status.value, trigger.value, feature_id)
        if passed:
            await self._verify_pass(feature)
        else:
            await self._verify_fail(feature, f"VerificationFailed: {detail or 'rejected'}")
        await self.tick()
        return feature

    async def discard_workspace(self, feature_id: str) -> bool:
        feature = self.get(feature_id)
        if feature.status in WORKSPACE_STATES:
            raise InvalidTransition(feature.status.value, "discard-workspace", feature_id)
        return await self.workspaces.discard(feature_id)


def build_orchestrator(
    project_dir: Path,
    config: RunnerConfig,
    *,
    provider_factory: Optional[ProviderFactory] = None,
    event_log: bool = True,
) -> Orchestrator:
    """Wire the YAML store, git workspaces and event log for one project directory."""
    project_dir = project_dir.resolve()
    state_dir = project_dir / STATE_DIR_NAME
    store = YamlFeatureStore(state_dir / FEATURES_FILE, lock_path=state_dir / FEATURES_LOCK_FILE)
    vcs = GitVcsProvider(repo_root=project_dir, worktrees_dir=config.worktrees_dir)
    workspaces = WorkspaceManager(
        vcs, integration_branch=config.integration_branch, branch_prefix=config.branch_prefix
    )
    bus = EventBus(
        buffer_size=config.event_buffer_size,
        log=EventLog(state_dir / EVENTS_FILE) if event_log else None,
    )
    return Orchestrator(
        store,
        workspaces,
        bus,
        config=config,
        project_id=config.project_id or project_dir.name,
        provider_factory=provider_factory,
    )
