"""Per-feature worktree allocation over one shared base repository.

Creating, merging and deleting worktrees all mutate the base repository, so
they run under a single mutation lock shared by every workspace. The lock is
held for one operation at a time, never for a whole run. Read-only calls
(`diff`) skip it.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Iterable, Optional

from loguru import logger

from ..domain.models import Feature, FeatureStatus, Workspace
from ..errors import MergeConflict, WorkspaceConflict
from .vcs import VcsProvider

ORPHAN_STATES = frozenset({FeatureStatus.PENDING, FeatureStatus.VERIFIED})
RESTORABLE_STATES = frozenset(
    {
        FeatureStatus.PLAN_AWAITING_APPROVAL,
        FeatureStatus.PLAN_APPROVED,
        FeatureStatus.AWAITING_VERIFICATION,
    }
)


class ReleaseOutcome(str, Enum):
    MERGE = "merge"
    DISCARD = "discard"


def branch_slug(feature_id: str) -> str:
    """Turn a feature id into a ref-safe slug that stays unique per id."""
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", feature_id).strip("-.")
    if slug != feature_id or not slug:
        digest = hashlib.sha1(feature_id.encode("utf-8")).hexdigest()[:8]
        slug = f"{slug or 'feature'}-{digest}"
    return slug


class WorkspaceManager:
    def __init__(
        self,
        vcs: VcsProvider,
        *,
        integration_branch: Optional[str] = None,
        branch_prefix: str = "feature/",
    ) -> None:
        self.vcs = vcs
        self.branch_prefix = branch_prefix
        self._integration_branch = integration_branch
        self._mutation_lock = asyncio.Lock()
        self._live: dict[str, Workspace] = {}

    async def integration_branch(self) -> str:
        if self._integration_branch is None:
            self._integration_branch = await self.vcs.current_branch()
        return self._integration_branch

    def branch_for(self, feature_id: str) -> str:
        return f"{self.branch_prefix}{branch_slug(feature_id)}"

    def get(self, feature_id: str) -> Optional[Workspace]:
        return self._live.get(feature_id)

    def live(self) -> list[Workspace]:
        return list(self._live.values())

    @asynccontextmanager
    async def _locked(self, operation: str) -> AsyncIterator[None]:
        logger.debug("Waiting for repository lock ({})", operation)
        async with self._mutation_lock:
            logger.debug("Acquired repository lock ({})", operation)
            try:
                yield
            finally:
                logger.debug("Releasing repository lock ({})", operation)

    async def acquire(self, feature: Feature) -> Workspace:
        """Create the feature's worktree; a stale branch is reclaimed and creation retried once.

        Raises:
            WorkspaceConflict: The feature already holds a live workspace, or the
                branch still exists after reclaiming it.
        """
        if feature.id in self._live:
            raise WorkspaceConflict(self._live[feature.id].branch)
        branch = self.branch_for(feature.id)
        base = await self.integration_branch()
        async with self._locked(f"create {branch}"):
            try:
                path = await self.vcs.create_worktree(branch, base)
            except WorkspaceConflict:
                logger.warning("Reclaiming stale branch {} for feature {}", branch, feature.id)
                await self._delete(branch)
                path = await self.vcs.create_worktree(branch, base)
        workspace = Workspace(feature_id=feature.id, branch=branch, path=path)
        self._live[feature.id] = workspace
        logger.info("Feature {} acquired workspace {} ({})", feature.id, branch, path)
        return workspace

    async def release(self, workspace: Workspace, outcome: ReleaseOutcome, *, commit_message: Optional[str] = None) -> None:
        """Merge-then-delete or just delete the workspace.

        Raises:
            MergeConflict: The merge did not apply cleanly. The worktree and
                branch are left in place for inspection.
        """
        async with self._locked(f"{outcome.value} {workspace.branch}"):
            if outcome == ReleaseOutcome.MERGE:
                into = await self.integration_branch()
                if commit_message:
                    await self.vcs.commit_all(workspace.path, commit_message)
                result = await self.vcs.merge_branch(workspace.branch, into)
                if not result.success:
                    self._live.pop(workspace.feature_id, None)
                    raise MergeConflict(workspace.branch, into, result.detail)
                logger.info("Merged {} into {}", workspace.branch, into)
            await self._delete(workspace.branch)
        self._live.pop(workspace.feature_id, None)

    def detach(self, feature_id: str) -> Optional[Workspace]:
        """Stop tracking a workspace while leaving it on disk."""
        return self._live.pop(feature_id, None)

    async def discard(self, feature_id: str) -> bool:
        """Delete a feature's worktree and branch whether or not it is tracked."""
        branch = self.branch_for(feature_id)
        self._live.pop(feature_id, None)
        async with self._locked(f"discard {branch}"):
            if not await self.vcs.branch_exists(branch) and await self.vcs.worktree_path(branch) is None:
                return False
            await self._delete(branch)
        return True

    async def _delete(self, branch: str) -> None:
        await self.vcs.delete_worktree(branch)
        await self.vcs.delete_branch(branch)

    async def diff(self, feature_id: str) -> str:
        """Patch of the feature's work against the integration branch; empty when it has no branch."""
        branch = self.branch_for(feature_id)
        if not await self.vcs.branch_exists(branch) and await self.vcs.worktree_path(branch) is None:
            return ""
        return await self.vcs.diff(branch, await self.integration_branch())

    async def recover(self, features: Iterable[Feature]) -> list[str]:
        """Discard workspaces that no feature should hold; re-track the ones that still matter.

        Returns the discarded branch names.
        """
        by_branch = {self.branch_for(f.id): f for f in features}
        discarded: list[str] = []
        for branch in await self.vcs.list_branches(self.branch_prefix):
            feature = by_branch.get(branch)
            if feature is None or feature.status in ORPHAN_STATES:
                logger.warning("Discarding orphaned workspace {}", branch)
                async with self._locked(f"discard {branch}"):
                    await self._delete(branch)
                discarded.append(branch)
                continue
            if feature.status in RESTORABLE_STATES:
                path = await self.vcs.worktree_path(branch)
                if path is not None:
                    self._live[feature.id] = Workspace(feature_id=feature.id, branch=branch, path=path)
        return discarded
