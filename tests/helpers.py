"""Shared fakes for the orchestrator tests."""

from __future__ import annotations

import asyncio
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from feature_runner.domain.models import Event, EventKind, Feature
from feature_runner.errors import WorkspaceConflict
from feature_runner.workspace.vcs import MergeResult


def _git_init(path: Path) -> None:
    """Initialize a git repo with an initial commit on `main`."""
    subprocess.run(["git", "init"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "symbolic-ref", "HEAD", "refs/heads/main"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=path, check=True, capture_output=True, text=True)
    (path / "README.md").write_text("# init\n")
    subprocess.run(["git", "add", "-A"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "commit", "-m", "initial"], cwd=path, check=True, capture_output=True, text=True)


def feature(feature_id: str, *deps: str, **kwargs: object) -> Feature:
    return Feature(id=feature_id, title=feature_id.upper(), dependencies=list(deps), **kwargs)  # type: ignore[arg-type]


def kinds(events: list[Event], feature_id: Optional[str] = None) -> list[str]:
    return [e.kind.value for e in events if feature_id is None or e.feature_id == feature_id]


def transitions(events: list[Event], feature_id: str) -> list[str]:
    return [
        str(e.payload.get("to"))
        for e in events
        if e.kind == EventKind.STATE_CHANGED and e.feature_id == feature_id
    ]


class FakeVcs:
    """In-memory `VcsProvider` with real worktree directories under `root`.

    Tracks how many mutating calls overlap so tests can assert the manager
    serializes them.
    """

    def __init__(self, root: Path, *, integration: str = "main") -> None:
        self.root = root
        self.integration = integration
        self.branches: set[str] = set()
        self.worktrees: dict[str, Path] = {}
        self.merged: list[tuple[str, str]] = []
        self.commits: list[tuple[Path, str]] = []
        self.conflicting: set[str] = set()
        self.merge_delay = 0.0
        self.merging = asyncio.Event()
        self.commit_error: Optional[Exception] = None
        self.active_mutations = 0
        self.max_concurrent_mutations = 0

    async def _mutation(self) -> None:
        self.active_mutations += 1
        self.max_concurrent_mutations = max(self.max_concurrent_mutations, self.active_mutations)
        await asyncio.sleep(0.005)
        self.active_mutations -= 1

    async def current_branch(self) -> str:
        return self.integration

    async def branch_exists(self, branch: str) -> bool:
        return branch in self.branches

    async def list_branches(self, prefix: str) -> list[str]:
        return sorted(b for b in self.branches if b.startswith(prefix))

    async def create_worktree(self, branch: str, base: str) -> Path:
        await self._mutation()
        if branch in self.branches:
            raise WorkspaceConflict(branch)
        path = self.root / branch.replace("/", "-")
        path.mkdir(parents=True, exist_ok=True)
        self.branches.add(branch)
        self.worktrees[branch] = path
        return path

    async def worktree_path(self, branch: str) -> Optional[Path]:
        return self.worktrees.get(branch)

    async def commit_all(self, path: Path, message: str) -> bool:
        if self.commit_error is not None:
            raise self.commit_error
        self.commits.append((path, message))
        return True

    async def merge_branch(self, branch: str, into: str) -> MergeResult:
        await self._mutation()
        self.merging.set()
        await asyncio.sleep(self.merge_delay)
        if branch in self.conflicting:
            return MergeResult(success=False, conflicts=["shared.txt"], detail="shared.txt")
        self.merged.append((branch, into))
        return MergeResult(success=True)

    async def delete_worktree(self, branch: str) -> None:
        await self._mutation()
        path = self.worktrees.pop(branch, None)
        if path is not None and path.exists():
            shutil.rmtree(path)

    async def delete_branch(self, branch: str) -> None:
        self.branches.discard(branch)

    async def diff(self, branch: str, base: str) -> str:
        return f"diff {base}...{branch}\n"
