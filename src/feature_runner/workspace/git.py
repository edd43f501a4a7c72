"""`VcsProvider` backed by the `git` CLI.

Each call maps to one or two git commands run through `subprocess` in a worker
thread so the event loop keeps serving other features while git works.
Worktrees live under `worktrees_dir`, one directory per branch.
"""

from __future__ import annotations

import asyncio
import re
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from ..errors import WorkspaceConflict
from .vcs import MergeResult


def _dir_name(branch: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", branch).strip("-.") or "worktree"


class GitVcsProvider:
    def __init__(self, *, repo_root: Path, worktrees_dir: Path) -> None:
        self.repo_root = repo_root.resolve()
        self.worktrees_dir = worktrees_dir if worktrees_dir.is_absolute() else self.repo_root / worktrees_dir

    def _git(self, args: list[str], *, cwd: Optional[Path] = None, check: bool = True) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            ["git", *args],
            cwd=cwd or self.repo_root,
            text=True,
            check=check,
            capture_output=True,
        )

    async def _run(self, args: list[str], *, cwd: Optional[Path] = None, check: bool = True) -> subprocess.CompletedProcess[str]:
        return await asyncio.to_thread(self._git, args, cwd=cwd, check=check)

    async def current_branch(self) -> str:
        out = (await self._run(["rev-parse", "--abbrev-ref", "HEAD"])).stdout.strip()
        if out == "HEAD":
            raise RuntimeError("Detached HEAD; check out a named integration branch first.")
        return out

    async def branch_exists(self, branch: str) -> bool:
        result = await self._run(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False)
        return result.returncode == 0

    async def list_branches(self, prefix: str) -> list[str]:
        out = (await self._run(["for-each-ref", "--format=%(refname:short)", f"refs/heads/{prefix}"])).stdout
        return [line.strip() for line in out.splitlines() if line.strip()]

    async def _worktrees(self) -> dict[str, Path]:
        out = (await self._run(["worktree", "list", "--porcelain"])).stdout
        result: dict[str, Path] = {}
        current: Optional[Path] = None
        for line in out.splitlines():
            if line.startswith("worktree "):
                current = Path(line.split(" ", 1)[1]).resolve()
            elif line.startswith("branch ") and current is not None:
                ref = line.split(" ", 1)[1].strip()
                if ref.startswith("refs/heads/"):
                    result[ref.removeprefix("refs/heads/")] = current
            elif not line.strip():
                current = None
        return result

    async def worktree_path(self, branch: str) -> Optional[Path]:
        return (await self._worktrees()).get(branch)

    def _ensure_excluded(self) -> None:
        """Keep the worktrees directory out of `git status` without touching tracked files."""
        try:
            relative = self.worktrees_dir.resolve().relative_to(self.repo_root)
        except ValueError:
            return
        common = self._git(["rev-parse", "--git-common-dir"]).stdout.strip()
        exclude = (self.repo_root / common).resolve() / "info" / "exclude"
        entry = f"/{relative.as_posix()}/"
        existing = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        if entry in existing.splitlines():
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        exclude.write_text(existing + prefix + entry + "\n", encoding="utf-8")

    async def create_worktree(self, branch: str, base: str) -> Path:
        if await self.branch_exists(branch):
            raise WorkspaceConflict(branch)
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(self._ensure_excluded)
        path = (self.worktrees_dir / _dir_name(branch)).resolve()
        if path.exists():
            raise WorkspaceConflict(branch)
        await self._run(["worktree", "add", "-b", branch, str(path), base])
        logger.debug("Created worktree {} for {}", path, branch)
        return path

    async def commit_all(self, path: Path, message: str) -> bool:
        status = (await self._run(["status", "--porcelain"], cwd=path)).stdout
        if not status.strip():
            return False
        await self._run(["add", "-A"], cwd=path)
        await self._run(["commit", "-m", message], cwd=path)
        return True

    async def merge_branch(self, branch: str, into: str) -> MergeResult:
        if await self.current_branch() != into:
            await self._run(["checkout", into])
        result = await self._run(["merge", "--no-edit", branch], check=False)
        if result.returncode == 0:
            return MergeResult(success=True, detail=result.stdout.strip())
        conflicted = (await self._run(["diff", "--name-only", "--diff-filter=U"], check=False)).stdout
        conflicts = [line for line in conflicted.splitlines() if line.strip()]
        await self._run(["merge", "--abort"], check=False)
        detail = ", ".join(conflicts) if conflicts else (result.stderr.strip() or result.stdout.strip())
        return MergeResult(success=False, conflicts=conflicts, detail=detail)

    async def delete_worktree(self, branch: str) -> None:
        path = await self.worktree_path(branch)
        if path is not None:
            await self._run(["worktree", "remove", "--force", str(path)])
        await self._run(["worktree", "prune"])
        leftover = self.worktrees_dir / _dir_name(branch)
        if leftover.exists():
            # Directory git no longer tracks as a worktree.
            await asyncio.to_thread(shutil.rmtree, leftover)

    async def delete_branch(self, branch: str) -> None:
        if await self.branch_exists(branch):
            await self._run(["branch", "-D", branch])

    async def diff(self, branch: str, base: str) -> str:
        path = await self.worktree_path(branch)
        if path is None:
            return (await self._run(["diff", f"{base}...{branch}"])).stdout
        # Inside the worktree so uncommitted edits show up too.
        return (await self._run(["diff", base], cwd=path)).stdout
