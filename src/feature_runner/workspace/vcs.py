from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol


@dataclass(frozen=True)
class MergeResult:
    success: bool
    conflicts: list[str] = field(default_factory=list)
    detail: str = ""


class VcsProvider(Protocol):
    """Worktree/branch/merge primitives over one base repository.

    Implementations need not be safe for concurrent mutation; the workspace
    manager serializes every mutating call.
    """

    async def current_branch(self) -> str:
        ...

    async def branch_exists(self, branch: str) -> bool:
        ...

    async def list_branches(self, prefix: str) -> list[str]:
        ...

    async def create_worktree(self, branch: str, base: str) -> Path:
        ...

    async def worktree_path(self, branch: str) -> Optional[Path]:
        ...

    async def commit_all(self, path: Path, message: str) -> bool:
        ...

    async def merge_branch(self, branch: str, into: str) -> MergeResult:
        ...

    async def delete_worktree(self, branch: str) -> None:
        ...

    async def delete_branch(self, branch: str) -> None:
        ...

    async def diff(self, branch: str, base: str) -> str:
        ...
