from .git import GitVcsProvider
from .manager import ReleaseOutcome, WorkspaceManager, branch_slug
from .vcs import MergeResult, VcsProvider

__all__ = ["WorkspaceManager", "ReleaseOutcome", "branch_slug", "VcsProvider", "MergeResult", "GitVcsProvider"]
