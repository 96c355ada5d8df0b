"""Git access for taskfleet.

    - AsyncRepo: non-blocking git commands
    - VcsProvider / GitVcsProvider: worktree, merge, push and pull request operations
"""

from __future__ import annotations

from .client import AsyncRepo, RepoStatus, commit_all
from .provider import GitVcsProvider, VcsProvider

__all__ = [
    "AsyncRepo",
    "GitVcsProvider",
    "RepoStatus",
    "VcsProvider",
    "commit_all",
]
