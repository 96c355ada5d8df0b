"""Repository operations consumed by the worktree manager.

``VcsProvider`` is the seam between scheduling and version control. The
default ``GitVcsProvider`` drives ``git`` through ``AsyncRepo`` and opens
pull requests with the ``gh`` CLI. Tests substitute an in-memory provider.

All operations return ``Result``; merge conflicts come back as
``Err(MergeConflictError)`` after the merge has been aborted.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Protocol

from taskfleet.core.models import PullRequestRef
from taskfleet.core.result import (
    Err,
    GitError,
    IntegrationError,
    MergeConflictError,
    Ok,
    Result,
)
from taskfleet.git.client import AsyncRepo, commit_all

logger = logging.getLogger(__name__)

_PR_NUMBER_PATTERN = re.compile(r"/pull/(\d+)")


class VcsProvider(Protocol):
    """Version-control operations needed to isolate and integrate task work."""

    async def current_branch(self, repo: Path) -> Result[str, GitError]: ...

    async def branch_exists(self, repo: Path, branch: str) -> bool: ...

    async def ensure_branch(
        self, repo: Path, branch: str, start_point: str
    ) -> Result[bool, GitError]:
        """Create ``branch`` from ``start_point`` if missing. Ok(True) when created."""
        ...

    async def create_worktree(
        self,
        repo: Path,
        path: Path,
        branch: str,
        base_branch: str,
        *,
        new_branch: bool = True,
    ) -> Result[Path, GitError]: ...

    async def remove_worktree(self, repo: Path, path: Path) -> Result[None, GitError]: ...

    async def prune_worktrees(self, repo: Path) -> Result[None, GitError]: ...

    async def commit_all(self, checkout: Path, message: str) -> Result[str | None, GitError]: ...

    async def merge_branch(
        self, checkout: Path, branch: str, message: str
    ) -> Result[str, GitError]: ...

    async def has_remote(self, repo: Path, remote: str) -> bool: ...

    async def push_branch(self, repo: Path, branch: str, remote: str) -> Result[None, GitError]: ...

    async def open_pull_request(
        self, repo: Path, task_id: str, head: str, base: str, title: str, body: str
    ) -> Result[PullRequestRef, GitError]: ...


async def _run_gh(cwd: Path, *args: str) -> Result[str, GitError]:
    try:
        process = await asyncio.create_subprocess_exec(
            "gh",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=cwd,
        )
    except FileNotFoundError:
        return Err(IntegrationError("gh executable not found on PATH", context={"cwd": str(cwd)}))
    except OSError as exc:
        return Err(IntegrationError("Failed to start gh", context={"error": str(exc)}))

    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip() or f"gh {' '.join(args)} failed"
        return Err(IntegrationError(detail, context={"cwd": str(cwd), "args": list(args)}))
    return Ok(stdout.decode("utf-8", errors="replace"))


class GitVcsProvider:
    """``VcsProvider`` backed by the local ``git`` and ``gh`` executables."""

    async def _open(self, path: Path) -> Result[AsyncRepo, GitError]:
        return await AsyncRepo.open(path)

    async def current_branch(self, repo: Path) -> Result[str, GitError]:
        match await self._open(repo):
            case Ok(git):
                return await git.current_branch()
            case Err(err):
                return Err(err)

    async def branch_exists(self, repo: Path, branch: str) -> bool:
        match await self._open(repo):
            case Ok(git):
                return await git.branch_exists(branch)
            case Err(_):
                return False

    async def ensure_branch(
        self, repo: Path, branch: str, start_point: str
    ) -> Result[bool, GitError]:
        match await self._open(repo):
            case Err(err):
                return Err(err)
            case Ok(git):
                if await git.branch_exists(branch):
                    return Ok(False)
                return (await git.create_branch(branch, start_point)).map(lambda _: True)

    async def create_worktree(
        self,
        repo: Path,
        path: Path,
        branch: str,
        base_branch: str,
        *,
        new_branch: bool = True,
    ) -> Result[Path, GitError]:
        match await self._open(repo):
            case Err(err):
                return Err(err)
            case Ok(git):
                try:
                    await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
                except OSError as exc:
                    return Err(GitError(f"Cannot create {path.parent}: {exc}"))
                return await git.worktree_add(
                    path, branch, new_branch=new_branch, start_point=base_branch
                )

    async def remove_worktree(self, repo: Path, path: Path) -> Result[None, GitError]:
        match await self._open(repo):
            case Err(err):
                return Err(err)
            case Ok(git):
                return await git.worktree_remove(path, force=True)

    async def prune_worktrees(self, repo: Path) -> Result[None, GitError]:
        match await self._open(repo):
            case Err(err):
                return Err(err)
            case Ok(git):
                return await git.worktree_prune()

    async def commit_all(self, checkout: Path, message: str) -> Result[str | None, GitError]:
        match await self._open(checkout):
            case Err(err):
                return Err(err)
            case Ok(git):
                return await commit_all(git, message)

    async def merge_branch(
        self, checkout: Path, branch: str, message: str
    ) -> Result[str, GitError]:
        """Merge ``branch`` into whatever ``checkout`` has checked out.

        On failure with conflicts the merge is aborted and the conflicted
        paths are carried by the returned MergeConflictError.
        """
        match await self._open(checkout):
            case Err(err):
                return Err(err)
            case Ok(git):
                pass

        match await git.merge(branch, no_ff=True, message=message):
            case Ok(sha):
                return Ok(sha)
            case Err(err):
                merge_err = err

        conflicts = (await git.get_conflict_files()).unwrap_or([])
        if not conflicts:
            return Err(merge_err)

        abort = await git.merge_abort()
        if abort.is_err():
            logger.error("Failed to abort merge of %s in %s", branch, checkout)
        return Err(
            MergeConflictError(
                "Merge stopped on conflicts",
                branch=branch,
                conflict_files=conflicts,
                context={"files": len(conflicts)},
            )
        )

    async def has_remote(self, repo: Path, remote: str) -> bool:
        match await self._open(repo):
            case Ok(git):
                return await git.remote_exists(remote)
            case Err(_):
                return False

    async def push_branch(self, repo: Path, branch: str, remote: str) -> Result[None, GitError]:
        match await self._open(repo):
            case Err(err):
                return Err(err)
            case Ok(git):
                pass
        match await git.push(remote, branch):
            case Ok(_):
                return Ok(None)
            case Err(err):
                return Err(
                    IntegrationError(
                        "Push failed",
                        context={"branch": branch, "remote": remote, "error": err.message},
                    )
                )

    async def open_pull_request(
        self, repo: Path, task_id: str, head: str, base: str, title: str, body: str
    ) -> Result[PullRequestRef, GitError]:
        match await _run_gh(
            repo, "pr", "create", "--head", head, "--base", base, "--title", title, "--body", body
        ):
            case Err(err):
                return Err(err)
            case Ok(output):
                lines = [line.strip() for line in output.splitlines() if line.strip()]
                url = lines[-1] if lines else None
                number = None
                if url and (match := _PR_NUMBER_PATTERN.search(url)):
                    number = int(match.group(1))
                return Ok(
                    PullRequestRef(
                        task_id=task_id, head_branch=head, base_branch=base, url=url, number=number
                    )
                )


__all__ = ["GitVcsProvider", "VcsProvider"]
