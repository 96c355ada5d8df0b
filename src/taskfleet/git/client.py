"""Async git client.

Thin wrapper over the ``git`` executable run through
``asyncio.create_subprocess_exec``. Every operation returns a
``Result[..., GitError]`` instead of raising, so callers decide which
failures are fatal.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from taskfleet.core.result import Err, GitError, Ok, Result

logger = logging.getLogger(__name__)


@dataclass
class RepoStatus:
    path: Path
    branch: str
    staged: int
    unstaged: int
    untracked: int

    @property
    def dirty(self) -> bool:
        return bool(self.staged or self.unstaged or self.untracked)


async def _run_git(cwd: Path, *args: str) -> Result[str, GitError]:
    """Run git in ``cwd`` and return stdout, wrapping every failure in GitError."""
    if not cwd.exists():
        return Err(GitError("Repository path does not exist", context={"cwd": str(cwd)}))

    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=cwd,
        )
    except FileNotFoundError:
        return Err(GitError("git executable not found on PATH", context={"cwd": str(cwd)}))
    except OSError as exc:
        return Err(
            GitError(
                "Failed to start git",
                context={"cwd": str(cwd), "args": list(args), "error": str(exc)},
            )
        )

    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        detail = message or stdout_text or f"git {' '.join(args)} failed"
        logger.debug("git %s failed in %s: %s", " ".join(args), cwd, detail)
        return Err(
            GitError(
                detail,
                context={"cwd": str(cwd), "args": list(args), "returncode": process.returncode},
            )
        )

    return Ok(stdout.decode("utf-8", errors="replace"))


def _parse_status(raw: str, repo_path: Path) -> RepoStatus:
    """Parse ``git status --porcelain=v2 --branch -z``."""
    branch = "(unknown)"
    staged = unstaged = untracked = 0

    for entry in (item for item in raw.split("\0") if item):
        if entry.startswith("#"):
            parts = entry.split()
            if len(parts) >= 3 and parts[1] == "branch.head":
                branch = parts[2]
            continue

        kind = entry[0]
        if kind in {"1", "2", "u"}:
            parts = entry.split()
            if len(parts) < 2:
                continue
            xy = parts[1]
            if xy[:1] not in ("", "."):
                staged += 1
            if xy[1:2] not in ("", "."):
                unstaged += 1
        elif kind == "?":
            untracked += 1

    return RepoStatus(
        path=repo_path, branch=branch, staged=staged, unstaged=unstaged, untracked=untracked
    )


class AsyncRepo:
    """Async git wrapper rooted at one working tree."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def path(self) -> Path:
        return self._root

    @classmethod
    async def open(cls, path: Path | str = ".") -> Result[AsyncRepo, GitError]:
        root = Path(path).expanduser()
        match await _run_git(root, "rev-parse", "--show-toplevel"):
            case Ok(raw):
                return Ok(cls(Path(raw.strip()).resolve()))
            case Err(err):
                return Err(err)

    async def status(self) -> Result[RepoStatus, GitError]:
        match await _run_git(self._root, "status", "--porcelain=v2", "--branch", "-z"):
            case Ok(output):
                return Ok(_parse_status(output, self._root))
            case Err(err):
                return Err(err)

    async def add_all(self) -> Result[None, GitError]:
        result = await _run_git(self._root, "add", "--all")
        return result.map(lambda _: None)

    async def commit(self, message: str) -> Result[str, GitError]:
        match await _run_git(self._root, "commit", "-m", message):
            case Err(err):
                return Err(err)
            case Ok(_):
                pass
        return await self.head()

    async def head(self) -> Result[str, GitError]:
        match await _run_git(self._root, "rev-parse", "HEAD"):
            case Ok(output):
                return Ok(output.strip())
            case Err(err):
                return Err(err)

    # -------------------------------------------------------------------------
    # Branches and remotes
    # -------------------------------------------------------------------------

    async def current_branch(self) -> Result[str, GitError]:
        """Name of the checked-out branch. Detached HEAD is an error."""
        match await _run_git(self._root, "symbolic-ref", "--short", "-q", "HEAD"):
            case Ok(output) if output.strip():
                return Ok(output.strip())
            case Ok(_):
                return Err(GitError("HEAD is detached", context={"cwd": str(self._root)}))
            case Err(err):
                return Err(
                    GitError(
                        "HEAD is detached", context={"cwd": str(self._root), "error": err.message}
                    )
                )

    async def branch_exists(self, branch: str) -> bool:
        result = await _run_git(
            self._root, "show-ref", "--verify", "--quiet", f"refs/heads/{branch}"
        )
        return result.is_ok()

    async def create_branch(self, branch: str, start_point: str) -> Result[None, GitError]:
        result = await _run_git(self._root, "branch", branch, start_point)
        return result.map(lambda _: None)

    async def remote_exists(self, remote: str) -> bool:
        match await _run_git(self._root, "remote"):
            case Ok(output):
                return remote in output.split()
            case Err(_):
                return False

    async def push(self, remote: str, branch: str) -> Result[None, GitError]:
        result = await _run_git(self._root, "push", "--set-upstream", remote, branch)
        return result.map(lambda _: None)

    # -------------------------------------------------------------------------
    # Worktree operations
    # -------------------------------------------------------------------------

    async def worktree_add(
        self,
        path: Path,
        branch: str,
        *,
        new_branch: bool = True,
        start_point: str | None = None,
    ) -> Result[Path, GitError]:
        """Create a worktree at ``path``.

        With ``new_branch`` the branch is created from ``start_point``
        (default HEAD); otherwise the existing ``branch`` is checked out.
        """
        args: list[str] = ["worktree", "add"]
        if new_branch:
            args.extend(["-b", branch, str(path)])
            if start_point:
                args.append(start_point)
        else:
            args.extend([str(path), branch])

        match await _run_git(self._root, *args):
            case Ok(_):
                return Ok(path.resolve())
            case Err(err):
                return Err(err)

    async def worktree_remove(self, path: Path, *, force: bool = False) -> Result[None, GitError]:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        result = await _run_git(self._root, *args)
        return result.map(lambda _: None)

    async def worktree_prune(self) -> Result[None, GitError]:
        result = await _run_git(self._root, "worktree", "prune")
        return result.map(lambda _: None)

    # -------------------------------------------------------------------------
    # Merge operations
    # -------------------------------------------------------------------------

    async def merge(
        self,
        branch: str,
        *,
        no_ff: bool = False,
        message: str | None = None,
    ) -> Result[str, GitError]:
        """Merge ``branch`` into HEAD and return the resulting commit sha."""
        args = ["merge"]
        if no_ff:
            args.append("--no-ff")
        if message:
            args.extend(["-m", message])
        args.append(branch)

        match await _run_git(self._root, *args):
            case Ok(_):
                return await self.head()
            case Err(err):
                return Err(err)

    async def merge_abort(self) -> Result[None, GitError]:
        result = await _run_git(self._root, "merge", "--abort")
        return result.map(lambda _: None)

    async def get_conflict_files(self) -> Result[list[Path], GitError]:
        match await _run_git(self._root, "diff", "--name-only", "--diff-filter=U"):
            case Ok(output):
                files = [self._root / line.strip() for line in output.splitlines() if line.strip()]
                return Ok(files)
            case Err(err):
                return Err(err)


async def commit_all(repo: AsyncRepo, message: str) -> Result[str | None, GitError]:
    """Stage everything and commit. Returns ``Ok(None)`` when there was nothing to commit."""
    match await repo.add_all():
        case Err(err):
            return Err(err)
        case Ok(_):
            pass

    match await repo.status():
        case Err(err):
            return Err(err)
        case Ok(status) if not status.dirty:
            return Ok(None)
        case Ok(_):
            pass

    match await repo.commit(message):
        case Ok(sha):
            return Ok(sha)
        case Err(err):
            return Err(err)


__all__ = ["AsyncRepo", "RepoStatus", "commit_all"]
