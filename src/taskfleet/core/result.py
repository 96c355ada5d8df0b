"""
Result type and error hierarchy for taskfleet.

This module provides:
1. Result[T, E] for explicit error handling at the VCS boundary
2. The domain exception hierarchy raised by the graph, lifecycle and worktree layers

Usage:
    from taskfleet.core.result import Ok, Err, Result, GitError

    async def head(repo: Path) -> Result[str, GitError]:
        ...

    match await head(repo):
        case Ok(sha):
            print(sha)
        case Err(err):
            print(err.message)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E", bound=Exception)
F = TypeVar("F", bound=Exception)


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful result carrying a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        return Ok(fn(self.value))

    def map_err(self, fn: Callable[[E], F]) -> Ok[T]:
        return self


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Failed result carrying an exception instance."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> Any:
        """Raise the contained error."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, fn: Callable[[T], U]) -> Err[E]:
        return self

    def map_err(self, fn: Callable[[E], F]) -> Err[F]:
        return Err(fn(self.error))


Result = Ok[T] | Err[E]


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class TaskFleetError(Exception):
    """Base exception for all taskfleet errors.

    Carries an optional context mapping that is rendered after the message,
    so log lines and CLI output show the ids involved.
    """

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class ValidationError(TaskFleetError):
    """Raised for invalid caller input (empty titles, bad parallelism)."""


class GraphError(TaskFleetError):
    """Base class for task graph misuse. Never retried."""


class CycleError(GraphError):
    """Raised when a dependency edge would make a task (transitively) block itself."""


class UnknownTaskError(GraphError):
    """Raised when a task id is not part of the graph."""


class DuplicateTaskError(GraphError):
    """Raised when a task id is added twice."""


class InvalidTransitionError(GraphError):
    """Raised when a task status change is not allowed.

    Examples:
    - completed -> in_progress
    - failed -> ready (retry through a replacement node instead)
    - sent -> planned
    """


class UnknownPlanError(TaskFleetError):
    """Raised when a plan id is not known to the manager or the store."""


class PlanStateError(TaskFleetError):
    """Raised when a lifecycle command is not valid for the plan's current status."""


class WorkspaceError(TaskFleetError):
    """Raised for filesystem problems around worktrees and the state directory."""


class GitError(TaskFleetError):
    """Raised (or returned in Err) when a git command fails."""


class MergeConflictError(GitError):
    """Raised when integrating a task branch stops on conflicts.

    The task branch is left untouched so the work can be resolved by hand.
    """

    def __init__(
        self,
        message: str,
        *,
        branch: str,
        conflict_files: list[Path] | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, context={"branch": branch, **(context or {})})
        self.branch = branch
        self.conflict_files = conflict_files or []


class IntegrationError(GitError):
    """Raised when pushing a branch or recording a pull request fails."""


class AllocationError(TaskFleetError):
    """Raised when a worktree cannot be created for a task."""


__all__ = [
    "AllocationError",
    "CycleError",
    "DuplicateTaskError",
    "Err",
    "GitError",
    "GraphError",
    "IntegrationError",
    "InvalidTransitionError",
    "MergeConflictError",
    "Ok",
    "PlanStateError",
    "Result",
    "TaskFleetError",
    "UnknownPlanError",
    "UnknownTaskError",
    "ValidationError",
    "WorkspaceError",
]
