"""Git worktree management for task isolation.

Every dispatched task gets a private checkout on its own branch, created
from the reference agent's repository. The manager keeps an arena of live
worktrees keyed by assignment id; a worktree belongs to exactly one live
assignment and leaves the arena when it is released, or when it is kept on
disk after a merge conflict.

Layout under ``worktree_root``::

    <plan_id>/<task_id>        one checkout per task
    <plan_id>/_integration     checkout of the plan's feature branch
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType

from taskfleet.core.models import (
    BranchStrategy,
    Plan,
    PullRequestRef,
    TaskNode,
    Worktree,
    WorktreeStatus,
    utcnow,
)
from taskfleet.core.result import (
    AllocationError,
    Err,
    GitError,
    IntegrationError,
    MergeConflictError,
    Ok,
    Result,
)
from taskfleet.git.provider import VcsProvider

logger = logging.getLogger(__name__)

INTEGRATION_DIR = "_integration"


class WorktreeManager:
    """Allocates, integrates and releases task worktrees.

    Attributes:
        repo: Reference checkout every worktree branches from
        worktree_root: Directory holding per-plan worktree directories
        branch_prefix: First segment of every branch this manager creates
    """

    def __init__(
        self,
        vcs: VcsProvider,
        repo: Path,
        worktree_root: Path,
        *,
        branch_prefix: str = "taskfleet",
        remote: str = "origin",
        push_integration_branch: bool = False,
    ) -> None:
        self._vcs = vcs
        self.repo = repo
        self.worktree_root = worktree_root
        self.branch_prefix = branch_prefix
        self._remote = remote
        self._push_integration = push_integration_branch
        self._live: dict[str, Worktree] = {}
        self._owner_plan: dict[str, str] = {}
        self._default_base: str | None = None
        self._integration_checkouts: dict[str, Path] = {}
        self._integration_lock = asyncio.Lock()

    @property
    def live(self) -> Mapping[str, Worktree]:
        """Live worktrees keyed by owning assignment id."""
        return MappingProxyType(self._live)

    def plan_root(self, plan: Plan) -> Path:
        return self.worktree_root / plan.id

    def integration_branch_for(self, plan: Plan) -> str:
        return plan.integration_branch or f"{self.branch_prefix}/{plan.short_id}/feature"

    async def default_base(self) -> str:
        """Branch currently checked out in the reference repository."""
        if self._default_base is None:
            match await self._vcs.current_branch(self.repo):
                case Ok(branch):
                    self._default_base = branch
                case Err(err):
                    raise AllocationError(
                        "Cannot determine the reference checkout's branch",
                        context={"repo": str(self.repo), "error": err.message},
                    )
        return self._default_base

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    async def resolve_base_branch(self, plan: Plan, task: TaskNode) -> str:
        """Pick the branch a task's worktree starts from.

        - feature_branch with prerequisites: the plan's integration branch,
          which holds the merged prerequisite work
        - raise_prs with a merged prerequisite: that prerequisite's branch,
          so pull requests stack
        - otherwise the reference checkout's branch
        """
        default = await self.default_base()
        if not task.blocked_by:
            return default

        if plan.branch_strategy == BranchStrategy.FEATURE_BRANCH:
            return await self._ensure_integration_branch(plan)

        merged = [
            wt
            for wt in plan.worktrees
            if wt.task_id in task.blocked_by and wt.merged_at is not None
        ]
        if merged:
            merged.sort(key=lambda wt: wt.merged_at or wt.created_at)
            return merged[-1].branch
        return default

    async def allocate(self, plan: Plan, task: TaskNode, assignment_id: str) -> Worktree:
        """Create a worktree for ``task`` and register it under ``assignment_id``.

        A branch or path collision is retried once with a random suffix.

        Raises:
            AllocationError: the assignment already owns a worktree, or the
                checkout could not be created
        """
        if assignment_id in self._live:
            raise AllocationError(
                "Assignment already owns a worktree", context={"assignment": assignment_id}
            )
        base_branch = await self.resolve_base_branch(plan, task)

        branch = f"{self.branch_prefix}/{plan.short_id}/{task.id}"
        path = self.plan_root(plan) / task.id
        last_error: GitError | None = None

        for attempt in range(2):
            if attempt:
                suffix = uuid.uuid4().hex[:8]
                branch = f"{branch}-{suffix}"
                path = path.with_name(f"{path.name}-{suffix}")
            if path.exists() or await self._vcs.branch_exists(self.repo, branch):
                last_error = GitError("Branch or path already exists", context={"branch": branch})
                continue
            match await self._vcs.create_worktree(self.repo, path, branch, base_branch):
                case Ok(created):
                    worktree = Worktree(
                        id=f"wt-{uuid.uuid4().hex[:12]}",
                        task_id=task.id,
                        assignment_id=assignment_id,
                        path=created,
                        branch=branch,
                        base_branch=base_branch,
                    )
                    self._live[assignment_id] = worktree
                    self._owner_plan[assignment_id] = plan.id
                    plan.worktrees.append(worktree)
                    logger.debug("Allocated %s for task %s on %s", created, task.id, branch)
                    return worktree
                case Err(err):
                    last_error = err
                    logger.debug("Worktree creation failed for %s: %s", task.id, err)

        raise AllocationError(
            "Could not create worktree",
            context={"task": task.id, "error": last_error.message if last_error else "unknown"},
        )

    # ------------------------------------------------------------------
    # Integration
    # ------------------------------------------------------------------

    async def finalize(self, worktree: Worktree, plan: Plan, title: str = "") -> Worktree:
        """Integrate a completed task's branch according to the plan's strategy.

        Raises:
            MergeConflictError: the merge stopped on conflicts and was aborted
            IntegrationError: pushing or opening the pull request failed
            GitError: any other VCS failure
        """
        if plan.branch_strategy == BranchStrategy.FEATURE_BRANCH:
            await self._merge_into_feature_branch(worktree, plan, title)
        else:
            await self._raise_pull_request(worktree, plan, title)
        worktree.status = WorktreeStatus.MERGED
        worktree.merged_at = utcnow()
        plan.touch()
        return worktree

    async def _ensure_integration_branch(self, plan: Plan) -> str:
        branch = self.integration_branch_for(plan)
        if plan.integration_branch is None:
            plan.integration_branch = branch
        match await self._vcs.ensure_branch(self.repo, branch, await self.default_base()):
            case Ok(created):
                if created:
                    logger.info("Created integration branch %s", branch)
                return branch
            case Err(err):
                raise AllocationError(
                    "Cannot create integration branch",
                    context={"branch": branch, "error": err.message},
                )

    async def _integration_checkout(self, plan: Plan) -> Path:
        existing = self._integration_checkouts.get(plan.id)
        if existing is not None and existing.exists():
            return existing

        branch = await self._ensure_integration_branch(plan)
        path = self.plan_root(plan) / INTEGRATION_DIR
        if not path.exists():
            match await self._vcs.create_worktree(
                self.repo, path, branch, branch, new_branch=False
            ):
                case Ok(created):
                    path = created
                case Err(err):
                    raise err
        self._integration_checkouts[plan.id] = path
        return path

    async def _merge_into_feature_branch(self, worktree: Worktree, plan: Plan, title: str) -> None:
        # Merges into the shared checkout must not interleave.
        async with self._integration_lock:
            checkout = await self._integration_checkout(plan)
            message = f"Merge {worktree.task_id}: {title}" if title else f"Merge {worktree.task_id}"
            match await self._vcs.merge_branch(checkout, worktree.branch, message):
                case Ok(sha):
                    worktree.merge_commit = sha
                    plan.commits.append(sha)
                case Err(MergeConflictError() as conflict):
                    worktree.conflict_files = [str(p) for p in conflict.conflict_files]
                    raise conflict
                case Err(err):
                    raise err

            if self._push_integration and await self._vcs.has_remote(self.repo, self._remote):
                pushed = await self._vcs.push_branch(
                    self.repo, self.integration_branch_for(plan), self._remote
                )
                if isinstance(pushed, Err):
                    raise IntegrationError(
                        "Failed to push integration branch",
                        context={
                            "branch": self.integration_branch_for(plan),
                            "error": pushed.error.message,
                        },
                    )

    async def _raise_pull_request(self, worktree: Worktree, plan: Plan, title: str) -> None:
        if not await self._vcs.has_remote(self.repo, self._remote):
            ref = PullRequestRef(
                task_id=worktree.task_id,
                head_branch=worktree.branch,
                base_branch=worktree.base_branch,
            )
            logger.info("No remote %s; recorded branch %s only", self._remote, worktree.branch)
        else:
            pushed = await self._vcs.push_branch(self.repo, worktree.branch, self._remote)
            if isinstance(pushed, Err):
                raise pushed.error
            match await self._vcs.open_pull_request(
                self.repo,
                worktree.task_id,
                worktree.branch,
                worktree.base_branch,
                title or worktree.task_id,
                f"Task {worktree.task_id} of plan {plan.title}",
            ):
                case Ok(opened):
                    ref = opened
                case Err(err):
                    raise err
        worktree.pr = ref
        plan.pull_requests.append(ref)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def _remove_checkout(self, path: Path) -> Result[None, GitError]:
        result = await self._vcs.remove_worktree(self.repo, path)
        if isinstance(result, Ok):
            return result

        await self._vcs.prune_worktrees(self.repo)
        if not path.exists():
            return Ok(None)
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except OSError as exc:
            return Err(
                GitError(
                    "Failed to remove worktree", context={"path": str(path), "error": str(exc)}
                )
            )
        await self._vcs.prune_worktrees(self.repo)
        return Ok(None)

    async def release(self, worktree: Worktree) -> Result[None, GitError]:
        """Remove a worktree's checkout and drop it from the arena.

        Idempotent. The task branch is kept. Errors are logged and returned,
        never raised. A checkout that could not be removed stays ``active``;
        if it was live it also stays in the arena, so ``release_all`` tries
        it again.
        """
        owner = self._owner_plan.pop(worktree.assignment_id, None)
        self._live.pop(worktree.assignment_id, None)
        if worktree.status == WorktreeStatus.CLEANED:
            return Ok(None)

        result = await self._remove_checkout(worktree.path)
        if isinstance(result, Err):
            logger.error("Failed to release worktree %s: %s", worktree.path, result.error)
            if owner is not None:
                self._live[worktree.assignment_id] = worktree
                self._owner_plan[worktree.assignment_id] = owner
            return result
        worktree.status = WorktreeStatus.CLEANED
        return result

    def keep(self, worktree: Worktree) -> None:
        """Drop a worktree from the arena but leave its checkout on disk.

        Used after a merge conflict so the task's work can be resolved by
        hand. The worktree stays ``active`` until ``release_conflicted``.
        """
        self._live.pop(worktree.assignment_id, None)
        self._owner_plan.pop(worktree.assignment_id, None)
        logger.info("Kept %s on %s for conflict resolution", worktree.path, worktree.branch)

    @staticmethod
    def conflicted(plan: Plan) -> list[Worktree]:
        """Checkouts kept after a merge conflict and not yet released."""
        return [
            wt
            for wt in plan.worktrees
            if wt.status == WorktreeStatus.ACTIVE and wt.conflict_files
        ]

    async def release_conflicted(self, plan: Plan) -> list[Worktree]:
        released: list[Worktree] = []
        for worktree in self.conflicted(plan):
            if worktree.assignment_id in self._live:
                continue
            if isinstance(await self.release(worktree), Ok):
                released.append(worktree)
        return released

    async def release_all(self, plan_id: str | None = None) -> list[Worktree]:
        """Release every live worktree, optionally only those of one plan."""
        released: list[Worktree] = []
        for assignment_id, worktree in list(self._live.items()):
            if plan_id is not None and self._owner_plan.get(assignment_id) != plan_id:
                continue
            await self.release(worktree)
            released.append(worktree)
        return released

    async def close(self, plan: Plan) -> None:
        """Remove the plan's integration checkout. The integration branch stays."""
        path = self._integration_checkouts.pop(plan.id, None)
        if path is None:
            path = self.plan_root(plan) / INTEGRATION_DIR
        if not path.exists():
            return
        match await self._remove_checkout(path):
            case Err(err):
                logger.error("Failed to remove integration checkout %s: %s", path, err)
            case Ok(_):
                pass

    async def prune_orphans(self, plan: Plan) -> int:
        """Remove task checkouts under the plan's directory that nothing owns.

        Live checkouts and those kept after a merge conflict are left alone.
        """
        root = self.plan_root(plan)
        if not root.exists():
            return 0

        def _scan() -> list[Path]:
            return [d for d in root.iterdir() if d.is_dir() and d.name != INTEGRATION_DIR]

        owned = {wt.path.resolve() for wt in self._live.values()}
        owned.update(wt.path.resolve() for wt in self.conflicted(plan))
        orphans = [p for p in await asyncio.to_thread(_scan) if p.resolve() not in owned]
        if not orphans:
            return 0

        logger.warning("Pruning %d orphaned worktrees for plan %s", len(orphans), plan.id)
        removed = 0
        for path in orphans:
            match await self._remove_checkout(path):
                case Ok(_):
                    removed += 1
                case Err(err):
                    logger.error("Failed to remove orphan %s: %s", path, err)

        orphan_set = {p.resolve() for p in orphans}
        for worktree in plan.worktrees:
            if worktree.status == WorktreeStatus.ACTIVE and worktree.path.resolve() in orphan_set:
                worktree.status = WorktreeStatus.CLEANED
        return removed


__all__ = ["INTEGRATION_DIR", "WorktreeManager"]
