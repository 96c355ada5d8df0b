"""Plan commands facade.

``PlanManager`` is the surface UIs and the CLI talk to. It owns the
in-memory runtime of every plan it has touched (plan, graph, activity log,
scheduler task), persists each change through ``PlanStore`` and starts one
``PlanScheduler`` task per executing plan.

Plans share no mutable state. The only cross-plan rule is the
reference-agent lock: a reference agent drives at most one plan that is
delegating, in progress or awaiting review.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

from taskfleet.core.activity import ActivityListener, ActivityLog
from taskfleet.core.config import AppConfig
from taskfleet.core.graph import TaskGraph
from taskfleet.core.models import (
    DISPATCHED_TASK_STATUSES,
    RUNNING_PLAN_STATUSES,
    BranchStrategy,
    Plan,
    PlanSnapshot,
    PlanStatus,
    TaskAssignment,
    TaskNode,
    TaskStatus,
)
from taskfleet.core.result import (
    AllocationError,
    PlanStateError,
    UnknownPlanError,
    UnknownTaskError,
    ValidationError,
    WorkspaceError,
)
from taskfleet.core.store import PlanRecord, PlanStore
from taskfleet.git.provider import GitVcsProvider, VcsProvider
from taskfleet.swarm import lifecycle
from taskfleet.swarm.agent_adapter import AgentRunner, CommandAgentRunner
from taskfleet.swarm.scheduler import PlanScheduler
from taskfleet.swarm.worktree import WorktreeManager

logger = logging.getLogger(__name__)

LOCKING_PLAN_STATUSES = RUNNING_PLAN_STATUSES | {PlanStatus.READY_FOR_REVIEW}


@dataclass
class PlanRuntime:
    """In-memory state of one plan."""

    plan: Plan
    graph: TaskGraph
    activity: ActivityLog
    worktrees: WorktreeManager | None = None
    scheduler: PlanScheduler | None = None
    task: asyncio.Task[PlanStatus] | None = None
    past_assignments: list[TaskAssignment] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def assignments(self) -> list[TaskAssignment]:
        current = self.scheduler.assignments if self.scheduler is not None else []
        return [*self.past_assignments, *current]


class PlanManager:
    """Creates, executes and tracks plans.

    Attributes:
        config: Application configuration
        store: Persistence for plan records
        vcs: Repository operations used by every worktree manager
        runner: Agent runner shared by all plans
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        store: PlanStore | None = None,
        vcs: VcsProvider | None = None,
        runner: AgentRunner | None = None,
    ) -> None:
        self.config = config
        self.store = store or PlanStore(config.workspace.state_dir)
        self.vcs: VcsProvider = vcs or GitVcsProvider()
        self.runner: AgentRunner = runner or CommandAgentRunner(
            config.agent.command,
            self.vcs,
            timeout=config.agent.task_timeout,
            auto_commit=config.agent.auto_commit,
        )
        self._plans: dict[str, PlanRuntime] = {}
        self._listeners: dict[int, tuple[ActivityListener, list[Callable[[], None]]]] = {}

    # ------------------------------------------------------------------
    # Runtime bookkeeping
    # ------------------------------------------------------------------

    def _register(self, runtime: PlanRuntime) -> PlanRuntime:
        self._plans[runtime.plan.id] = runtime
        for listener, unsubscribes in self._listeners.values():
            unsubscribes.append(runtime.activity.subscribe(listener))
        return runtime

    def _runtime(self, plan_id: str) -> PlanRuntime:
        runtime = self._plans.get(plan_id)
        if runtime is not None:
            return runtime
        record = self.store.load(plan_id)
        activity = ActivityLog(plan_id, record.activities)
        graph = TaskGraph.from_records(plan_id, record.tasks, activity)
        return self._register(PlanRuntime(plan=record.plan, graph=graph, activity=activity))

    def _save(self, runtime: PlanRuntime) -> None:
        scheduler = runtime.scheduler
        if scheduler is not None and not scheduler.finished and self._adopt_stored_cancel(runtime):
            scheduler.request_cancel()
        runtime.plan.touch()
        self.store.save(
            PlanRecord(
                plan=runtime.plan,
                tasks=runtime.graph.to_records(),
                activities=runtime.activity.entries(),
            )
        )

    def _adopt_stored_cancel(self, runtime: PlanRuntime) -> bool:
        """Apply a cancel another process wrote to this plan's record.

        Returns True when the in-memory plan was cancelled as a result.
        """
        plan = runtime.plan
        if plan.is_terminal:
            return False
        try:
            stored = self.store.load(plan.id).plan
        except (UnknownPlanError, WorkspaceError) as exc:
            logger.debug("Cannot read record of plan %s: %s", plan.id, exc)
            return False
        if not stored.cancelled:
            return False

        logger.warning("Plan %s was cancelled by another process", plan.id)
        lifecycle.cancel(plan, runtime.activity)
        plan.cancelled_at = stored.cancelled_at or plan.cancelled_at
        return True

    def _require_status(self, runtime: PlanRuntime, *allowed: PlanStatus) -> None:
        if runtime.plan.status not in allowed:
            raise PlanStateError(
                f"Plan is {runtime.plan.status.value}",
                context={"plan": runtime.plan.id, "expected": "/".join(s.value for s in allowed)},
            )

    def resolve_reference(self, agent_id: str) -> Path:
        """Checkout path of a reference agent.

        Configured ids win; otherwise an existing directory path is accepted.
        """
        if not agent_id.strip():
            raise AllocationError("Reference agent id must be non-empty")
        configured = self.config.agent.references.get(agent_id)
        candidate = (configured or Path(agent_id)).expanduser()
        if candidate.is_dir():
            return candidate.resolve()
        raise AllocationError(
            "Unknown reference agent", context={"agent": agent_id, "path": str(candidate)}
        )

    def _lock_holder(self, agent_id: str, exclude: str) -> str | None:
        for plan in self.list_plans():
            if (
                plan.id != exclude
                and plan.reference_agent_id == agent_id
                and plan.status in LOCKING_PLAN_STATUSES
            ):
                return plan.id
        return None

    def _worktree_manager(self, repo: Path) -> WorktreeManager:
        workspace = self.config.workspace
        return WorktreeManager(
            self.vcs,
            repo,
            workspace.resolved_worktree_root,
            branch_prefix=workspace.branch_prefix,
            remote=workspace.remote,
            push_integration_branch=workspace.push_integration_branch,
        )

    async def _close_integration(
        self, runtime: PlanRuntime, *, release_conflicts: bool = True
    ) -> None:
        """Remove the integration checkout and, optionally, conflicted task checkouts."""
        if runtime.worktrees is None and runtime.plan.reference_agent_id:
            try:
                repo = self.resolve_reference(runtime.plan.reference_agent_id)
            except AllocationError as exc:
                logger.warning("Cannot clean integration checkout: %s", exc)
                return
            runtime.worktrees = self._worktree_manager(repo)
        if runtime.worktrees is not None:
            if release_conflicts:
                await runtime.worktrees.release_conflicted(runtime.plan)
            await runtime.worktrees.close(runtime.plan)

    # ------------------------------------------------------------------
    # Authoring
    # ------------------------------------------------------------------

    def create_plan(
        self,
        title: str,
        description: str = "",
        max_parallel_agents: int | None = None,
        branch_strategy: BranchStrategy | None = None,
    ) -> Plan:
        if not title.strip():
            raise ValidationError("Plan title must be non-empty")
        parallel = (
            self.config.scheduler.default_max_parallel_agents
            if max_parallel_agents is None
            else max_parallel_agents
        )
        if parallel < 1:
            raise ValidationError(
                "max_parallel_agents must be at least 1", context={"value": parallel}
            )

        plan = Plan(
            id=f"plan-{uuid.uuid4().hex[:8]}",
            title=title.strip(),
            description=description,
            max_parallel_agents=parallel,
            branch_strategy=branch_strategy or self.config.scheduler.default_branch_strategy,
        )
        activity = ActivityLog(plan.id)
        runtime = self._register(
            PlanRuntime(plan=plan, graph=TaskGraph(plan.id, activity), activity=activity)
        )
        activity.info("Plan created", plan.title)
        self._save(runtime)
        return plan.model_copy(deep=True)

    def add_task(
        self,
        plan_id: str,
        task_id: str,
        title: str,
        description: str = "",
        blocked_by: Iterable[str] = (),
    ) -> TaskNode:
        runtime = self._runtime(plan_id)
        self._require_status(runtime, PlanStatus.DRAFT)
        prerequisites = list(blocked_by)
        for dep in prerequisites:
            if dep not in runtime.graph:
                raise UnknownTaskError("Unknown prerequisite", context={"task": dep})

        runtime.graph.add_node(task_id, title, description)
        for dep in prerequisites:
            runtime.graph.add_dependency(dep, task_id.strip())
        self._save(runtime)
        return runtime.graph.get(task_id.strip())

    def add_dependency(self, plan_id: str, blocker_id: str, dependent_id: str) -> bool:
        runtime = self._runtime(plan_id)
        self._require_status(runtime, PlanStatus.DRAFT)
        added = runtime.graph.add_dependency(blocker_id, dependent_id)
        if added:
            self._save(runtime)
        return added

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, plan_id: str, reference_agent_id: str) -> Plan:
        """Start the scheduler for a draft plan.

        Raises:
            PlanStateError: plan not in draft, has no tasks, or the reference
                agent is busy with another plan
            AllocationError: the reference agent cannot be resolved
        """
        runtime = self._runtime(plan_id)
        self._require_status(runtime, PlanStatus.DRAFT)
        if len(runtime.graph) == 0:
            raise PlanStateError("Plan has no tasks", context={"plan": plan_id})

        repo = self.resolve_reference(reference_agent_id)
        holder = self._lock_holder(reference_agent_id, exclude=plan_id)
        if holder is not None:
            raise PlanStateError(
                "Reference agent is busy with another plan",
                context={"agent": reference_agent_id, "plan": holder},
            )

        runtime.plan.reference_agent_id = reference_agent_id
        lifecycle.transition(
            runtime.plan,
            PlanStatus.DELEGATING,
            runtime.activity,
            f"reference agent {reference_agent_id}",
        )
        self._start(runtime, repo)
        self._save(runtime)
        return runtime.plan.model_copy(deep=True)

    def _start(self, runtime: PlanRuntime, repo: Path) -> None:
        if runtime.worktrees is None:
            runtime.worktrees = self._worktree_manager(repo)
        if runtime.scheduler is not None:
            runtime.past_assignments.extend(runtime.scheduler.assignments)
        runtime.scheduler = PlanScheduler(
            runtime.plan,
            runtime.graph,
            runtime.worktrees,
            self.runner,
            agent_id=runtime.plan.reference_agent_id or "",
            on_change=lambda: self._save(runtime),
            cancel_check=lambda: self._adopt_stored_cancel(runtime),
            poll_interval=self.config.scheduler.cancel_poll_interval,
        )
        runtime.task = asyncio.create_task(
            self._drive(runtime), name=f"scheduler-{runtime.plan.id}"
        )

    async def _drive(self, runtime: PlanRuntime) -> PlanStatus:
        assert runtime.scheduler is not None
        try:
            await runtime.scheduler.run()
        except Exception as exc:
            logger.exception("Scheduler for plan %s crashed", runtime.plan.id)
            if lifecycle.can_transition(runtime.plan.status, PlanStatus.FAILED):
                lifecycle.transition(
                    runtime.plan, PlanStatus.FAILED, runtime.activity, f"scheduler error: {exc}"
                )
            if runtime.worktrees is not None:
                await runtime.worktrees.release_all(runtime.plan.id)
            raise
        finally:
            self._adopt_stored_cancel(runtime)
            if runtime.plan.status == PlanStatus.FAILED:
                # Conflicted checkouts outlive a plain failure for manual resolution.
                await self._close_integration(runtime, release_conflicts=runtime.plan.cancelled)
            self._save(runtime)
        return runtime.plan.status

    async def wait(self, plan_id: str) -> Plan:
        """Block until the plan's scheduler stops. Returns the plan as it ended."""
        runtime = self._runtime(plan_id)
        if runtime.task is not None:
            await runtime.task
        return runtime.plan.model_copy(deep=True)

    async def cancel(self, plan_id: str) -> Plan:
        """Cancel a non-terminal plan and tear down its live work.

        The plan is marked failed before teardown starts. A scheduler owned
        by another process sees the cancelled record on its next poll.
        """
        runtime = self._runtime(plan_id)
        lifecycle.cancel(runtime.plan, runtime.activity)
        self._save(runtime)

        if runtime.running and runtime.scheduler is not None:
            runtime.scheduler.request_cancel()
            assert runtime.task is not None
            await runtime.task
        else:
            await self._close_integration(runtime)
            self._save(runtime)
        return runtime.plan.model_copy(deep=True)

    async def complete(self, plan_id: str) -> Plan:
        runtime = self._runtime(plan_id)
        lifecycle.transition(runtime.plan, PlanStatus.COMPLETED, runtime.activity)
        await self._close_integration(runtime)
        self._save(runtime)
        return runtime.plan.model_copy(deep=True)

    def retry_task(
        self, plan_id: str, failed_task_id: str, new_task_id: str | None = None
    ) -> TaskNode:
        """Replace a failed task with a fresh node.

        A scheduler running in this process picks the replacement up at once;
        otherwise it runs on the next ``resume``.
        """
        runtime = self._runtime(plan_id)
        self._require_status(runtime, *RUNNING_PLAN_STATUSES)
        node = runtime.graph.retry_task(failed_task_id, new_task_id)
        if runtime.running and runtime.scheduler is not None:
            runtime.scheduler.wake()
        self._save(runtime)
        return node

    async def resume(self) -> list[str]:
        """Restart schedulers for persisted plans that were executing.

        Tasks that were dispatched when the previous process stopped are
        marked failed, and leftover worktree directories are pruned.
        """
        resumed: list[str] = []
        for record in self.store.list():
            plan_id = record.plan.id
            if record.plan.status not in RUNNING_PLAN_STATUSES:
                continue
            existing = self._plans.get(plan_id)
            if existing is not None and existing.running:
                continue

            runtime = self._runtime(plan_id)
            for node in runtime.graph.nodes():
                if node.status in DISPATCHED_TASK_STATUSES:
                    runtime.activity.warning(
                        f"Task {node.id} was running when the previous session stopped"
                    )
                    runtime.graph.mark_status(node.id, TaskStatus.FAILED, "orphaned by restart")

            try:
                repo = self.resolve_reference(runtime.plan.reference_agent_id or "")
            except AllocationError as exc:
                lifecycle.transition(runtime.plan, PlanStatus.FAILED, runtime.activity, str(exc))
                self._save(runtime)
                continue

            runtime.worktrees = self._worktree_manager(repo)
            pruned = await runtime.worktrees.prune_orphans(runtime.plan)
            if pruned:
                runtime.activity.info(f"Pruned {pruned} leftover worktrees")
            runtime.activity.info("Plan execution resumed")
            self._start(runtime, repo)
            self._save(runtime)
            resumed.append(plan_id)
        return resumed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_snapshot(self, plan_id: str) -> PlanSnapshot:
        runtime = self._runtime(plan_id)
        graph = runtime.graph
        critical = graph.critical_path()
        tasks = graph.nodes()
        return PlanSnapshot(
            plan=runtime.plan.model_copy(deep=True),
            tasks=tasks,
            stats=graph.stats(),
            activities=runtime.activity.entries(),
            assignments=[a.model_copy(deep=True) for a in runtime.assignments()],
            critical_path=[node.id for node in tasks if node.id in critical],
        )

    def list_plans(self) -> list[Plan]:
        plans: dict[str, Plan] = {record.plan.id: record.plan for record in self.store.list()}
        for plan_id, runtime in self._plans.items():
            plans[plan_id] = runtime.plan
        return sorted(
            (plan.model_copy(deep=True) for plan in plans.values()),
            key=lambda p: p.created_at,
        )

    def subscribe(self, listener: ActivityListener) -> Callable[[], None]:
        """Receive every activity of every plan this manager holds in memory."""
        key = id(listener)
        unsubscribes = [runtime.activity.subscribe(listener) for runtime in self._plans.values()]
        self._listeners[key] = (listener, unsubscribes)

        def _unsubscribe() -> None:
            entry = self._listeners.pop(key, None)
            if entry is None:
                return
            for unsubscribe in entry[1]:
                unsubscribe()

        return _unsubscribe


__all__ = ["PlanManager", "PlanRuntime"]
