"""Per-plan scheduler loop.

One ``PlanScheduler.run()`` task per executing plan. Agent events and
control signals arrive on a single ``asyncio.Queue`` and are applied one at
a time, so the graph, the plan and the assignment table are only ever
mutated from this task.

Loop outline:
    1. dispatch ready tasks while a slot is free
    2. wait for the next event or signal (or the cancel poll interval)
    3. apply it (start / progress / complete / fail / cancel)
    4. settle the plan once nothing is live and nothing can be dispatched
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from enum import Enum

from taskfleet.core.graph import TaskGraph
from taskfleet.core.models import (
    RUNNING_PLAN_STATUSES,
    AssignmentStatus,
    Plan,
    PlanStatus,
    TaskAssignment,
    TaskStatus,
    Worktree,
    utcnow,
)
from taskfleet.core.result import (
    InvalidTransitionError,
    MergeConflictError,
    TaskFleetError,
)
from taskfleet.swarm import lifecycle
from taskfleet.swarm.agent_adapter import (
    AgentEvent,
    AgentEventKind,
    AgentHandle,
    AgentRunner,
    DispatchRequest,
)
from taskfleet.swarm.worktree import WorktreeManager

logger = logging.getLogger(__name__)


class ControlSignal(str, Enum):
    WAKE = "wake"  # re-run readiness, e.g. after a retry added a node
    CANCEL = "cancel"


QueueItem = AgentEvent | ControlSignal


class PlanScheduler:
    """Drives one plan from dispatch to settlement.

    Attributes:
        plan: The plan being executed (mutated in place)
        graph: The plan's task graph
        agent_id: Reference agent recorded on every assignment
        peak_live: Highest number of simultaneously live assignments seen
    """

    def __init__(
        self,
        plan: Plan,
        graph: TaskGraph,
        worktrees: WorktreeManager,
        runner: AgentRunner,
        *,
        agent_id: str,
        on_change: Callable[[], None] | None = None,
        cancel_check: Callable[[], bool] | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.plan = plan
        self.graph = graph
        self.agent_id = agent_id
        self._worktrees = worktrees
        self._runner = runner
        self._on_change = on_change
        # Polled for a cancel that did not arrive through request_cancel().
        self._cancel_check = cancel_check
        self._poll_interval = poll_interval
        self._queue: asyncio.Queue[QueueItem] = asyncio.Queue()
        self._slots = asyncio.Semaphore(plan.max_parallel_agents)
        self._live: dict[str, TaskAssignment] = {}
        self._handles: dict[str, AgentHandle] = {}
        self._worktree_of: dict[str, Worktree] = {}
        self._archive: list[TaskAssignment] = []
        self._cancelled = False
        self._finished = False
        self._done = asyncio.Event()
        self.peak_live = 0

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def live_assignments(self) -> list[TaskAssignment]:
        return list(self._live.values())

    @property
    def assignments(self) -> list[TaskAssignment]:
        """Archived assignments followed by live ones."""
        return [*self._archive, *self._live.values()]

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def finished(self) -> bool:
        return self._finished

    async def wait(self) -> None:
        await self._done.wait()

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def post(self, item: QueueItem) -> None:
        self._queue.put_nowait(item)

    def emit(self, event: AgentEvent) -> None:
        """Event sink handed to the agent runner."""
        self.post(event)

    def wake(self) -> None:
        self.post(ControlSignal.WAKE)

    def request_cancel(self) -> None:
        """Stop dispatching now; live work is torn down by the loop."""
        self._cancelled = True
        self.post(ControlSignal.CANCEL)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> PlanStatus:
        """Run until the plan settles or is cancelled. Returns the final plan status."""
        try:
            await self._dispatch_ready()
            self._settle_if_idle()
            self._notify()

            while not self._finished:
                item = None if self._cancelled else await self._next_item()
                if self._cancel_observed():
                    await self._teardown()
                    break
                if isinstance(item, AgentEvent):
                    await self._apply_event(item)
                await self._dispatch_ready()
                self._settle_if_idle()
                self._notify()
        finally:
            self._finished = True
            self._done.set()
            self._notify()
        return self.plan.status

    async def _next_item(self) -> QueueItem | None:
        """Next queued item, or None when the cancel poll interval elapses."""
        if self._cancel_check is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=self._poll_interval)
        except TimeoutError:
            return None

    def _cancel_observed(self) -> bool:
        if not self._cancelled and self._cancel_check is not None:
            try:
                self._cancelled = self._cancel_check()
            except Exception:
                logger.exception("Cancel check failed for plan %s", self.plan.id)
        return self._cancelled

    async def _dispatch_ready(self) -> None:
        if self._cancelled or self.plan.status not in RUNNING_PLAN_STATUSES:
            return
        self.graph.apply_readiness()
        for task_id in self.graph.ready_tasks():
            if self._slots.locked():
                break
            if self._cancel_observed():
                return
            await self._slots.acquire()
            await self._dispatch(task_id)

    async def _dispatch(self, task_id: str) -> None:
        node = self.graph.get(task_id)
        assignment = TaskAssignment(
            id=f"asg-{uuid.uuid4().hex[:12]}",
            plan_id=self.plan.id,
            task_id=task_id,
            agent_id=self.agent_id,
        )

        try:
            worktree = await self._worktrees.allocate(self.plan, node, assignment.id)
        except TaskFleetError as exc:
            self._slots.release()
            logger.warning("Allocation failed for task %s: %s", task_id, exc)
            self.graph.mark_status(task_id, TaskStatus.FAILED, f"allocation failed: {exc}")
            return

        if self._cancelled:
            await self._worktrees.release(worktree)
            self._slots.release()
            return

        assignment.worktree_id = worktree.id
        self.graph.mark_status(task_id, TaskStatus.SENT, f"branch {worktree.branch}")
        if self.plan.status == PlanStatus.DELEGATING:
            lifecycle.transition(self.plan, PlanStatus.IN_PROGRESS, self.graph.activity)

        self._live[assignment.id] = assignment
        self._worktree_of[assignment.id] = worktree
        self.peak_live = max(self.peak_live, len(self._live))

        request = DispatchRequest(
            plan_id=self.plan.id,
            assignment_id=assignment.id,
            task_id=task_id,
            agent_id=self.agent_id,
            title=node.title,
            description=node.description,
            worktree=worktree.path,
        )
        try:
            self._handles[assignment.id] = self._runner.dispatch(request, self.emit)
        except Exception as exc:
            logger.exception("Dispatch failed for task %s", task_id)
            await self._fail(assignment, f"dispatch failed: {exc}")

    async def _apply_event(self, event: AgentEvent) -> None:
        assignment = self._live.get(event.assignment_id)
        if assignment is None:
            logger.debug(
                "Ignoring %s event for unknown assignment %s",
                event.kind.value,
                event.assignment_id,
            )
            return

        match event.kind:
            case AgentEventKind.STARTED:
                if assignment.status == AssignmentStatus.SENT:
                    assignment.status = AssignmentStatus.IN_PROGRESS
                    self.graph.mark_status(assignment.task_id, TaskStatus.IN_PROGRESS)
            case AgentEventKind.PROGRESS:
                assignment.last_progress = event.message
                logger.debug("[%s] %s: %s", self.plan.id, assignment.task_id, event.message)
            case AgentEventKind.COMPLETED:
                await self._complete(assignment, event.message)
            case AgentEventKind.FAILED:
                await self._fail(assignment, event.message or "agent reported failure")

    async def _complete(self, assignment: TaskAssignment, summary: str | None) -> None:
        worktree = self._worktree_of[assignment.id]
        title = self.graph.get(assignment.task_id).title
        try:
            await self._worktrees.finalize(worktree, self.plan, title)
        except MergeConflictError as exc:
            self._worktrees.keep(worktree)
            files = ", ".join(p.name for p in exc.conflict_files) or "unknown files"
            await self._fail(
                assignment,
                f"merge conflict in {files}; branch {exc.branch} kept at {worktree.path}",
                release=False,
            )
            return
        except TaskFleetError as exc:
            await self._fail(assignment, f"integration failed: {exc}")
            return

        await self._worktrees.release(worktree)
        assignment.status = AssignmentStatus.COMPLETED
        assignment.summary = summary
        assignment.completed_at = utcnow()
        self.graph.mark_status(assignment.task_id, TaskStatus.COMPLETED, summary)
        self._archive_assignment(assignment)

    async def _fail(self, assignment: TaskAssignment, reason: str, *, release: bool = True) -> None:
        worktree = self._worktree_of.get(assignment.id)
        if worktree is not None and release:
            await self._worktrees.release(worktree)
        assignment.status = AssignmentStatus.FAILED
        assignment.error = reason
        assignment.completed_at = utcnow()
        self.graph.mark_status(assignment.task_id, TaskStatus.FAILED, reason)
        self._archive_assignment(assignment)

    def _archive_assignment(self, assignment: TaskAssignment) -> None:
        self._live.pop(assignment.id, None)
        self._handles.pop(assignment.id, None)
        self._worktree_of.pop(assignment.id, None)
        self._archive.append(assignment)
        self._slots.release()

    def _settle_if_idle(self) -> None:
        if self._finished:
            return
        if self._cancelled:
            return
        if self.plan.status not in RUNNING_PLAN_STATUSES:
            self._finished = True
            return
        if self._live or self.graph.ready_tasks():
            return

        stats = self.graph.stats()
        target = lifecycle.settle(stats)
        lifecycle.transition(
            self.plan,
            target,
            self.graph.activity,
            f"{stats.completed} completed, {stats.failed} failed, {stats.blocked} blocked",
        )
        self._finished = True

    async def _teardown(self) -> None:
        """Cancel path: stop runners, release worktrees, fail live nodes."""
        for handle in list(self._handles.values()):
            try:
                self._runner.cancel(handle)
            except Exception:
                logger.exception("Runner cancel failed for %s", handle.request.assignment_id)

        for assignment in list(self._live.values()):
            worktree = self._worktree_of.get(assignment.id)
            if worktree is not None:
                await self._worktrees.release(worktree)
            assignment.status = AssignmentStatus.CANCELLED
            assignment.error = "cancelled"
            assignment.completed_at = utcnow()
            try:
                self.graph.mark_status(assignment.task_id, TaskStatus.FAILED, "cancelled")
            except InvalidTransitionError:
                logger.debug("Task %s already finished at cancel", assignment.task_id)
            self._archive_assignment(assignment)

        await self._worktrees.release_all(self.plan.id)
        await self._worktrees.release_conflicted(self.plan)
        self._finished = True

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change()
        except Exception:
            logger.exception("Scheduler change callback failed for plan %s", self.plan.id)


__all__ = ["ControlSignal", "PlanScheduler", "QueueItem"]
