"""Data model for plans, task nodes, assignments and worktrees.

Key classes:
- TaskNode: one unit of work in the dependency graph
- TaskAssignment: binds a dispatched node to an agent and a worktree
- Worktree: isolated git checkout owned by one live assignment
- Plan: the coordinated unit of work and its lifecycle status
- GraphStats / PlanSnapshot: derived, read-only projections

All enums are str-valued so records round-trip through JSON unchanged.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, computed_field

from taskfleet.core.activity import PlanActivity


def utcnow() -> datetime:
    return datetime.now(UTC)


class TaskStatus(str, Enum):
    """Lifecycle status for a task node."""

    PLANNED = "planned"  # Authored, readiness not evaluated yet
    READY = "ready"  # All prerequisites completed
    SENT = "sent"  # Dispatched, agent has not reported start
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"  # At least one prerequisite not completed


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})
DISPATCHED_TASK_STATUSES = frozenset({TaskStatus.SENT, TaskStatus.IN_PROGRESS})
UNDISPATCHED_TASK_STATUSES = frozenset(
    {TaskStatus.PLANNED, TaskStatus.READY, TaskStatus.BLOCKED}
)


class PlanStatus(str, Enum):
    DRAFT = "draft"
    DELEGATING = "delegating"
    IN_PROGRESS = "in_progress"
    READY_FOR_REVIEW = "ready_for_review"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PLAN_STATUSES = frozenset({PlanStatus.COMPLETED, PlanStatus.FAILED})
RUNNING_PLAN_STATUSES = frozenset({PlanStatus.DELEGATING, PlanStatus.IN_PROGRESS})


class BranchStrategy(str, Enum):
    """How a completed task's branch is integrated."""

    FEATURE_BRANCH = "feature_branch"  # merge into the plan's shared branch
    RAISE_PRS = "raise_prs"  # push and open a pull request per task


class WorktreeStatus(str, Enum):
    ACTIVE = "active"
    MERGED = "merged"
    CLEANED = "cleaned"


class AssignmentStatus(str, Enum):
    SENT = "sent"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskNode(BaseModel):
    """A single task in the dependency graph.

    Attributes:
        id: Unique task identifier within the plan
        title: Short human description, also used as the agent prompt headline
        description: Longer instructions handed to the agent
        status: Current lifecycle status
        blocked_by: Tasks that must complete before this one
        blocks: Tasks waiting on this one (inverse of blocked_by)
        is_on_critical_path: Derived; node lies on a longest dependency chain
        depth: Derived; longest hop count from any source node
        order: Creation sequence, used for deterministic ordering
        replaces: Failed task this node was created to retry
        replaced_by: Replacement created for this failed node
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PLANNED
    blocked_by: set[str] = Field(default_factory=set)
    blocks: set[str] = Field(default_factory=set)
    is_on_critical_path: bool = False
    depth: int = 0
    order: int = 0
    replaces: str | None = None
    replaced_by: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @property
    def is_dispatched(self) -> bool:
        return self.status in DISPATCHED_TASK_STATUSES


class PullRequestRef(BaseModel):
    """Pull request recorded for a task branch under the raise_prs strategy."""

    model_config = ConfigDict(extra="forbid")

    task_id: str
    head_branch: str
    base_branch: str
    url: str | None = None
    number: int | None = None


class Worktree(BaseModel):
    """An isolated checkout created for one task assignment."""

    model_config = ConfigDict(extra="forbid")

    id: str
    task_id: str
    assignment_id: str
    path: Path
    branch: str
    base_branch: str
    status: WorktreeStatus = WorktreeStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    merged_at: datetime | None = None
    merge_commit: str | None = None
    pr: PullRequestRef | None = None
    conflict_files: list[str] = Field(default_factory=list)


class TaskAssignment(BaseModel):
    """Binds a dispatched task to an agent and a worktree."""

    model_config = ConfigDict(extra="forbid")

    id: str
    plan_id: str
    task_id: str
    agent_id: str
    worktree_id: str | None = None
    status: AssignmentStatus = AssignmentStatus.SENT
    assigned_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    summary: str | None = None
    error: str | None = None
    last_progress: str | None = None

    @property
    def is_live(self) -> bool:
        return self.status in (AssignmentStatus.SENT, AssignmentStatus.IN_PROGRESS)


class Plan(BaseModel):
    """A unit of coordinated work decomposed into dependent tasks."""

    model_config = ConfigDict(extra="forbid")

    id: str
    title: str
    description: str = ""
    status: PlanStatus = PlanStatus.DRAFT
    max_parallel_agents: int = Field(default=4, ge=1)
    branch_strategy: BranchStrategy = BranchStrategy.FEATURE_BRANCH
    reference_agent_id: str | None = None
    integration_branch: str | None = None
    worktrees: list[Worktree] = Field(default_factory=list)
    pull_requests: list[PullRequestRef] = Field(default_factory=list)
    commits: list[str] = Field(default_factory=list)
    cancelled: bool = False
    cancelled_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def short_id(self) -> str:
        return self.id.split("-")[-1]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PLAN_STATUSES

    def touch(self) -> None:
        self.updated_at = utcnow()


class GraphStats(BaseModel):
    """Counts of nodes by status bucket. Derived, never stored as truth.

    ``active`` is sent + in_progress combined, for progress bars. It and
    ``remaining`` are included in dumped snapshots.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    total: int = 0
    ready: int = 0
    blocked: int = 0
    sent: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def active(self) -> int:
        return self.sent + self.in_progress

    @computed_field  # type: ignore[prop-decorator]
    @property
    def remaining(self) -> int:
        return self.total - self.completed - self.failed


class PlanSnapshot(BaseModel):
    """Read-only view handed to UIs and the CLI."""

    model_config = ConfigDict(extra="forbid")

    plan: Plan
    tasks: list[TaskNode]
    stats: GraphStats
    activities: list[PlanActivity]
    assignments: list[TaskAssignment] = Field(default_factory=list)
    critical_path: list[str] = Field(default_factory=list)


__all__ = [
    "DISPATCHED_TASK_STATUSES",
    "RUNNING_PLAN_STATUSES",
    "TERMINAL_PLAN_STATUSES",
    "TERMINAL_TASK_STATUSES",
    "UNDISPATCHED_TASK_STATUSES",
    "AssignmentStatus",
    "BranchStrategy",
    "GraphStats",
    "Plan",
    "PlanSnapshot",
    "PlanStatus",
    "PullRequestRef",
    "TaskAssignment",
    "TaskNode",
    "TaskStatus",
    "Worktree",
    "WorktreeStatus",
    "utcnow",
]
