"""Task dependency graph for a single plan.

TaskGraph owns the nodes of one plan and is the only place their edges and
statuses change. It enforces:

- acyclicity: an edge that would let a task (transitively) block itself is
  rejected before insertion and the graph is left untouched
- symmetry: ``blocks`` is always the exact inverse of ``blocked_by``
- terminal statuses are final: a failed task is retried through a fresh
  replacement node, never by reopening it

Every successful mutation appends a PlanActivity and bumps ``version``, which
invalidates cached readiness and critical-path results.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType

from taskfleet.core import readiness
from taskfleet.core.activity import ActivityLog, ActivityType
from taskfleet.core.models import (
    DISPATCHED_TASK_STATUSES,
    UNDISPATCHED_TASK_STATUSES,
    GraphStats,
    TaskNode,
    TaskStatus,
)
from taskfleet.core.result import (
    CycleError,
    DuplicateTaskError,
    GraphError,
    InvalidTransitionError,
    UnknownTaskError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_STATUS_ACTIVITY: dict[TaskStatus, tuple[ActivityType, str]] = {
    TaskStatus.PLANNED: (ActivityType.INFO, "Task {id} planned"),
    TaskStatus.READY: (ActivityType.INFO, "Task {id} is ready"),
    TaskStatus.BLOCKED: (ActivityType.INFO, "Task {id} is blocked"),
    TaskStatus.SENT: (ActivityType.INFO, "Task {id} dispatched"),
    TaskStatus.IN_PROGRESS: (ActivityType.INFO, "Task {id} started"),
    TaskStatus.COMPLETED: (ActivityType.SUCCESS, "Task {id} completed"),
    TaskStatus.FAILED: (ActivityType.ERROR, "Task {id} failed"),
}


class TaskGraph:
    """Nodes and dependency edges of one plan.

    Nodes are kept in creation order. Read accessors hand out copies; the
    readiness engine gets a read-only mapping through ``view()``.
    """

    def __init__(
        self,
        plan_id: str,
        activity: ActivityLog | None = None,
        nodes: Iterable[TaskNode] = (),
    ) -> None:
        self.plan_id = plan_id
        self.activity = activity or ActivityLog(plan_id)
        self._nodes: dict[str, TaskNode] = {}
        self._version = 0
        self._next_order = 0
        self._ready_cache: tuple[int, list[str]] | None = None
        self._critical_cache: tuple[int, frozenset[str]] | None = None

        loaded = sorted((n.model_copy(deep=True) for n in nodes), key=lambda n: n.order)
        if loaded:
            self._load(loaded)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(self, nodes: list[TaskNode]) -> None:
        for node in nodes:
            if node.id in self._nodes:
                raise DuplicateTaskError("Duplicate task in records", context={"task": node.id})
            node.blocks = set()
            self._nodes[node.id] = node

        # Rebuild the inverse relation from blocked_by, the persisted truth.
        for node in self._nodes.values():
            for dep in node.blocked_by:
                if dep not in self._nodes:
                    raise UnknownTaskError(
                        "Task depends on an unknown task",
                        context={"task": node.id, "dependency": dep},
                    )
                self._nodes[dep].blocks.add(node.id)

        try:
            readiness.topological_order(self._nodes)
        except ValueError as exc:
            raise CycleError(str(exc), context={"plan": self.plan_id}) from exc

        self._next_order = max(n.order for n in self._nodes.values()) + 1
        self._structural_change()

    @classmethod
    def from_records(
        cls, plan_id: str, nodes: Iterable[TaskNode], activity: ActivityLog | None = None
    ) -> TaskGraph:
        return cls(plan_id, activity=activity, nodes=nodes)

    def to_records(self) -> list[TaskNode]:
        return self.nodes()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._nodes))

    def view(self) -> Mapping[str, TaskNode]:
        return MappingProxyType(self._nodes)

    def get(self, task_id: str) -> TaskNode:
        return self._require(task_id).model_copy(deep=True)

    def status(self, task_id: str) -> TaskStatus:
        return self._require(task_id).status

    def nodes(self) -> list[TaskNode]:
        return [node.model_copy(deep=True) for node in self._nodes.values()]

    def ready_tasks(self) -> list[str]:
        if self._ready_cache is None or self._ready_cache[0] != self._version:
            self._ready_cache = (self._version, readiness.ready_tasks(self._nodes))
        return list(self._ready_cache[1])

    def critical_path(self) -> set[str]:
        if self._critical_cache is None or self._critical_cache[0] != self._version:
            self._critical_cache = (
                self._version,
                frozenset(readiness.critical_path(self._nodes)),
            )
        return set(self._critical_cache[1])

    def stats(self) -> GraphStats:
        return readiness.compute_stats(self._nodes)

    def unreachable_tasks(self) -> set[str]:
        return readiness.unreachable_tasks(self._nodes)

    def all_terminal(self) -> bool:
        return all(node.is_terminal for node in self._nodes.values())

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_node(self, task_id: str, title: str, description: str = "") -> TaskNode:
        """Add a task with no dependencies.

        Raises:
            ValidationError: empty id or title
            DuplicateTaskError: id already present
        """
        task_id = task_id.strip()
        if not task_id or not title.strip():
            raise ValidationError("Task id and title must be non-empty")
        if task_id in self._nodes:
            raise DuplicateTaskError("Task already exists", context={"task": task_id})

        node = TaskNode(
            id=task_id, title=title.strip(), description=description, order=self._next_order
        )
        self._next_order += 1
        self._nodes[task_id] = node
        self._structural_change()
        self.activity.info(f"Task {task_id} added", node.title)
        return node.model_copy(deep=True)

    def add_dependency(self, blocker_id: str, dependent_id: str) -> bool:
        """Make ``dependent_id`` wait for ``blocker_id``.

        Returns False when the edge already exists.

        Raises:
            UnknownTaskError: either id is missing
            CycleError: the edge would close a cycle (graph unchanged)
            InvalidTransitionError: the dependent was already dispatched or finished
        """
        blocker = self._require(blocker_id)
        dependent = self._require(dependent_id)

        if blocker_id == dependent_id:
            raise CycleError("Task cannot depend on itself", context={"task": blocker_id})
        if blocker_id in dependent.blocked_by:
            return False
        if dependent.status not in UNDISPATCHED_TASK_STATUSES:
            raise InvalidTransitionError(
                "Cannot add a prerequisite to a dispatched or finished task",
                context={"task": dependent_id, "status": dependent.status.value},
            )
        if self._reaches(dependent_id, blocker_id):
            raise CycleError(
                "Dependency would create a cycle",
                context={"blocker": blocker_id, "dependent": dependent_id},
            )

        dependent.blocked_by.add(blocker_id)
        blocker.blocks.add(dependent_id)
        self._structural_change()
        self.activity.info(f"Task {dependent_id} now depends on {blocker_id}")
        self._rederive(dependent)
        return True

    def mark_status(self, task_id: str, status: TaskStatus, details: str | None = None) -> bool:
        """Move a task to ``status``.

        Re-applying the current status is a no-op that returns False and
        records nothing.

        Raises:
            UnknownTaskError: id is missing
            InvalidTransitionError: leaving a terminal status, moving a
                dispatched task back to an undispatched status, completing
                a task that was never dispatched, or dispatching a task
                whose prerequisites are not completed
        """
        node = self._require(task_id)
        current = node.status
        if current == status:
            return False
        if node.is_terminal:
            raise InvalidTransitionError(
                "Task already finished; retry it through a replacement task",
                context={"task": task_id, "from": current.value, "to": status.value},
            )
        if current in DISPATCHED_TASK_STATUSES and status in UNDISPATCHED_TASK_STATUSES:
            raise InvalidTransitionError(
                "Dispatched task cannot return to an undispatched status",
                context={"task": task_id, "from": current.value, "to": status.value},
            )
        if current == TaskStatus.IN_PROGRESS and status == TaskStatus.SENT:
            raise InvalidTransitionError(
                "Running task cannot return to sent", context={"task": task_id}
            )
        if status == TaskStatus.COMPLETED and current in UNDISPATCHED_TASK_STATUSES:
            raise InvalidTransitionError(
                "Task must be dispatched before it can complete",
                context={"task": task_id, "from": current.value},
            )
        if status in DISPATCHED_TASK_STATUSES and current in UNDISPATCHED_TASK_STATUSES:
            if not readiness.prerequisites_met(node, self._nodes):
                raise InvalidTransitionError(
                    "Task has unfinished prerequisites",
                    context={"task": task_id, "waiting_on": sorted(self._pending_deps(node))},
                )

        self._set_status(node, status, details)
        return True

    def apply_readiness(self) -> list[str]:
        """Write derived ready/blocked statuses onto undispatched nodes.

        Returns ids that became ready, in creation order.
        """
        newly_ready: list[str] = []
        for node in self._nodes.values():
            if self._rederive(node) and node.status == TaskStatus.READY:
                newly_ready.append(node.id)
        return newly_ready

    def retry_task(self, failed_id: str, new_id: str | None = None) -> TaskNode:
        """Create a replacement for a failed task and move its dependents onto it.

        The failed node stays in the graph for audit with ``replaced_by`` set.
        """
        failed = self._require(failed_id)
        if failed.status != TaskStatus.FAILED:
            raise InvalidTransitionError(
                "Only failed tasks can be retried",
                context={"task": failed_id, "status": failed.status.value},
            )
        if failed.replaced_by is not None:
            raise InvalidTransitionError(
                "Task was already retried",
                context={"task": failed_id, "replacement": failed.replaced_by},
            )

        replacement_id = (new_id or self._retry_id(failed_id)).strip()
        if not replacement_id:
            raise ValidationError("Replacement task id must be non-empty")
        if replacement_id in self._nodes:
            raise DuplicateTaskError("Task already exists", context={"task": replacement_id})

        replacement = TaskNode(
            id=replacement_id,
            title=failed.title,
            description=failed.description,
            order=self._next_order,
            blocked_by=set(failed.blocked_by),
            replaces=failed_id,
        )
        self._next_order += 1
        self._nodes[replacement_id] = replacement
        for dep in replacement.blocked_by:
            self._nodes[dep].blocks.add(replacement_id)

        for dependent_id in sorted(failed.blocks):
            dependent = self._nodes[dependent_id]
            dependent.blocked_by.discard(failed_id)
            dependent.blocked_by.add(replacement_id)
            replacement.blocks.add(dependent_id)
        failed.blocks.clear()
        failed.replaced_by = replacement_id

        self._structural_change()
        self.activity.info(f"Task {replacement_id} created to retry {failed_id}", failed.title)
        self._rederive(replacement)
        return replacement.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, task_id: str) -> TaskNode:
        node = self._nodes.get(task_id)
        if node is None:
            raise UnknownTaskError("Unknown task", context={"task": task_id, "plan": self.plan_id})
        return node

    def _pending_deps(self, node: TaskNode) -> set[str]:
        return {d for d in node.blocked_by if self._nodes[d].status != TaskStatus.COMPLETED}

    def _reaches(self, start: str, target: str) -> bool:
        """Breadth-first search along ``blocks`` edges."""
        seen = {start}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            if current == target:
                return True
            for succ in self._nodes[current].blocks:
                if succ not in seen:
                    seen.add(succ)
                    queue.append(succ)
        return False

    def _retry_id(self, failed_id: str) -> str:
        attempt = 1
        while f"{failed_id}-retry{attempt}" in self._nodes:
            attempt += 1
        return f"{failed_id}-retry{attempt}"

    def _rederive(self, node: TaskNode) -> bool:
        if node.status not in UNDISPATCHED_TASK_STATUSES:
            return False
        derived = readiness.derive_status(node, self._nodes)
        if derived == node.status:
            return False
        details = None
        if derived == TaskStatus.BLOCKED:
            details = "waiting on " + ", ".join(sorted(self._pending_deps(node)))
        self._set_status(node, derived, details)
        return True

    def _set_status(self, node: TaskNode, status: TaskStatus, details: str | None) -> None:
        node.status = status
        self._version += 1
        activity_type, template = _STATUS_ACTIVITY[status]
        self.activity.append(activity_type, template.format(id=node.id), details)
        logger.debug("Plan %s: task %s -> %s", self.plan_id, node.id, status.value)

    def _structural_change(self) -> None:
        self._version += 1
        try:
            lengths = readiness.path_lengths(self._nodes)
        except ValueError as exc:  # pragma: no cover - guarded by _reaches
            raise GraphError(str(exc), context={"plan": self.plan_id}) from exc
        critical = readiness.critical_path(self._nodes)
        for tid, node in self._nodes.items():
            node.depth = lengths.depth[tid]
            node.is_on_critical_path = tid in critical


__all__ = ["TaskGraph"]
