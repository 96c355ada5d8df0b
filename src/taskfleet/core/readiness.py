"""Readiness and critical-path computation.

Pure functions over a snapshot of task nodes keyed by id. Nothing here
mutates a node or keeps state between calls, so identical input always
yields identical output (including ordering).

The critical path uses unit-length hops: the data model carries no
duration estimates.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from taskfleet.core.models import (
    TERMINAL_TASK_STATUSES,
    UNDISPATCHED_TASK_STATUSES,
    GraphStats,
    TaskNode,
    TaskStatus,
)

NodeMap = Mapping[str, TaskNode]


@dataclass(frozen=True, slots=True)
class PathLengths:
    """Longest hop counts per node.

    Attributes:
        depth: Longest chain from any source to the node
        height: Longest chain from the node to any sink
        longest: Length of the longest chain in the graph
    """

    depth: dict[str, int]
    height: dict[str, int]
    longest: int


def _creation_order(nodes: NodeMap) -> list[TaskNode]:
    return sorted(nodes.values(), key=lambda n: (n.order, n.id))


def prerequisites_met(node: TaskNode, nodes: NodeMap) -> bool:
    return all(
        dep in nodes and nodes[dep].status == TaskStatus.COMPLETED for dep in node.blocked_by
    )


def derive_status(node: TaskNode, nodes: NodeMap) -> TaskStatus:
    """Status an undispatched node should carry given its prerequisites.

    Dispatched and terminal nodes keep their own status.
    """
    if node.status not in UNDISPATCHED_TASK_STATUSES:
        return node.status
    return TaskStatus.READY if prerequisites_met(node, nodes) else TaskStatus.BLOCKED


def ready_tasks(nodes: NodeMap) -> list[str]:
    """Ids of undispatched nodes whose prerequisites all completed, in creation order."""
    return [
        node.id
        for node in _creation_order(nodes)
        if node.status in UNDISPATCHED_TASK_STATUSES and prerequisites_met(node, nodes)
    ]


def topological_order(nodes: NodeMap) -> list[str]:
    """Kahn's algorithm, ties broken by creation order.

    Raises:
        ValueError: if the nodes contain a cycle
    """
    in_degree = {n.id: sum(1 for d in n.blocked_by if d in nodes) for n in nodes.values()}
    queue = deque(n.id for n in _creation_order(nodes) if in_degree[n.id] == 0)
    ordered: list[str] = []

    while queue:
        current = queue.popleft()
        ordered.append(current)
        successors = sorted(
            (nodes[s] for s in nodes[current].blocks if s in nodes),
            key=lambda n: (n.order, n.id),
        )
        for succ in successors:
            in_degree[succ.id] -= 1
            if in_degree[succ.id] == 0:
                queue.append(succ.id)

    if len(ordered) != len(nodes):
        raise ValueError(f"Cycle detected: ordered {len(ordered)}/{len(nodes)} nodes")
    return ordered


def path_lengths(nodes: NodeMap) -> PathLengths:
    order = topological_order(nodes)
    depth: dict[str, int] = {}
    for tid in order:
        preds = [depth[d] for d in nodes[tid].blocked_by if d in depth]
        depth[tid] = max(preds) + 1 if preds else 0

    height: dict[str, int] = {}
    for tid in reversed(order):
        succs = [height[s] for s in nodes[tid].blocks if s in height]
        height[tid] = max(succs) + 1 if succs else 0

    longest = max(depth.values(), default=0)
    return PathLengths(depth=depth, height=height, longest=longest)


def critical_path(nodes: NodeMap) -> set[str]:
    """Nodes lying on any maximum-length source-to-sink chain.

    Every tie is included. With no edges at all, each node is a zero-hop
    longest chain and is flagged.
    """
    if not nodes:
        return set()
    lengths = path_lengths(nodes)
    return {
        tid
        for tid in nodes
        if lengths.depth[tid] + lengths.height[tid] == lengths.longest
    }


def roots(nodes: NodeMap) -> list[str]:
    return [n.id for n in _creation_order(nodes) if not n.blocked_by]


def leaves(nodes: NodeMap) -> list[str]:
    return [n.id for n in _creation_order(nodes) if not n.blocks]


def unreachable_tasks(nodes: NodeMap) -> set[str]:
    """Non-terminal nodes that can never run because a prerequisite chain failed."""
    doomed: set[str] = set()
    for tid in topological_order(nodes):
        node = nodes[tid]
        if node.is_terminal:
            continue
        for dep in node.blocked_by:
            dep_node = nodes.get(dep)
            if dep_node is None:
                continue
            if dep_node.status == TaskStatus.FAILED or dep in doomed:
                doomed.add(tid)
                break
    return doomed


def compute_stats(nodes: Iterable[TaskNode] | NodeMap) -> GraphStats:
    """Single pass over the nodes counting each status bucket.

    Undispatched nodes are bucketed by their derived readiness, so a stale
    ``planned`` node is reported as ready or blocked.
    """
    node_map: NodeMap = nodes if isinstance(nodes, Mapping) else {n.id: n for n in nodes}
    counts = {status: 0 for status in TaskStatus}
    for node in node_map.values():
        if node.status in TERMINAL_TASK_STATUSES or node.is_dispatched:
            counts[node.status] += 1
        else:
            counts[derive_status(node, node_map)] += 1

    return GraphStats(
        total=len(node_map),
        ready=counts[TaskStatus.READY],
        blocked=counts[TaskStatus.BLOCKED],
        sent=counts[TaskStatus.SENT],
        in_progress=counts[TaskStatus.IN_PROGRESS],
        completed=counts[TaskStatus.COMPLETED],
        failed=counts[TaskStatus.FAILED],
    )


__all__ = [
    "PathLengths",
    "compute_stats",
    "critical_path",
    "derive_status",
    "leaves",
    "path_lengths",
    "prerequisites_met",
    "ready_tasks",
    "roots",
    "topological_order",
    "unreachable_tasks",
]
