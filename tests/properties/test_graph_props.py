"""Property-based tests for TaskGraph using Hypothesis.

These tests verify core invariants of the dependency graph:
- Arbitrary edge insertions never leave a cycle behind
- ``blocks`` and ``blocked_by`` stay exact inverses
- Readiness derivation is idempotent and only readies unblocked tasks
- Re-applying a status records no new activity
- Records round-trip without changing readiness or the critical path
"""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from taskfleet.core import readiness
from taskfleet.core.graph import TaskGraph
from taskfleet.core.models import TaskStatus
from taskfleet.core.result import CycleError

# === Strategies ===

node_count_strategy = st.integers(min_value=1, max_value=12)


@st.composite
def edge_sequences(draw: st.DrawFn) -> tuple[int, list[tuple[int, int]]]:
    """Node count plus arbitrary (possibly cyclic) edge insertions."""
    count = draw(node_count_strategy)
    index = st.integers(min_value=0, max_value=count - 1)
    edges = draw(st.lists(st.tuples(index, index), max_size=30))
    return count, edges


@st.composite
def dags(draw: st.DrawFn) -> tuple[int, list[tuple[int, int]]]:
    """Node count plus forward-only edges, which can never close a cycle."""
    count = draw(node_count_strategy)
    pairs = [(i, j) for i in range(count) for j in range(i + 1, count)]
    if not pairs:
        return count, []
    edges = draw(st.lists(st.sampled_from(pairs), unique=True, max_size=20))
    return count, edges


def _build(count: int, edges: list[tuple[int, int]]) -> TaskGraph:
    graph = TaskGraph("plan-props")
    for i in range(count):
        graph.add_node(f"t{i}", f"Task {i}")
    for blocker, dependent in edges:
        graph.add_dependency(f"t{blocker}", f"t{dependent}")
    return graph


# === Property Tests ===


@given(shape=edge_sequences())
@settings(max_examples=200)
def test_graph_stays_acyclic(shape: tuple[int, list[tuple[int, int]]]) -> None:
    """Rejected edges leave the graph untouched; accepted ones keep it a DAG."""
    count, edges = shape
    graph = TaskGraph("plan-props")
    for i in range(count):
        graph.add_node(f"t{i}", f"Task {i}")

    for blocker, dependent in edges:
        before = {n.id: set(n.blocked_by) for n in graph.nodes()}
        try:
            graph.add_dependency(f"t{blocker}", f"t{dependent}")
        except CycleError:
            assert {n.id: set(n.blocked_by) for n in graph.nodes()} == before

    order = readiness.topological_order(graph.view())
    assert sorted(order) == sorted(graph)
    position = {task_id: i for i, task_id in enumerate(order)}
    for node in graph.nodes():
        for dep in node.blocked_by:
            assert position[dep] < position[node.id]


@given(shape=dags())
@settings(max_examples=200)
def test_edges_are_mirrored(shape: tuple[int, list[tuple[int, int]]]) -> None:
    """Every blocked_by entry has a matching blocks entry and vice versa."""
    graph = _build(*shape)
    nodes = {n.id: n for n in graph.nodes()}
    for node in nodes.values():
        for dep in node.blocked_by:
            assert node.id in nodes[dep].blocks
        for dependent in node.blocks:
            assert node.id in nodes[dependent].blocked_by


@given(shape=dags(), completed=st.integers(min_value=0, max_value=12))
@settings(max_examples=200)
def test_readiness_is_idempotent_and_sound(
    shape: tuple[int, list[tuple[int, int]]], completed: int
) -> None:
    """Completing a topological prefix readies exactly the unblocked tasks."""
    graph = _build(*shape)
    graph.apply_readiness()
    order = readiness.topological_order(graph.view())
    for task_id in order[:completed]:
        graph.mark_status(task_id, TaskStatus.SENT)
        graph.mark_status(task_id, TaskStatus.COMPLETED)
        graph.apply_readiness()

    assert graph.apply_readiness() == []

    nodes = {n.id: n for n in graph.nodes()}
    for node in nodes.values():
        deps_done = all(nodes[d].status == TaskStatus.COMPLETED for d in node.blocked_by)
        if node.status == TaskStatus.READY:
            assert deps_done
        if node.status == TaskStatus.BLOCKED:
            assert not deps_done
    assert graph.ready_tasks() == [n.id for n in nodes.values() if n.status == TaskStatus.READY]


@given(shape=dags())
@settings(max_examples=100)
def test_repeated_status_records_once(shape: tuple[int, list[tuple[int, int]]]) -> None:
    graph = _build(*shape)
    root = readiness.roots(graph.view())[0]
    graph.mark_status(root, TaskStatus.SENT)
    assert graph.mark_status(root, TaskStatus.COMPLETED) is True
    logged = len(graph.activity)
    assert graph.mark_status(root, TaskStatus.COMPLETED) is False
    assert len(graph.activity) == logged


@given(shape=dags())
@settings(max_examples=100)
def test_records_round_trip(shape: tuple[int, list[tuple[int, int]]]) -> None:
    graph = _build(*shape)
    restored = TaskGraph.from_records(graph.plan_id, graph.to_records())

    assert list(restored) == list(graph)
    assert restored.ready_tasks() == graph.ready_tasks()
    assert restored.critical_path() == graph.critical_path()
    assert restored.critical_path()
