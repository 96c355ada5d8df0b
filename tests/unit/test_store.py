"""Tests for JSON plan persistence."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from taskfleet.core.activity import ActivityLog
from taskfleet.core.graph import TaskGraph
from taskfleet.core.models import Plan, PlanStatus, TaskStatus, utcnow
from taskfleet.core.result import UnknownPlanError, WorkspaceError
from taskfleet.core.store import PlanRecord, PlanStore


def _record(plan_id: str = "plan-abc123", **plan_fields: object) -> PlanRecord:
    activity = ActivityLog(plan_id)
    graph = TaskGraph(plan_id, activity)
    graph.add_node("a", "First")
    graph.add_node("b", "Second")
    graph.add_dependency("a", "b")
    plan = Plan(id=plan_id, title="Demo", **plan_fields)  # type: ignore[arg-type]
    return PlanRecord(plan=plan, tasks=graph.to_records(), activities=activity.entries())


class TestPlanStore:
    def test_save_and_load(self, tmp_path: Path) -> None:
        store = PlanStore(tmp_path)
        record = _record()
        path = store.save(record)

        assert path == tmp_path / "plans" / "plan-abc123.json"
        loaded = store.load("plan-abc123")
        assert loaded.plan.title == "Demo"
        assert [t.id for t in loaded.tasks] == ["a", "b"]
        assert loaded.tasks[1].blocked_by == {"a"}
        assert loaded.tasks[1].status == TaskStatus.BLOCKED
        assert [a.message for a in loaded.activities] == [a.message for a in record.activities]

    def test_no_temp_file_left(self, tmp_path: Path) -> None:
        store = PlanStore(tmp_path)
        store.save(_record())
        assert [p.name for p in store.root.iterdir()] == ["plan-abc123.json"]

    def test_overwrite(self, tmp_path: Path) -> None:
        store = PlanStore(tmp_path)
        record = _record()
        store.save(record)
        record.plan.status = PlanStatus.DELEGATING
        store.save(record)
        assert store.load("plan-abc123").plan.status == PlanStatus.DELEGATING

    def test_missing_plan(self, tmp_path: Path) -> None:
        store = PlanStore(tmp_path)
        assert store.exists("plan-nope") is False
        with pytest.raises(UnknownPlanError):
            store.load("plan-nope")

    @pytest.mark.parametrize("plan_id", ["../escape", "a/b", "", ".hidden"])
    def test_rejects_unsafe_ids(self, tmp_path: Path, plan_id: str) -> None:
        with pytest.raises(UnknownPlanError):
            PlanStore(tmp_path).load(plan_id)

    def test_corrupt_record(self, tmp_path: Path) -> None:
        store = PlanStore(tmp_path)
        store.root.mkdir(parents=True)
        (store.root / "plan-bad.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(WorkspaceError):
            store.load("plan-bad")

    def test_list_skips_corrupt_and_sorts_by_creation(self, tmp_path: Path) -> None:
        store = PlanStore(tmp_path)
        now = utcnow()
        store.save(_record("plan-late", created_at=now))
        store.save(_record("plan-early", created_at=now - timedelta(hours=1)))
        (store.root / "plan-bad.json").write_text("[]", encoding="utf-8")
        assert [r.plan.id for r in store.list()] == ["plan-early", "plan-late"]

    def test_list_empty(self, tmp_path: Path) -> None:
        assert PlanStore(tmp_path / "nothing").list() == []

    def test_delete(self, tmp_path: Path) -> None:
        store = PlanStore(tmp_path)
        store.save(_record())
        assert store.delete("plan-abc123") is True
        assert store.delete("plan-abc123") is False
        assert store.exists("plan-abc123") is False
