"""JSON persistence for plans.

Each plan is stored as one record at ``<state_dir>/plans/<plan_id>.json``
holding the plan, its full task graph and its activity log. Records are
written to a temporary sibling and renamed into place so a crash mid-write
never leaves a truncated file behind.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from taskfleet.core.activity import PlanActivity
from taskfleet.core.models import Plan, TaskNode
from taskfleet.core.result import UnknownPlanError, WorkspaceError

logger = logging.getLogger(__name__)

_PLAN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class PlanRecord(BaseModel):
    """Everything needed to rebuild a plan after a restart."""

    model_config = ConfigDict(extra="forbid")

    plan: Plan
    tasks: list[TaskNode] = Field(default_factory=list)
    activities: list[PlanActivity] = Field(default_factory=list)


class PlanStore:
    """Directory of plan records."""

    def __init__(self, state_dir: Path) -> None:
        self._root = state_dir.expanduser() / "plans"

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, plan_id: str) -> Path:
        if not _PLAN_ID_PATTERN.match(plan_id):
            raise UnknownPlanError("Invalid plan id", context={"plan": plan_id})
        return self._root / f"{plan_id}.json"

    def exists(self, plan_id: str) -> bool:
        return self._path(plan_id).exists()

    def save(self, record: PlanRecord) -> Path:
        path = self._path(record.plan.id)
        tmp = path.with_suffix(".json.tmp")
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise WorkspaceError(
                "Failed to write plan record", context={"path": str(path), "error": str(exc)}
            ) from exc
        return path

    def load(self, plan_id: str) -> PlanRecord:
        path = self._path(plan_id)
        if not path.exists():
            raise UnknownPlanError("Unknown plan", context={"plan": plan_id})
        try:
            return PlanRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, PydanticValidationError) as exc:
            raise WorkspaceError(
                "Plan record is unreadable", context={"path": str(path), "error": str(exc)}
            ) from exc

    def list(self) -> list[PlanRecord]:
        """All readable records, oldest plan first. Corrupt files are skipped with a warning."""
        if not self._root.exists():
            return []
        records: list[PlanRecord] = []
        for path in sorted(self._root.glob("*.json")):
            try:
                records.append(PlanRecord.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, PydanticValidationError) as exc:
                logger.warning("Skipping unreadable plan record %s: %s", path.name, exc)
        records.sort(key=lambda r: r.plan.created_at)
        return records

    def delete(self, plan_id: str) -> bool:
        path = self._path(plan_id)
        if not path.exists():
            return False
        path.unlink()
        return True


__all__ = ["PlanRecord", "PlanStore"]
