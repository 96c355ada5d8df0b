"""Append-only plan activity log.

Every state transition in a plan produces one PlanActivity. Entries are
frozen models; the log only ever appends. Each entry is also mirrored to the
``taskfleet.activity`` logger so a running CLI shows the same stream.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("taskfleet.activity")


class ActivityType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS: dict[ActivityType, int] = {
    ActivityType.INFO: logging.INFO,
    ActivityType.SUCCESS: logging.INFO,
    ActivityType.WARNING: logging.WARNING,
    ActivityType.ERROR: logging.ERROR,
}


class PlanActivity(BaseModel):
    """A single audit entry. Never mutated after creation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: f"act-{uuid4().hex[:12]}")
    plan_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    type: ActivityType
    message: str
    details: str | None = None


ActivityListener = Callable[[PlanActivity], None]


class ActivityLog:
    """Ordered, append-only collection of activities for one plan."""

    def __init__(self, plan_id: str, entries: Iterable[PlanActivity] = ()) -> None:
        self.plan_id = plan_id
        self._entries: list[PlanActivity] = list(entries)
        self._listeners: list[ActivityListener] = []

    def append(
        self, type: ActivityType, message: str, details: str | None = None
    ) -> PlanActivity:
        entry = PlanActivity(plan_id=self.plan_id, type=type, message=message, details=details)
        self._entries.append(entry)
        logger.log(
            _LOG_LEVELS[type],
            "[%s] %s%s",
            self.plan_id,
            message,
            f" ({details})" if details else "",
        )
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception:
                logger.exception("Activity listener failed for plan %s", self.plan_id)
        return entry

    def info(self, message: str, details: str | None = None) -> PlanActivity:
        return self.append(ActivityType.INFO, message, details)

    def success(self, message: str, details: str | None = None) -> PlanActivity:
        return self.append(ActivityType.SUCCESS, message, details)

    def warning(self, message: str, details: str | None = None) -> PlanActivity:
        return self.append(ActivityType.WARNING, message, details)

    def error(self, message: str, details: str | None = None) -> PlanActivity:
        return self.append(ActivityType.ERROR, message, details)

    def subscribe(self, listener: ActivityListener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it again."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def entries(self) -> list[PlanActivity]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PlanActivity]:
        return iter(list(self._entries))


__all__ = ["ActivityListener", "ActivityLog", "ActivityType", "PlanActivity"]
