"""Plan execution: worktrees, agent runners, the scheduler loop and the plan facade."""

from __future__ import annotations

from taskfleet.swarm.agent_adapter import (
    AgentEvent,
    AgentEventKind,
    AgentHandle,
    AgentRunner,
    CommandAgentRunner,
    DispatchRequest,
)
from taskfleet.swarm.controller import PlanManager
from taskfleet.swarm.scheduler import ControlSignal, PlanScheduler
from taskfleet.swarm.worktree import WorktreeManager

__all__ = [
    "AgentEvent",
    "AgentEventKind",
    "AgentHandle",
    "AgentRunner",
    "CommandAgentRunner",
    "ControlSignal",
    "DispatchRequest",
    "PlanManager",
    "PlanScheduler",
    "WorktreeManager",
]
