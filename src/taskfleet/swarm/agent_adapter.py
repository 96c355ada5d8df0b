"""Agent runner seam for task execution.

The scheduler treats a coding agent as an opaque capability: hand it a
task and a worktree, receive events back. A dispatched handle emits zero or
more ``started``/``progress`` events followed by exactly one terminal
event (``completed`` or ``failed``).

``CommandAgentRunner`` is the default implementation. It runs a configured
argv template inside the worktree, streams output lines as progress and
optionally commits whatever the agent left uncommitted.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from taskfleet.core.result import Err, Ok
from taskfleet.git.provider import VcsProvider

logger = logging.getLogger(__name__)

_OUTPUT_TAIL = 20


class AgentEventKind(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class AgentEvent:
    """Event reported by a running agent.

    Attributes:
        kind: What happened
        assignment_id: Assignment the event belongs to
        task_id: Task being executed
        message: Progress text, completion summary or failure reason
    """

    kind: AgentEventKind
    assignment_id: str
    task_id: str
    message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in (AgentEventKind.COMPLETED, AgentEventKind.FAILED)


EventSink = Callable[[AgentEvent], None]


@dataclass(frozen=True, slots=True)
class DispatchRequest:
    plan_id: str
    assignment_id: str
    task_id: str
    agent_id: str
    title: str
    description: str
    worktree: Path

    @property
    def prompt(self) -> str:
        if self.description:
            return f"{self.title}\n\n{self.description}"
        return self.title


@dataclass
class AgentHandle:
    """Tracks one dispatched request and guards its single terminal event."""

    request: DispatchRequest
    emit: EventSink
    task: asyncio.Task[None] | None = None
    cancel_requested: bool = False
    finished: bool = field(default=False, init=False)

    def started(self) -> None:
        self._send(AgentEventKind.STARTED)

    def progress(self, message: str) -> None:
        self._send(AgentEventKind.PROGRESS, message)

    def complete(self, summary: str | None = None) -> None:
        self._send(AgentEventKind.COMPLETED, summary)

    def fail(self, reason: str) -> None:
        self._send(AgentEventKind.FAILED, reason)

    def _send(self, kind: AgentEventKind, message: str | None = None) -> None:
        if self.finished:
            logger.debug(
                "Dropping %s event for finished assignment %s",
                kind.value,
                self.request.assignment_id,
            )
            return
        event = AgentEvent(
            kind=kind,
            assignment_id=self.request.assignment_id,
            task_id=self.request.task_id,
            message=message,
        )
        if event.is_terminal:
            self.finished = True
        self.emit(event)


class AgentRunner(Protocol):
    """Executes tasks on behalf of the scheduler."""

    def dispatch(self, request: DispatchRequest, emit: EventSink) -> AgentHandle:
        """Start work and return immediately. Events flow through ``emit``."""
        ...

    def cancel(self, handle: AgentHandle) -> None:
        """Best-effort stop. Must not block."""
        ...


def render_command(template: Sequence[str], request: DispatchRequest) -> list[str]:
    """Substitute ``{prompt}``, ``{task_id}``, ``{title}``, ``{worktree}`` and ``{plan_id}``."""
    values = {
        "{prompt}": request.prompt,
        "{task_id}": request.task_id,
        "{title}": request.title,
        "{worktree}": str(request.worktree),
        "{plan_id}": request.plan_id,
    }
    rendered: list[str] = []
    for arg in template:
        for placeholder, value in values.items():
            arg = arg.replace(placeholder, value)
        rendered.append(arg)
    return rendered


class CommandAgentRunner:
    """Runs an external agent command per task.

    Attributes:
        command: Argv template, see ``render_command``
        timeout: Seconds before the run is killed and reported failed
        auto_commit: Commit leftover worktree changes after a successful run
    """

    def __init__(
        self,
        command: Sequence[str],
        vcs: VcsProvider,
        *,
        timeout: float | None = None,
        auto_commit: bool = True,
    ) -> None:
        if not command:
            raise ValueError("Agent command must not be empty")
        self.command = list(command)
        self.timeout = timeout
        self.auto_commit = auto_commit
        self._vcs = vcs

    def dispatch(self, request: DispatchRequest, emit: EventSink) -> AgentHandle:
        handle = AgentHandle(request=request, emit=emit)
        handle.task = asyncio.create_task(
            self._run(handle), name=f"agent-{request.assignment_id}"
        )
        return handle

    def cancel(self, handle: AgentHandle) -> None:
        handle.cancel_requested = True
        if handle.task is not None and not handle.task.done():
            handle.task.cancel()

    async def _run(self, handle: AgentHandle) -> None:
        request = handle.request
        try:
            if self.timeout is None:
                await self._execute(handle)
            else:
                await asyncio.wait_for(self._execute(handle), timeout=self.timeout)
        except TimeoutError:
            handle.fail(f"Timed out after {self.timeout:g}s")
        except asyncio.CancelledError:
            handle.fail("cancelled")
            raise
        except Exception as exc:
            logger.exception("Agent run for task %s crashed", request.task_id)
            handle.fail(f"Agent runner error: {exc}")

    async def _execute(self, handle: AgentHandle) -> None:
        request = handle.request
        argv = render_command(self.command, request)
        logger.debug("Running agent for %s: %s", request.task_id, argv[0])

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=request.worktree,
            )
        except FileNotFoundError:
            handle.fail(f"Agent executable not found: {argv[0]}")
            return
        except OSError as exc:
            handle.fail(f"Failed to start agent: {exc}")
            return

        handle.started()
        tail: deque[str] = deque(maxlen=_OUTPUT_TAIL)
        try:
            if proc.stdout is not None:
                async for raw_line in proc.stdout:
                    line = raw_line.decode(errors="replace").rstrip()
                    if not line:
                        continue
                    tail.append(line)
                    handle.progress(line)
            await proc.wait()
        except BaseException:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode != 0:
            detail = tail[-1] if tail else "no output"
            handle.fail(f"Agent exited with code {proc.returncode}: {detail}")
            return

        if self.auto_commit:
            message = f"{request.task_id}: {request.title}"
            match await self._vcs.commit_all(request.worktree, message):
                case Err(err):
                    handle.fail(f"Failed to commit agent changes: {err.message}")
                    return
                case Ok(sha):
                    if sha:
                        logger.debug("Committed %s for task %s", sha, request.task_id)

        handle.complete(tail[-1] if tail else None)


__all__ = [
    "AgentEvent",
    "AgentEventKind",
    "AgentHandle",
    "AgentRunner",
    "CommandAgentRunner",
    "DispatchRequest",
    "EventSink",
    "render_command",
]
