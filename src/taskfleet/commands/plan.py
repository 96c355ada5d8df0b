"""`taskfleet plan` commands.

Every command goes through ``PlanManager``, which persists plans as JSON
under the configured state directory. ``run`` and ``resume`` keep the
process alive while agents work and render a live task table; Ctrl-C
cancels the plans being followed.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import typer
from rich import box
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from taskfleet.core.console import console
from taskfleet.core.decorators import handle_exceptions
from taskfleet.core.models import BranchStrategy, PlanSnapshot, PlanStatus, TaskStatus
from taskfleet.swarm.controller import PlanManager

if TYPE_CHECKING:
    from taskfleet.main import AppState

app = typer.Typer(help="Create, run and inspect plans.")

_STATUS_STYLES: dict[str, str] = {
    TaskStatus.PLANNED.value: "dim",
    TaskStatus.READY.value: "cyan",
    TaskStatus.BLOCKED.value: "yellow",
    TaskStatus.SENT.value: "blue",
    TaskStatus.IN_PROGRESS.value: "bold blue",
    TaskStatus.COMPLETED.value: "green",
    TaskStatus.FAILED.value: "red",
    PlanStatus.DRAFT.value: "dim",
    PlanStatus.DELEGATING.value: "blue",
    PlanStatus.READY_FOR_REVIEW.value: "magenta",
}


def _manager(ctx: typer.Context) -> PlanManager:
    state: AppState = ctx.obj
    return PlanManager(state.config)


def _styled(status: str) -> Text:
    return Text(status, style=_STATUS_STYLES.get(status, "white"))


def _render_tasks(snapshot: PlanSnapshot) -> Table:
    plan = snapshot.plan
    stats = snapshot.stats
    table = Table(
        title=f"{plan.title} ({plan.id}) - {plan.status.value}",
        caption=(
            f"{stats.completed}/{stats.total} completed, {stats.active} active, "
            f"{stats.ready} ready, {stats.blocked} blocked, {stats.failed} failed"
        ),
        box=box.SIMPLE_HEAVY,
        expand=True,
    )
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Title", style="white")
    table.add_column("Status", no_wrap=True)
    table.add_column("Blocked by", style="white")
    table.add_column("Critical", justify="center", no_wrap=True)
    table.add_column("Progress", style="dim")

    live_progress = {
        a.task_id: a.last_progress or "" for a in snapshot.assignments if a.is_live
    }
    critical = set(snapshot.critical_path)
    for task in snapshot.tasks:
        note = live_progress.get(task.id, "")
        if task.replaced_by:
            note = f"retried as {task.replaced_by}"
        table.add_row(
            task.id,
            task.title,
            _styled(task.status.value),
            ", ".join(sorted(task.blocked_by)) or "-",
            "*" if task.id in critical else "",
            note,
        )
    return table


async def _follow(manager: PlanManager, plan_ids: list[str]) -> None:
    waiters = [asyncio.create_task(manager.wait(plan_id)) for plan_id in plan_ids]

    def _render() -> Table:
        if len(plan_ids) == 1:
            return _render_tasks(manager.get_snapshot(plan_ids[0]))
        outer = Table.grid()
        for plan_id in plan_ids:
            outer.add_row(_render_tasks(manager.get_snapshot(plan_id)))
        return outer

    try:
        with Live(_render(), console=console, refresh_per_second=4) as live:
            while not all(w.done() for w in waiters):
                await asyncio.wait(waiters, timeout=0.5)
                live.update(_render())
        await asyncio.gather(*waiters)
    except asyncio.CancelledError:
        console.print("[yellow]Cancelling...[/yellow]")
        for plan_id in plan_ids:
            if not manager.get_snapshot(plan_id).plan.is_terminal:
                await manager.cancel(plan_id)
        raise


def _print_outcome(manager: PlanManager, plan_id: str) -> None:
    plan = manager.get_snapshot(plan_id).plan
    if plan.status == PlanStatus.READY_FOR_REVIEW:
        target = plan.integration_branch or "the recorded pull requests"
        console.print(
            f"[green]Plan {plan.id} is ready for review.[/green] Inspect {target}, then run "
            f"`taskfleet plan complete {plan.id}`."
        )
    elif plan.cancelled:
        console.print(f"[yellow]Plan {plan.id} was cancelled.[/yellow]")
    else:
        console.print(f"Plan {plan.id} is {plan.status.value}.")


@app.command("create")
@handle_exceptions
def create(
    ctx: typer.Context,
    title: str = typer.Argument(..., help="Plan title."),
    description: str = typer.Option("", "--description", "-d", help="Longer plan description."),
    max_parallel: int | None = typer.Option(
        None, "--max-parallel", "-p", help="Concurrent agents (default from config)."
    ),
    strategy: BranchStrategy | None = typer.Option(
        None, "--strategy", "-s", help="Branch integration strategy."
    ),
) -> None:
    """Create a draft plan."""
    plan = _manager(ctx).create_plan(title, description, max_parallel, strategy)
    console.print(plan.id)


@app.command("add-task")
@handle_exceptions
def add_task(
    ctx: typer.Context,
    plan_id: str = typer.Argument(..., help="Plan id."),
    task_id: str = typer.Argument(..., help="Task id, unique within the plan."),
    title: str = typer.Argument(..., help="Task title."),
    description: str = typer.Option("", "--description", "-d", help="Instructions for the agent."),
    after: list[str] = typer.Option(
        [], "--after", "-a", help="Prerequisite task id (repeatable)."
    ),
) -> None:
    """Add a task to a draft plan."""
    node = _manager(ctx).add_task(plan_id, task_id, title, description, after)
    console.print(f"Added {node.id}")


@app.command("add-dep")
@handle_exceptions
def add_dep(
    ctx: typer.Context,
    plan_id: str = typer.Argument(..., help="Plan id."),
    blocker: str = typer.Argument(..., help="Task that must finish first."),
    dependent: str = typer.Argument(..., help="Task that waits."),
) -> None:
    """Make DEPENDENT wait for BLOCKER."""
    if _manager(ctx).add_dependency(plan_id, blocker, dependent):
        console.print(f"{dependent} now depends on {blocker}")
    else:
        console.print(f"[dim]{dependent} already depends on {blocker}[/dim]")


@app.command("list")
@handle_exceptions
def list_plans(ctx: typer.Context) -> None:
    """List known plans."""
    plans = _manager(ctx).list_plans()
    if not plans:
        console.print("[yellow]No plans yet.[/yellow]")
        return

    table = Table(title="Plans", box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Plan", style="cyan", no_wrap=True)
    table.add_column("Title", style="white")
    table.add_column("Status", no_wrap=True)
    table.add_column("Strategy", style="white", no_wrap=True)
    table.add_column("Agents", justify="right")
    table.add_column("Updated", style="dim", no_wrap=True)
    for plan in plans:
        table.add_row(
            plan.id,
            plan.title,
            _styled(plan.status.value),
            plan.branch_strategy.value,
            str(plan.max_parallel_agents),
            plan.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command("show")
@handle_exceptions
def show(
    ctx: typer.Context,
    plan_id: str = typer.Argument(..., help="Plan id."),
    activity: int = typer.Option(10, "--activity", "-n", help="Recent activity entries to show."),
) -> None:
    """Show a plan's tasks and recent activity."""
    snapshot = _manager(ctx).get_snapshot(plan_id)
    console.print(_render_tasks(snapshot))

    if activity > 0 and snapshot.activities:
        lines = Text()
        for entry in snapshot.activities[-activity:]:
            style = {"success": "green", "warning": "yellow", "error": "red"}.get(
                entry.type.value, "white"
            )
            lines.append(f"{entry.timestamp:%H:%M:%S} ", style="dim")
            lines.append(entry.message, style=style)
            if entry.details:
                lines.append(f" ({entry.details})", style="dim")
            lines.append("\n")
        console.print(Panel(lines, title="Activity", box=box.SIMPLE))


@app.command("run")
@handle_exceptions
def run(
    ctx: typer.Context,
    plan_id: str = typer.Argument(..., help="Plan id."),
    agent: str = typer.Option(
        ..., "--agent", "-a", help="Reference agent id or path to its checkout."
    ),
) -> None:
    """Execute a draft plan and follow it until it settles. Ctrl-C cancels."""
    manager = _manager(ctx)

    async def _run() -> None:
        await manager.execute(plan_id, agent)
        await _follow(manager, [plan_id])

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        raise typer.Exit(code=130) from None
    _print_outcome(manager, plan_id)


@app.command("resume")
@handle_exceptions
def resume(ctx: typer.Context) -> None:
    """Restart plans that were executing when the last session stopped."""
    manager = _manager(ctx)
    resumed: list[str] = []

    async def _resume() -> None:
        resumed.extend(await manager.resume())
        if resumed:
            await _follow(manager, resumed)

    try:
        asyncio.run(_resume())
    except KeyboardInterrupt:
        raise typer.Exit(code=130) from None

    if not resumed:
        console.print("[dim]Nothing to resume.[/dim]")
    for plan_id in resumed:
        _print_outcome(manager, plan_id)


@app.command("cancel")
@handle_exceptions
def cancel(ctx: typer.Context, plan_id: str = typer.Argument(..., help="Plan id.")) -> None:
    """Cancel a plan that has not finished.

    A `plan run` or `plan resume` process following the plan notices the
    cancel, stops dispatching and releases its worktrees.
    """
    plan = asyncio.run(_manager(ctx).cancel(plan_id))
    console.print(f"[yellow]Plan {plan.id} cancelled.[/yellow]")


@app.command("complete")
@handle_exceptions
def complete(ctx: typer.Context, plan_id: str = typer.Argument(..., help="Plan id.")) -> None:
    """Mark a reviewed plan as completed."""
    plan = asyncio.run(_manager(ctx).complete(plan_id))
    console.print(f"[green]Plan {plan.id} completed.[/green]")


@app.command("retry")
@handle_exceptions
def retry(
    ctx: typer.Context,
    plan_id: str = typer.Argument(..., help="Plan id."),
    task_id: str = typer.Argument(..., help="Failed task to retry."),
    new_id: str | None = typer.Option(None, "--new-id", help="Id for the replacement task."),
) -> None:
    """Replace a failed task in an executing plan with a fresh copy."""
    node = _manager(ctx).retry_task(plan_id, task_id, new_id)
    console.print(
        f"Created {node.id} to retry {task_id}. Run `taskfleet plan resume` to pick it up."
    )
