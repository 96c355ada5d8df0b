from __future__ import annotations

from pathlib import Path

import click
from rich.console import Console
from typer.main import get_command
from typer.testing import CliRunner

from taskfleet import __version__
from taskfleet.main import app
from tests.conftest import git


def _output(console: Console) -> str:
    return console.export_text()


def _create_plan(runner: CliRunner, console: Console, *args: str) -> str:
    result = runner.invoke(app, ["plan", "create", *args])
    assert result.exit_code == 0, result.output
    return _output(console).strip().splitlines()[-1]


def test_app_version(runner: CliRunner, capture_console: Console) -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in _output(capture_console)


def test_all_commands_have_help(runner: CliRunner) -> None:
    """Every registered command and subcommand accepts --help."""
    click_app = get_command(app)
    assert isinstance(click_app, click.Group)
    for name, command in click_app.commands.items():
        result = runner.invoke(app, [name, "--help"])
        assert result.exit_code == 0, f"Command 'taskfleet {name} --help' failed!"
        assert "Usage:" in result.stdout
        if isinstance(command, click.Group):
            for sub in command.commands:
                result = runner.invoke(app, [name, sub, "--help"])
                assert result.exit_code == 0, f"Command 'taskfleet {name} {sub} --help' failed!"


def test_config_safe_mode(
    runner: CliRunner, capture_console: Console, isolate_config: Path
) -> None:
    isolate_config.write_text("[scheduler\nbroken", encoding="utf-8")
    result = runner.invoke(app, ["config"])
    assert result.exit_code == 0
    text = _output(capture_console)
    assert "Safe Mode Active" in text
    assert "scheduler.default_max_parallel_agents" in text


def test_authoring_flow(runner: CliRunner, capture_console: Console) -> None:
    plan_id = _create_plan(runner, capture_console, "Demo plan", "--max-parallel", "2")
    assert plan_id.startswith("plan-")

    assert runner.invoke(app, ["plan", "add-task", plan_id, "a", "Write schema"]).exit_code == 0
    result = runner.invoke(
        app, ["plan", "add-task", plan_id, "b", "Write API", "--after", "a", "-d", "REST"]
    )
    assert result.exit_code == 0
    _output(capture_console)

    assert runner.invoke(app, ["plan", "add-dep", plan_id, "a", "b"]).exit_code == 0
    assert "already depends on a" in _output(capture_console)

    assert runner.invoke(app, ["plan", "list"]).exit_code == 0
    listing = _output(capture_console)
    assert plan_id in listing
    assert "Demo plan" in listing

    assert runner.invoke(app, ["plan", "show", plan_id]).exit_code == 0
    shown = _output(capture_console)
    assert "Write schema" in shown
    assert "Write API" in shown
    assert "Task b now depends on a" in shown


def test_cycle_is_reported(runner: CliRunner, capture_console: Console) -> None:
    plan_id = _create_plan(runner, capture_console, "Cycle")
    runner.invoke(app, ["plan", "add-task", plan_id, "a", "A"])
    runner.invoke(app, ["plan", "add-task", plan_id, "b", "B", "--after", "a"])
    _output(capture_console)

    result = runner.invoke(app, ["plan", "add-dep", plan_id, "b", "a"])
    assert result.exit_code == 1
    assert "cycle" in _output(capture_console)


def test_unknown_plan(runner: CliRunner, capture_console: Console) -> None:
    result = runner.invoke(app, ["plan", "show", "plan-missing"])
    assert result.exit_code == 1
    assert "plan-missing" in _output(capture_console)


def test_run_plan_end_to_end(
    runner: CliRunner,
    capture_console: Console,
    isolate_config: Path,
    git_repo: Path,
    tmp_path: Path,
) -> None:
    """Two dependent tasks run in real worktrees and land on the integration branch."""
    state_dir = tmp_path / "state"
    worktree_root = tmp_path / "worktrees"
    isolate_config.write_text(
        "[workspace]\n"
        f'state_dir = "{state_dir.as_posix()}"\n'
        f'worktree_root = "{worktree_root.as_posix()}"\n'
        "\n"
        "[agent]\n"
        'command = ["sh", "-c", "echo {task_id} > {task_id}.txt; echo wrote {task_id}"]\n',
        encoding="utf-8",
    )

    plan_id = _create_plan(runner, capture_console, "End to end")
    runner.invoke(app, ["plan", "add-task", plan_id, "a", "First"])
    runner.invoke(app, ["plan", "add-task", plan_id, "b", "Second", "--after", "a"])
    _output(capture_console)

    result = runner.invoke(app, ["plan", "run", plan_id, "--agent", str(git_repo)])
    assert result.exit_code == 0, result.output
    assert "ready for review" in _output(capture_console)

    branch = f"taskfleet/{plan_id.split('-')[-1]}/feature"
    assert git(git_repo, "show", f"{branch}:a.txt") == "a"
    assert git(git_repo, "show", f"{branch}:b.txt") == "b"
    assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"
    assert not (git_repo / "a.txt").exists()

    result = runner.invoke(app, ["plan", "complete", plan_id])
    assert result.exit_code == 0
    assert f"Plan {plan_id} completed." in _output(capture_console)
    assert not (worktree_root / plan_id / "_integration").exists()
