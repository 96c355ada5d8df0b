from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path
from typing import Any

import pytest
from rich.console import Console
from typer.testing import CliRunner

# Detect CI environment (GitHub Actions sets CI=true)
IS_CI = os.environ.get("CI", "").lower() == "true"


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "local_only: marks tests that require local environment (skip in CI)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip local_only tests when running in CI."""
    if not IS_CI:
        return
    skip_ci = pytest.mark.skip(reason="Skipped in CI (requires local environment)")
    for item in items:
        if "local_only" in item.keywords:
            item.add_marker(skip_ci)


ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def git(cwd: Path, *args: str) -> str:
    """Run git for test setup (not part of the code under test)."""
    result = subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    )
    return result.stdout.strip()


def init_repo(path: Path) -> Path:
    """Create a git repository on ``main`` with one commit."""
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init")
    git(path, "checkout", "-B", "main")
    git(path, "config", "user.email", "test@test.com")
    git(path, "config", "user.name", "Test User")
    git(path, "config", "commit.gpgsign", "false")
    (path / "README.md").write_text("# demo\n", encoding="utf-8")
    git(path, "add", "README.md")
    git(path, "commit", "-m", "Initial commit")
    return path


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def isolate_config(tmp_path: Path, monkeypatch: Any) -> Path:
    """Point config and the default state directory at temp paths."""
    cfg_path = tmp_path / "config.toml"
    monkeypatch.setenv("TASKFLEET_CONFIG", str(cfg_path))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for key in list(os.environ):
        if key.startswith("TASKFLEET_") and key != "TASKFLEET_CONFIG":
            monkeypatch.delenv(key, raising=False)
    return cfg_path


@pytest.fixture(autouse=True)
def capture_console(monkeypatch: Any) -> Console:
    """Use an in-memory Rich console during tests."""
    test_console = Console(record=True, width=200)
    import taskfleet.commands.plan as plan_cmd
    import taskfleet.core.console as core_console
    import taskfleet.core.decorators as decorators
    import taskfleet.main as tf_main

    monkeypatch.setattr(core_console, "console", test_console)
    monkeypatch.setattr(tf_main, "console", test_console)
    monkeypatch.setattr(plan_cmd, "console", test_console)
    monkeypatch.setattr(decorators, "console", test_console)
    return test_console


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Reference checkout with an initial commit on ``main``."""
    return init_repo(tmp_path / "reference")


@pytest.fixture
def app_config(tmp_path: Path) -> Any:
    from taskfleet.core.config import AppConfig

    return AppConfig(
        workspace={
            "state_dir": tmp_path / "state",
            "worktree_root": tmp_path / "worktrees",
        },
        agent={"command": ["true"]},
    )
