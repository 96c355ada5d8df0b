"""Core shared infrastructure for taskfleet.

This package contains the pieces every layer builds on:
    - models: Plan, task, assignment and worktree records
    - graph / readiness: the dependency graph and its derived views
    - activity: the append-only plan activity log
    - store: JSON persistence of plans
    - config: Application configuration management
    - console: Rich console output and logging
    - result: Error handling patterns
"""

from __future__ import annotations

from . import config, console

__all__ = ["config", "console"]
