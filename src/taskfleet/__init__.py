"""taskfleet - dependency-aware scheduler for parallel coding agents.

Coordinates multiple autonomous coding agents working through a plan of
dependent tasks, each in its own git worktree.

Exports:
    __version__: Package version string.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
