"""Console output and logging configuration.

    - console: Rich console for command output (stdout)
    - setup_logging(): route every logger through one Rich handler on stderr

Module loggers are plain ``logging.getLogger(__name__)``; activity entries
arrive on ``taskfleet.activity`` and share the same handler.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

console = Console()
_log_console = Console(stderr=True)

APP_LOGGER = "taskfleet"

# Third-party loggers that are noisy at DEBUG while the scheduler runs.
_QUIET_LOGGERS = ("asyncio",)


def _normalize_level(level: str | int) -> int:
    if isinstance(level, str):
        return logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
    return int(level)


def setup_logging(level: str | int = logging.INFO, verbose: bool = False) -> logging.Logger:
    """Install the Rich handler and return the ``taskfleet`` logger.

    ``verbose`` forces DEBUG for taskfleet's own loggers regardless of the
    configured level.
    """
    numeric_level = logging.DEBUG if verbose else _normalize_level(level)

    handler = RichHandler(
        console=_log_console,
        markup=False,
        rich_tracebacks=True,
        show_path=verbose,
        log_time_format="%H:%M:%S",
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s" if verbose else "%(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    logger = logging.getLogger(APP_LOGGER)
    logger.setLevel(numeric_level)
    return logger
