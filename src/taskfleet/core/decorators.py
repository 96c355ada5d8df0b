from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from typing import Any, TypeVar

import typer
from rich.text import Text

from taskfleet.core.config import ConfigError
from taskfleet.core.console import console
from taskfleet.core.result import TaskFleetError

F = TypeVar("F", bound=Callable[..., Any])

logger = logging.getLogger(__name__)

_USER_ERRORS = (TaskFleetError, ConfigError, PermissionError)


def handle_exceptions(func: F) -> F:
    """Report taskfleet errors from a CLI command in red and exit with code 1.

    Anything else is a bug and keeps its traceback.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except _USER_ERRORS as exc:
            logger.debug("%s failed", func.__name__, exc_info=True)
            console.print(Text(str(exc), style="red"))
            raise typer.Exit(code=1) from None

    return wrapper  # type: ignore[return-value]


__all__ = ["handle_exceptions"]
