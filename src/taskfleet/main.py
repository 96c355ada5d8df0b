from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import typer
from rich import box
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .commands import plan as plan_commands
from .core.config import AppConfig, ConfigLoadResult, load_config
from .core.console import console, setup_logging

app = typer.Typer(help="taskfleet: run dependent coding-agent tasks in parallel git worktrees.")
logger = logging.getLogger(__name__)


@dataclass
class AppState:
    config: AppConfig
    config_meta: ConfigLoadResult
    logger: logging.Logger


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Path to a taskfleet config file (TOML or JSON)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    loaded_config, meta = load_config(config_path=config)
    app_logger = setup_logging(level=loaded_config.log_level, verbose=verbose)
    ctx.obj = AppState(config=loaded_config, config_meta=meta, logger=app_logger)

    if meta.error:
        console.print(
            Panel(
                f"[bold red]Configuration Error - Safe Mode Active[/bold red]\n\n"
                f"Failed to load {meta.path}:\n{meta.error}\n\n"
                f"[yellow]Using default settings.[/yellow]",
                border_style="red",
            )
        )
    else:
        app_logger.debug(
            "Loaded configuration from %s (env overrides: %s)",
            meta.path,
            sorted(meta.env_overrides),
        )


@app.command("config")
def show_config(ctx: typer.Context) -> None:
    """Show the active configuration and where each value came from."""
    state: AppState = ctx.obj
    meta = state.config_meta

    table = Table(title=f"Config ({meta.path})", box=box.SIMPLE, expand=True)
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_column("Source", style="dim", no_wrap=True)

    for group, values in state.config.model_dump(mode="json").items():
        rows = values.items() if isinstance(values, dict) else [(None, values)]
        for key, value in rows:
            name = group if key is None else f"{group}.{key}"
            if name in meta.env_overrides:
                source = "env"
            elif name in meta.file_keys:
                source = "file"
            else:
                source = "default"
            table.add_row(name, str(value), source)

    console.print(table)
    if not meta.file_loaded and not meta.error:
        console.print(f"[dim]No config file at {meta.path}; using defaults.[/dim]")


@app.command("version")
def show_version() -> None:
    """Print the taskfleet version."""
    console.print(__version__)


app.add_typer(plan_commands.app, name="plan")


def cli() -> None:
    app()


if __name__ == "__main__":
    cli()
