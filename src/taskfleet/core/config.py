"""Application configuration management.

Handles loading and validating configuration from multiple sources:
    - TOML/JSON config files
    - Environment variables (TASKFLEET_* prefix, ``__`` for nesting)
    - Default values

Key components:
    - AppConfig: Main configuration model
    - load_config(): Safe config loading with fallback
    - ConfigLoadResult: Metadata about config source
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from unittest.mock import patch

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from taskfleet.core.models import BranchStrategy

CONFIG_ENV_VAR = "TASKFLEET_CONFIG"
DEFAULT_CONFIG_NAME = ".taskfleet.toml"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or validated."""


# -----------------------------------------------------------------------------
# Sub-configuration Models
# -----------------------------------------------------------------------------


class SchedulerConfig(BaseModel):
    """Plan defaults and scheduler loop settings."""

    default_max_parallel_agents: int = Field(
        default=4, ge=1, description="Concurrent agents per plan when none is requested."
    )
    default_branch_strategy: BranchStrategy = Field(
        default=BranchStrategy.FEATURE_BRANCH,
        description="How completed task branches are integrated.",
    )
    cancel_poll_interval: float = Field(
        default=1.0,
        gt=0,
        description="Seconds between checks for a cancel issued by another process.",
    )


class WorkspaceConfig(BaseModel):
    """Where plans, worktrees and branches live."""

    state_dir: Path = Field(
        default_factory=lambda: Path.home() / ".taskfleet",
        description="Directory holding persisted plan records.",
    )
    worktree_root: Path | None = Field(
        default=None, description="Directory for task worktrees (default: <state_dir>/worktrees)."
    )
    branch_prefix: str = Field(default="taskfleet", description="Prefix for task branches.")
    remote: str = Field(default="origin", description="Remote used for pushes and PRs.")
    push_integration_branch: bool = Field(
        default=False, description="Push the integration branch after each merge."
    )

    @property
    def resolved_worktree_root(self) -> Path:
        return self.worktree_root or self.state_dir / "worktrees"


class AgentConfig(BaseModel):
    """External coding-agent invocation."""

    command: list[str] = Field(
        default_factory=lambda: ["claude", "-p", "{prompt}"],
        description="Argv template with {prompt}, {task_id}, {title}, {worktree}, {plan_id}.",
    )
    task_timeout: float | None = Field(
        default=None, gt=0, description="Seconds before a running task is failed."
    )
    auto_commit: bool = Field(
        default=True, description="Commit leftover changes in the worktree after success."
    )
    references: dict[str, Path] = Field(
        default_factory=dict,
        description="Reference agent id -> checkout path used to seed worktrees.",
    )


@dataclass
class ConfigLoadResult:
    path: Path
    file_loaded: bool
    env_overrides: set[str]
    error: str | None = None
    file_keys: set[str] = field(default_factory=set)


def _ensure_directory(path: Path, name: str) -> Path:
    """Ensure directory exists, creating if necessary. Raises on failure."""
    expanded = path.expanduser().resolve()
    try:
        expanded.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ValueError(f"Cannot create {name} directory {expanded}: {exc}") from exc
    return expanded


class AppConfig(BaseSettings):
    """Application-wide configuration with nested sub-configs."""

    model_config = SettingsConfigDict(
        env_prefix="TASKFLEET_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    log_level: str = Field(default="INFO", description="Log level for taskfleet output.")

    @field_validator("workspace", mode="after")
    @classmethod
    def ensure_workspace_directories(cls, v: WorkspaceConfig) -> WorkspaceConfig:
        """Ensure the state and worktree directories exist."""
        v.state_dir = _ensure_directory(v.state_dir, "state")
        if v.worktree_root is not None:
            v.worktree_root = _ensure_directory(v.worktree_root, "worktree")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
    ]:
        # Environment variables override config file entries.
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)


def _resolve_config_path(config_path: Path | None, env_vars: Mapping[str, str]) -> Path:
    if config_path is not None:
        return config_path.expanduser()
    if env_path := env_vars.get(CONFIG_ENV_VAR):
        return Path(env_path).expanduser()
    return Path.home() / DEFAULT_CONFIG_NAME


def _read_config_file(path: Path) -> dict[str, Any] | None:
    """Parse ``path`` by suffix. Returns None when there is no file."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc

    try:
        match path.suffix.lower():
            case ".json":
                data = json.loads(raw)
            case _:
                data = tomllib.loads(raw)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Syntax error in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config root in {path} must be a table, got {type(data).__name__}.")
    return data


def _detect_env_overrides(env_vars: Mapping[str, str]) -> set[str]:
    """Dotted names of settings set through the environment.

    Nested fields look like TASKFLEET_SCHEDULER__DEFAULT_MAX_PARALLEL_AGENTS.
    """
    prefix = AppConfig.model_config.get("env_prefix", "")
    delimiter = AppConfig.model_config.get("env_nested_delimiter") or "__"
    present = {key.upper() for key in env_vars if key.upper().startswith(prefix.upper())}

    overrides: set[str] = set()
    for name, info in AppConfig.model_fields.items():
        group = info.annotation
        if isinstance(group, type) and issubclass(group, BaseModel):
            for key in group.model_fields:
                if f"{prefix}{name}{delimiter}{key}".upper() in present:
                    overrides.add(f"{name}.{key}")
        elif f"{prefix}{name}".upper() in present:
            overrides.add(name)
    return overrides


def _dotted_keys(data: Mapping[str, Any]) -> set[str]:
    keys: set[str] = set()
    for name, value in data.items():
        if isinstance(value, Mapping):
            keys.update(f"{name}.{sub}" for sub in value)
        else:
            keys.add(name)
    return keys


def load_config(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[AppConfig, ConfigLoadResult]:
    """Load configuration, falling back to defaults (Safe Mode) on bad input.

    ``env`` adds variables on top of ``os.environ`` for the duration of the
    load. The error, if any, is reported through ``ConfigLoadResult``.
    """
    env_vars: Mapping[str, str] = os.environ if env is None else {**os.environ, **env}
    path = _resolve_config_path(config_path, env_vars)
    meta = ConfigLoadResult(
        path=path, file_loaded=False, env_overrides=_detect_env_overrides(env_vars)
    )

    file_data: dict[str, Any] = {}
    try:
        loaded = _read_config_file(path)
    except ConfigError as exc:
        meta.error = str(exc)
    else:
        if loaded is not None:
            file_data = loaded
            meta.file_loaded = True
            meta.file_keys = _dotted_keys(loaded)

    scoped_env = patch.dict(os.environ, env, clear=False) if env is not None else nullcontext()
    with scoped_env:
        try:
            return AppConfig(**file_data), meta
        except ValidationError as exc:
            meta.error = f"Invalid settings in {path}: {exc}"
            meta.file_loaded = False
            meta.file_keys = set()
            return AppConfig(), meta
