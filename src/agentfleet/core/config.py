"""Application configuration management.

Handles loading and validating configuration from multiple sources:
    - TOML/JSON config files
    - Environment variables (FLEET_* prefix)
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
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal
from unittest.mock import patch

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from agentfleet.core.models import IsolationKind

CONFIG_ENV_VAR = "AGENTFLEET_CONFIG"
DEFAULT_CONFIG_NAME = ".agentfleet.toml"
STATE_DIR_NAME = ".agentfleet"

PermissionMode = Literal["plan", "acceptEdits", "bypassPermissions"]


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or validated."""


# -----------------------------------------------------------------------------
# Sub-configuration Models
# -----------------------------------------------------------------------------


class ExecutorConfig(BaseModel):
    """Settings for the external task-execution command."""

    command: str = Field(default="claude", description="Binary invoked for each agent.")
    extra_args: list[str] = Field(
        default_factory=list, description="Additional arguments appended to every invocation."
    )
    permission_mode: PermissionMode = Field(
        default="acceptEdits", description="Permission mode passed to the executor."
    )
    max_steps: int = Field(default=20, ge=1, description="Maximum agent turns per task.")
    execution_timeout: float = Field(
        default=1800.0, gt=0, description="Seconds before an executor call is abandoned."
    )
    cancel_grace_seconds: float = Field(
        default=10.0, ge=0, description="Seconds between SIGTERM and SIGKILL on cancel."
    )
    docker_image: str = Field(
        default="python:3.12-slim", description="Image used for container isolation."
    )


class OrchestrationConfig(BaseModel):
    """Scheduling and coordination limits."""

    max_concurrency: int = Field(default=5, ge=1, description="Agents running at once.")
    max_live_environments: int = Field(
        default=10, ge=1, description="Live environments the provider may hand out."
    )
    default_isolation: IsolationKind = Field(default=IsolationKind.WORKTREE)
    lock_timeout: float = Field(
        default=30.0, gt=0, description="Seconds to wait for a shared log writer lock."
    )
    dependency_timeout: float = Field(
        default=3600.0, gt=0, description="Seconds a blocked agent waits for its dependencies."
    )
    cancel_poll_interval: float = Field(
        default=1.0, gt=0, description="Seconds between checks for cancel requests."
    )
    agents_file: Path | None = Field(
        default=None, description="Optional YAML file with extra agent kinds."
    )


class ProjectConfig(BaseModel):
    """Where the shared project tree and the orchestration state live."""

    root: Path = Field(default_factory=Path.cwd)
    name: str | None = Field(default=None, description="Project name used in instructions.")
    state_dir: Path | None = Field(
        default=None, description="Durable state directory (default: <root>/.agentfleet)."
    )
    worktree_root: Path | None = Field(
        default=None, description="Where worktrees are created (default: <state_dir>/worktrees)."
    )
    base_branch: str | None = Field(
        default=None, description="Branch results merge into (default: current branch)."
    )
    ignore_dirs: list[str] = Field(
        default_factory=lambda: [
            ".git",
            STATE_DIR_NAME,
            "node_modules",
            ".venv",
            "__pycache__",
            "dist",
            "build",
        ],
        description="Directory names skipped when copying or fingerprinting the tree.",
    )
    log_level: str = Field(default="INFO", description="Log level for fleet output.")


@dataclass
class ConfigLoadResult:
    path: Path
    file_loaded: bool
    env_overrides: set[str]
    error: str | None = None


class AppConfig(BaseSettings):
    """Application-wide configuration with nested sub-configs."""

    model_config = SettingsConfigDict(
        env_prefix="FLEET_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    orchestration: OrchestrationConfig = Field(default_factory=OrchestrationConfig)
    project: ProjectConfig = Field(default_factory=ProjectConfig)

    @field_validator("project", mode="after")
    @classmethod
    def resolve_project_paths(cls, v: ProjectConfig) -> ProjectConfig:
        """Expand user paths so every component sees absolute locations."""
        v.root = v.root.expanduser().resolve()
        if v.state_dir is not None:
            v.state_dir = v.state_dir.expanduser().resolve()
        if v.worktree_root is not None:
            v.worktree_root = v.worktree_root.expanduser().resolve()
        return v

    @property
    def project_root(self) -> Path:
        return self.project.root

    @property
    def state_dir(self) -> Path:
        return self.project.state_dir or self.project.root / STATE_DIR_NAME

    @property
    def worktree_root(self) -> Path:
        return self.project.worktree_root or self.state_dir / "worktrees"

    @property
    def work_root(self) -> Path:
        return self.state_dir / "work"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def progress_log(self) -> Path:
        return self.state_dir / "progress.jsonl"

    @property
    def context_log(self) -> Path:
        return self.state_dir / "context.jsonl"

    @property
    def project_name(self) -> str:
        return self.project.name or detect_project_name(self.project.root)

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
        # Ensure environment variables override config file entries.
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)


def detect_project_name(root: Path) -> str:
    """Guess a project name from common manifests, falling back to the directory name."""
    pyproject = root / "pyproject.toml"
    if pyproject.is_file():
        try:
            data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
            name = data.get("project", {}).get("name")
            if isinstance(name, str) and name.strip():
                return name.strip()
        except (OSError, tomllib.TOMLDecodeError):
            pass

    package_json = root / "package.json"
    if package_json.is_file():
        try:
            data = json.loads(package_json.read_text(encoding="utf-8"))
            name = data.get("name") if isinstance(data, dict) else None
            if isinstance(name, str) and name.strip():
                return name.strip()
        except (OSError, json.JSONDecodeError):
            pass

    go_mod = root / "go.mod"
    if go_mod.is_file():
        try:
            first = go_mod.read_text(encoding="utf-8").splitlines()[0]
            if first.startswith("module "):
                return first.removeprefix("module ").strip()
        except (OSError, IndexError):
            pass

    return root.name


def _resolve_config_path(
    config_path: Path | None, env_vars: Mapping[str, str], project_root: Path
) -> Path:
    candidate = config_path or env_vars.get(CONFIG_ENV_VAR) or (project_root / DEFAULT_CONFIG_NAME)
    return Path(candidate).expanduser()


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}

    raw = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    parser = json.loads if suffix == ".json" else tomllib.loads

    try:
        data = parser(raw)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Syntax error in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config root in {path} must be a mapping.")

    return data


def _detect_env_overrides(env_vars: Mapping[str, str]) -> set[str]:
    """Detect which fields are overridden by environment variables.

    For nested models, detects vars like FLEET_EXECUTOR__COMMAND.
    """
    prefix = AppConfig.model_config.get("env_prefix", "")
    delimiter = AppConfig.model_config.get("env_nested_delimiter", "__")
    overrides: set[str] = set()

    nested_models: dict[str, type[BaseModel]] = {
        "executor": ExecutorConfig,
        "orchestration": OrchestrationConfig,
        "project": ProjectConfig,
    }

    for group_name, model_cls in nested_models.items():
        for field in model_cls.model_fields:
            env_key = f"{prefix}{group_name}{delimiter}{field}".upper()
            if env_key in env_vars:
                overrides.add(f"{group_name}.{field}")

    return overrides


def load_config(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
    *,
    project_root: Path | None = None,
) -> tuple[AppConfig, ConfigLoadResult]:
    """
    Load configuration with Safe Mode fallback.
    If the file is invalid, returns default config + error message.
    """
    env_vars: Mapping[str, str] = os.environ if env is None else {**os.environ, **env}
    root = (project_root or Path.cwd()).expanduser().resolve()
    resolved_path = _resolve_config_path(config_path, env_vars, root)
    env_overrides = _detect_env_overrides(env_vars)

    error: str | None = None
    file_loaded = False
    file_data: dict[str, Any] = {}

    try:
        file_data = _read_config_file(resolved_path)
        file_loaded = resolved_path.exists()
    except ConfigError as exc:
        error = str(exc)

    # An explicit --project argument wins over the file's project.root.
    if project_root is not None or "root" not in file_data.get("project", {}):
        file_data = {**file_data, "project": {**file_data.get("project", {}), "root": str(root)}}

    context_manager = (
        patch.dict(os.environ, env_vars, clear=False) if env is not None else nullcontext()
    )

    try:
        with context_manager:
            config = AppConfig(**file_data)
    except ValidationError as exc:
        error = str(exc)
        config = AppConfig(project=ProjectConfig(root=root))

    load_result = ConfigLoadResult(
        path=resolved_path,
        file_loaded=file_loaded,
        env_overrides=env_overrides,
        error=error,
    )

    return config, load_result


__all__ = [
    "AppConfig",
    "ConfigError",
    "ConfigLoadResult",
    "ExecutorConfig",
    "OrchestrationConfig",
    "PermissionMode",
    "ProjectConfig",
    "detect_project_name",
    "load_config",
]
