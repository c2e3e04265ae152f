"""
Configuration system using Pydantic for type-safe settings management.

Every setting has a default, so taskloop runs without a configuration file.
Values can come from a YAML file (``--config``), from ``TASKLOOP_*``
environment variables, or both.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskloop.exceptions import ConfigurationError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class TaskloopSettings(BaseSettings):
    """Main taskloop settings.

    Example:
        >>> settings = TaskloopSettings.from_yaml("taskloop.yaml")
        >>> settings.workspaces_path
        PosixPath('/home/me/.workspaces')
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKLOOP_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    workspaces_root: str = Field(
        default="~/.workspaces",
        description="Directory holding task workspaces as <name>/<repo>",
    )
    workflow_dir: str = Field(default=".tasks", description="Workflow directory inside a workspace")
    workflow_file: str = Field(default="workflow.json", description="Workflow record file name")
    ticket_command: str = Field(default="tk", description="Ticket tracker executable")
    vcs_command: str = Field(default="jj", description="Version-control executable")
    command_timeout: float = Field(default=60.0, ge=1, le=600, description="Timeout for external commands")
    shared_paths: list[str] = Field(
        default_factory=lambda: [".reference", ".issues", "sdks"],
        description="Main-workspace paths symlinked into new task workspaces",
    )
    marker_file: str = Field(
        default=".root-ticket-id",
        description="File next to a task workspace recording its root ticket",
    )
    prompts_dir: str | None = Field(
        default=None,
        description="Directory with per-state prompt templates overriding the built-in ones",
    )
    log_level: str = Field(default="INFO", description="Minimum log level")
    log_json: bool = Field(default=True, description="Render logs as JSON lines")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return normalized

    @field_validator("workflow_dir", "workflow_file", "marker_file")
    @classmethod
    def validate_relative_name(cls, value: str) -> str:
        if not value.strip() or Path(value).is_absolute() or ".." in Path(value).parts:
            raise ValueError("must be a non-empty relative path")
        return value

    @property
    def workspaces_path(self) -> Path:
        """Workspaces root with ``~`` expanded."""
        return Path(self.workspaces_root).expanduser()

    @property
    def prompts_path(self) -> Path | None:
        return Path(self.prompts_dir).expanduser() if self.prompts_dir else None

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> TaskloopSettings:
        """Load settings from YAML file with environment variable interpolation.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            TaskloopSettings instance

        Raises:
            ConfigurationError: If the file is missing, unreadable, or invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports ``${VAR_NAME}`` (required) and ``${VAR_NAME:-default}``.
        YAML comment lines are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))


def load_settings(config_path: str | Path | None = None) -> TaskloopSettings:
    """Settings from ``config_path`` if given, else defaults plus environment.

    Raises:
        ConfigurationError: If the file or environment values are invalid
    """
    if config_path is not None:
        return TaskloopSettings.from_yaml(config_path)
    try:
        return TaskloopSettings()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid TASKLOOP_* environment settings: {e}") from e
