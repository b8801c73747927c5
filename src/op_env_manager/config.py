"""
Project configuration.

An optional ``.op-env-manager.yaml`` in the working directory supplies
defaults so a project does not repeat its vault and item on every call:

    vault: Personal
    item: myapp
    section: dev
    env_file: .env.local
    strategy: ours
    backup: true

Command-line options always win over the file.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from . import CONFIG_FILE_NAME, DEFAULT_ENV_FILE, DEFAULT_ITEM
from .errors import ConfigError
from .sync.models import ConflictStrategy

logger = logging.getLogger("op_env_manager.config")


class ProjectConfig(BaseModel):
    """Per-project defaults loaded from YAML."""

    model_config = ConfigDict(extra="forbid")

    vault: Optional[str] = None
    item: str = DEFAULT_ITEM
    section: Optional[str] = None
    env_file: str = DEFAULT_ENV_FILE
    strategy: ConflictStrategy = ConflictStrategy.INTERACTIVE
    backup: bool = True

    def merged(self, **overrides: Any) -> "ProjectConfig":
        """Return a copy with every non-None override applied."""
        updates = {k: v for k, v in overrides.items() if v is not None}
        return self.model_copy(update=updates)


def load_project_config(path: Optional[Path] = None) -> ProjectConfig:
    """Load project defaults.

    Args:
        path: Explicit config file. When omitted, ``.op-env-manager.yaml``
            in the current directory is used if present.

    Returns:
        ProjectConfig (all defaults when no file exists).

    Raises:
        ConfigError: If the file is unreadable, not valid YAML, or has
            unknown or invalid keys.
    """
    explicit = path is not None
    config_file = Path(path) if explicit else Path.cwd() / CONFIG_FILE_NAME

    if not config_file.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {config_file}")
        return ProjectConfig()

    try:
        data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read config file {config_file}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_file} must contain a mapping")

    try:
        config = ProjectConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config file {config_file}: {exc}") from exc

    logger.debug("Loaded project config from %s", config_file)
    return config
