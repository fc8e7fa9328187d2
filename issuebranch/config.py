"""Configuration management for issuebranch using YAML files."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pygit2
import structlog
import yaml

logger = structlog.get_logger()

HOME_ENV = "ISSUEBRANCH_HOME"
PROJECT_DIR = ".issuebranch"
CONFIG_FILE = "config.yaml"

DEFAULT_DATA_BRANCH = "data/issuebranch"
DEFAULT_MERGE_BRANCH = "main"
DEFAULT_EDITOR = "vi"

_UNSET = object()


def global_home(override: Path | str | None = None) -> Path:
    """Directory holding the global config and the project ledgers.

    Resolved from the explicit override, then `$ISSUEBRANCH_HOME`, then
    `~/.issuebranch`.
    """
    if override is not None:
        return Path(override)
    env_home = os.environ.get(HOME_ENV)
    if env_home:
        return Path(env_home)
    return Path.home() / ".issuebranch"


def local_config_dir(start: Path | str | None = None) -> Path:
    """The project directory of the repository containing `start`.

    Falls back to `start` itself (or the current directory) outside a repository.
    """
    start = Path(start) if start is not None else Path.cwd()
    discovered = pygit2.discover_repository(str(start))
    if discovered is not None:
        workdir = pygit2.Repository(discovered).workdir
        if workdir:
            return Path(workdir) / PROJECT_DIR
    return start / PROJECT_DIR


class Config:
    """Configuration manager using YAML file storage.

    Supports both local (repository-level) and global (user-level) configuration.
    Local config is stored in .issuebranch/config.yaml at the repository root.
    Global config is stored in ~/.issuebranch/config.yaml (or under $ISSUEBRANCH_HOME).

    When reading, values are looked up in local config first, then global config.
    """

    def __init__(self, use_global: bool = False, config_dir: Path | None = None, home: Path | None = None) -> None:
        """Initialize configuration manager.

        Args:
            use_global: If True, use global config only. If False, use local config with global fallback.
            config_dir: Custom directory to store config file (overrides use_global)
            home: Explicit global home directory
        """
        self.home = global_home(home)
        if config_dir is not None:
            self.config_dir = Path(config_dir)
            self.is_global = use_global
        elif use_global:
            self.config_dir = self.home
            self.is_global = True
        else:
            self.config_dir = local_config_dir()
            self.is_global = False

        self.config_file = self.config_dir / CONFIG_FILE
        self._config: dict[str, Any] = self._load(self.config_file)

        # For local config, also load global config as fallback
        self._global_config: dict[str, Any] = {}
        if not self.is_global:
            self._global_config = self._load(self.home / CONFIG_FILE)

        logger.debug("Config initialized", config_file=str(self.config_file), is_global=self.is_global)

    @staticmethod
    def _load(config_file: Path) -> dict[str, Any]:
        """Load configuration from a YAML file, empty if it does not exist."""
        if not config_file.exists():
            logger.debug("Config file does not exist", config_file=str(config_file))
            return {}

        try:
            with open(config_file, "r") as f:
                config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to load config", config_file=str(config_file), error=str(e))
            raise ValueError(f"Failed to load config from {config_file}: {e}") from e
        if not isinstance(config, dict):
            raise ValueError(f"Config file {config_file} must contain a mapping")
        logger.debug("Config loaded successfully", keys=list(config.keys()))
        return config

    def _save(self) -> None:
        """Save configuration to YAML file."""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, "w") as f:
                yaml.safe_dump(self._config, f, default_flow_style=False, sort_keys=False)
            logger.debug("Config saved successfully")
        except OSError as e:
            logger.error("Failed to save config", error=str(e))
            raise ValueError(f"Failed to save config to {self.config_file}: {e}") from e

    def has(self, key: str) -> bool:
        """Whether a key is set locally or, for local config, globally."""
        return key in self._config or (not self.is_global and key in self._global_config)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        For local config, checks local config first, then falls back to global config.
        """
        if key in self._config:
            logger.debug("Getting config value from local", key=key)
            return self._config[key]

        if not self.is_global and key in self._global_config:
            logger.debug("Getting config value from global", key=key)
            return self._global_config[key]

        logger.debug("Config value not found", key=key)
        return default

    def set(self, key: str, value: str) -> None:
        """Set a configuration value."""
        logger.debug("Setting config value", key=key)
        self._config[key] = value
        self._save()

    def unset(self, key: str) -> None:
        """Remove a configuration value."""
        logger.debug("Unsetting config value", key=key)
        if key in self._config:
            del self._config[key]
            self._save()

    def list(self) -> dict[str, Any]:
        """List all configuration settings.

        For local config, merges global config with local config (local takes precedence).
        """
        if self.is_global:
            return self._config.copy()
        merged = self._global_config.copy()
        merged.update(self._config)
        return merged


def get_config(use_global: bool = False) -> Config:
    """Get a configuration instance.

    Args:
        use_global: If True, return global config. If False, return local config with global fallback.
    """
    return Config(use_global=use_global)


@dataclass(frozen=True)
class Settings:
    """Settings resolved once per command and passed to every component."""

    home: Path
    data_branch: str = DEFAULT_DATA_BRANCH
    merge_branch: str | None = DEFAULT_MERGE_BRANCH
    default_assignee: str | None = None
    editor: str = DEFAULT_EDITOR

    @property
    def data_only(self) -> bool:
        """True when records live on the data branch only and are never merged."""
        return not self.merge_branch


def _pick(override: Any, env_key: str, config: Config | None, config_key: str, default: Any) -> Any:
    if override is not _UNSET:
        return override
    if env_key in os.environ:
        return os.environ[env_key]
    if config is not None and config.has(config_key):
        return config.get(config_key)
    return default


def resolve_settings(
    config: Config | None = None,
    *,
    home: Path | str | None = None,
    data_branch: Any = _UNSET,
    merge_branch: Any = _UNSET,
    default_assignee: Any = _UNSET,
    editor: Any = _UNSET,
) -> Settings:
    """Resolve settings: explicit override, environment, config file, default."""
    data = _pick(data_branch, "ISSUEBRANCH_DATA_BRANCH", config, "data_branch", DEFAULT_DATA_BRANCH)
    merge = _pick(merge_branch, "ISSUEBRANCH_MERGE_BRANCH", config, "merge_branch", DEFAULT_MERGE_BRANCH)
    assignee = _pick(default_assignee, "ISSUEBRANCH_ASSIGNEE", config, "default_assignee", None)
    chosen_editor = _pick(editor, "ISSUEBRANCH_EDITOR", config, "editor", None)
    if not chosen_editor:
        chosen_editor = os.environ.get("EDITOR") or os.environ.get("VISUAL") or DEFAULT_EDITOR

    settings = Settings(
        home=config.home if config is not None and home is None else global_home(home),
        data_branch=str(data or DEFAULT_DATA_BRANCH),
        merge_branch=str(merge) if merge else None,
        default_assignee=str(assignee) if assignee else None,
        editor=str(chosen_editor),
    )
    logger.debug(
        "Settings resolved",
        data_branch=settings.data_branch,
        merge_branch=settings.merge_branch,
        home=str(settings.home),
    )
    return settings
