"""Configuration commands for the issuebranch CLI."""

import pygit2
from cyclopts import App

from issuebranch.config import DEFAULT_DATA_BRANCH, DEFAULT_MERGE_BRANCH, get_config

config_app = App(name="config", help="Manage configuration (data_branch, merge_branch, default_assignee, editor)")

# Recognised keys and what applies while they are unset
KNOWN_KEYS = {
    "data_branch": DEFAULT_DATA_BRANCH,
    "merge_branch": DEFAULT_MERGE_BRANCH,
    "default_assignee": None,
    "editor": "$EDITOR, then $VISUAL, then vi",
}
BRANCH_KEYS = ("data_branch", "merge_branch")


def _check_key(key: str) -> None:
    if key not in KNOWN_KEYS:
        raise ValueError(f"Unknown configuration key '{key}' (known keys: {', '.join(KNOWN_KEYS)})")


def _check_branch(key: str, value: str, other: str) -> None:
    if not value:
        if key == "data_branch":
            raise ValueError("data_branch must not be empty")
        return
    if not pygit2.reference_is_valid_name(f"refs/heads/{value}"):
        raise ValueError(f"'{value}' is not a valid branch name")
    if value == other:
        raise ValueError("data_branch and merge_branch must be different branches")


@config_app.command
def set(key: str, value: str, global_: bool = False) -> None:
    """Set a configuration setting.

    An empty merge_branch switches the project to data-branch-only mode.

    Args:
        key: Configuration key
        value: Configuration value
        global_: If True, set in global config. If False, set in local config.
    """
    _check_key(key)
    config = get_config(use_global=global_)
    value = value.strip()
    if key in BRANCH_KEYS:
        other_key = "merge_branch" if key == "data_branch" else "data_branch"
        _check_branch(key, value, str(config.get(other_key, KNOWN_KEYS[other_key]) or ""))

    config.set(key, value)
    scope = "global" if global_ else "local"
    print(f"Set {key} = {value} ({scope})")
    if key == "merge_branch" and not value:
        print("Records will stay on the data branch only")


@config_app.command
def unset(key: str, global_: bool = False) -> None:
    """Unset a configuration setting."""
    _check_key(key)
    config = get_config(use_global=global_)
    config.unset(key)
    scope = "global" if global_ else "local"
    print(f"Unset {key} ({scope})")


@config_app.command
def get(key: str, global_: bool = False) -> None:
    """Get the value of a configuration setting, with global fallback unless --global."""
    _check_key(key)
    config = get_config(use_global=global_)
    if config.has(key):
        print(f"{key} = {config.get(key)}")
    elif KNOWN_KEYS[key] is not None:
        print(f"{key} is not set (default: {KNOWN_KEYS[key]})")
    else:
        print(f"{key} is not set")


@config_app.command(name="list")
def list_config(global_: bool = False) -> None:
    """List all configuration settings."""
    config = get_config(use_global=global_)
    settings = config.list()

    if not settings:
        scope = "global" if global_ else "local"
        print(f"No {scope} configuration settings")
        return

    scope = "Global" if global_ else "Configuration"
    print(f"{scope} settings:\n")
    for key, value in settings.items():
        marker = "" if key in KNOWN_KEYS else "  (unknown key, ignored)"
        print(f"{key} = {value}{marker}")
