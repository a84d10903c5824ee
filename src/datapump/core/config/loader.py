"""
Configuration loader for option files.

Loads YAML (or JSON, which YAML parses too) option files, merges command
line overrides on top and validates the result into TransferOptions.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from datapump.core.errors import ExitCode, FatalError

from .models import TransferOptions


_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


class ConfigError(FatalError):
    """Configuration loading or validation error."""

    exit_code = ExitCode.OPTIONS_INVALID

    def __init__(
        self,
        message: str,
        path: Path | None = None,
        details: str | None = None,
        exit_code: ExitCode | None = None,
    ):
        super().__init__(message, exit_code)
        self.path = path
        self.details = details


def _load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dictionary.

    Args:
        path: Path to the YAML file

    Returns:
        Parsed YAML contents

    Raises:
        ConfigError: If file cannot be found, read or parsed
    """
    if not path.exists():
        raise ConfigError(
            f"Options file not found: {path}",
            path=path,
            exit_code=ExitCode.OPTIONS_FILE_MISSING,
        )

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}", path=path, details=str(e)) from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}", path=path, details=str(e)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Options file {path} must contain a mapping", path=path)
    return data


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(data, str):
        return _ENV_PATTERN.sub(
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            data,
        )
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    return data


# =============================================================================
# Dotted Key Helpers
# =============================================================================


def flatten(tree: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten a nested option tree into dotted keys.

    ``{"run": {"step": 10}}`` becomes ``{"run.step": 10}``. Lists are
    kept as leaf values.
    """
    flat: dict[str, Any] = {}
    for key, value in tree.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            flat.update(flatten(value, name))
        else:
            flat[name] = value
    return flat


def inflate(flat: dict[str, Any]) -> dict[str, Any]:
    """Expand dotted keys back into a nested option tree."""
    tree: dict[str, Any] = {}
    for key, value in flat.items():
        parts = key.split(".")
        node = tree
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
    return tree


def parse_assignments(assignments: list[str]) -> dict[str, Any]:
    """Parse ``key=value`` strings from the command line.

    Values are parsed as YAML scalars so ``run.step=50`` yields an int
    and ``run.test=true`` a bool.

    Raises:
        ConfigError: If an assignment has no ``=``
    """
    flat: dict[str, Any] = {}
    for item in assignments:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"Expected key=value, got {item!r}")
        try:
            value = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            value = raw
        flat[key.strip()] = value
    return flat


def merge_trees(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge ``override`` onto ``base``; override wins on conflicts."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_trees(merged[key], value)
        else:
            merged[key] = value
    return merged


# =============================================================================
# Loading
# =============================================================================


def load_options(
    path: Path | str | None = None,
    overrides: dict[str, Any] | None = None,
    expand_env: bool = True,
) -> TransferOptions:
    """Load transfer options from a file and command line overrides.

    Args:
        path: Options file (YAML or JSON). None uses defaults only.
        overrides: Dotted-key values taking precedence over the file
        expand_env: Whether to expand environment variables in the file

    Returns:
        Validated TransferOptions instance

    Raises:
        ConfigError: If the file is missing or the options are invalid
    """
    data: dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        data = _load_yaml_file(path)
        if expand_env:
            data = _expand_env_vars(data)

    if overrides:
        data = merge_trees(data, inflate(overrides))

    try:
        return TransferOptions.model_validate(data)
    except ValidationError as e:
        where = f" in {path}" if path else ""
        raise ConfigError(
            f"Invalid options{where}",
            path=path if isinstance(path, Path) else None,
            details=str(e),
        ) from e


def validate_options(data: dict[str, Any]) -> list[str]:
    """Validate a raw option tree without raising.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors: list[str] = []
    try:
        TransferOptions.model_validate(data)
    except ValidationError as e:
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"{loc}: {error['msg']}")
    return errors
