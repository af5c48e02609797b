"""
Config check use case — validate the configuration and edit single keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from serversh.core.config.store import ConfigStore
from serversh.core.constants import ExitCode
from serversh.core.errors import ConfigError


@dataclass
class ConfigCheckResult:
    """Result of configuration validation."""

    valid: bool = False
    config_path: Path | None = None
    summary: dict = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "config_path": str(self.config_path) if self.config_path else None,
            "summary": self.summary,
            "errors": self.errors,
            "warnings": self.warnings,
        }


def check_config(config_path: Path, profile: str | None = None) -> ConfigCheckResult:
    """Load the configuration and report every invalid value.

    Args:
        config_path: Configuration document.
        profile: Optional profile to overlay before validating.
    """
    result = ConfigCheckResult(config_path=config_path)
    store = ConfigStore(config_path)

    try:
        store.load()
        if profile:
            store.apply_profile(profile)
    except ConfigError as e:
        result.errors.append(str(e))
        result.errors.extend(e.errors)
        return result

    validation = store.validate_values()
    result.errors.extend(validation.errors)
    result.warnings.extend(validation.warnings)
    result.valid = validation.valid
    if result.valid:
        result.summary = store.summary()
    return result


def parse_value(raw: str) -> Any:
    """Interpret a command-line value the way YAML would (``8`` → int)."""
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def get_config_value(config_path: Path, key: str) -> tuple[bool, Any]:
    """Return ``(found, value)`` for a dotted key.

    Raises:
        ConfigError: If the configuration cannot be loaded.
    """
    store = ConfigStore(config_path)
    store.load()
    if not store.has(key):
        return False, None
    return True, store.get(key)


def set_config_value(config_path: Path, key: str, raw_value: str) -> Any:
    """Validate and persist one value; returns the parsed value.

    Raises:
        ConfigError: If the configuration cannot be loaded or the value
            is invalid.
    """
    store = ConfigStore(config_path)
    store.load()
    value = parse_value(raw_value)
    store.set(key, value)
    return value


def toggle_module(config_path: Path, name: str, enabled: bool) -> ExitCode:
    """Enable or disable a module in the configuration."""
    store = ConfigStore(config_path)
    store.load()
    if enabled:
        store.enable_module(name)
    else:
        store.disable_module(name)
    return ExitCode.SUCCESS
