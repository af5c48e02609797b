"""
Configuration value checks.

Each known section is described by a Pydantic model. Validation runs
every model against its section and collects *all* violations, so the
operator sees the full list in one pass instead of fixing them one at a
time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

LOG_LEVELS = ("debug", "info", "warn", "error", "fatal")


class ServershSettings(BaseModel):
    """The ``serversh`` section — engine settings."""

    model_config = ConfigDict(extra="allow")

    log_level: str = "info"
    parallel_jobs: int = Field(default=4, ge=1, le=16)
    timeout: int = Field(default=300, ge=60, le=3600)
    module_timeout: int = Field(default=1800, ge=0, le=86400)

    @field_validator("log_level", mode="before")
    @classmethod
    def _check_log_level(cls, value: Any) -> str:
        text = str(value).strip().lower()
        # Numeric levels 0-4 are accepted as aliases
        if text in LOG_LEVELS or text in ("0", "1", "2", "3", "4"):
            return text
        raise ValueError(f"must be one of {', '.join(LOG_LEVELS)} or 0-4")


class ModulesSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    enabled: list[str] = Field(default_factory=list)
    disabled: list[str] = Field(default_factory=list)
    auto_dependencies: bool = True
    fail_fast: bool = True


class SshSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    port: int = Field(default=2222, ge=1, le=65535)


class DockerDaemonSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    mtu: int = Field(default=1500, ge=576, le=9000)


@dataclass
class ValidationResult:
    """Outcome of ``ConfigStore.validate_values()``."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {"valid": self.valid, "errors": self.errors, "warnings": self.warnings}


def format_errors(prefix: str, error: ValidationError) -> list[str]:
    """One ``<prefix>.<field>: <message>`` line per pydantic error."""
    lines = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"])
        lines.append(f"{prefix}.{loc}: {err['msg']} (got {err.get('input')!r})")
    return lines


def _section(data: dict, dotted: str) -> Any:
    node: Any = data
    for part in dotted.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def _check(result: ValidationResult, model: type[BaseModel], data: dict, prefix: str) -> None:
    section = _section(data, prefix)
    if section is None:
        return
    if not isinstance(section, dict):
        result.errors.append(f"{prefix}: expected a mapping, got {type(section).__name__}")
        return
    try:
        model.model_validate(section)
    except ValidationError as e:
        result.errors.extend(format_errors(prefix, e))


def validate_config_values(data: dict) -> ValidationResult:
    """Validate known settings in a configuration document.

    Args:
        data: The full configuration document.

    Returns:
        ValidationResult listing every violation found.
    """
    result = ValidationResult()

    _check(result, ServershSettings, data, "serversh")
    _check(result, ModulesSettings, data, "modules")
    _check(result, SshSettings, data, "security.ssh")

    if _section(data, "container.docker.enabled") is True:
        _check(result, DockerDaemonSettings, data, "container.docker.daemon_config")

    modules = _section(data, "modules")
    if isinstance(modules, dict):
        enabled = modules.get("enabled") or []
        disabled = modules.get("disabled") or []
        if isinstance(enabled, list) and isinstance(disabled, list):
            for name in sorted(set(enabled) & set(disabled)):
                result.warnings.append(f"Module '{name}' is both enabled and disabled")

    return result
