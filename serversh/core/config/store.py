"""
Configuration store — layered key/value document with dotted-path access.

The document is YAML (or JSON when the file name ends in ``.json``). It is
loaded once, read through a per-key cache, and written back atomically by
the validated setters. The cache is keyed on the file's modification time:
an external edit that advances the mtime invalidates every cached entry.

Profiles are partial documents in ``<config dir>/profiles/<name>.yaml``
that can be deep-merged over the base document.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from serversh.core.config.defaults import DEFAULT_CONFIG, PROFILE_TEMPLATE
from serversh.core.config.validation import (
    ModulesSettings,
    ServershSettings,
    ValidationResult,
    format_errors,
    validate_config_values,
)
from serversh.core.constants import (
    MAX_CONFIG_FILE_SIZE,
    PROFILES_DIRNAME,
    REQUIRED_CONFIG_SECTIONS,
)
from serversh.core.errors import ConfigError, PermissionDeniedError
from serversh.core.persistence.files import atomic_write_text, backup_file, cleanup_directory

logger = logging.getLogger(__name__)

_MISSING = object()
_S = TypeVar("_S", bound=BaseModel)


def deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge ``overlay`` into a copy of ``base``.

    Mappings are merged key by key; any other value (lists included)
    in ``overlay`` replaces the one in ``base``.
    """
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _lookup(data: dict, key: str) -> Any:
    node: Any = data
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


class ConfigStore:
    """Configuration document with cached dotted-path reads."""

    def __init__(self, path: Path):
        self._path = Path(path)
        self._base: dict[str, Any] = {}
        self._data: dict[str, Any] = {}
        self._loaded = False
        self._loaded_mtime_ns = 0
        self._cache: dict[str, tuple[Any, int]] = {}
        self._overlays: list[tuple[str, dict]] = []
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def profiles_dir(self) -> Path:
        return self._path.parent / PROFILES_DIRNAME

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def applied_profiles(self) -> list[str]:
        return [name for name, _ in self._overlays]

    # ── Lifecycle ───────────────────────────────────────────────

    def init(self, force: bool = False) -> None:
        """Load the configuration, creating the default document if absent.

        Args:
            force: Overwrite an existing file with the defaults.
        """
        if force or not self._path.is_file():
            logger.info("Creating default configuration file: %s", self._path)
            self._write(copy.deepcopy(DEFAULT_CONFIG))
        self.load()
        logger.info("Configuration initialized (file: %s)", self._path)

    def load(self) -> dict:
        """(Re)read the document from disk and drop the cache.

        Raises:
            ConfigError: If the file is missing, too large, or malformed.
        """
        with self._lock:
            data = self._read_file(self._path)
            missing = [s for s in REQUIRED_CONFIG_SECTIONS if s not in data]
            if missing:
                raise ConfigError(
                    f"Missing required section(s) in {self._path}: {', '.join(missing)}"
                )

            self._base = data
            for _name, overlay in self._overlays:
                data = deep_merge(data, overlay)

            self._data = data
            self._loaded = True
            self._loaded_mtime_ns = self._mtime_ns()
            self._cache.clear()
            logger.debug("Configuration loaded from %s", self._path)
            return copy.deepcopy(self._data)

    def save(self) -> None:
        """Write the in-memory document (without profile overlays) to disk."""
        with self._lock:
            self._require_loaded()
            self._write(self._base)

    # ── Reads ───────────────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dotted path, e.g. ``"serversh.log_level"``."""
        with self._lock:
            self._require_loaded()
            self._refresh_if_stale()

            cached = self._cache.get(key)
            if cached is not None and cached[1] >= self._loaded_mtime_ns:
                value = cached[0]
            else:
                value = _lookup(self._data, key)
                self._cache[key] = (value, self._loaded_mtime_ns)

            if value is _MISSING:
                return default
            return copy.deepcopy(value)

    def has(self, key: str) -> bool:
        with self._lock:
            self._require_loaded()
            self._refresh_if_stale()
            return _lookup(self._data, key) is not _MISSING

    def as_dict(self) -> dict:
        with self._lock:
            self._require_loaded()
            self._refresh_if_stale()
            return copy.deepcopy(self._data)

    # ── Writes ──────────────────────────────────────────────────

    def set(self, key: str, value: Any) -> None:
        """Set a value by dotted path and persist the document.

        The change is validated before it is written: if it introduces a
        violation under ``key`` the file is left untouched.

        Raises:
            ConfigError: If the path crosses a non-mapping value or the
                new value fails validation.
        """
        with self._lock:
            self._require_loaded()
            document = self._read_file(self._path)
            _assign(document, key, value)

            violations = [
                e for e in validate_config_values(document).errors
                if _touches(e.split(":", 1)[0], key)
            ]
            if violations:
                raise ConfigError(f"Invalid value for {key}", errors=violations)

            logger.debug("Setting configuration: %s = %r", key, value)
            self._write(document)
            self.load()

    def module_config(self, module_name: str) -> dict:
        """The ``modules.<name>`` block of a module (empty if absent).

        Looked up as a single key, since module names may contain dots.
        """
        modules = self.get("modules", {})
        block = modules.get(module_name) if isinstance(modules, dict) else None
        return block if isinstance(block, dict) else {}

    def set_module_config(self, module_name: str, key: str, value: Any) -> None:
        """Set one key in a module's ``modules.<name>`` block and persist it."""
        with self._lock:
            self._require_loaded()
            document = self._read_file(self._path)
            modules = document.setdefault("modules", {})
            if not isinstance(modules, dict):
                raise ConfigError("Cannot set module config: 'modules' is not a mapping")
            block = modules.setdefault(module_name, {})
            if not isinstance(block, dict):
                raise ConfigError(f"Cannot set module config: '{module_name}' is not a mapping")
            block[key] = value

            logger.debug("Setting module configuration: %s[%s] = %r", module_name, key, value)
            self._write(document)
            self.load()

    def engine_settings(self) -> ServershSettings:
        """The ``serversh`` section as typed settings."""
        return self._settings(ServershSettings, "serversh")

    def modules_settings(self) -> ModulesSettings:
        """The ``modules`` section as typed settings."""
        return self._settings(ModulesSettings, "modules")

    def enabled_modules(self) -> list[str]:
        return list(self.get("modules.enabled", []) or [])

    def disabled_modules(self) -> list[str]:
        return list(self.get("modules.disabled", []) or [])

    def enable_module(self, module_name: str) -> None:
        """Add a module to the enabled list and remove it from the disabled list."""
        self._toggle(module_name, enable=True)
        logger.info("Module enabled: %s", module_name)

    def disable_module(self, module_name: str) -> None:
        """Add a module to the disabled list and remove it from the enabled list."""
        self._toggle(module_name, enable=False)
        logger.info("Module disabled: %s", module_name)

    def merge(self, path: Path) -> None:
        """Deep-merge another configuration file into this one and persist."""
        with self._lock:
            self._require_loaded()
            overlay = self._read_file(Path(path))
            merged = deep_merge(self._read_file(self._path), overlay)
            logger.info("Merging configuration from: %s", path)
            self._write(merged)
            self.load()

    # ── Validation ──────────────────────────────────────────────

    def validate_values(self) -> ValidationResult:
        """Range/type check every known setting, collecting all violations."""
        result = validate_config_values(self.as_dict())
        for error in result.errors:
            logger.error("Invalid configuration: %s", error)
        if result.valid:
            logger.debug("Configuration validation passed")
        return result

    def ensure_valid(self) -> None:
        """Raise ConfigError listing every violation, if there are any."""
        result = self.validate_values()
        if not result.valid:
            raise ConfigError(
                f"Configuration validation failed with {len(result.errors)} error(s)",
                errors=result.errors,
            )

    # ── Profiles ────────────────────────────────────────────────

    def create_profile(self, name: str, description: str = "") -> Path:
        """Write a profile skeleton to ``profiles/<name>.yaml``."""
        self.profiles_dir.mkdir(parents=True, exist_ok=True)
        path = self.profiles_dir / f"{name}.yaml"
        header = (
            f"# ServerSH configuration profile: {name}\n"
            f"# Description: {description}\n"
            f"# Created: {datetime.now(UTC).isoformat()}\n\n"
        )
        body = yaml.safe_dump(PROFILE_TEMPLATE, sort_keys=False, default_flow_style=False)
        atomic_write_text(path, header + body)
        logger.info("Profile created: %s", path)
        return path

    def list_profiles(self) -> list[str]:
        if not self.profiles_dir.is_dir():
            return []
        names = {p.stem for p in self.profiles_dir.glob("*.yaml")}
        names.update(p.stem for p in self.profiles_dir.glob("*.yml"))
        return sorted(names)

    def apply_profile(self, name: str, persist: bool = False) -> None:
        """Merge a named profile over the base document.

        Args:
            name: Profile name (file stem under the profiles directory).
            persist: Write the merged document to disk. Otherwise the
                profile stays an in-memory overlay re-applied on reload.

        Raises:
            ConfigError: If the profile does not exist or is malformed.
        """
        path = self._profile_path(name)
        if path is None:
            raise ConfigError(f"Profile not found: {name}")

        overlay = self._read_file(path, allow_empty=True)
        logger.info("Loading configuration profile: %s", name)
        with self._lock:
            if persist:
                self._write(deep_merge(self._read_file(self._path), overlay))
            else:
                self._overlays.append((name, overlay))
            self.load()

    # ── Reporting / maintenance ─────────────────────────────────

    def summary(self) -> dict:
        return {
            "file": str(self._path),
            "log_level": self.get("serversh.log_level", "info"),
            "parallel_jobs": self.get("serversh.parallel_jobs", 4),
            "timeout": self.get("serversh.timeout", 300),
            "module_timeout": self.get("serversh.module_timeout", 0),
            "ssh_port": self.get("security.ssh.port", 2222),
            "docker_enabled": self.get("container.docker.enabled", False),
            "enabled_modules": self.enabled_modules(),
            "profiles": self.applied_profiles,
        }

    def export(self, path: Path | None = None) -> str:
        """Serialize the effective document; optionally write it to ``path``."""
        content = self._dump(self.as_dict(), json_format=path is not None and path.suffix == ".json")
        if path is not None:
            atomic_write_text(Path(path), content)
        return content

    def cleanup(self, days: int = 30) -> int:
        """Remove configuration backups older than ``days``."""
        return cleanup_directory(self._path.parent, backup_days=days)

    # ── Internals ───────────────────────────────────────────────

    def _require_loaded(self) -> None:
        if not self._loaded:
            raise ConfigError("Configuration not loaded")

    def _mtime_ns(self) -> int:
        try:
            return self._path.stat().st_mtime_ns
        except OSError:
            return 0

    def _refresh_if_stale(self) -> None:
        if self._mtime_ns() > self._loaded_mtime_ns:
            logger.debug("Configuration file changed on disk, reloading")
            self.load()

    def _profile_path(self, name: str) -> Path | None:
        for suffix in (".yaml", ".yml"):
            candidate = self.profiles_dir / f"{name}{suffix}"
            if candidate.is_file():
                return candidate
        return None

    def _settings(self, model: type[_S], section: str) -> _S:
        data = self.get(section, {})
        if not isinstance(data, dict):
            raise ConfigError(f"{section}: expected a mapping, got {type(data).__name__}")
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ConfigError(
                f"Invalid configuration section: {section}",
                errors=format_errors(section, e),
            ) from e

    def _toggle(self, module_name: str, enable: bool) -> None:
        # Edit the lists stored on disk so profile overlays are not persisted
        with self._lock:
            self._require_loaded()
            document = self._read_file(self._path)
            modules = document.setdefault("modules", {})
            if not isinstance(modules, dict):
                raise ConfigError("Cannot update module lists: 'modules' is not a mapping")

            add, remove = ("enabled", "disabled") if enable else ("disabled", "enabled")
            target = list(modules.get(add) or [])
            if module_name not in target:
                target.append(module_name)
            modules[add] = target
            modules[remove] = [m for m in modules.get(remove) or [] if m != module_name]

            self._write(document)
            self.load()

    def _read_file(self, path: Path, allow_empty: bool = False) -> dict:
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")

        try:
            size = path.stat().st_size
            if size > MAX_CONFIG_FILE_SIZE:
                raise ConfigError(
                    f"Configuration file too large: {size} bytes (max: {MAX_CONFIG_FILE_SIZE})"
                )
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e

        try:
            data = json.loads(raw) if path.suffix == ".json" else yaml.safe_load(raw)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Invalid configuration syntax in {path}: {e}") from e

        if data is None and allow_empty:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Expected a mapping in {path}, got {type(data).__name__}")
        return data

    def _dump(self, data: dict, json_format: bool) -> str:
        if json_format:
            return json.dumps(data, indent=2, ensure_ascii=False) + "\n"
        return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)

    def _write(self, data: dict) -> None:
        try:
            backup_file(self._path)
            atomic_write_text(self._path, self._dump(data, self._path.suffix == ".json"))
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot write configuration file {self._path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to write configuration file {self._path}: {e}") from e
        self._cache.clear()


def _assign(document: dict, key: str, value: Any) -> None:
    parts = key.split(".")
    node = document
    for part in parts[:-1]:
        child = node.setdefault(part, {})
        if not isinstance(child, dict):
            raise ConfigError(f"Cannot set {key}: '{part}' is not a mapping")
        node = child
    node[parts[-1]] = value


def _touches(error_path: str, key: str) -> bool:
    """Whether a validation error at ``error_path`` concerns ``key``."""
    return (
        error_path == key
        or error_path.startswith(key + ".")
        or key.startswith(error_path + ".")
    )
