"""
Status use case — aggregate engine, state and history for display.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from serversh.core.constants import ExitCode
from serversh.core.engine.engine import open_engine
from serversh.core.engine.registry import ModuleRegistry
from serversh.core.errors import ServerSHError
from serversh.core.models.module import ModuleDescriptor
from serversh.core.models.state import Checkpoint, ModuleRunState
from serversh.core.persistence.history import RunRecord


@dataclass
class StatusResult:
    """Aggregated installation status."""

    engine: dict = field(default_factory=dict)
    modules: dict[str, ModuleRunState] = field(default_factory=dict)
    checkpoints: list[Checkpoint] = field(default_factory=list)
    history: list[RunRecord] = field(default_factory=list)
    error: str | None = None
    exit_code: ExitCode = ExitCode.SUCCESS

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        return {
            **self.engine,
            "modules": {n: s.model_dump(mode="json") for n, s in self.modules.items()},
            "checkpoints": [
                {"id": c.id, "type": str(c.type), "description": c.description, "timestamp": c.timestamp}
                for c in self.checkpoints
            ],
            "history": [r.model_dump(mode="json") for r in self.history],
        }


@dataclass
class ModulesResult:
    """Registered modules with their recorded state."""

    modules: list[ModuleDescriptor] = field(default_factory=list)
    states: dict[str, str] = field(default_factory=dict)
    enabled: list[str] = field(default_factory=list)
    disabled: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    exit_code: ExitCode = ExitCode.SUCCESS

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        return {
            "modules": [
                {
                    "name": m.name,
                    "version": m.version,
                    "description": m.description,
                    "category": str(m.category),
                    "dependencies": list(m.dependencies) if m.dependencies is not None else None,
                    "state": self.states.get(m.name),
                    "enabled": m.name in self.enabled,
                    "disabled": m.name in self.disabled,
                }
                for m in self.modules
            ],
            "failures": self.failures,
        }


def get_status(
    config_path: Path,
    state_path: Path,
    modules_dir: Path | None = None,
    history_count: int = 5,
) -> StatusResult:
    """Collect engine status, module states, checkpoints and recent runs."""
    result = StatusResult()
    try:
        engine = open_engine(config_path, state_path, modules_dir)
        result.engine = engine.status()
        result.modules = engine.state.list_modules()
        result.checkpoints = engine.state.list_checkpoints()
    except ServerSHError as e:
        result.error = str(e)
        result.exit_code = e.exit_code
        return result

    result.history = engine.history.read_recent(history_count)
    return result


def list_modules(
    config_path: Path,
    state_path: Path,
    modules_dir: Path | None = None,
    registry: ModuleRegistry | None = None,
) -> ModulesResult:
    """Registered modules plus enabled/disabled flags and last state."""
    result = ModulesResult()
    try:
        engine = open_engine(config_path, state_path, modules_dir, registry=registry)
        result.modules = engine.registry.list()
        result.states = {n: str(s.state) for n, s in engine.state.list_modules().items()}
        result.enabled = engine.config.enabled_modules()
        result.disabled = engine.config.disabled_modules()
    except ServerSHError as e:
        result.error = str(e)
        result.exit_code = e.exit_code
        return result

    scan = engine.stats()["scan"]
    if scan:
        result.failures = scan["failures"]
    return result
