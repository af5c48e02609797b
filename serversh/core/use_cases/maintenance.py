"""
Maintenance use cases — checkpoints, rollback, profiles, cleanup.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from serversh.core.config.store import ConfigStore
from serversh.core.constants import ExitCode
from serversh.core.engine.engine import open_engine
from serversh.core.engine.registry import ModuleRegistry
from serversh.core.errors import ServerSHError
from serversh.core.persistence.state_file import StateStore

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceResult:
    """Outcome of a maintenance command."""

    message: str = ""
    data: dict = field(default_factory=dict)
    error: str | None = None
    exit_code: ExitCode = ExitCode.SUCCESS

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        return {"message": self.message, **self.data}


def _failed(e: ServerSHError) -> MaintenanceResult:
    return MaintenanceResult(error=str(e), exit_code=e.exit_code)


def create_checkpoint(config_path: Path, state_path: Path, description: str) -> MaintenanceResult:
    try:
        engine = open_engine(config_path, state_path)
        checkpoint_id = engine.create_checkpoint(description)
    except ServerSHError as e:
        return _failed(e)
    return MaintenanceResult(
        message=f"Checkpoint created: {checkpoint_id}",
        data={"checkpoint_id": checkpoint_id},
    )


def list_checkpoints(state_path: Path) -> MaintenanceResult:
    store = StateStore(state_path)
    try:
        checkpoints = store.list_checkpoints()
    except ServerSHError as e:
        return _failed(e)
    return MaintenanceResult(
        message=f"{len(checkpoints)} checkpoint(s)",
        data={
            "checkpoints": [
                {"id": c.id, "type": str(c.type), "description": c.description, "timestamp": c.timestamp}
                for c in checkpoints
            ]
        },
    )


def rollback(
    config_path: Path,
    state_path: Path,
    checkpoint_id: str | None = None,
    module: str | None = None,
    modules_dir: Path | None = None,
    registry: ModuleRegistry | None = None,
) -> MaintenanceResult:
    """Restore a checkpoint (state only) or roll back one module on the host."""
    try:
        engine = open_engine(config_path, state_path, modules_dir, registry=registry)
        if module:
            result = engine.rollback_module(module)
            return MaintenanceResult(
                message=f"Module rolled back: {module}",
                data={"module": module, "result": result.model_dump(mode="json")},
            )
        if not checkpoint_id:
            return MaintenanceResult(
                error="Nothing to roll back: give a checkpoint id or a module",
                exit_code=ExitCode.INVALID_ARGS,
            )
        engine.rollback_to_checkpoint(checkpoint_id)
    except ServerSHError as e:
        return _failed(e)
    return MaintenanceResult(
        message=f"Checkpoint restored: {checkpoint_id}",
        data={"checkpoint_id": checkpoint_id},
    )


def list_profiles(config_path: Path) -> MaintenanceResult:
    store = ConfigStore(config_path)
    profiles = store.list_profiles()
    return MaintenanceResult(
        message=f"{len(profiles)} profile(s)",
        data={"profiles": profiles, "directory": str(store.profiles_dir)},
    )


def create_profile(config_path: Path, name: str, description: str = "") -> MaintenanceResult:
    store = ConfigStore(config_path)
    try:
        path = store.create_profile(name, description)
    except ServerSHError as e:
        return _failed(e)
    return MaintenanceResult(message=f"Profile created: {path}", data={"path": str(path)})


def cleanup(config_path: Path, state_path: Path, days: int = 30) -> MaintenanceResult:
    """Remove old state/config backups and leftover temp files."""
    state_removed = StateStore(state_path).cleanup(days)
    config_removed = ConfigStore(config_path).cleanup(days)
    logger.info("Cleanup completed")
    return MaintenanceResult(
        message=f"Removed {state_removed + config_removed} old file(s)",
        data={"state_files_removed": state_removed, "config_files_removed": config_removed},
    )
