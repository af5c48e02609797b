"""
StateDocument — the single durable record of a provisioning run.

Serialized to ``state.json`` by the state store and reloaded before every
mutation. Module statuses, progress counters, accumulated errors and the
checkpoint history all live here.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from serversh.core.constants import SERVERSH_VERSION, STATE_SCHEMA_VERSION


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class ModuleStatus(StrEnum):
    """Lifecycle status of one module within a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLBACK = "rollback"

    @property
    def terminal(self) -> bool:
        return self in (ModuleStatus.COMPLETED, ModuleStatus.FAILED, ModuleStatus.SKIPPED)


# Legal status changes. Any status may go back to PENDING when a new run
# plans the module again.
MODULE_TRANSITIONS: dict[ModuleStatus, frozenset[ModuleStatus]] = {
    ModuleStatus.PENDING: frozenset({ModuleStatus.RUNNING, ModuleStatus.SKIPPED}),
    ModuleStatus.RUNNING: frozenset(
        {ModuleStatus.COMPLETED, ModuleStatus.FAILED, ModuleStatus.SKIPPED}
    ),
    ModuleStatus.COMPLETED: frozenset({ModuleStatus.ROLLBACK}),
    ModuleStatus.FAILED: frozenset({ModuleStatus.ROLLBACK}),
    ModuleStatus.SKIPPED: frozenset(),
    ModuleStatus.ROLLBACK: frozenset(),
}


def can_transition(current: ModuleStatus | None, new: ModuleStatus) -> bool:
    """Whether a module may move from ``current`` to ``new``."""
    if new is ModuleStatus.PENDING or current is None:
        return True
    return new in MODULE_TRANSITIONS[current]


class RunStatus(StrEnum):
    """Overall status of the state document."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class CheckpointType(StrEnum):
    PRE_INSTALL = "pre_install"
    POST_INSTALL = "post_install"
    PRE_MODULE = "pre_module"
    POST_MODULE = "post_module"
    ERROR = "error"
    MANUAL = "manual"


class SystemInfo(BaseModel):
    """Detected facts about the target host."""

    os: str = "unknown"
    version: str = "unknown"
    arch: str = "unknown"
    hostname: str = "unknown"
    kernel: str = "unknown"


class ModuleRunState(BaseModel):
    """Status entry for one module. Serialized under ``modules.<name>``."""

    state: ModuleStatus = ModuleStatus.PENDING
    updated: str = Field(default_factory=_now_iso)
    data: Any = None


class Checkpoint(BaseModel):
    """Immutable snapshot of the state document.

    ``state_snapshot`` is the serialized document at creation time, with
    its own ``checkpoints`` list reduced to checkpoint ids.
    """

    id: str
    type: CheckpointType = CheckpointType.MANUAL
    description: str = ""
    timestamp: str = Field(default_factory=_now_iso)
    modules_snapshot: dict[str, ModuleRunState] = Field(default_factory=dict)
    state_snapshot: dict[str, Any] = Field(default_factory=dict)


class RunError(BaseModel):
    """An error recorded against the run."""

    timestamp: str = Field(default_factory=_now_iso)
    message: str
    module: str | None = None


class RunMetadata(BaseModel):
    install_id: str = ""
    started_by: str = ""
    environment: str = "production"


class StateDocument(BaseModel):
    """Root state model — serialized to state.json."""

    # ── Schema ───────────────────────────────────────────────────
    version: str = STATE_SCHEMA_VERSION
    serversh_version: str = SERVERSH_VERSION

    # ── Timestamps ───────────────────────────────────────────────
    created: str = Field(default_factory=_now_iso)
    updated: str = Field(default_factory=_now_iso)

    # ── Host ─────────────────────────────────────────────────────
    system: SystemInfo = Field(default_factory=SystemInfo)

    # ── Progress ─────────────────────────────────────────────────
    modules: dict[str, ModuleRunState] = Field(default_factory=dict)
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    current_checkpoint: str | None = None
    current_step: int = 0
    total_steps: int = 0
    status: RunStatus = RunStatus.PENDING
    errors: list[RunError] = Field(default_factory=list)

    # ── Run metadata ─────────────────────────────────────────────
    metadata: RunMetadata = Field(default_factory=RunMetadata)

    def touch(self) -> None:
        """Update the updated timestamp."""
        self.updated = _now_iso()

    def set_module_state(
        self, name: str, status: ModuleStatus, data: Any = None
    ) -> ModuleRunState:
        """Replace the status entry for a module."""
        entry = ModuleRunState(state=status, data=data)
        self.modules[name] = entry
        return entry

    def module_status(self, name: str) -> ModuleStatus | None:
        entry = self.modules.get(name)
        return entry.state if entry else None

    def find_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        for checkpoint in self.checkpoints:
            if checkpoint.id == checkpoint_id:
                return checkpoint
        return None
