"""
Domain models — Pydantic types for the orchestrator.

All models are re-exported here for convenient access:

    from serversh.core.models import ModuleDescriptor, StateDocument, StepResult
"""

from serversh.core.models.module import ModuleCategory, ModuleDescriptor, ModuleLocator
from serversh.core.models.result import StepResult
from serversh.core.models.state import (
    Checkpoint,
    CheckpointType,
    ModuleRunState,
    ModuleStatus,
    RunError,
    RunMetadata,
    RunStatus,
    StateDocument,
    SystemInfo,
    can_transition,
)

__all__ = [
    "Checkpoint",
    "CheckpointType",
    # module.py
    "ModuleCategory",
    "ModuleDescriptor",
    "ModuleLocator",
    # state.py
    "ModuleRunState",
    "ModuleStatus",
    "RunError",
    "RunMetadata",
    "RunStatus",
    "StateDocument",
    # result.py
    "StepResult",
    "SystemInfo",
    "can_transition",
]
