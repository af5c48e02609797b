"""
Module descriptor — registry metadata for a discovered module.

Descriptors are created at scan time and never mutated afterwards. The
registry keys them by ``name``; registering the same name again replaces
the old descriptor.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class ModuleCategory(StrEnum):
    """Broad grouping of a module, used for listing and filtering."""

    SYSTEM = "system"
    SECURITY = "security"
    CONTAINER = "container"
    MONITORING = "monitoring"
    APPLICATION = "application"
    NETWORK = "network"
    MANAGEMENT = "management"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: object) -> ModuleCategory:
        """Lenient conversion: unknown or empty values become CUSTOM."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.CUSTOM


class ModuleLocator(BaseModel):
    """Where a module's implementation lives.

    Either a file on disk (``path`` + ``class_name``) or a dotted import
    target (``target``, e.g. ``"pkg.mod:ClassName"``).
    """

    model_config = ConfigDict(frozen=True)

    path: str | None = None
    class_name: str = ""
    target: str | None = None

    @classmethod
    def from_file(cls, path: Path, class_name: str) -> ModuleLocator:
        return cls(path=str(path), class_name=class_name)

    @classmethod
    def from_target(cls, target: str) -> ModuleLocator:
        return cls(target=target)

    def __str__(self) -> str:
        if self.target:
            return self.target
        return f"{self.path}:{self.class_name}"


class ModuleDescriptor(BaseModel):
    """Identity record for a registered module."""

    model_config = ConfigDict(frozen=True)

    name: str                                   # hierarchical id, e.g. "container/docker"
    version: str = "unknown"
    description: str = "No description"
    category: ModuleCategory = ModuleCategory.CUSTOM
    # None = not statically known, resolved when the module is loaded
    dependencies: tuple[str, ...] | None = Field(default=())
    locator: ModuleLocator

    @property
    def dependencies_known(self) -> bool:
        return self.dependencies is not None
