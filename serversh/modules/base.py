"""
Module base — the contract between the engine and provisioning modules.

Every module the engine installs implements this interface. The engine
only talks to modules through these methods and never inspects their
internals.

A module file on disk looks like::

    from serversh.modules.base import Module

    class Docker(Module):
        name = "container/docker"
        version = "1.0.0"
        description = "Docker engine"
        category = "container"
        dependencies = ("system/update",)

        def install(self):
            ...

        def verify(self):
            ...

Step methods may return a ``StepResult``, ``True``/``False``, or ``None``
(success). Raising is also treated as a failed step.
"""

from __future__ import annotations

import logging
import shutil
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from serversh.core.config.store import ConfigStore
from serversh.core.errors import MissingDependencyError
from serversh.core.models.module import ModuleCategory
from serversh.core.models.result import StepResult

StepReturn = StepResult | bool | None


class ModuleContext(BaseModel):
    """Everything a module needs while it runs.

    This is the module's view of the world: its own config block, the
    (read-only) configuration store, dry-run mode, and a logger named
    after the module.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    module_name: str
    config: dict[str, Any] = Field(default_factory=dict)
    config_store: ConfigStore | None = None
    dry_run: bool = False
    logger: logging.Logger = Field(
        default_factory=lambda: logging.getLogger("serversh.modules")
    )

    @classmethod
    def for_module(
        cls,
        name: str,
        config_store: ConfigStore | None = None,
        dry_run: bool = False,
    ) -> ModuleContext:
        config = config_store.module_config(name) if config_store and config_store.loaded else {}
        return cls(
            module_name=name,
            config=config,
            config_store=config_store,
            dry_run=dry_run,
            logger=logging.getLogger(f"serversh.modules.{name.replace('/', '.')}"),
        )

    def setting(self, key: str, default: Any = None) -> Any:
        """Shortcut for a key in the module's own config block."""
        return self.config.get(key, default)


class Module(ABC):
    """Abstract base class for all provisioning modules.

    To create a new module:
        1. Subclass Module
        2. Set name, version, description (and optionally category,
           dependencies)
        3. Implement install and verify; override optional hooks as needed
        4. Drop the file into the modules directory
    """

    name: str = ""
    version: str = "unknown"
    description: str = "No description"
    category: ModuleCategory | str = ModuleCategory.CUSTOM
    dependencies: tuple[str, ...] = ()

    def __init__(self, context: ModuleContext | None = None):
        self.context = context or ModuleContext(module_name=self.name)

    def bind(self, context: ModuleContext) -> None:
        """Attach the run context before the lifecycle starts."""
        self.context = context

    @property
    def logger(self) -> logging.Logger:
        return self.context.logger

    # ── Metadata ────────────────────────────────────────────────

    def get_name(self) -> str:
        return self.name

    def get_version(self) -> str:
        return self.version

    def get_description(self) -> str:
        return self.description

    def get_category(self) -> ModuleCategory:
        return ModuleCategory.parse(self.category)

    def get_dependencies(self) -> list[str]:
        return list(self.dependencies)

    # ── Lifecycle ───────────────────────────────────────────────

    def validate_config(self) -> StepReturn:
        """Check the module's configuration before anything runs."""
        return StepResult.success()

    def pre_install(self) -> StepReturn:
        return StepResult.success()

    @abstractmethod
    def install(self) -> StepReturn:
        """Apply the module's effect to the host."""

    def post_install(self) -> StepReturn:
        return StepResult.success()

    @abstractmethod
    def verify(self) -> StepReturn:
        """Confirm the installed effect is in place."""

    def cleanup(self) -> StepReturn:
        """Best-effort undo of a partial install. Called after install fails."""
        return StepResult.skip("cleanup not implemented")

    def rollback(self) -> StepReturn:
        """Undo a completed install on the host."""
        return StepResult.skip("rollback not implemented")

    # ── Helpers ─────────────────────────────────────────────────

    def require_commands(self, *commands: str) -> None:
        """Fail the current step unless every command is on ``PATH``.

        Raises:
            MissingDependencyError: Naming each missing command.
        """
        missing = [c for c in commands if shutil.which(c) is None]
        if missing:
            raise MissingDependencyError(
                f"{self.name} requires missing command(s): {', '.join(missing)}"
            )

    # ── Introspection ───────────────────────────────────────────

    def get_status(self) -> dict[str, Any]:
        return {"name": self.name, "version": self.version}

    def get_logs(self) -> list[str]:
        return []

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
