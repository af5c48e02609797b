"""
Error taxonomy — every failure the engine reports maps to an exit code.

Callers catch ``ServerSHError`` at the edge (CLI, use cases) and turn
``exit_code`` into the process status. Inside the core, raise the most
specific subclass.
"""

from __future__ import annotations

from serversh.core.constants import ExitCode


class ServerSHError(Exception):
    """Base class for all orchestrator errors."""

    exit_code: ExitCode = ExitCode.GENERAL_ERROR


class ConfigError(ServerSHError):
    """Raised when configuration is invalid or missing."""

    exit_code = ExitCode.CONFIG_ERROR

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class ModuleError(ServerSHError):
    """A lifecycle step failed, or a module/dependency is unknown."""

    exit_code = ExitCode.MODULE_ERROR


class DependencyCycleError(ModuleError):
    """The requested modules form a dependency cycle."""

    def __init__(self, cycle: list[str]):
        super().__init__("Dependency cycle detected: " + " -> ".join(cycle))
        self.cycle = cycle


class StateError(ServerSHError):
    """The state document is malformed, oversized, or unwritable."""

    exit_code = ExitCode.STATE_ERROR


class LockError(ServerSHError):
    """Exclusive access to the state document was not obtained in time."""

    exit_code = ExitCode.LOCK_ERROR


class PermissionDeniedError(ServerSHError):
    """Insufficient privilege for the requested operation."""

    exit_code = ExitCode.PERMISSION_DENIED


class MissingDependencyError(ServerSHError):
    """A required external tool is not installed."""

    exit_code = ExitCode.MISSING_DEPS
