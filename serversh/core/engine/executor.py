"""
Module lifecycle runner — drives one module through its steps.

    validate_config → pre_install → install → post_install → verify

Each step is gated on the previous one. A module signals failure by
returning a failed StepResult, returning False, or raising; all three
end up as a failed ModuleOutcome. The runner never lets a module
exception escape.

Flow:
    module → step calls (with deadline) → StepResults → ModuleOutcome
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

from serversh.core.constants import ExitCode
from serversh.core.errors import ServerSHError
from serversh.core.models.result import StepResult
from serversh.core.models.state import ModuleStatus
from serversh.modules.base import Module

logger = logging.getLogger(__name__)

# Steps in which a module may ask to be skipped instead of run
_SKIPPABLE = ("validate_config", "pre_install", "install")


@dataclass
class ModuleOutcome:
    """Result of running one module's lifecycle."""

    name: str
    status: ModuleStatus = ModuleStatus.PENDING
    message: str = ""
    error: str | None = None
    failed_step: str | None = None
    exit_code: ExitCode = ExitCode.SUCCESS
    duration_s: float = 0.0
    steps: dict[str, StepResult] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is ModuleStatus.COMPLETED

    @property
    def failed(self) -> bool:
        return self.status is ModuleStatus.FAILED

    @property
    def skipped(self) -> bool:
        return self.status is ModuleStatus.SKIPPED

    def state_data(self) -> dict:
        """Payload stored with the module's state entry."""
        data: dict = {"duration": round(self.duration_s, 3)}
        if self.message:
            data["message"] = self.message
        if self.error:
            data["error"] = self.error
        if self.failed_step:
            data["failed_step"] = self.failed_step
        return data

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": str(self.status),
            "message": self.message,
            "error": self.error,
            "failed_step": self.failed_step,
            "duration_s": round(self.duration_s, 3),
            "steps": {k: v.model_dump(mode="json") for k, v in self.steps.items()},
        }


def call_step(module: Module, step: str, timeout: float | None = None) -> StepResult:
    """Invoke one lifecycle method and normalise its result.

    Args:
        module: The module object.
        step: Method name, e.g. ``"install"``.
        timeout: Deadline in seconds. ``None`` or 0 runs without one.
            On overrun the step fails; the worker thread is abandoned.

    Returns:
        StepResult — never raises for module errors.
    """
    method = getattr(module, step)

    def invoke() -> StepResult:
        try:
            return StepResult.coerce(method())
        except ServerSHError as e:
            logger.debug("Module %s raised in %s", module.get_name(), step, exc_info=True)
            return StepResult.failure(str(e), data={"exit_code": int(e.exit_code)})
        except Exception as e:
            logger.debug("Module %s raised in %s", module.get_name(), step, exc_info=True)
            return StepResult.failure(f"{type(e).__name__}: {e}")

    if not timeout:
        return invoke()

    holder: list[StepResult] = []
    worker = threading.Thread(
        target=lambda: holder.append(invoke()),
        name=f"serversh-{module.get_name()}-{step}",
        daemon=True,
    )
    worker.start()
    worker.join(timeout)
    if worker.is_alive() or not holder:
        return StepResult.failure(f"{step} timed out after {timeout:g}s")
    return holder[0]


def run_module(module: Module, name: str | None = None, step_timeout: float | None = None) -> ModuleOutcome:
    """Run the full lifecycle of a module.

    Args:
        module: A bound Module instance.
        name: Name to report (defaults to ``module.get_name()``).
        step_timeout: Per-step deadline in seconds (0/None disables).

    Returns:
        ModuleOutcome with status completed, failed, or skipped.
    """
    name = name or module.get_name()
    outcome = ModuleOutcome(name=name)
    start = time.monotonic()

    for step in ("validate_config", "pre_install", "install", "post_install", "verify"):
        result = call_step(module, step, step_timeout)
        outcome.steps[step] = result

        if result.skipped and step in _SKIPPABLE:
            outcome.status = ModuleStatus.SKIPPED
            outcome.message = result.message or f"skipped at {step}"
            break

        if result.failed:
            outcome.status = ModuleStatus.FAILED
            outcome.failed_step = step
            outcome.error = f"{step} failed: {result.error or 'unknown error'}"
            outcome.exit_code = _exit_code(step, result)
            if step == "install":
                _cleanup(module, name, step_timeout, outcome)
            break
    else:
        outcome.status = ModuleStatus.COMPLETED
        outcome.message = outcome.steps["install"].message

    outcome.duration_s = time.monotonic() - start

    status_marker = "✓" if outcome.ok else "✗" if outcome.failed else "⊘"
    logger.info(
        "%s %s → %s (%.1fs)%s",
        status_marker,
        name,
        outcome.status,
        outcome.duration_s,
        f": {outcome.error}" if outcome.error else "",
    )
    return outcome


def _exit_code(step: str, result: StepResult) -> ExitCode:
    # Errors raised from the taxonomy keep their own exit code
    code = result.data.get("exit_code")
    if isinstance(code, int) and code in list(ExitCode):
        return ExitCode(code)
    return ExitCode.CONFIG_ERROR if step == "validate_config" else ExitCode.MODULE_ERROR


def _cleanup(module: Module, name: str, timeout: float | None, outcome: ModuleOutcome) -> None:
    """Best-effort cleanup after a failed install. Never masks the failure."""
    result = call_step(module, "cleanup", timeout)
    outcome.steps["cleanup"] = result
    if result.failed:
        logger.warning("Cleanup of %s failed: %s", name, result.error)
    elif result.ok:
        logger.info("Cleanup of %s completed", name)
