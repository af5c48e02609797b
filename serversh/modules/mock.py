"""
Mock module — universal test double for the Module contract.

Succeeds at every step by default. Individual steps can be configured to
fail, skip, raise, or sleep, and every call is recorded so tests can
assert on what the engine actually invoked.
"""

from __future__ import annotations

import time

from serversh.core.models.module import ModuleCategory
from serversh.core.models.result import StepResult
from serversh.modules.base import Module, ModuleContext, StepReturn


class MockModule(Module):
    """Configurable in-process module.

    Registered as an instance (``registry.register(MockModule(...))``),
    so the same object that recorded the calls is the one under test.
    """

    def __init__(
        self,
        module_name: str = "mock",
        dependencies: tuple[str, ...] | list[str] = (),
        version: str = "1.0.0",
        description: str = "Mock module",
        category: ModuleCategory | str = ModuleCategory.CUSTOM,
        context: ModuleContext | None = None,
    ):
        self.name = module_name
        self.version = version
        self.description = description
        self.category = category
        self.dependencies = tuple(dependencies)
        super().__init__(context)
        self._responses: dict[str, StepResult] = {}
        self._exceptions: dict[str, BaseException] = {}
        self._delays: dict[str, float] = {}
        self._calls: list[str] = []

    @property
    def calls(self) -> list[str]:
        """Step names in the order they were invoked."""
        return self._calls

    def called(self, step: str) -> bool:
        return step in self._calls

    def set_response(self, step: str, result: StepResult) -> None:
        self._responses[step] = result

    def set_failure(self, step: str, error: str = "Mock failure") -> None:
        """Configure a step to return a failed result."""
        self._responses[step] = StepResult.failure(error)

    def set_skip(self, step: str, reason: str = "Mock skip") -> None:
        self._responses[step] = StepResult.skip(reason)

    def set_exception(self, step: str, exc: BaseException) -> None:
        """Configure a step to raise."""
        self._exceptions[step] = exc

    def set_delay(self, step: str, seconds: float) -> None:
        self._delays[step] = seconds

    def reset(self) -> None:
        """Clear the call log and all configured behaviour."""
        self._calls.clear()
        self._responses.clear()
        self._exceptions.clear()
        self._delays.clear()

    def _step(self, step: str) -> StepReturn:
        self._calls.append(step)
        if step in self._delays:
            time.sleep(self._delays[step])
        if step in self._exceptions:
            raise self._exceptions[step]
        if step in self._responses:
            return self._responses[step]
        if step in ("cleanup", "rollback"):
            return StepResult.success(f"[mock] {step}")
        return StepResult.success(f"[mock] {step}", data={"mock": True})

    def validate_config(self) -> StepReturn:
        return self._step("validate_config")

    def pre_install(self) -> StepReturn:
        return self._step("pre_install")

    def install(self) -> StepReturn:
        return self._step("install")

    def post_install(self) -> StepReturn:
        return self._step("post_install")

    def verify(self) -> StepReturn:
        return self._step("verify")

    def cleanup(self) -> StepReturn:
        return self._step("cleanup")

    def rollback(self) -> StepReturn:
        return self._step("rollback")
