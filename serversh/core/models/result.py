"""
StepResult — the outcome of one Module Contract call.

Modules return these from every lifecycle step. The lifecycle runner
also builds them from plain booleans, ``None``, and raised exceptions,
so a module never has to construct one by hand.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class StepResult(BaseModel):
    """Result of a single module step (validate, install, verify, ...)."""

    status: Literal["ok", "skipped", "failed"] = "ok"
    message: str = ""
    error: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    @classmethod
    def success(cls, message: str = "", **kwargs: Any) -> StepResult:
        """Create a success result."""
        return cls(status="ok", message=message, **kwargs)

    @classmethod
    def failure(cls, error: str, **kwargs: Any) -> StepResult:
        """Create a failure result."""
        return cls(status="failed", error=error, **kwargs)

    @classmethod
    def skip(cls, reason: str = "", **kwargs: Any) -> StepResult:
        """Create a skip result. The module ends in the ``skipped`` state."""
        return cls(status="skipped", message=reason, **kwargs)

    @classmethod
    def coerce(cls, value: Any) -> StepResult:
        """Normalise whatever a module returned into a StepResult.

        ``None`` and ``True`` mean success, ``False`` means failure.
        """
        if isinstance(value, StepResult):
            return value
        if value is None or value is True:
            return cls.success()
        if value is False:
            return cls.failure("step returned False")
        raise TypeError(f"Unsupported step result type: {type(value).__name__}")
