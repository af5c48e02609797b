"""
Install use case — initialize the engine and run the selected modules.

This is the top-level flow behind ``serversh install``: it loads config
and state, registers modules, optionally applies a profile, and then
validates, plans, or executes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from serversh.core.constants import ExitCode
from serversh.core.engine.engine import Engine, RunReport, open_engine, stop_on_signals
from serversh.core.engine.registry import ModuleRegistry
from serversh.core.errors import ServerSHError
from serversh.core.models.state import RunStatus

logger = logging.getLogger(__name__)


@dataclass
class InstallResult:
    """Result of an install request."""

    report: RunReport | None = None
    plan: list[str] = field(default_factory=list)
    validate_only: bool = False
    already_completed: bool = False
    error: str | None = None
    errors: list[str] = field(default_factory=list)
    exit_code: ExitCode = ExitCode.SUCCESS

    def to_dict(self) -> dict:
        result: dict = {}
        if self.error:
            result["error"] = self.error
            if self.errors:
                result["errors"] = self.errors
            result["exit_code"] = int(self.exit_code)
            return result

        if self.already_completed:
            result["status"] = "already_completed"
        elif self.validate_only:
            result["status"] = "valid"
            result["plan"] = self.plan
        if self.report:
            result["report"] = self.report.to_dict()
        result["exit_code"] = int(self.exit_code)
        return result


def run_install(
    config_path: Path,
    state_path: Path,
    modules_dir: Path | None = None,
    modules: list[str] | None = None,
    parallel: int | None = None,
    force: bool = False,
    resume: bool = False,
    dry_run: bool = False,
    validate_only: bool = False,
    profile: str | None = None,
    registry: ModuleRegistry | None = None,
) -> InstallResult:
    """Install modules on this host.

    Args:
        config_path: Configuration document.
        state_path: State document.
        modules_dir: Directory of module files to register.
        modules: Module names to install. None = configured selection.
        parallel: Run in dependency waves with this many workers.
        force: Run even if a previous install completed.
        resume: Skip modules that already completed.
        dry_run: Plan only.
        validate_only: Validate configuration and resolution, then stop.
        profile: Configuration profile to overlay for this run.
        registry: Optional pre-populated registry.

    Returns:
        InstallResult; errors are reported in it, never raised.
    """
    result = InstallResult(validate_only=validate_only)

    try:
        engine = open_engine(config_path, state_path, modules_dir, registry=registry)
        if profile:
            engine.config.apply_profile(profile)

        if validate_only:
            engine.config.ensure_valid()
            result.plan = engine.plan(modules)
            logger.info("Validation complete - all checks passed")
            return result

        if not (force or resume or dry_run) and _previous_run_completed(engine):
            logger.info("Installation already completed. Use --force to reinstall.")
            result.already_completed = True
            return result

        with stop_on_signals(engine):
            report = engine.start(
                modules,
                parallel=parallel is not None,
                max_concurrency=parallel,
                resume=resume,
                dry_run=dry_run,
            )
    except ServerSHError as e:
        result.error = str(e)
        result.errors = list(getattr(e, "errors", []))
        result.exit_code = e.exit_code
        return result

    result.report = report
    result.plan = report.order
    result.exit_code = report.exit_code
    return result


def _previous_run_completed(engine: Engine) -> bool:
    return engine.state.get("status", "pending") == str(RunStatus.COMPLETED)
