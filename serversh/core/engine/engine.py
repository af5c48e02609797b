"""
Engine — the central orchestration loop.

The engine owns one registry, one configuration store and one state
store, all by reference and all created per instance, so several engines
can coexist in one process.

Flow:
    init → select modules → resolve order → execute (sequential or waves)
         → persist module states → checkpoints → report
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from serversh.core.config.store import ConfigStore
from serversh.core.constants import (
    SERVERSH_VERSION,
    TIMEOUT_STATE_OPERATION,
    ExitCode,
)
from serversh.core.engine.executor import ModuleOutcome, call_step, run_module
from serversh.core.engine.registry import ModuleRegistry, ScanResult
from serversh.core.engine.resolver import compute_waves, resolve
from serversh.core.errors import ConfigError, ModuleError, ServerSHError
from serversh.core.models.result import StepResult
from serversh.core.models.state import CheckpointType, ModuleStatus, RunStatus
from serversh.core.persistence.history import RunHistory, RunRecord
from serversh.core.persistence.state_file import StateStore
from serversh.core.system_info import detect_system
from serversh.modules.base import ModuleContext

logger = logging.getLogger(__name__)

_DEPENDENCY_FAILED = "dependency failed"


@dataclass
class RunReport:
    """Result of one ``Engine.start()`` call."""

    install_id: str = ""
    status: RunStatus = RunStatus.PENDING
    mode: str = "sequential"
    dry_run: bool = False
    requested: list[str] = field(default_factory=list)
    order: list[str] = field(default_factory=list)
    waves: list[list[str]] = field(default_factory=list)
    outcomes: dict[str, ModuleOutcome] = field(default_factory=dict)
    already_completed: list[str] = field(default_factory=list)
    checkpoints: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_s: float = 0.0

    @property
    def total(self) -> int:
        return len(self.order)

    @property
    def completed(self) -> list[str]:
        return [n for n, o in self.outcomes.items() if o.ok]

    @property
    def failed(self) -> list[str]:
        return [n for n, o in self.outcomes.items() if o.failed]

    @property
    def skipped(self) -> list[str]:
        return [n for n, o in self.outcomes.items() if o.skipped]

    @property
    def pending(self) -> list[str]:
        """Planned modules that never ran."""
        done = set(self.outcomes) | set(self.already_completed)
        return [n for n in self.order if n not in done]

    @property
    def exit_code(self) -> ExitCode:
        if self.status in (RunStatus.COMPLETED, RunStatus.PENDING):
            return ExitCode.SUCCESS
        for name in self.failed:
            return self.outcomes[name].exit_code
        if self.status is RunStatus.STOPPED:
            return ExitCode.GENERAL_ERROR
        return ExitCode.MODULE_ERROR

    def to_dict(self) -> dict:
        return {
            "install_id": self.install_id,
            "status": str(self.status),
            "mode": self.mode,
            "dry_run": self.dry_run,
            "order": self.order,
            "waves": self.waves,
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "pending": self.pending,
            "already_completed": self.already_completed,
            "checkpoints": self.checkpoints,
            "errors": self.errors,
            "duration_s": round(self.duration_s, 3),
            "modules": {n: o.to_dict() for n, o in self.outcomes.items()},
        }


class Engine:
    """Provisioning engine.

    Usage::

        engine = Engine()
        engine.init(config_path, state_path, modules_dir)
        report = engine.start(["container/docker"])
    """

    def __init__(self, registry: ModuleRegistry | None = None):
        self.registry = registry or ModuleRegistry()
        self._config: ConfigStore | None = None
        self._state: StateStore | None = None
        self._history: RunHistory | None = None

        self._initialized = False
        self._running = False
        self._paused = False
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._futures: list[Future] = []

        self._order: list[str] = []
        self._timers: dict[str, float] = {}
        self._current: set[str] = set()
        self._scan: ScanResult | None = None

    # ── Properties ──────────────────────────────────────────────

    @property
    def config(self) -> ConfigStore:
        if self._config is None:
            raise ServerSHError("Engine not initialized")
        return self._config

    @property
    def state(self) -> StateStore:
        if self._state is None:
            raise ServerSHError("Engine not initialized")
        return self._state

    @property
    def history(self) -> RunHistory:
        if self._history is None:
            raise ServerSHError("Engine not initialized")
        return self._history

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def execution_order(self) -> list[str]:
        return list(self._order)

    @property
    def timers(self) -> dict[str, float]:
        return dict(self._timers)

    # ── Lifecycle ───────────────────────────────────────────────

    def init(
        self,
        config_path: Path,
        state_path: Path,
        modules_dir: Path | None = None,
        lock_timeout: float = TIMEOUT_STATE_OPERATION,
    ) -> None:
        """Load configuration and state, then register modules.

        Calling it again on an initialized engine only logs a warning.
        """
        if self._initialized:
            logger.warning("Engine already initialized")
            return

        logger.info("Initializing ServerSH Engine (v%s)", SERVERSH_VERSION)

        config = ConfigStore(Path(config_path))
        config.init()

        state = StateStore(
            Path(state_path),
            lock_timeout=lock_timeout,
            module_filter=self.registry.__contains__,
        )
        state.init(detect_system())

        if modules_dir is not None:
            if Path(modules_dir).is_dir():
                self._scan = self.registry.register_all(Path(modules_dir))
            else:
                logger.warning("Modules directory not found: %s", modules_dir)

        self._config = config
        self._state = state
        self._history = RunHistory(state_dir=state.path.parent)
        self._initialized = True
        logger.info("ServerSH Engine initialized (%d modules registered)", len(self.registry))

    def select_modules(self, names: list[str] | None = None) -> list[str]:
        """Modules a run should request, before dependency expansion.

        Explicit names win (unregistered ones are skipped with a
        warning). Otherwise ``modules.enabled`` is used, or every
        registered module if that list is empty; ``modules.disabled``
        is removed from that default selection.
        """
        if names:
            selected = []
            for name in names:
                if name in self.registry:
                    selected.append(name)
                else:
                    logger.warning("Module not registered, skipping: %s", name)
            return list(dict.fromkeys(selected))

        enabled = self.config.enabled_modules()
        if enabled:
            selected = [n for n in enabled if n in self.registry]
            for name in enabled:
                if name not in self.registry:
                    logger.warning("Enabled module not registered, skipping: %s", name)
        else:
            selected = self.registry.names()

        disabled = set(self.config.disabled_modules())
        return [n for n in dict.fromkeys(selected) if n not in disabled]

    def plan(self, names: list[str] | None = None) -> list[str]:
        """Select and resolve without running anything."""
        self._require_initialized()
        requested = self.select_modules(names)
        auto = self.config.modules_settings().auto_dependencies
        return resolve(requested, self.registry, auto_dependencies=auto)

    def start(
        self,
        names: list[str] | None = None,
        parallel: bool = False,
        max_concurrency: int | None = None,
        resume: bool = False,
        dry_run: bool = False,
    ) -> RunReport:
        """Run the selected modules.

        Args:
            names: Modules to install. None means the configured selection.
            parallel: Run dependency waves concurrently.
            max_concurrency: Worker bound for parallel mode. Defaults to
                ``serversh.parallel_jobs``.
            resume: Leave modules that already completed alone.
            dry_run: Resolve and report the plan; change nothing.

        Raises:
            ConfigError: Configuration values are invalid.
            ModuleError: Resolution failed (unknown dependency, cycle).
            StateError / LockError: The state document could not be
                read or written. These abort the run.
            KeyboardInterrupt: Re-raised after the run is recorded as
                stopped.
        """
        self._require_initialized()
        if self._running:
            raise ServerSHError("Engine already running")

        report = RunReport(
            install_id=self.state.load().metadata.install_id,
            mode="parallel" if parallel else "sequential",
            dry_run=dry_run,
            requested=list(names or []),
        )

        if dry_run:
            report.order = self._order = self.plan(names)
            report.waves = compute_waves(report.order, self.registry.dependencies_of)
            logger.info("[dry-run] Execution order: %s", ", ".join(report.order) or "(none)")
            return report

        started = time.monotonic()
        self._running = True
        self._paused = False
        self._stop_event.clear()
        self._timers.clear()
        logger.info("Starting ServerSH Engine")

        try:
            self.state.set("status", str(RunStatus.RUNNING))
            report.checkpoints.append(
                self.state.create_checkpoint("Engine start", CheckpointType.PRE_INSTALL)
            )

            try:
                self.config.ensure_valid()
                settings = self.config.engine_settings()
                fail_fast = self.config.modules_settings().fail_fast
                report.order = self._order = self.plan(names)
            except (ConfigError, ModuleError) as e:
                report.errors.append(str(e))
                report.errors.extend(getattr(e, "errors", []))
                self._finish(report, RunStatus.FAILED, started)
                raise

            self._prepare(report, resume)

            if max_concurrency is None:
                max_concurrency = settings.parallel_jobs
            max_concurrency = max(1, max_concurrency)
            step_timeout = float(settings.module_timeout)

            try:
                if parallel:
                    report.waves = compute_waves(self._to_run(report), self.registry.dependencies_of)
                    self._execute_parallel(report, max_concurrency, fail_fast, step_timeout)
                else:
                    self._execute_sequential(report, fail_fast, step_timeout)
            except KeyboardInterrupt:
                logger.warning("Interrupted, recording run as stopped")
                self._stop_event.set()
                self._interrupt(report)
                self._finish(report, RunStatus.STOPPED, started)
                raise

            if self._stop_event.is_set():
                final = RunStatus.STOPPED
            elif report.failed:
                final = RunStatus.FAILED
            else:
                final = RunStatus.COMPLETED
            self._finish(report, final, started)
        finally:
            self._running = False
            self._paused = False
            self._futures = []
            self._current.clear()

        return report

    def stop(self) -> None:
        """Request termination of the current run.

        Queued parallel tasks are cancelled; module code that is already
        running is not interrupted.
        """
        if not self._running:
            logger.warning("Engine not running")
            return

        logger.info("Stopping ServerSH Engine")
        self.request_stop()
        with self._lock:
            cancelled = sum(1 for f in self._futures if f.cancel())
        if cancelled:
            logger.info("Cancelled %d queued module task(s)", cancelled)
        self.state.set("status", str(RunStatus.STOPPED))
        self._paused = False

    def request_stop(self) -> None:
        """Ask the run loop to stop before starting another module.

        Only sets a flag, so it is safe to call from a signal handler.
        The run records status ``stopped`` when it winds down.
        """
        self._stop_event.set()

    def pause(self) -> str | None:
        """Mark the run paused after taking a checkpoint.

        Only the recorded status changes; running module code keeps going.

        Returns:
            The checkpoint id, or None if there was nothing to pause.
        """
        if not self._running:
            logger.warning("Engine not running")
            return None
        if self._paused:
            logger.warning("Engine already paused")
            return None

        logger.info("Pausing ServerSH Engine")
        checkpoint_id = self.create_checkpoint("Engine paused", CheckpointType.MANUAL)
        self.state.set("status", str(RunStatus.PAUSED))
        self._paused = True
        return checkpoint_id

    def resume(self) -> None:
        if not self._running:
            raise ServerSHError("Engine not running, cannot resume")
        if not self._paused:
            logger.warning("Engine not paused")
            return
        logger.info("Resuming ServerSH Engine")
        self.state.set("status", str(RunStatus.RUNNING))
        self._paused = False

    def cleanup(self) -> None:
        """Stop if running and forget registry, plan and timings."""
        logger.info("Cleaning up ServerSH Engine")
        if self._running:
            self.stop()
        self.registry.clear()
        self._order = []
        self._timers.clear()
        self._initialized = False
        self._paused = False

    # ── Checkpoints / rollback ──────────────────────────────────

    def create_checkpoint(
        self,
        description: str,
        checkpoint_type: CheckpointType = CheckpointType.MANUAL,
    ) -> str:
        self._require_initialized()
        return self.state.create_checkpoint(description, checkpoint_type)

    def rollback_to_checkpoint(self, checkpoint_id: str) -> None:
        """Restore the state document from a checkpoint.

        Only the recorded state is reverted; host changes made by modules
        stay in place. Use ``rollback_module`` to undo those.
        """
        self._require_initialized()
        logger.info("Rolling back to checkpoint: %s", checkpoint_id)
        self.state.restore_checkpoint(checkpoint_id)

    def rollback_module(self, name: str) -> StepResult:
        """Call a module's own ``rollback()`` and mark it rolled back.

        Raises:
            ModuleError: The module is unknown, was never run, does not
                implement rollback, or its rollback failed.
        """
        self._require_initialized()
        if name not in self.registry:
            raise ModuleError(f"Module not registered: {name}")

        status = self.state.get_module_state(name)
        if status not in (ModuleStatus.COMPLETED, ModuleStatus.FAILED):
            raise ModuleError(f"Module {name} cannot be rolled back from state {status}")

        module = self.registry.instantiate(name)
        module.bind(ModuleContext.for_module(name, self.config))
        result = call_step(module, "rollback", self._step_timeout())
        if result.skipped:
            raise ModuleError(f"Module {name} does not support rollback")
        if result.failed:
            self.state.record_error(f"rollback failed: {result.error}", module=name)
            raise ModuleError(f"Rollback of {name} failed: {result.error}")

        self.state.set_module_state(name, ModuleStatus.ROLLBACK, {"message": result.message})
        logger.info("Module rolled back: %s", name)
        return result

    # ── Reporting ───────────────────────────────────────────────

    def status(self) -> dict:
        info: dict = {
            "version": SERVERSH_VERSION,
            "initialized": self._initialized,
            "running": self._running,
            "paused": self._paused,
            "registered_modules": len(self.registry),
            "execution_order": list(self._order),
            "current_modules": sorted(self._current),
        }
        if self._state is not None:
            info["state"] = self._state.summary()
        if self._config is not None:
            info["config"] = self._config.summary()
        return info

    def stats(self) -> dict:
        return {
            "total_modules": len(self.registry),
            "execution_order": len(self._order),
            "timers": {n: round(t, 3) for n, t in self._timers.items()},
            "scan": self._scan.to_dict() if self._scan else None,
        }

    # ── Internals ───────────────────────────────────────────────

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise ServerSHError("Engine not initialized")

    def _step_timeout(self) -> float:
        return float(self.config.engine_settings().module_timeout)

    def _prepare(self, report: RunReport, resume: bool) -> None:
        """Reset planned modules to pending and set progress counters."""
        with self.state.update() as document:
            for name in report.order:
                if resume and document.module_status(name) is ModuleStatus.COMPLETED:
                    report.already_completed.append(name)
                    continue
                document.set_module_state(name, ModuleStatus.PENDING)
            document.total_steps = len(report.order)
            document.current_step = len(report.already_completed)

        if report.already_completed:
            logger.info("Resuming: already completed %s", ", ".join(report.already_completed))

    def _interrupt(self, report: RunReport) -> None:
        """Fail every module the interrupted run left marked running."""
        with self.state.update() as document:
            for name in report.order:
                if name in report.outcomes:
                    continue
                if document.module_status(name) is not ModuleStatus.RUNNING:
                    continue
                outcome = ModuleOutcome(
                    name=name,
                    status=ModuleStatus.FAILED,
                    error="interrupted",
                    exit_code=ExitCode.GENERAL_ERROR,
                )
                document.set_module_state(name, ModuleStatus.FAILED, outcome.state_data())
                report.outcomes[name] = outcome
                logger.error("✗ %s → failed: interrupted", name)

    def _to_run(self, report: RunReport) -> list[str]:
        done = set(report.already_completed)
        return [n for n in report.order if n not in done]

    def _blocked_by(self, name: str, report: RunReport) -> list[str]:
        with self._lock:
            return [
                d for d in self.registry.dependencies_of(name)
                if d in report.outcomes and not report.outcomes[d].ok
            ]

    def _skip(self, name: str, report: RunReport, blocked_by: list[str]) -> None:
        message = f"{_DEPENDENCY_FAILED}: {', '.join(blocked_by)}"
        outcome = ModuleOutcome(name=name, status=ModuleStatus.SKIPPED, message=message)
        self.state.set_module_state(name, ModuleStatus.SKIPPED, outcome.state_data())
        self._advance()
        with self._lock:
            report.outcomes[name] = outcome
        logger.info("⊘ %s → skipped (%s)", name, message)

    def _execute_one(self, name: str, report: RunReport, step_timeout: float) -> ModuleOutcome:
        with self._lock:
            self._current.add(name)
        try:
            self.state.set_module_state(name, ModuleStatus.RUNNING)
            logger.info("Executing module: %s", name)

            try:
                module = self.registry.instantiate(name)
            except ModuleError as e:
                outcome = ModuleOutcome(
                    name=name,
                    status=ModuleStatus.FAILED,
                    error=str(e),
                    failed_step="load",
                    exit_code=ExitCode.MODULE_ERROR,
                )
                logger.error("✗ %s → failed: %s", name, e)
            else:
                module.bind(ModuleContext.for_module(name, self.config))
                outcome = run_module(module, name, step_timeout)

            self.state.set_module_state(name, outcome.status, outcome.state_data())
            if outcome.failed:
                self.state.record_error(outcome.error or "module failed", module=name)
            self._advance()

            with self._lock:
                self._timers[name] = outcome.duration_s
                report.outcomes[name] = outcome
            return outcome
        finally:
            with self._lock:
                self._current.discard(name)

    def _advance(self) -> None:
        with self.state.update() as document:
            document.current_step = min(document.current_step + 1, document.total_steps)

    def _execute_sequential(self, report: RunReport, fail_fast: bool, step_timeout: float) -> None:
        logger.info("Executing modules sequentially: %s", ", ".join(self._to_run(report)))
        for name in self._to_run(report):
            if self._stop_event.is_set():
                logger.info("Stop requested, not starting %s", name)
                break

            blocked_by = self._blocked_by(name, report)
            if blocked_by:
                self._skip(name, report, blocked_by)
                continue

            outcome = self._execute_one(name, report, step_timeout)
            if outcome.failed and fail_fast:
                logger.error("Module %s failed, stopping (fail_fast)", name)
                break

    def _execute_parallel(
        self,
        report: RunReport,
        max_concurrency: int,
        fail_fast: bool,
        step_timeout: float,
    ) -> None:
        logger.info(
            "Executing %d wave(s) in parallel (max %d jobs)", len(report.waves), max_concurrency
        )
        for index, wave in enumerate(report.waves, start=1):
            if self._stop_event.is_set():
                break
            if fail_fast and report.failed:
                logger.error("Stopping after wave failure (fail_fast)")
                break

            runnable = []
            for name in wave:
                blocked_by = self._blocked_by(name, report)
                if blocked_by:
                    self._skip(name, report, blocked_by)
                else:
                    runnable.append(name)
            if not runnable:
                continue

            logger.info("Wave %d: %s", index, ", ".join(runnable))
            workers = min(max_concurrency, len(runnable))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="serversh") as pool:
                futures = {
                    pool.submit(self._execute_one, name, report, step_timeout): name
                    for name in runnable
                }
                with self._lock:
                    self._futures = list(futures)

                try:
                    for future in as_completed(futures):
                        if future.cancelled():
                            continue
                        outcome = future.result()
                        if (outcome.failed and fail_fast) or self._stop_event.is_set():
                            self._cancel(futures)
                except KeyboardInterrupt:
                    self._cancel(futures)
                    raise

    def _cancel(self, futures: dict[Future, str]) -> None:
        with self._lock:
            for queued in futures:
                queued.cancel()

    def _finish(self, report: RunReport, final: RunStatus, started: float) -> None:
        report.status = final
        report.duration_s = time.monotonic() - started

        for message in report.errors:
            self.state.record_error(message)
        self.state.set("status", str(final))

        if final is RunStatus.COMPLETED:
            checkpoint_type = CheckpointType.POST_INSTALL
            logger.info("ServerSH Engine completed successfully")
        else:
            checkpoint_type = CheckpointType.ERROR
            logger.error("ServerSH Engine finished with status: %s", final)
        report.checkpoints.append(self.state.create_checkpoint("Engine end", checkpoint_type))

        self.history.write(RunRecord(
            install_id=report.install_id,
            status=str(final),
            mode=report.mode,
            modules_requested=report.requested,
            modules_total=report.total,
            modules_completed=len(report.completed),
            modules_failed=len(report.failed),
            modules_skipped=len(report.skipped),
            duration_ms=int(report.duration_s * 1000),
            errors=report.errors + [
                o.error for o in report.outcomes.values() if o.error
            ],
        ))


def open_engine(
    config_path: Path,
    state_path: Path,
    modules_dir: Path | None = None,
    lock_timeout: float = TIMEOUT_STATE_OPERATION,
    registry: ModuleRegistry | None = None,
) -> Engine:
    """Build and initialize an engine in one call."""
    engine = Engine(registry)
    engine.init(config_path, state_path, modules_dir, lock_timeout=lock_timeout)
    return engine


@contextmanager
def stop_on_signals(
    engine: Engine,
    signals: tuple[signal.Signals, ...] = (signal.SIGTERM, signal.SIGHUP),
) -> Iterator[None]:
    """Turn termination signals into ``engine.request_stop()`` for the block.

    The module that is running when the signal arrives finishes; no
    further module starts and the run is recorded as stopped. Previous
    handlers are restored on exit. Outside the main thread, where
    handlers cannot be installed, the block runs unchanged.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum: int, _frame) -> None:
        logger.warning("Received %s, stopping after the current module", signal.Signals(signum).name)
        engine.request_stop()

    previous = {sig: signal.signal(sig, handler) for sig in signals}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)
