"""
Tests for the module lifecycle runner.
"""

import threading

from serversh.core.constants import ExitCode
from serversh.core.engine.executor import call_step, run_module
from serversh.core.models import ModuleStatus, StepResult
from serversh.modules.mock import MockModule

LIFECYCLE = ["validate_config", "pre_install", "install", "post_install", "verify"]


class TestRunModule:
    def test_success_calls_every_step_in_order(self):
        module = MockModule("a")
        outcome = run_module(module)
        assert outcome.ok
        assert outcome.status == ModuleStatus.COMPLETED
        assert module.calls == LIFECYCLE
        assert outcome.exit_code == ExitCode.SUCCESS
        assert outcome.message == "[mock] install"

    def test_validate_failure_is_config_error(self):
        module = MockModule("a")
        module.set_failure("validate_config", "port out of range")
        outcome = run_module(module)
        assert outcome.failed
        assert outcome.failed_step == "validate_config"
        assert outcome.exit_code == ExitCode.CONFIG_ERROR
        assert outcome.error == "validate_config failed: port out of range"
        assert not module.called("install")

    def test_pre_install_failure_stops_before_install(self):
        module = MockModule("a")
        module.set_failure("pre_install")
        outcome = run_module(module)
        assert outcome.exit_code == ExitCode.MODULE_ERROR
        assert module.calls == ["validate_config", "pre_install"]

    def test_install_failure_runs_cleanup(self):
        module = MockModule("a")
        module.set_failure("install", "apt locked")
        outcome = run_module(module)
        assert outcome.failed
        assert outcome.failed_step == "install"
        assert module.calls == ["validate_config", "pre_install", "install", "cleanup"]
        assert outcome.steps["cleanup"].ok

    def test_cleanup_failure_does_not_mask_install_failure(self):
        module = MockModule("a")
        module.set_failure("install", "apt locked")
        module.set_exception("cleanup", RuntimeError("cleanup exploded"))
        outcome = run_module(module)
        assert outcome.error == "install failed: apt locked"
        assert outcome.steps["cleanup"].failed

    def test_exception_is_failure(self):
        module = MockModule("a")
        module.set_exception("install", OSError("disk full"))
        outcome = run_module(module)
        assert outcome.failed
        assert "OSError: disk full" in outcome.error

    def test_missing_command_keeps_its_exit_code(self):
        class NeedsTool(MockModule):
            def pre_install(self):
                self.require_commands("sh", "serversh-no-such-tool")
                return super().pre_install()

        outcome = run_module(NeedsTool("a"))
        assert outcome.failed
        assert outcome.failed_step == "pre_install"
        assert outcome.exit_code == ExitCode.MISSING_DEPS
        assert outcome.error == "pre_install failed: a requires missing command(s): serversh-no-such-tool"

    def test_false_is_failure(self):
        class Falsy(MockModule):
            def verify(self):
                self._calls.append("verify")
                return False

        outcome = run_module(Falsy("a"))
        assert outcome.failed
        assert outcome.failed_step == "verify"
        assert outcome.error == "verify failed: step returned False"

    def test_verify_failure_skips_cleanup(self):
        module = MockModule("a")
        module.set_failure("verify", "service not running")
        outcome = run_module(module)
        assert outcome.failed
        assert not module.called("cleanup")

    def test_post_install_failure(self):
        module = MockModule("a")
        module.set_failure("post_install")
        outcome = run_module(module)
        assert outcome.failed_step == "post_install"
        assert not module.called("verify")

    def test_skip_during_install(self):
        module = MockModule("a")
        module.set_skip("install", "already present")
        outcome = run_module(module)
        assert outcome.skipped
        assert outcome.message == "already present"
        assert not module.called("verify")

    def test_skip_after_install_counts_as_done(self):
        module = MockModule("a")
        module.set_skip("verify", "nothing to verify")
        assert run_module(module).ok

    def test_step_timeout(self):
        module = MockModule("slow")
        module.set_delay("install", 2)
        outcome = run_module(module, step_timeout=0.1)
        assert outcome.failed
        assert outcome.error == "install failed: install timed out after 0.1s"

    def test_reported_name(self):
        assert run_module(MockModule("a"), name="alias").name == "alias"

    def test_state_data(self):
        module = MockModule("a")
        module.set_failure("install", "boom")
        data = run_module(module).state_data()
        assert data["failed_step"] == "install"
        assert data["error"] == "install failed: boom"
        assert "duration" in data


class TestCallStep:
    def test_coerces_none(self):
        class Quiet(MockModule):
            def install(self):
                return None

        assert call_step(Quiet("q"), "install").ok

    def test_within_deadline(self):
        module = MockModule("a")
        module.set_response("install", StepResult.success("fast"))
        assert call_step(module, "install", timeout=5).message == "fast"

    def test_runs_in_worker_thread_with_deadline(self):
        seen = []

        class Recorder(MockModule):
            def install(self):
                seen.append(threading.current_thread().name)
                return True

        call_step(Recorder("rec"), "install", timeout=5)
        assert seen == ["serversh-rec-install"]
