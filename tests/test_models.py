"""
Tests for domain models — descriptors, step results, state document.
"""

import pytest

from serversh.core.models import (
    Checkpoint,
    ModuleCategory,
    ModuleDescriptor,
    ModuleLocator,
    ModuleStatus,
    RunStatus,
    StateDocument,
    StepResult,
    can_transition,
)


class TestModuleDescriptor:
    def test_defaults(self):
        d = ModuleDescriptor(name="system/update", locator=ModuleLocator.from_file("x.py", "Update"))
        assert d.version == "unknown"
        assert d.description == "No description"
        assert d.category == ModuleCategory.CUSTOM
        assert d.dependencies == ()
        assert d.dependencies_known

    def test_lazy_dependencies(self):
        d = ModuleDescriptor(name="a", dependencies=None, locator=ModuleLocator(target="m:A"))
        assert not d.dependencies_known

    def test_frozen(self):
        d = ModuleDescriptor(name="a", locator=ModuleLocator(target="m:A"))
        with pytest.raises(Exception):
            d.name = "b"

    def test_locator_str(self):
        assert str(ModuleLocator.from_target("pkg.mod:Cls")) == "pkg.mod:Cls"
        assert str(ModuleLocator.from_file("/m/a.py", "A")) == "/m/a.py:A"

    @pytest.mark.parametrize("raw,expected", [
        ("security", ModuleCategory.SECURITY),
        (" Container ", ModuleCategory.CONTAINER),
        ("nonsense", ModuleCategory.CUSTOM),
        (None, ModuleCategory.CUSTOM),
    ])
    def test_category_parse(self, raw, expected):
        assert ModuleCategory.parse(raw) == expected


class TestStepResult:
    def test_factories(self):
        assert StepResult.success("done").ok
        assert StepResult.failure("boom").failed
        assert StepResult.skip("n/a").skipped

    def test_coerce(self):
        assert StepResult.coerce(None).ok
        assert StepResult.coerce(True).ok
        assert StepResult.coerce(False).failed
        r = StepResult.failure("x")
        assert StepResult.coerce(r) is r

    def test_coerce_rejects_other_types(self):
        with pytest.raises(TypeError):
            StepResult.coerce("yes")


class TestModuleStatus:
    def test_happy_path(self):
        assert can_transition(ModuleStatus.PENDING, ModuleStatus.RUNNING)
        assert can_transition(ModuleStatus.RUNNING, ModuleStatus.COMPLETED)
        assert can_transition(ModuleStatus.RUNNING, ModuleStatus.FAILED)
        assert can_transition(ModuleStatus.COMPLETED, ModuleStatus.ROLLBACK)

    def test_skip_instead_of_run(self):
        assert can_transition(ModuleStatus.PENDING, ModuleStatus.SKIPPED)

    def test_illegal(self):
        assert not can_transition(ModuleStatus.PENDING, ModuleStatus.COMPLETED)
        assert not can_transition(ModuleStatus.COMPLETED, ModuleStatus.RUNNING)
        assert not can_transition(ModuleStatus.PENDING, ModuleStatus.ROLLBACK)

    def test_back_to_pending_always_allowed(self):
        for status in ModuleStatus:
            assert can_transition(status, ModuleStatus.PENDING)

    def test_unknown_current(self):
        assert can_transition(None, ModuleStatus.RUNNING)

    def test_terminal(self):
        assert ModuleStatus.COMPLETED.terminal
        assert ModuleStatus.SKIPPED.terminal
        assert not ModuleStatus.RUNNING.terminal


class TestStateDocument:
    def test_defaults(self):
        doc = StateDocument()
        assert doc.status == RunStatus.PENDING
        assert doc.current_step == 0
        assert doc.modules == {}
        assert doc.checkpoints == []

    def test_set_module_state(self):
        doc = StateDocument()
        doc.set_module_state("a", ModuleStatus.RUNNING, {"k": 1})
        assert doc.module_status("a") == ModuleStatus.RUNNING
        assert doc.modules["a"].data == {"k": 1}
        assert doc.module_status("missing") is None

    def test_find_checkpoint(self):
        doc = StateDocument(checkpoints=[Checkpoint(id="c1"), Checkpoint(id="c2")])
        assert doc.find_checkpoint("c2").id == "c2"
        assert doc.find_checkpoint("c3") is None

    def test_json_shape(self):
        data = StateDocument().model_dump(mode="json")
        for key in ("version", "created", "updated", "system", "modules", "checkpoints",
                    "current_step", "total_steps", "status", "errors"):
            assert key in data
        assert data["status"] == "pending"
