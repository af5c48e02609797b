"""
Tests for dependency resolution and wave scheduling.
"""

import random

import pytest

from serversh.core.engine.registry import ModuleRegistry
from serversh.core.engine.resolver import check_order, compute_waves, resolve
from serversh.core.errors import DependencyCycleError, ModuleError
from serversh.modules.mock import MockModule


def _registry(graph: dict[str, tuple[str, ...]]) -> ModuleRegistry:
    registry = ModuleRegistry()
    for name, deps in graph.items():
        registry.register(MockModule(name, dependencies=deps))
    return registry


class TestResolve:
    def test_dependency_first(self):
        registry = _registry({
            "system/update": (),
            "container/docker": ("system/update",),
        })
        assert resolve(["container/docker"], registry) == ["system/update", "container/docker"]

    def test_diamond_deduplicated(self):
        registry = _registry({
            "base": (),
            "left": ("base",),
            "right": ("base",),
            "top": ("left", "right"),
        })
        assert resolve(["top"], registry) == ["base", "left", "right", "top"]

    def test_duplicate_requests(self):
        registry = _registry({"a": (), "b": ("a",)})
        assert resolve(["b", "a", "b"], registry) == ["a", "b"]

    def test_independent_modules_keep_request_order(self):
        registry = _registry({"x": (), "y": (), "z": ()})
        assert resolve(["z", "x", "y"], registry) == ["z", "x", "y"]

    def test_idempotent(self):
        registry = _registry({"a": (), "b": ("a",), "c": ("b",)})
        first = resolve(["c", "a"], registry)
        assert resolve(first, registry) == first

    def test_cycle(self):
        registry = _registry({"a": ("b",), "b": ("a",)})
        with pytest.raises(DependencyCycleError) as exc:
            resolve(["a"], registry)
        assert exc.value.cycle == ["a", "b", "a"]
        assert "a -> b -> a" in str(exc.value)

    def test_self_cycle(self):
        registry = _registry({"a": ("a",)})
        with pytest.raises(DependencyCycleError):
            resolve(["a"], registry)

    def test_longer_cycle_reports_loop_only(self):
        registry = _registry({"entry": ("a",), "a": ("b",), "b": ("c",), "c": ("a",)})
        with pytest.raises(DependencyCycleError) as exc:
            resolve(["entry"], registry)
        assert exc.value.cycle == ["a", "b", "c", "a"]

    def test_missing_dependency(self):
        registry = _registry({"container/docker": ("system/update",)})
        with pytest.raises(ModuleError, match=r"Dependency not found: system/update \(required by container/docker\)"):
            resolve(["container/docker"], registry)

    def test_unknown_request(self):
        with pytest.raises(ModuleError, match="not registered"):
            resolve(["ghost"], _registry({}))

    def test_without_auto_dependencies(self):
        registry = _registry({"a": (), "b": ("a",)})
        assert resolve(["a", "b"], registry, auto_dependencies=False) == ["a", "b"]
        with pytest.raises(ModuleError, match="not requested"):
            resolve(["b"], registry, auto_dependencies=False)

    @pytest.mark.parametrize("seed", range(10))
    def test_random_dags(self, seed):
        rng = random.Random(seed)
        names = [f"m{i}" for i in range(25)]
        graph = {
            name: tuple(rng.sample(names[:i], k=min(i, rng.randint(0, 3))))
            for i, name in enumerate(names)
        }
        registry = _registry(graph)
        requested = rng.sample(names, k=8)

        order = resolve(requested, registry)

        assert len(order) == len(set(order))
        assert set(requested) <= set(order)
        assert check_order(order, registry.dependencies_of) == []
        for name in order:
            assert set(graph[name]) <= set(order)


class TestWaves:
    def test_levels(self):
        graph = {"a": (), "b": (), "c": ("a",), "d": ("b", "c")}
        waves = compute_waves(["a", "b", "c", "d"], lambda n: graph[n])
        assert waves == [["a", "b"], ["c"], ["d"]]

    def test_outside_dependencies_satisfied(self):
        graph = {"c": ("a",), "d": ()}
        assert compute_waves(["c", "d"], lambda n: graph[n]) == [["c", "d"]]

    def test_empty(self):
        assert compute_waves([], lambda n: ()) == []

    def test_check_order_reports_violation(self):
        graph = {"a": (), "b": ("a",)}
        assert check_order(["b", "a"], lambda n: graph[n]) == ["b is scheduled before its dependency a"]
