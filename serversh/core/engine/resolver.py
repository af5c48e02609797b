"""
Dependency resolution — execution order and parallel waves (pure).

Functions here only read the registry; they never load or run modules
beyond what ``ModuleRegistry.dependencies_of`` needs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from serversh.core.engine.registry import ModuleRegistry
from serversh.core.errors import DependencyCycleError, ModuleError

logger = logging.getLogger(__name__)

_VISITING = 1
_DONE = 2


def resolve(
    requested: Iterable[str],
    registry: ModuleRegistry,
    auto_dependencies: bool = True,
) -> list[str]:
    """Expand and order modules so every dependency precedes its dependents.

    Depth-first with a three-colour visited map: a dependency edge back
    to a module that is still being expanded is a cycle. Independent
    modules keep the order in which they were first requested.

    Args:
        requested: Module names, in priority order. Duplicates are ignored.
        registry: Source of module metadata.
        auto_dependencies: If False, dependencies are not pulled in; every
            dependency must already be part of ``requested``.

    Returns:
        Deduplicated, dependency-first list of module names.

    Raises:
        ModuleError: A requested module or dependency is not registered,
            or (without auto_dependencies) a dependency was not requested.
        DependencyCycleError: The dependency graph has a cycle.
    """
    requested = list(dict.fromkeys(requested))
    allowed = None if auto_dependencies else set(requested)

    color: dict[str, int] = {}
    path: list[str] = []
    order: list[str] = []

    def visit(name: str) -> None:
        state = color.get(name)
        if state == _DONE:
            return
        if state == _VISITING:
            start = path.index(name)
            raise DependencyCycleError(path[start:] + [name])

        color[name] = _VISITING
        path.append(name)
        for dep in registry.dependencies_of(name):
            if dep not in registry:
                raise ModuleError(f"Dependency not found: {dep} (required by {name})")
            if allowed is not None and dep not in allowed:
                raise ModuleError(
                    f"Dependency {dep} of {name} was not requested "
                    f"and automatic dependency resolution is disabled"
                )
            visit(dep)
        path.pop()
        color[name] = _DONE
        order.append(name)

    for name in requested:
        if name not in registry:
            raise ModuleError(f"Module not registered: {name}")
        visit(name)

    logger.debug("Resolved execution order: %s", order)
    return order


def compute_waves(
    order: list[str],
    dependencies_of: Callable[[str], Iterable[str]],
) -> list[list[str]]:
    """Partition an ordered module list into parallel-safe waves.

    Every module lands in the wave after its latest dependency, so a
    wave only contains modules whose dependencies all finished in
    earlier waves. Dependencies outside ``order`` are treated as
    already satisfied. Within a wave, modules keep their ``order``
    position.
    """
    level: dict[str, int] = {}
    for name in order:
        deps = [level[d] for d in dependencies_of(name) if d in level]
        level[name] = max(deps) + 1 if deps else 0

    waves: list[list[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
    for name in order:
        waves[level[name]].append(name)
    return waves


def check_order(order: list[str], dependencies_of: Callable[[str], Iterable[str]]) -> list[str]:
    """Return violations of dependency-first ordering (empty = valid)."""
    position = {name: i for i, name in enumerate(order)}
    errors = []
    for name in order:
        for dep in dependencies_of(name):
            if dep in position and position[dep] > position[name]:
                errors.append(f"{name} is scheduled before its dependency {dep}")
    return errors
