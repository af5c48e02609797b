"""Orchestration engine: registry, resolver, lifecycle runner."""

from serversh.core.engine.engine import Engine, RunReport, open_engine
from serversh.core.engine.registry import ModuleRegistry

__all__ = ["Engine", "ModuleRegistry", "RunReport", "open_engine"]
