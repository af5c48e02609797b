"""
Module registry — discovery, contract checks, and lazy loading.

Module files are inspected statically with ``ast``: the registry checks
that a class declares the required contract members and extracts any
literal metadata without executing the file. Anything that cannot be
read statically (typically a computed ``dependencies`` value) is filled
in the first time the module is actually loaded.

The registry is the single point of module lookup. The resolver and
executor never import module files themselves.
"""

from __future__ import annotations

import ast
import importlib
import importlib.util
import inspect
import logging
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from serversh.core.constants import MAX_MODULE_NAME_LENGTH
from serversh.core.errors import ConfigError, ModuleError
from serversh.core.models.module import ModuleCategory, ModuleDescriptor, ModuleLocator
from serversh.modules.base import Module

logger = logging.getLogger(__name__)

# Members a module class must declare itself
REQUIRED_ATTRIBUTES = ("name", "version", "description")
REQUIRED_METHODS = ("install", "verify")

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*(/[A-Za-z0-9][A-Za-z0-9_.\-]*)*$")


def validate_module_name(name: Any) -> str:
    """Return ``name`` if it is a usable module id, else raise ModuleError."""
    if not isinstance(name, str) or not name:
        raise ModuleError("Module name must be a non-empty string")
    if len(name) > MAX_MODULE_NAME_LENGTH:
        raise ModuleError(f"Module name too long ({len(name)} > {MAX_MODULE_NAME_LENGTH}): {name}")
    if not _NAME_RE.match(name):
        raise ModuleError(f"Invalid module name: {name!r}")
    return name


@dataclass
class ScanResult:
    """Outcome of ``ModuleRegistry.register_all()``."""

    found: int = 0
    registered: int = 0
    failures: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"found": self.found, "registered": self.registered, "failures": self.failures}


# ── Static inspection ───────────────────────────────────────────


def _class_members(node: ast.ClassDef) -> tuple[dict[str, ast.expr | None], set[str]]:
    """Attribute assignments and method names declared in a class body."""
    attributes: dict[str, ast.expr | None] = {}
    methods: set[str] = set()
    for stmt in node.body:
        if isinstance(stmt, ast.Assign):
            for target in stmt.targets:
                if isinstance(target, ast.Name):
                    attributes[target.id] = stmt.value
        elif isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
            attributes[stmt.target.id] = stmt.value
        elif isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
            methods.add(stmt.name)
    return attributes, methods


def _literal(value: ast.expr | None) -> tuple[bool, Any]:
    if value is None:
        return False, None
    try:
        return True, ast.literal_eval(value)
    except (ValueError, TypeError, SyntaxError, MemoryError, RecursionError):
        return False, None


def _is_candidate(attributes: dict, methods: set[str]) -> bool:
    return bool(
        set(REQUIRED_METHODS) & methods
        or ("name" in attributes and ({"version", "description"} & set(attributes)))
    )


def inspect_module_file(path: Path) -> ModuleDescriptor:
    """Build a descriptor from a module file without executing it.

    Raises:
        ModuleError: If the file cannot be parsed, has no module class,
            has more than one, or the class misses contract members.
    """
    try:
        tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    except (OSError, UnicodeDecodeError) as e:
        raise ModuleError(f"Cannot read module file {path}: {e}") from e
    except SyntaxError as e:
        raise ModuleError(f"Syntax error in module file {path}: {e}") from e

    candidates = []
    for node in tree.body:
        if isinstance(node, ast.ClassDef):
            attributes, methods = _class_members(node)
            if _is_candidate(attributes, methods):
                candidates.append((node, attributes, methods))

    if not candidates:
        raise ModuleError(f"No module class found in {path}")
    if len(candidates) > 1:
        names = ", ".join(c[0].name for c in candidates)
        raise ModuleError(f"More than one module class in {path}: {names}")

    node, attributes, methods = candidates[0]
    missing = [a for a in REQUIRED_ATTRIBUTES if a not in attributes]
    missing += [m for m in REQUIRED_METHODS if m not in methods]
    if missing:
        raise ModuleError(
            f"Module {node.name} in {path} missing required member(s): {', '.join(missing)}"
        )

    ok, name = _literal(attributes["name"])
    if not ok:
        raise ModuleError(f"Module {node.name} in {path}: 'name' must be a literal string")
    validate_module_name(name)

    metadata: dict[str, Any] = {}
    for key in ("version", "description", "category"):
        ok, value = _literal(attributes.get(key))
        if ok and isinstance(value, str) and value:
            metadata[key] = value

    dependencies: tuple[str, ...] | None = ()
    if "dependencies" in attributes:
        ok, value = _literal(attributes["dependencies"])
        if ok and isinstance(value, (list, tuple)) and all(isinstance(d, str) for d in value):
            dependencies = tuple(value)
        else:
            # Computed value, read from the class when it is loaded
            dependencies = None

    return ModuleDescriptor(
        name=name,
        version=metadata.get("version", "unknown"),
        description=metadata.get("description", "No description"),
        category=ModuleCategory.parse(metadata.get("category", "custom")),
        dependencies=dependencies,
        locator=ModuleLocator.from_file(path, node.name),
    )


def _check_class(cls: type) -> None:
    if not (inspect.isclass(cls) and issubclass(cls, Module)):
        raise ModuleError(f"{cls!r} is not a Module subclass")
    if inspect.isabstract(cls):
        missing = ", ".join(sorted(cls.__abstractmethods__))
        raise ModuleError(f"Module {cls.__name__} missing required member(s): {missing}")


def _descriptor_from_object(obj: Module | type[Module], locator: ModuleLocator) -> ModuleDescriptor:
    return ModuleDescriptor(
        name=validate_module_name(obj.name),
        version=str(obj.version or "unknown"),
        description=str(obj.description or "No description"),
        category=ModuleCategory.parse(obj.category),
        dependencies=tuple(obj.dependencies),
        locator=locator,
    )


def load_class(locator: ModuleLocator) -> type[Module]:
    """Import the class a locator points to.

    Raises:
        ModuleError: If the file or target cannot be imported, or the
            attribute is not a concrete Module subclass.
    """
    if locator.target:
        module_path, _, class_name = locator.target.partition(":")
        if not class_name:
            raise ModuleError(f"Invalid module target (expected 'pkg.mod:Class'): {locator.target}")
        try:
            py_module = importlib.import_module(module_path)
        except ImportError as e:
            raise ModuleError(f"Cannot import {module_path}: {e}") from e
    else:
        path = Path(locator.path or "")
        class_name = locator.class_name
        import_name = "serversh_module_" + re.sub(r"\W", "_", str(path.resolve()))
        spec = importlib.util.spec_from_file_location(import_name, path)
        if spec is None or spec.loader is None:
            raise ModuleError(f"Cannot load module file: {path}")
        py_module = importlib.util.module_from_spec(spec)
        sys.modules[import_name] = py_module
        try:
            spec.loader.exec_module(py_module)
        except Exception as e:
            sys.modules.pop(import_name, None)
            raise ModuleError(f"Error loading module file {path}: {e}") from e

    cls = getattr(py_module, class_name, None)
    if cls is None:
        raise ModuleError(f"{locator} does not define {class_name}")
    _check_class(cls)
    return cls


class ModuleRegistry:
    """In-memory ``name → descriptor`` map plus lazy implementation loading.

    Features:
        - Register module files, import targets, classes, or instances
        - Scan a directory tree of module files
        - Resolve dependencies that are not known statically
        - Instantiate modules for execution
    """

    def __init__(self) -> None:
        self._descriptors: dict[str, ModuleDescriptor] = {}
        self._implementations: dict[str, type[Module] | Module] = {}
        self._dependencies: dict[str, tuple[str, ...]] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    def register(self, source: Path | str | type[Module] | Module) -> ModuleDescriptor:
        """Register one module.

        Args:
            source: A module file path, a ``"pkg.mod:Class"`` target, a
                Module subclass, or a Module instance.

        Returns:
            The stored descriptor. A name registered before is replaced.

        Raises:
            ModuleError: If the source does not satisfy the module contract.
        """
        implementation: type[Module] | Module | None = None

        if isinstance(source, Module):
            _check_class(type(source))
            descriptor = _descriptor_from_object(
                source, ModuleLocator(class_name=type(source).__qualname__)
            )
            implementation = source
        elif inspect.isclass(source):
            _check_class(source)
            descriptor = _descriptor_from_object(
                source, ModuleLocator.from_target(f"{source.__module__}:{source.__qualname__}")
            )
            implementation = source
        elif isinstance(source, str) and ":" in source and not Path(source).exists():
            cls = load_class(ModuleLocator.from_target(source))
            descriptor = _descriptor_from_object(cls, ModuleLocator.from_target(source))
            implementation = cls
        else:
            path = Path(source)
            if not path.is_file():
                raise ModuleError(f"Module file not found: {path}")
            descriptor = inspect_module_file(path)

        name = descriptor.name
        if name in self._descriptors:
            logger.warning("Overwriting existing module: %s", name)
        self._descriptors[name] = descriptor
        self._dependencies.pop(name, None)
        if implementation is not None:
            self._implementations[name] = implementation
        else:
            self._implementations.pop(name, None)

        logger.info("Module registered: %s (v%s)", name, descriptor.version)
        return descriptor

    def register_all(self, directory: Path) -> ScanResult:
        """Register every ``*.py`` module file under ``directory``.

        Files whose name starts with ``_`` are ignored. Individual
        failures are logged and counted, never raised.

        Raises:
            ConfigError: If ``directory`` does not exist.
        """
        directory = Path(directory)
        if not directory.is_dir():
            raise ConfigError(f"Modules directory not found: {directory}")

        logger.info("Registering modules from: %s", directory)
        result = ScanResult()
        for path in sorted(directory.rglob("*.py")):
            if path.name.startswith("_") or "__pycache__" in path.parts:
                continue
            result.found += 1
            try:
                self.register(path)
                result.registered += 1
            except ModuleError as e:
                logger.warning("Failed to register module %s: %s", path.name, e)
                result.failures[str(path)] = str(e)

        logger.info(
            "Modules registration complete: %d/%d registered", result.registered, result.found
        )
        return result

    def unregister(self, name: str) -> None:
        self._descriptors.pop(name, None)
        self._implementations.pop(name, None)
        self._dependencies.pop(name, None)

    def clear(self) -> None:
        self._descriptors.clear()
        self._implementations.clear()
        self._dependencies.clear()

    def get(self, name: str) -> ModuleDescriptor | None:
        return self._descriptors.get(name)

    def list(self) -> list[ModuleDescriptor]:
        """Descriptors in registration order."""
        return list(self._descriptors.values())

    def names(self) -> list[str]:
        return list(self._descriptors)

    def dependencies_of(self, name: str) -> tuple[str, ...]:
        """Declared dependencies of a module, loading it if needed.

        Raises:
            ModuleError: If the module is unknown or cannot be loaded.
        """
        descriptor = self._require(name)
        if descriptor.dependencies is not None:
            return descriptor.dependencies
        if name not in self._dependencies:
            cls = self._implementation_class(name)
            deps = cls.dependencies
            if isinstance(deps, str) or not all(isinstance(d, str) for d in deps):
                raise ModuleError(f"Module {name}: dependencies must be a sequence of names")
            self._dependencies[name] = tuple(deps)
            logger.debug("Resolved dependencies of %s: %s", name, self._dependencies[name])
        return self._dependencies[name]

    def instantiate(self, name: str) -> Module:
        """Return a ready-to-run Module object for ``name``.

        Registered instances are returned as-is; classes and files are
        instantiated fresh.
        """
        self._require(name)
        implementation = self._implementations.get(name)
        if isinstance(implementation, Module):
            return implementation

        cls = self._implementation_class(name)
        try:
            instance = cls()
        except Exception as e:
            raise ModuleError(f"Cannot instantiate module {name}: {e}") from e
        if instance.get_name() != name:
            raise ModuleError(
                f"Module file for {name} declares a different name: {instance.get_name()}"
            )
        return instance

    def _implementation_class(self, name: str) -> type[Module]:
        implementation = self._implementations.get(name)
        if isinstance(implementation, Module):
            return type(implementation)
        if implementation is None:
            implementation = load_class(self._descriptors[name].locator)
            self._implementations[name] = implementation
        return implementation

    def _require(self, name: str) -> ModuleDescriptor:
        descriptor = self._descriptors.get(name)
        if descriptor is None:
            raise ModuleError(f"Module not registered: {name}")
        return descriptor
