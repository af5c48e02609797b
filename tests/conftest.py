"""
Shared test fixtures and configuration.
"""

import re
import textwrap
from pathlib import Path

import pytest

from serversh.core.config.store import ConfigStore
from serversh.core.engine.engine import Engine

MODULE_TEMPLATE = '''\
from serversh.modules.base import Module


class {class_name}(Module):
    name = {name!r}
    version = {version!r}
    description = {description!r}
    category = {category!r}
    dependencies = {dependencies!r}

    def install(self):
{install}

    def verify(self):
        return True
'''


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """Path of a freshly initialized default configuration."""
    path = tmp_path / "etc" / "config.yaml"
    ConfigStore(path).init()
    return path


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "var" / "state.json"


@pytest.fixture
def modules_dir(tmp_path: Path) -> Path:
    path = tmp_path / "modules"
    path.mkdir()
    return path


@pytest.fixture
def write_module(modules_dir: Path):
    """Write a module file into ``modules_dir`` and return its path."""

    def _write(
        name: str,
        dependencies: tuple = (),
        install: str = "return True",
        version: str = "1.0.0",
        description: str = "Test module",
        category: str = "custom",
        filename: str | None = None,
    ) -> Path:
        class_name = "M" + "".join(p.capitalize() for p in re.split(r"[^A-Za-z0-9]", name) if p)
        source = MODULE_TEMPLATE.format(
            class_name=class_name,
            name=name,
            version=version,
            description=description,
            category=category,
            dependencies=tuple(dependencies),
            install=textwrap.indent(textwrap.dedent(install), " " * 8),
        )
        path = modules_dir / (filename or f"{name.replace('/', '_')}.py")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(source)
        return path

    return _write


@pytest.fixture
def engine(config_path: Path, state_path: Path) -> Engine:
    """An initialized engine with an empty registry."""
    eng = Engine()
    eng.init(config_path, state_path, lock_timeout=5)
    return eng
