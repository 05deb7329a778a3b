"""
Suite discovery for vmtest.

Loads suite modules (the built-in ``vmtest.suites`` package and any extra
files or directories given on the command line) and collects their
``@vm_test`` functions into a :class:`~vmtest.registry.TestRegistry`.
"""

import importlib
import importlib.util
import logging
import pkgutil
import sys
from pathlib import Path
from types import ModuleType
from typing import Iterable, List, Set

from .registry import TestRegistry


log = logging.getLogger(__name__)


class SuiteLoadError(Exception):
    """Raised when a suite module cannot be imported."""
    pass


def load_builtin_suites(registry: TestRegistry) -> int:
    """
    Import every module of ``vmtest.suites`` into ``registry``.

    Returns:
        Number of tests registered.
    """
    from . import suites

    count = 0
    for info in pkgutil.iter_modules(suites.__path__, suites.__name__ + "."):
        module = importlib.import_module(info.name)
        count += len(registry.collect(module))
    return count


def load_suite_paths(registry: TestRegistry, paths: Iterable[Path]) -> int:
    """
    Import suite files into ``registry``.

    Args:
        registry: Registry to add the collected tests to
        paths: Python files, or directories searched recursively for ``*.py``

    Returns:
        Number of tests registered.

    Raises:
        SuiteLoadError: a path does not exist or a module fails to import.
    """
    files: Set[Path] = set()
    for path in paths:
        path = Path(path).resolve()
        if path.is_file():
            if path.suffix == ".py":
                files.add(path)
        elif path.is_dir():
            for py_file in path.rglob("*.py"):
                if any(part.startswith('.') or part == '__pycache__'
                       for part in py_file.parts):
                    continue
                files.add(py_file)
        else:
            raise SuiteLoadError(f"suite path does not exist: {path}")

    count = 0
    for file_path in sorted(files):
        module = _import_module_from_path(file_path)
        count += len(registry.collect(module))
    return count


def _import_module_from_path(path: Path) -> ModuleType:
    """
    Import a Python file as a module.

    The module name is derived from the path relative to the working
    directory, so ``suites/net/dns.py`` becomes ``suites.net.dns``.
    """
    try:
        rel_path = path.relative_to(Path.cwd())
    except ValueError:
        rel_path = path

    parts: List[str] = [p for p in rel_path.parts if p not in ("/", "\\")]
    if parts and parts[-1].endswith(".py"):
        parts[-1] = parts[-1][:-3]
    module_name = "vmtest_suite." + ".".join(parts)

    if module_name in sys.modules:
        return sys.modules[module_name]

    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise SuiteLoadError(f"cannot import {path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        del sys.modules[module_name]
        raise SuiteLoadError(f"failed to import {path}: {e}") from e

    log.debug("loaded suite module %s from %s", module_name, path)
    return module
