"""
Native helper run inside the guest.

``vmtest-agent run TEST FUNC`` looks up native function ``FUNC`` of test
``TEST`` and calls it. A raised exception makes the process exit non-zero,
which the host side reports as a subtest failure.

The guest has no Python environment with vmtest installed, so this module
is not installed as a console script. It is the entry point frozen into a
self-contained executable per architecture and placed at
``<exec dir>/<arch>/vmtest-agent``, where the runner finds it. The freezing
entry script imports the suites that define native functions and passes
them to :func:`main`::

    import my_native_suite
    from vmtest.agent import main

    main([my_native_suite])
"""

import logging
import sys
import traceback
from types import ModuleType
from typing import Iterable, List

import click

from .discovery import load_builtin_suites
from .registry import TestRegistry


log = logging.getLogger(__name__)


@click.group()
def agent() -> None:
    """In-guest helper for native test functions."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")


@agent.command()
@click.argument("test_name")
@click.argument("func_name")
@click.pass_obj
def run(modules: List[ModuleType], test_name: str, func_name: str) -> None:
    """Run native function FUNC_NAME of test TEST_NAME."""
    registry = TestRegistry()
    load_builtin_suites(registry)
    for module in modules or []:
        registry.collect(module)

    if test_name not in registry:
        raise click.ClickException(f"no test named {test_name!r}")
    test = registry.get(test_name)
    func = test.native_funcs.get(func_name)
    if func is None:
        raise click.ClickException(f"test {test_name!r} has no native function {func_name!r}")

    try:
        func()
    except Exception as e:
        traceback.print_exc()
        click.echo(f"{test_name}/{func_name}: {e}", err=True)
        sys.exit(1)


def main(modules: Iterable[ModuleType] = ()) -> None:
    agent(obj=list(modules))


if __name__ == "__main__":
    main()
