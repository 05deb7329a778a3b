"""
Test registry for vmtest.

A :class:`TestRegistry` is an explicit, immutable-after-setup collection of
:class:`~vmtest.models.TestDescriptor` objects keyed by name. Suites add
tests either by calling :meth:`TestRegistry.register` directly or by
decorating functions with :func:`vmtest.decorators.vm_test` and handing the
module to :meth:`TestRegistry.collect`.
"""

import threading
from types import ModuleType
from typing import Dict, Iterator, List, Tuple

from packaging.version import Version

from .models import TestDescriptor, is_zero_version


class RegistrationError(Exception):
    """Raised when a test descriptor cannot be registered."""
    pass


class TestRegistry:
    """Name -> TestDescriptor map with registration-time validation."""

    def __init__(self) -> None:
        self._tests: Dict[str, TestDescriptor] = {}
        self._lock = threading.Lock()

    def register(self, test: TestDescriptor) -> TestDescriptor:
        """
        Add a test to the registry.

        Raises:
            RegistrationError: the name is already taken, or the test has an
                end version that is not strictly greater than its min version.
        """
        if not test.name:
            raise RegistrationError("test has no name")

        if not is_zero_version(test.end_version):
            low = test.min_version if test.min_version is not None else Version("0")
            if not low < test.end_version:
                raise RegistrationError(
                    f"test {test.name} has an invalid version range: "
                    f"min {low} is not below end {test.end_version}"
                )

        with self._lock:
            if test.name in self._tests:
                raise RegistrationError(f"test {test.name!r} already registered")
            self._tests[test.name] = test
        return test

    def collect(self, module: ModuleType) -> List[TestDescriptor]:
        """
        Register every function in ``module`` marked with ``@vm_test``.

        Returns the descriptors that were added, in definition order.
        """
        added = []
        for value in vars(module).values():
            test = getattr(value, "_vm_test", None)
            if isinstance(test, TestDescriptor):
                added.append(self.register(test))
        return added

    def get(self, name: str) -> TestDescriptor:
        return self._tests[name]

    def names(self) -> List[str]:
        return sorted(self._tests)

    def items(self) -> List[Tuple[str, TestDescriptor]]:
        return sorted(self._tests.items())

    def as_dict(self) -> Dict[str, TestDescriptor]:
        """Shallow copy suitable for handing to the test filter."""
        return dict(self._tests)

    def __contains__(self, name: object) -> bool:
        return name in self._tests

    def __len__(self) -> int:
        return len(self._tests)

    def __iter__(self) -> Iterator[TestDescriptor]:
        return iter(self._tests[name] for name in self.names())
