"""
vmtest - VM integration test runner

Provisions virtual machines on a platform backend, runs registered
acceptance tests against them in parallel, scans their console and journal
output for known failure signatures, and reports the results as JSON and
TAP.
"""

__version__ = "0.1.0"

from .decorators import vm_test
from .models import Flag, TestDescriptor, TestResult, TestStatus
from .registry import TestRegistry

__all__ = ["vm_test", "Flag", "TestDescriptor", "TestRegistry", "TestResult", "TestStatus"]
