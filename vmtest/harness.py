"""
Test harness for vmtest.

Runs a list of named test functions on a bounded worker pool. Each test
receives an :class:`H` handle for logging, failing, skipping, registering
cleanups and running subtests; every test (and subtest) produces one
:class:`~vmtest.models.TestResult` that is fed to the reporters as soon as
it is known.
"""

import logging
import os
import threading
import time
import traceback
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .models import TestResult, TestStatus
from .reporting import Reporters


log = logging.getLogger(__name__)


class TestFatal(BaseException):
    """Raised by :meth:`H.fatal` to stop a test body."""
    pass


class TestSkip(BaseException):
    """Raised by :meth:`H.skip` to stop a test body and mark it skipped."""
    pass


@dataclass
class HarnessTest:
    """A named test function for the harness."""
    name: str
    run: Callable[["H"], Any]
    fail_fast: bool = False


@dataclass
class SuiteOptions:
    output_dir: str
    parallel: int = 1
    fail_fast: bool = False
    verbose: bool = False


@dataclass
class SuiteResult:
    status: TestStatus
    results: List[TestResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def failed(self) -> List[TestResult]:
        return [r for r in self.results if r.status == TestStatus.FAIL]


class H:
    """
    Per-test handle.

    ``error``/``errorf`` mark the test failed and let it continue;
    ``fatal``/``fatalf`` mark it failed and stop it; ``skip``/``skipf``
    stop it and mark it skipped unless it already failed.
    """

    def __init__(self, suite: "Suite", name: str, parent: Optional["H"] = None):
        self.suite = suite
        self.name = name
        self.parent = parent
        self._lines: List[str] = []
        self._failed = False
        self._skipped = False
        self._cleanups: List[Callable[[], Any]] = []
        self._lock = threading.Lock()
        self._output_dir: Optional[str] = None

    # -- logging --

    def log(self, *args: Any) -> None:
        line = " ".join(str(a) for a in args)
        with self._lock:
            self._lines.append(line)
        log.debug("%s: %s", self.name, line)

    def logf(self, fmt: str, *args: Any) -> None:
        self.log(fmt % args if args else fmt)

    # -- outcome --

    def fail(self) -> None:
        with self._lock:
            self._failed = True
        if self.parent is not None:
            self.parent.fail()

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def skipped(self) -> bool:
        return self._skipped

    def error(self, *args: Any) -> None:
        self.log(*args)
        self.fail()

    def errorf(self, fmt: str, *args: Any) -> None:
        self.logf(fmt, *args)
        self.fail()

    def fatal(self, *args: Any) -> None:
        self.error(*args)
        raise TestFatal(self.name)

    def fatalf(self, fmt: str, *args: Any) -> None:
        self.errorf(fmt, *args)
        raise TestFatal(self.name)

    def skip(self, *args: Any) -> None:
        if args:
            self.log(*args)
        self._skipped = True
        raise TestSkip(self.name)

    def skipf(self, fmt: str, *args: Any) -> None:
        self.logf(fmt, *args)
        self._skipped = True
        raise TestSkip(self.name)

    def status(self) -> TestStatus:
        if self._failed:
            return TestStatus.FAIL
        if self._skipped:
            return TestStatus.SKIP
        return TestStatus.PASS

    def output(self) -> str:
        with self._lock:
            return "\n".join(self._lines) + ("\n" if self._lines else "")

    # -- resources --

    @property
    def output_dir(self) -> str:
        """Per-test directory under the suite's output dir, created on first use."""
        if self._output_dir is None:
            path = os.path.join(self.suite.options.output_dir, self.name)
            os.makedirs(path, exist_ok=True)
            self._output_dir = path
        return self._output_dir

    def defer(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Run ``func`` when the test finishes, most recently deferred first."""
        self._cleanups.append(lambda: func(*args, **kwargs))

    def _run_cleanups(self) -> None:
        while self._cleanups:
            cleanup = self._cleanups.pop()
            try:
                cleanup()
            except (TestFatal, TestSkip):
                pass
            except Exception as e:
                log.warning("%s: cleanup failed: %s", self.name, e)
                self.log(f"cleanup failed: {e}")

    # -- subtests --

    def run(self, name: str, func: Callable[["H"], Any]) -> bool:
        """
        Run ``func`` as subtest ``<name>/<subname>`` and wait for it.

        Returns:
            True if the subtest did not fail.
        """
        child = H(self.suite, f"{self.name}/{name}", parent=self)
        result = self.suite._execute(child, func)
        return result.status != TestStatus.FAIL


class Suite:
    """
    Runs tests on a worker pool and reports their results.

    Args:
        options: Output directory, worker count, fail-fast
        tests: Tests to run, in submission order
        reporters: Receive every result, the aggregate result, and are
            written to the output directory at the end
        on_test_start: Called with the test name when a test starts
    """

    def __init__(
        self,
        options: SuiteOptions,
        tests: List[HarnessTest],
        reporters: Optional[Reporters] = None,
        on_test_start: Optional[Callable[[str], None]] = None,
    ):
        self.options = options
        self.tests = tests
        self.reporters = reporters if reporters is not None else Reporters()
        self.on_test_start = on_test_start

        self.results: List[TestResult] = []
        self._results_lock = threading.Lock()
        self._stop_requested = threading.Event()

    def stop(self) -> None:
        """Stop starting new tests; running tests finish normally."""
        self._stop_requested.set()

    def _record(self, result: TestResult) -> None:
        with self._results_lock:
            self.results.append(result)
            self.reporters.report_test(result)

    def _execute(self, h: H, func: Callable[[H], Any]) -> TestResult:
        start = time.perf_counter()
        try:
            func(h)
        except (TestFatal, TestSkip):
            pass
        except AssertionError as e:
            h.error(str(e) or "assertion failed")
            h.log(traceback.format_exc().rstrip())
        except Exception as e:
            h.error(f"{type(e).__name__}: {e}")
            h.log(traceback.format_exc().rstrip())
        finally:
            h._run_cleanups()

        result = TestResult(
            name=h.name,
            status=h.status(),
            duration_seconds=time.perf_counter() - start,
            output=h.output(),
        )
        self._record(result)
        return result

    def _run_one(self, test: HarnessTest) -> TestResult:
        if self._stop_requested.is_set():
            result = TestResult(
                name=test.name,
                status=TestStatus.SKIP,
                duration_seconds=0,
                output="not run: an earlier fail-fast test failed\n",
            )
            self._record(result)
            return result

        if self.on_test_start:
            try:
                self.on_test_start(test.name)
            except Exception as e:
                log.debug("start callback failed: %s", e)

        result = self._execute(H(self, test.name), test.run)
        if result.status == TestStatus.FAIL and (self.options.fail_fast or test.fail_fast):
            self.stop()
        return result

    def run(self) -> SuiteResult:
        """
        Run every test and write the reports.

        Returns:
            The aggregate result; FAIL if any test or subtest failed.
        """
        os.makedirs(self.options.output_dir, exist_ok=True)
        self.results = []
        self._stop_requested.clear()

        start = time.perf_counter()
        workers = max(1, self.options.parallel)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures: Dict[Future, HarnessTest] = {
                executor.submit(self._run_one, test): test for test in self.tests
            }
            for future in as_completed(futures):
                future.result()

        status = TestStatus.PASS
        if any(r.status == TestStatus.FAIL for r in self.results):
            status = TestStatus.FAIL

        self.reporters.set_result(status)
        self.reporters.output(self.options.output_dir)

        return SuiteResult(
            status=status,
            results=list(self.results),
            duration_seconds=time.perf_counter() - start,
        )
