"""
Reporting and terminal output for vmtest.

Reporters collect per-test results as they arrive and are written to the
run's output directory once the run is over: ``report.json`` (machine
readable) and ``test.tap`` (TAP version 13). :class:`ConsoleReporter`
drives the live Rich progress display.
"""

import json
import os
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterable, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .models import TestDescriptor, TestResult, TestStatus


JSON_REPORT = "report.json"
TAP_REPORT = "test.tap"


# Status colors and symbols
STATUS_STYLES = {
    TestStatus.PASS: ("green", "PASS", "[green]PASS[/green]"),
    TestStatus.FAIL: ("red", "FAIL", "[red]FAIL[/red]"),
    TestStatus.SKIP: ("yellow", "SKIP", "[yellow]SKIP[/yellow]"),
}


class Reporter(ABC):
    """Receives results during a run and writes a report at the end."""

    @abstractmethod
    def report_test(self, result: TestResult) -> None: ...

    @abstractmethod
    def set_result(self, status: TestStatus) -> None: ...

    @abstractmethod
    def output(self, path: str) -> None:
        """Write the report into directory ``path``."""


class Reporters(Reporter):
    """Fan-out to several reporters."""

    def __init__(self, reporters: Iterable[Reporter] = ()):
        self.reporters: List[Reporter] = list(reporters)

    def add(self, reporter: Reporter) -> None:
        self.reporters.append(reporter)

    def report_test(self, result: TestResult) -> None:
        for r in self.reporters:
            r.report_test(result)

    def set_result(self, status: TestStatus) -> None:
        for r in self.reporters:
            r.set_result(status)

    def output(self, path: str) -> None:
        for r in self.reporters:
            r.output(path)


class JSONReporter(Reporter):
    """
    ``report.json``::

        {"tests": [{"name", "result", "duration", "output"}],
         "result": "PASS", "platform": "qemu", "version": "3510.2.0"}

    ``duration`` is in nanoseconds.
    """

    def __init__(self, platform: str, version: str, filename: str = JSON_REPORT):
        self.filename = filename
        self.platform = platform
        self.version = version
        self.tests: List[Dict[str, Any]] = []
        self.result: Optional[TestStatus] = None

    def report_test(self, result: TestResult) -> None:
        self.tests.append({
            "name": result.name,
            "result": result.status.value,
            "duration": int(result.duration_seconds * 1e9),
            "output": result.output,
        })

    def set_result(self, status: TestStatus) -> None:
        self.result = status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tests": self.tests,
            "result": self.result.value if self.result else "",
            "platform": self.platform,
            "version": self.version,
        }

    def output(self, path: str) -> None:
        with open(os.path.join(path, self.filename), "w") as f:
            json.dump(self.to_dict(), f, indent=2)
            f.write("\n")


class TAPReporter(Reporter):
    """TAP version 13 stream, one test point per test and subtest."""

    def __init__(self, filename: str = TAP_REPORT):
        self.filename = filename
        self.results: List[TestResult] = []

    def report_test(self, result: TestResult) -> None:
        self.results.append(result)

    def set_result(self, status: TestStatus) -> None:
        pass

    def render(self) -> str:
        lines = ["TAP version 13", f"1..{len(self.results)}"]
        for i, result in enumerate(self.results, 1):
            if result.status == TestStatus.FAIL:
                lines.append(f"not ok {i} - {result.name}")
            elif result.status == TestStatus.SKIP:
                lines.append(f"ok {i} - {result.name} # SKIP")
            else:
                lines.append(f"ok {i} - {result.name}")
            if result.status != TestStatus.PASS and result.output.strip():
                lines.append("  ---")
                for line in result.output.rstrip("\n").split("\n"):
                    lines.append(f"  {line}")
                lines.append("  ...")
        return "\n".join(lines) + "\n"

    def output(self, path: str) -> None:
        with open(os.path.join(path, self.filename), "w") as f:
            f.write(self.render())


def _strip_markup(text: str) -> str:
    return re.sub(r'\[/?[^\]]+\]', '', text)


class ConsoleReporter(Reporter):
    """
    Live terminal output.

    Shows a progress bar while tests run, one line per finished test, and a
    summary panel at the end.
    """

    def __init__(
        self,
        verbose: bool = False,
        quiet: bool = False,
        no_color: bool = False,
        console: Optional[Console] = None,
    ):
        """
        Initialize reporter.

        Args:
            verbose: Show the output of failed tests in the summary
            quiet: Minimal output (only errors and summary)
            no_color: Plain text output
            console: Rich console to print to
        """
        self.verbose = verbose
        self.quiet = quiet
        self.no_color = no_color

        if console is not None:
            self.console: Optional[Console] = console
        elif not no_color:
            self.console = Console()
        else:
            self.console = None

        self.results: List[TestResult] = []
        self._progress: Optional[Progress] = None
        self._task_id: Optional[Any] = None

    def print(self, message: str, style: Optional[str] = None) -> None:
        if self.quiet:
            return
        if self.console:
            self.console.print(message, style=style)
        else:
            print(_strip_markup(message))

    def print_error(self, message: str) -> None:
        """Print an error message (always shown, even in quiet mode)."""
        if self.console:
            self.console.print(f"[red]Error:[/red] {escape(message)}")
        else:
            print(f"Error: {message}")

    def print_header(self, platform: str, version: str, total_tests: int) -> None:
        if self.quiet:
            return
        if self.console:
            self.console.print()
            self.console.print(
                Panel(
                    f"[bold]VM integration tests[/bold]\n"
                    f"[dim]Platform: {escape(platform)}  Version: {escape(version or 'unknown')}[/dim]",
                    title="vmtest",
                    border_style="blue",
                )
            )
            self.console.print(f"\nRunning [cyan]{total_tests}[/cyan] tests\n")
        else:
            print(f"\n=== vmtest: {platform} {version or 'unknown'} ===")
            print(f"\nRunning {total_tests} tests\n")

    @contextmanager
    def progress_context(
        self,
        total_tests: int,
        description: str = "Running tests",
    ) -> Generator["ConsoleReporter", None, None]:
        """
        Context manager for live progress display.

        Args:
            total_tests: Total number of top-level tests
            description: Progress bar description
        """
        if self.quiet or not self.console:
            yield self
            return

        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(bar_width=30),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=self.console,
            transient=False,
        )

        with self._progress:
            self._task_id = self._progress.add_task(description, total=total_tests)
            yield self

        self._progress = None
        self._task_id = None

    def report_test(self, result: TestResult) -> None:
        self.results.append(result)
        if self._progress is not None and self._task_id is not None and "/" not in result.name:
            self._progress.advance(self._task_id)
        if not self.quiet:
            self._print_test_result(result)

    def _print_test_result(self, result: TestResult) -> None:
        _, plain_status, rich_status = STATUS_STYLES[result.status]
        duration_str = f"({result.duration_seconds:.2f}s)"
        if self.console:
            self.console.print(f"  {rich_status} {escape(result.name)} [dim]{duration_str}[/dim]")
        else:
            print(f"  {plain_status} {result.name} {duration_str}")

    def set_result(self, status: TestStatus) -> None:
        pass

    def output(self, path: str) -> None:
        pass

    def print_summary(self, status: TestStatus, duration: float, output_dir: str) -> None:
        """
        Print the final summary.

        Args:
            status: Aggregate result
            duration: Total run duration in seconds
            output_dir: Where the reports were written
        """
        counts: Dict[TestStatus, int] = {}
        for result in self.results:
            counts[result.status] = counts.get(result.status, 0) + 1
        passed = counts.get(TestStatus.PASS, 0)
        failed = counts.get(TestStatus.FAIL, 0)
        skipped = counts.get(TestStatus.SKIP, 0)
        failures = [r for r in self.results if r.status == TestStatus.FAIL]

        if self.console:
            parts = [f"[green]{passed} passed[/green]"]
            if failed:
                parts.append(f"[red]{failed} failed[/red]")
            if skipped:
                parts.append(f"[yellow]{skipped} skipped[/yellow]")
            border_style = "green" if status == TestStatus.PASS else "red"
            self.console.print()
            self.console.print(Panel(
                ", ".join(parts) + f" [dim]in {duration:.2f}s[/dim]",
                title="Results",
                border_style=border_style,
            ))
            if failures:
                self.console.print("\n[red bold]Failures:[/red bold]\n")
                for result in failures:
                    self._print_failure_details(result)
            self.console.print(f"{status.value}, output in {escape(output_dir)}")
        else:
            print("\n" + "=" * 60)
            print(f"Passed: {passed}, Failed: {failed}, Skipped: {skipped} ({duration:.2f}s)")
            for result in failures:
                print(f"  - {result.name}")
            print(f"{status.value}, output in {output_dir}")

    def _print_failure_details(self, result: TestResult) -> None:
        self.console.print(f"[red]{escape(result.name)}[/red]")
        lines = result.output.rstrip("\n").split("\n") if result.output else []
        if not self.verbose:
            lines = lines[:10]
        for line in lines:
            if line.strip():
                self.console.print(f"    [dim]{escape(line)}[/dim]")
        self.console.print()

    def print_test_list(self, tests: List[TestDescriptor]) -> None:
        """Table of tests with their platform and distro restrictions."""
        if self.console:
            table = Table(title="Tests")
            table.add_column("Name", style="cyan")
            table.add_column("Platforms")
            table.add_column("Architectures")
            table.add_column("Distros")
            table.add_column("Tags", style="dim")
            for t in tests:
                table.add_row(
                    escape(t.name),
                    _include_exclude(t.platforms, t.exclude_platforms),
                    _include_exclude(t.architectures, ()),
                    _include_exclude(t.distros, t.exclude_distros),
                    ", ".join(t.tags),
                )
            self.console.print(table)
        else:
            print(f"{'Test Name':<40} {'Platforms':<24} {'Architectures':<16} Distributions")
            for t in tests:
                print(
                    f"{t.name:<40} "
                    f"{_include_exclude(t.platforms, t.exclude_platforms):<24} "
                    f"{_include_exclude(t.architectures, ()):<16} "
                    f"{_include_exclude(t.distros, t.exclude_distros)}"
                )


def _include_exclude(include: Iterable[str], exclude: Iterable[str]) -> str:
    text = ", ".join(include) or "all"
    exclude = list(exclude)
    if exclude:
        text += " (except " + ", ".join(exclude) + ")"
    return text


def describe_test(test: TestDescriptor) -> Dict[str, Any]:
    """JSON-friendly view of a descriptor, used by ``vmtest list --json``."""
    return {
        "Name": test.name,
        "Platforms": list(test.platforms),
        "ExcludePlatforms": list(test.exclude_platforms),
        "Architectures": list(test.architectures),
        "Distros": list(test.distros),
        "ExcludeDistros": list(test.exclude_distros),
        "Channels": list(test.channels),
        "ExcludeChannels": list(test.exclude_channels),
        "Offerings": list(test.offerings),
        "ExcludeOfferings": list(test.exclude_offerings),
        "MinVersion": str(test.min_version) if test.min_version is not None else "",
        "EndVersion": str(test.end_version) if test.end_version is not None else "",
        "ClusterSize": test.cluster_size,
        "NativeFuncs": sorted(test.native_funcs),
        "Flags": sorted(f.value for f in test.flags),
        "Tags": list(test.tags),
    }
