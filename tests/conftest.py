"""
Shared pytest fixtures for vmtest.

No real machines are provisioned: :class:`FakeFlight`, :class:`FakeCluster`
and :class:`FakeMachine` implement the platform contract on top of the real
base classes, so bookkeeping, user-data rendering and teardown are exercised
exactly as a backend would exercise them. SSH commands are answered by a
handler function installed on the flight.

Run tests:
    pytest                          # all tests
    pytest tests/test_filtering.py  # one module
    pytest -k "console"             # filter by name
"""

from __future__ import annotations

import itertools
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import pytest

import vmtest.runner
from vmtest.models import RunConfig, TestDescriptor
from vmtest.platform.base import (
    BaseCluster,
    BaseFlight,
    BaseMachine,
    DiscoveryError,
    MachineError,
    PlatformError,
    PlatformOptions,
    RuntimeConfig,
)
from vmtest.platform.conf import Conf, UserData


TEST_PUBLIC_KEY = "ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAABAQtest vmtest"

SSHHandler = Callable[["FakeMachine", str], Tuple[str, str]]


# ---------------------------------------------------------------------------
# Fake platform
# ---------------------------------------------------------------------------

def default_ssh_handler(machine: "FakeMachine", cmd: str) -> Tuple[str, str]:
    """Answers like a healthy Flatcar machine running version 3510.2.0."""
    if cmd == "grep ^VERSION= /etc/os-release":
        return "VERSION=3510.2.0", ""
    if cmd == "grep ^BUILD_ID= /etc/os-release":
        return "BUILD_ID=2023-05-01-1234", ""
    if cmd == "grep ^ID= /etc/os-release":
        return "ID=flatcar", ""
    return "", ""


class FakeFlight(BaseFlight):
    """Flight that hands out :class:`FakeCluster` objects."""

    platform = "fake"

    def __init__(
        self,
        options: Optional[PlatformOptions] = None,
        console: str = "",
        journal: str = "",
        fail_cluster: bool = False,
        fail_machines: Iterable[int] = (),
        discovery_error: bool = False,
        ssh_handler: SSHHandler = default_ssh_handler,
    ):
        # No key generation: the fake never opens a real SSH connection.
        self.options = options or PlatformOptions()
        self.ssh_key = None
        self._clusters = []
        self._lock = threading.Lock()

        self.console = console
        self.journal = journal
        self.fail_cluster = fail_cluster
        self.fail_machines: Set[int] = set(fail_machines)
        self.discovery_error = discovery_error
        self.ssh_handler = ssh_handler

        self.created_clusters: List["FakeCluster"] = []
        self.destroy_calls = 0
        self._machine_numbers = itertools.count(1)

    def public_keys(self) -> List[str]:
        return [TEST_PUBLIC_KEY]

    def next_machine_number(self) -> int:
        with self._lock:
            return next(self._machine_numbers)

    def new_cluster(self, rconf: RuntimeConfig) -> "FakeCluster":
        if self.fail_cluster:
            raise PlatformError("no capacity")
        cluster = FakeCluster(self, rconf)
        with self._lock:
            self.created_clusters.append(cluster)
        return cluster

    def destroy(self) -> None:
        self.destroy_calls += 1
        super().destroy()


class FakeCluster(BaseCluster):

    def __init__(self, flight: FakeFlight, rconf: RuntimeConfig):
        super().__init__(flight, rconf)
        self.destroy_calls = 0
        self.created: List["FakeMachine"] = []

    def new_machine(self, user_data: Optional[UserData] = None) -> "FakeMachine":
        number = self.flight.next_machine_number()
        if number in self.flight.fail_machines:
            raise MachineError(f"machine {number} failed to boot")
        conf = self.render_user_data(user_data)
        machine = FakeMachine(self, f"m{number}", self.rconf.output_dir, conf)
        self.add_machine(machine)
        with self._lock:
            self.created.append(machine)
        return machine

    def get_discovery_url(self, size: int) -> str:
        if self.flight.discovery_error:
            raise DiscoveryError("discovery service unavailable")
        return f"https://discovery.example.com/{size}"

    def destroy(self) -> None:
        self.destroy_calls += 1
        super().destroy()


class FakeJournal:
    def __init__(self, text: str):
        self.text = text
        self.destroyed = False

    def destroy(self) -> None:
        self.destroyed = True

    def read(self) -> str:
        return self.text


class FakeMachine(BaseMachine):

    def __init__(self, cluster: FakeCluster, machine_id: str, output_dir: str, conf: Conf):
        super().__init__(cluster, machine_id, output_dir)
        self._ip = "10.0.0.1"
        self.conf = conf
        self.journal = FakeJournal(cluster.flight.journal)
        self.commands: List[str] = []
        self.stdin: Dict[str, Any] = {}
        self.release_calls = 0
        self.reboots = 0

    def ssh(self, cmd: str, stdin: Any = None) -> Tuple[str, str]:
        self.commands.append(cmd)
        if stdin is not None:
            self.stdin[cmd] = stdin.read() if hasattr(stdin, "read") else stdin
        return self.cluster.flight.ssh_handler(self, cmd)

    def reboot(self) -> None:
        self.reboots += 1

    def _release(self) -> None:
        self.release_calls += 1

    def _read_console(self) -> str:
        return self.cluster.flight.console


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_test(name: str, run: Optional[Callable[..., Any]] = None, **kwargs: Any) -> TestDescriptor:
    """Descriptor with a no-op body unless ``run`` is given."""
    return TestDescriptor(name=name, run=run or (lambda c: None), **kwargs)


def as_map(*tests: TestDescriptor) -> Dict[str, TestDescriptor]:
    return {t.name: t for t in tests}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def no_log_flush_delay(monkeypatch: pytest.MonkeyPatch) -> None:
    """Tests do not wait for guest logs to flush."""
    monkeypatch.setattr(vmtest.runner, "LOG_FLUSH_DELAY", 0)


@pytest.fixture
def flight() -> FakeFlight:
    return FakeFlight()


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    path = tmp_path / "out"
    path.mkdir()
    return path


@pytest.fixture
def run_config(output_dir: Path) -> RunConfig:
    return RunConfig(
        platform="qemu",
        distro="cl",
        output_dir=str(output_dir),
        command_line=["vmtest", "run"],
    )
