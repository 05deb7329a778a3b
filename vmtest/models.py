"""
Data models for vmtest.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from packaging.version import Version


class TestStatus(str, Enum):
    """Status of a test execution."""
    PASS = "PASS"
    FAIL = "FAIL"
    SKIP = "SKIP"


class Flag(str, Enum):
    """Per-test switches that alter provisioning and failure classification."""
    NO_SSH_KEY_IN_USER_DATA = "no-ssh-key-in-user-data"
    NO_SSH_KEY_IN_METADATA = "no-ssh-key-in-metadata"
    NO_EMERGENCY_SHELL_CHECK = "no-emergency-shell-check"
    NO_KERNEL_PANIC_CHECK = "no-kernel-panic-check"
    NO_VERITY_CORRUPTION_CHECK = "no-verity-corruption-check"
    NO_DISABLE_UPDATES = "no-disable-updates"


# (version, channel, arch, platform) -> skip?
SkipFunc = Callable[[Version, str, str, str], bool]


def is_zero_version(version: Optional[Version]) -> bool:
    """None and 0 both mean "no version known / unbounded"."""
    return version is None or version == Version("0")


@dataclass(frozen=True)
class TestDescriptor:
    """
    A registered acceptance test.

    ``run`` receives a :class:`vmtest.cluster.TestCluster`. Everything else
    describes where the test may run and how its machines are provisioned.
    """
    name: str
    run: Callable[..., Any]
    platforms: Tuple[str, ...] = ()
    exclude_platforms: Tuple[str, ...] = ()
    architectures: Tuple[str, ...] = ()
    distros: Tuple[str, ...] = ()
    exclude_distros: Tuple[str, ...] = ()
    channels: Tuple[str, ...] = ()
    exclude_channels: Tuple[str, ...] = ()
    offerings: Tuple[str, ...] = ()
    exclude_offerings: Tuple[str, ...] = ()
    min_version: Optional[Version] = None
    end_version: Optional[Version] = None
    cluster_size: int = 0
    native_funcs: Mapping[str, Callable[[], Any]] = field(default_factory=dict)
    user_data: Optional[Any] = None
    flags: FrozenSet[Flag] = frozenset()
    fail_fast: bool = False
    skip_func: Optional[SkipFunc] = None
    default_user: Optional[str] = None
    tags: Tuple[str, ...] = ()

    def has_flag(self, flag: Flag) -> bool:
        return flag in self.flags


@dataclass
class TestResult:
    """Result of a single test (or subtest) execution."""
    name: str
    status: TestStatus
    duration_seconds: float
    output: str = ""


@dataclass
class FilterCriteria:
    """Snapshot of the run's selection axes, used by the test filter."""
    patterns: List[str] = field(default_factory=lambda: ["*"])
    platform: str = "qemu"
    channel: str = "stable"
    offering: str = "basic"
    distro: str = "cl"
    board: str = ""
    version: Optional[Version] = None


@dataclass
class RunConfig:
    """Configuration for a test run."""
    platform: str = "qemu"
    distro: str = "cl"
    channel: str = "stable"
    offering: str = "basic"
    board: str = ""
    parallel: int = 1
    output_dir: str = ""
    remove: bool = True
    fail_fast: bool = False
    tap_file: Optional[str] = None
    ssh_retries: int = 60
    ssh_timeout: float = 10.0
    allow_failed_units: bool = False
    verbose: bool = False
    command_line: List[str] = field(default_factory=list)
