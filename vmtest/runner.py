"""
VM test orchestration.

Wires the registry, the filter, a platform flight and the harness
together: queries the OS version when needed, provisions a cluster per test,
uploads the native helper, runs the body, and always tears down and scans
console/journal output afterwards.
"""

import json
import logging
import os
import shutil
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from packaging.version import InvalidVersion, Version

from .cluster import NATIVE_HELPER, TestCluster
from .console import check_console
from .filtering import architecture, filter_tests
from .harness import H, HarnessTest, Suite, SuiteOptions, SuiteResult
from .models import FilterCriteria, Flag, RunConfig, TestDescriptor, TestStatus, is_zero_version
from .platform import Flight, PlatformError, RuntimeConfig, new_machines
from .reporting import JSONReporter, Reporter, Reporters, TAPReporter, TAP_REPORT


log = logging.getLogger(__name__)

DEFAULT_BASE_DIR = "_vmtest_temp"
LOG_FLUSH_DELAY = 2.0
HELPER_LIB_DIR = "/usr/lib/vmtest"
ELF_MAGIC = b"\x7fELF"

NIGHTLY_BUILD_PREFIXES = ("dev-main-nightly-", "dev-flatcar-master-")
NIGHTLY_VERSION = "999999.99.99"


class RunError(Exception):
    """The run could not be set up or its reports could not be written."""
    pass


@dataclass
class RunSummary:
    """What :func:`run_tests` hands back to the CLI."""
    status: TestStatus
    output_dir: str
    version: str = ""
    results: List[Any] = field(default_factory=list)
    duration_seconds: float = 0.0


def setup_output_dir(output_dir: str, platform: str, base_dir: str = DEFAULT_BASE_DIR) -> str:
    """
    Prepare a clean output directory for a run.

    With no ``output_dir``, a fresh ``<base_dir>/<platform>-<date>-<pid>``
    directory is used and the ``<base_dir>/<platform>-latest`` symlink is
    atomically repointed at it.

    Raises:
        RunError: the ``-latest`` path exists and is not a symlink.
    """
    defaulted = not output_dir
    dir_name = f"{platform}-{datetime.now().strftime('%Y-%m-%d-%H%M')}-{os.getpid()}"

    if defaulted:
        os.makedirs(base_dir, exist_ok=True)
        output_dir = os.path.join(base_dir, dir_name)

    shutil.rmtree(output_dir, ignore_errors=True)
    os.makedirs(output_dir)

    if defaulted:
        temp_link = os.path.join(output_dir, "latest")
        link_path = os.path.join(base_dir, f"{platform}-latest")
        if os.path.lexists(link_path) and not os.path.islink(link_path):
            raise RunError(f"{link_path} exists and is not a symlink")
        os.symlink(dir_name, temp_link)
        try:
            os.replace(temp_link, link_path)
        except OSError:
            os.remove(temp_link)
            raise

    return output_dir


def write_properties(output_dir: str, config: RunConfig, **extra: Any) -> None:
    """Write ``properties.json`` describing the run into ``output_dir``."""
    props: Dict[str, Any] = {
        "cmdline": config.command_line or sys.argv,
        "platform": config.platform,
        "distro": config.distro,
        "board": config.board,
        "channel": config.channel,
        "offering": config.offering,
    }
    props.update(extra)
    path = os.path.join(output_dir, "properties.json")
    with open(path, "x") as f:
        json.dump(props, f, indent=4)
        f.write("\n")


def needs_version_check(tests: Mapping[str, TestDescriptor], patterns: List[str]) -> bool:
    """
    True if some retained test was selected by a glob (not by its exact
    name) and has a version bound.
    """
    for name, test in tests.items():
        if name in patterns:
            continue
        if not is_zero_version(test.min_version) or not is_zero_version(test.end_version):
            return True
    return False


def parse_os_release_version(version: str, build_id: str) -> str:
    """Effective version string from ``VERSION`` and ``BUILD_ID``."""
    version = version.strip().strip('"')
    build_id = build_id.strip().strip('"')
    if build_id.startswith(NIGHTLY_BUILD_PREFIXES):
        return NIGHTLY_VERSION
    if build_id.startswith("dev-flatcar-"):
        parts = build_id.split("-")
        major = parts[2]
        if major == "lts":
            major = parts[3]
        return f"{major}.99.99"
    return version


def _os_release_value(machine: Any, key: str) -> str:
    out, _ = machine.ssh(f"grep ^{key}= /etc/os-release")
    return out.split("=", 1)[1]


def get_cluster_semver(flight: Flight, output_dir: str, config: RunConfig) -> Version:
    """
    Boot a throwaway machine and read the OS version from it.

    The version check cluster is always destroyed.

    Raises:
        RunError: the machine could not be created, ``/etc/os-release``
            could not be read or parsed, or the distro is not supported.
    """
    test_dir = os.path.join(output_dir, "get_cluster_semver")
    os.makedirs(test_dir, exist_ok=True)

    try:
        cluster = flight.new_cluster(RuntimeConfig(
            output_dir=test_dir,
            ssh_retries=config.ssh_retries,
            ssh_timeout=config.ssh_timeout,
        ))
    except Exception as e:
        raise RunError(f"creating cluster for semver check: {e}") from e

    try:
        try:
            machine = cluster.new_machine(None)
        except Exception as e:
            raise RunError(f"creating new machine for semver check: {e}") from e

        try:
            version = _os_release_value(machine, "VERSION")
            build_id = _os_release_value(machine, "BUILD_ID")
        except Exception as e:
            raise RunError(f"parsing /etc/os-release: {e}") from e
    finally:
        cluster.destroy()

    version = parse_os_release_version(version, build_id)
    log.info("using %r as version to filter tests", version)

    if config.distro == "cl":
        try:
            return Version(version)
        except InvalidVersion as e:
            raise RunError(f"parsing os-release semver: {e}") from e
    if config.distro == "rhcos":
        return Version("0")
    raise RunError(f"no case to handle version parsing for distribution {config.distro!r}")


def find_exec_dir() -> str:
    """Directory of the running program."""
    path = sys.argv[0] if sys.argv and sys.argv[0] else sys.executable
    if os.sep not in path:
        path = shutil.which(path) or path
    return os.path.dirname(os.path.abspath(path))


def helper_search_dirs(arch: str) -> List[str]:
    exec_dir = find_exec_dir()
    return [".", exec_dir, os.path.join(exec_dir, arch), os.path.join(HELPER_LIB_DIR, arch)]


def is_native_binary(path: str) -> bool:
    """True when ``path`` is an ELF executable rather than a script or wrapper."""
    with open(path, "rb") as f:
        return f.read(len(ELF_MAGIC)) == ELF_MAGIC


def upload_native_helper(c: TestCluster, arch: str, distro: str = "cl") -> None:
    """
    Copy the native helper binary onto every machine of the cluster.

    Raises:
        PlatformError: the helper was not found or could not be copied.
    """
    for directory in helper_search_dirs(arch):
        helper = os.path.join(directory, NATIVE_HELPER)
        if not os.path.isfile(helper):
            continue
        if not is_native_binary(helper):
            log.debug("skipping %s: not an ELF executable", helper)
            continue
        try:
            c.drop_file(helper)
        except Exception as e:
            raise PlatformError(f"dropping {NATIVE_HELPER} binary: {e}") from e
        if distro in ("rhcos", "fcos"):
            for machine in c.machines():
                machine.ssh(f"sudo chcon -t bin_t {NATIVE_HELPER}")
        return
    raise PlatformError(f"unable to locate {NATIVE_HELPER} binary for {arch}")


def runtime_config(h: H, test: TestDescriptor, config: RunConfig) -> RuntimeConfig:
    return RuntimeConfig(
        output_dir=h.output_dir,
        no_ssh_key_in_user_data=test.has_flag(Flag.NO_SSH_KEY_IN_USER_DATA),
        no_ssh_key_in_metadata=test.has_flag(Flag.NO_SSH_KEY_IN_METADATA),
        no_disable_updates=test.has_flag(Flag.NO_DISABLE_UPDATES),
        allow_failed_units=config.allow_failed_units,
        ssh_retries=config.ssh_retries,
        ssh_timeout=config.ssh_timeout,
        default_user=test.default_user or "",
    )


def run_test(h: H, test: TestDescriptor, flight: Flight, config: RunConfig) -> None:
    """
    Run one test body on a freshly provisioned cluster.

    Teardown is registered before anything is provisioned: it destroys the
    cluster (when ``config.remove``) and reports every console or journal
    finding as an additional error.
    """
    try:
        cluster = flight.new_cluster(runtime_config(h, test, config))
    except Exception as e:
        h.fatalf("Cluster failed: %s", e)

    def teardown() -> None:
        if config.remove:
            cluster.destroy()
        for machine_id, output in sorted(cluster.console_output().items()):
            for badness in check_console(output, test):
                h.errorf("Found %s on machine %s console", badness, machine_id)
        for machine_id, output in sorted(cluster.journal_output().items()):
            for badness in check_console(output, test):
                h.errorf("Found %s on machine %s journal", badness, machine_id)

    h.defer(teardown)
    # runs before teardown so guest logs reach the console and journal captures
    h.defer(time.sleep, LOG_FLUSH_DELAY)

    if test.cluster_size > 0:
        user_data = test.user_data
        if user_data is not None and user_data.contains("$discovery"):
            try:
                url = cluster.get_discovery_url(test.cluster_size)
            except Exception as e:
                h.skipf("Failed to create discovery endpoint: %s", e)
            user_data = user_data.subst("$discovery", url)

        try:
            new_machines(cluster, user_data, test.cluster_size)
        except Exception as e:
            h.fatalf("Cluster failed starting machines: %s", e)

    c = TestCluster(h, cluster, native_funcs=sorted(test.native_funcs), fail_fast=test.fail_fast)

    if test.native_funcs:
        try:
            upload_native_helper(c, architecture(config.platform, config.board), config.distro)
        except Exception as e:
            h.fatal(e)

    test.run(c)


def run_tests(
    tests: Mapping[str, TestDescriptor],
    patterns: List[str],
    config: RunConfig,
    flight_factory: Callable[[], Flight],
    extra_reporters: Optional[List[Reporter]] = None,
    on_test_start: Optional[Callable[[str], None]] = None,
) -> RunSummary:
    """
    Filter, provision and run ``tests``.

    Args:
        tests: All registered tests, keyed by name
        patterns: Name globs to select
        config: Run configuration; ``output_dir`` must already be set up
        flight_factory: Creates the platform flight
        extra_reporters: Reporters in addition to JSON and TAP
        on_test_start: Called with each test name as it starts

    Returns:
        The aggregate result.

    Raises:
        FilterError: a pattern is malformed.
        PlatformError: the flight could not be created.
        RunError: the version check failed or the TAP copy failed.
    """
    criteria = FilterCriteria(
        patterns=patterns,
        platform=config.platform,
        channel=config.channel,
        offering=config.offering,
        distro=config.distro,
        board=config.board,
    )
    selected = filter_tests(tests, criteria)
    check_version = needs_version_check(selected, patterns)

    flight = flight_factory()
    try:
        version_str = ""
        if check_version:
            log.info("creating cluster to check semver...")
            version = get_cluster_semver(flight, config.output_dir, config)
            version_str = str(version)
            criteria.version = version
            selected = filter_tests(selected, criteria)

        reporters = Reporters([
            JSONReporter(config.platform, version_str),
            TAPReporter(),
        ])
        for reporter in extra_reporters or []:
            reporters.add(reporter)

        htests = [
            HarnessTest(
                name=test.name,
                run=_bind(test, flight, config),
                fail_fast=test.fail_fast,
            )
            for test in sorted(selected.values(), key=lambda t: t.name)
        ]
        suite = Suite(
            SuiteOptions(
                output_dir=config.output_dir,
                parallel=config.parallel,
                fail_fast=config.fail_fast,
                verbose=config.verbose,
            ),
            htests,
            reporters=reporters,
            on_test_start=on_test_start,
        )
        result: SuiteResult = suite.run()
    finally:
        if config.remove:
            flight.destroy()

    if config.tap_file:
        try:
            shutil.copyfile(os.path.join(config.output_dir, TAP_REPORT), config.tap_file)
        except OSError as e:
            raise RunError(f"copying TAP report to {config.tap_file}: {e}") from e

    return RunSummary(
        status=result.status,
        output_dir=config.output_dir,
        version=version_str,
        results=result.results,
        duration_seconds=result.duration_seconds,
    )


def _bind(test: TestDescriptor, flight: Flight, config: RunConfig) -> Callable[[H], None]:
    def run(h: H) -> None:
        run_test(h, test, flight, config)
    return run
