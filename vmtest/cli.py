"""
CLI entry point for vmtest.

Uses Click for argument parsing. ``vmtest run`` provisions machines and runs
the selected tests, ``vmtest list`` shows what a run would select, and
``vmtest check-console`` scans saved console or journal logs for known
failure signatures.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .console import check_console
from .discovery import SuiteLoadError, load_builtin_suites, load_suite_paths
from .filtering import FilterError, filter_tests, match_names
from .models import FilterCriteria, RunConfig, TestStatus
from .platform import Flight, PlatformError, PlatformName, PlatformOptions, new_flight
from .platform.external import ExternalOptions
from .platform.qemu import QEMUOptions
from .registry import RegistrationError, TestRegistry
from .reporting import ConsoleReporter, describe_test
from .runner import DEFAULT_BASE_DIR, RunError, run_tests, setup_output_dir, write_properties


log = logging.getLogger(__name__)

CHANNELS = ("alpha", "beta", "stable", "edge", "lts")
OFFERINGS = ("basic", "pro")
DISTROS = ("cl", "fcos", "rhcos")


def setup_logging(verbose: bool, no_color: bool) -> None:
    """Send log records to stderr through Rich."""
    handler = RichHandler(
        console=Console(stderr=True, no_color=no_color),
        show_path=verbose,
        rich_tracebacks=verbose,
    )
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[handler],
        force=True,
    )
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def build_registry(suite_paths: Tuple[str, ...] = ()) -> TestRegistry:
    """
    Registry holding the built-in suites plus any suite files given.

    Raises:
        SuiteLoadError: a suite could not be loaded.
    """
    registry = TestRegistry()
    try:
        load_builtin_suites(registry)
        if suite_paths:
            load_suite_paths(registry, [Path(p) for p in suite_paths])
    except RegistrationError as e:
        raise SuiteLoadError(str(e)) from e
    return registry


def _read_keys(key_files: Tuple[str, ...]) -> List[str]:
    keys = []
    for path in key_files:
        with open(path) as f:
            keys.extend(line.strip() for line in f if line.strip())
    return keys


def platform_options(
    platform: str,
    distro: str,
    board: str,
    use_agent_keys: bool = False,
    key_files: Tuple[str, ...] = (),
    qemu_image: str = "",
    qemu_firmware: str = "",
    qemu_memory: str = "1024",
    external_manager: str = "",
    external_user: str = "root",
    external_password: str = "",
    external_provisioning_cmds: str = "",
    external_serial_console_cmd: str = "",
    external_deprovisioning_cmds: str = "",
) -> PlatformOptions:
    """Backend options for ``platform`` from the command line values."""
    common = dict(
        distribution=distro,
        board=board,
        os_id="flatcar" if distro == "cl" else distro,
        use_agent_keys=use_agent_keys,
        additional_ssh_keys=_read_keys(key_files),
    )
    if platform in (PlatformName.QEMU.value, PlatformName.QEMU_UNPRIV.value):
        return QEMUOptions(
            image=qemu_image,
            firmware=qemu_firmware,
            memory=qemu_memory,
            **common,
        )
    if platform == PlatformName.EXTERNAL.value:
        return ExternalOptions(
            management_host=external_manager,
            management_user=external_user,
            management_password=external_password,
            provisioning_cmds=_read_cmds(external_provisioning_cmds),
            serial_console_cmd=_read_cmds(external_serial_console_cmd),
            deprovisioning_cmds=_read_cmds(external_deprovisioning_cmds),
            **common,
        )
    return PlatformOptions(**common)


def _read_cmds(path: str) -> str:
    if not path:
        return ""
    with open(path) as f:
        return f.read()


def run_cli(
    patterns: Tuple[str, ...] = (),
    platform: str = "qemu",
    channel: str = "stable",
    offering: str = "basic",
    distro: str = "cl",
    board: str = "",
    parallel: int = 1,
    output_dir: str = "",
    remove: bool = True,
    tap_file: Optional[str] = None,
    fail_fast: bool = False,
    ssh_retries: int = 60,
    ssh_timeout: float = 10.0,
    allow_failed_units: bool = False,
    suite_paths: Tuple[str, ...] = (),
    verbose: bool = False,
    quiet: bool = False,
    no_color: bool = False,
    flight_factory: Optional[Callable[[], Flight]] = None,
    options: Optional[PlatformOptions] = None,
) -> int:
    """
    Main ``run`` logic (can be called programmatically).

    Returns exit code (0 if the run passed, 1 otherwise).
    """
    reporter = ConsoleReporter(verbose=verbose, quiet=quiet, no_color=no_color)
    pattern_list = list(patterns) or ["*"]

    try:
        registry = build_registry(suite_paths)
    except SuiteLoadError as e:
        reporter.print_error(f"Failed to load suites: {e}")
        return 1

    config = RunConfig(
        platform=platform,
        distro=distro,
        channel=channel,
        offering=offering,
        board=board,
        parallel=parallel,
        remove=remove,
        fail_fast=fail_fast,
        tap_file=tap_file,
        ssh_retries=ssh_retries,
        ssh_timeout=ssh_timeout,
        allow_failed_units=allow_failed_units,
        verbose=verbose,
        command_line=list(sys.argv),
    )

    try:
        config.output_dir = setup_output_dir(output_dir, platform, DEFAULT_BASE_DIR)
    except (RunError, OSError) as e:
        reporter.print_error(f"Setting up output directory: {e}")
        return 1

    if flight_factory is None:
        opts = options if options is not None else platform_options(platform, distro, board)

        def flight_factory() -> Flight:
            return new_flight(platform, opts)

    try:
        total = len(filter_tests(registry.as_dict(), FilterCriteria(
            patterns=pattern_list,
            platform=platform,
            channel=channel,
            offering=offering,
            distro=distro,
            board=board,
        )))
        reporter.print_header(platform, "", total)
        with reporter.progress_context(total):
            summary = run_tests(
                registry.as_dict(),
                pattern_list,
                config,
                flight_factory,
                extra_reporters=[reporter],
            )
    except (PlatformError, FilterError, RunError) as e:
        reporter.print_error(str(e))
        return 1

    try:
        write_properties(config.output_dir, config, version=summary.version)
    except OSError as e:
        log.warning("writing properties.json: %s", e)

    reporter.print_summary(summary.status, summary.duration_seconds, summary.output_dir)
    return 0 if summary.status == TestStatus.PASS else 1


# ---------------------------------------------------------------------------
# Click commands
# ---------------------------------------------------------------------------

def selection_options(func: Callable) -> Callable:
    """Options shared by ``run`` and ``list`` that decide which tests apply."""
    decorators = [
        click.option(
            "-p", "--platform",
            type=click.Choice([p.value for p in PlatformName]),
            default=PlatformName.QEMU.value,
            show_default=True,
            help="VM platform",
        ),
        click.option(
            "--channel",
            type=click.Choice(CHANNELS),
            default="stable",
            show_default=True,
            help="Release channel",
        ),
        click.option(
            "--offering",
            type=click.Choice(OFFERINGS),
            default="basic",
            show_default=True,
            help="Product offering",
        ),
        click.option(
            "-b", "--distro",
            type=click.Choice(DISTROS),
            default="cl",
            show_default=True,
            help="Distribution",
        ),
        click.option(
            "--board",
            default="",
            help="Target board, e.g. amd64-usr or arm64-usr",
        ),
        click.option(
            "--suite", "suite_paths",
            multiple=True,
            type=click.Path(exists=True),
            help="Extra suite file or directory (can be repeated)",
        ),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Debug logging and full failure output")
@click.option("--no-color", is_flag=True, help="Disable colored output")
@click.version_option(version=__version__, prog_name="vmtest")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, no_color: bool) -> None:
    """
    VM integration test runner.

    \b
    Examples:
        vmtest run --qemu-image image.img        # Run every test on QEMU
        vmtest run 'cl.etcd.*' -j 4              # Four tests at a time
        vmtest list --filter -p aws              # What would run on AWS
        vmtest check-console console.txt         # Scan a saved log
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["no_color"] = no_color
    setup_logging(verbose, no_color)


@cli.command()
@click.argument("patterns", nargs=-1)
@selection_options
@click.option("-j", "--parallel", default=1, type=click.IntRange(min=1), show_default=True,
              help="Number of tests to run at once")
@click.option("-d", "--output-dir", default="",
              help=f"Output directory (default: {DEFAULT_BASE_DIR}/<platform>-<date>-<pid>)")
@click.option("--remove/--no-remove", default=True, show_default=True,
              help="Destroy machines after each test")
@click.option("-k", "--keys", "use_agent_keys", is_flag=True,
              help="Also authorize the keys held by the SSH agent")
@click.option("--key", "key_files", multiple=True, type=click.Path(exists=True),
              help="Public key file to authorize (can be repeated)")
@click.option("--tap-file", type=click.Path(), help="Copy the TAP report to this file")
@click.option("--fail-fast", is_flag=True, help="Stop starting tests after the first failure")
@click.option("--ssh-retries", default=60, type=int, show_default=True,
              help="SSH connection attempts when checking a new machine")
@click.option("--ssh-timeout", default=10.0, type=float, show_default=True,
              help="Seconds per SSH connection attempt")
@click.option("--allow-failed-units", is_flag=True,
              help="Do not fail a machine that has failed systemd units")
@click.option("-q", "--quiet", is_flag=True, help="Quiet mode (minimal output)")
@click.option("--qemu-image", default="", help="QEMU: base disk image")
@click.option("--qemu-firmware", default="", help="QEMU: firmware passed with -bios")
@click.option("--qemu-memory", default="1024", show_default=True, help="QEMU: memory in MiB")
@click.option("--external-manager", default="", help="External: management host[:port]")
@click.option("--external-user", default="root", show_default=True,
              help="External: management host user")
@click.option("--external-password", default="", help="External: management host password")
@click.option("--external-provisioning-cmds", default="", type=click.Path(),
              help="External: file with the provisioning commands")
@click.option("--external-serial-console-cmd", default="", type=click.Path(),
              help="External: file with the serial console command")
@click.option("--external-deprovisioning-cmds", default="", type=click.Path(),
              help="External: file with the deprovisioning commands")
@click.pass_context
def run(ctx: click.Context, patterns: Tuple[str, ...], platform: str, channel: str,
        offering: str, distro: str, board: str, suite_paths: Tuple[str, ...],
        parallel: int, output_dir: str, remove: bool, use_agent_keys: bool,
        key_files: Tuple[str, ...], tap_file: Optional[str], fail_fast: bool,
        ssh_retries: int, ssh_timeout: float, allow_failed_units: bool, quiet: bool,
        qemu_image: str, qemu_firmware: str, qemu_memory: str,
        external_manager: str, external_user: str, external_password: str,
        external_provisioning_cmds: str, external_serial_console_cmd: str,
        external_deprovisioning_cmds: str) -> None:
    """
    Run the tests matching PATTERNS (default: all).

    Patterns are shell-style globs matched against the full test name.
    """
    try:
        options = platform_options(
            platform, distro, board,
            use_agent_keys=use_agent_keys,
            key_files=key_files,
            qemu_image=qemu_image,
            qemu_firmware=qemu_firmware,
            qemu_memory=qemu_memory,
            external_manager=external_manager,
            external_user=external_user,
            external_password=external_password,
            external_provisioning_cmds=external_provisioning_cmds,
            external_serial_console_cmd=external_serial_console_cmd,
            external_deprovisioning_cmds=external_deprovisioning_cmds,
        )
    except OSError as e:
        raise click.ClickException(str(e))

    exit_code = run_cli(
        patterns=patterns,
        platform=platform,
        channel=channel,
        offering=offering,
        distro=distro,
        board=board,
        parallel=parallel,
        output_dir=output_dir,
        remove=remove,
        tap_file=tap_file,
        fail_fast=fail_fast,
        ssh_retries=ssh_retries,
        ssh_timeout=ssh_timeout,
        allow_failed_units=allow_failed_units,
        suite_paths=suite_paths,
        verbose=ctx.obj["verbose"],
        quiet=quiet,
        no_color=ctx.obj["no_color"],
        options=options,
    )
    ctx.exit(exit_code)


@cli.command("list")
@click.argument("patterns", nargs=-1)
@selection_options
@click.option("--filter", "apply_filter", is_flag=True,
              help="Only list tests that would run with the selection options")
@click.option("--json", "as_json", is_flag=True, help="Print the tests as JSON")
@click.pass_context
def list_cmd(ctx: click.Context, patterns: Tuple[str, ...], platform: str, channel: str,
             offering: str, distro: str, board: str, suite_paths: Tuple[str, ...],
             apply_filter: bool, as_json: bool) -> None:
    """List registered tests, optionally only those matching PATTERNS."""
    reporter = ConsoleReporter(no_color=ctx.obj["no_color"])
    try:
        registry = build_registry(suite_paths)
    except SuiteLoadError as e:
        reporter.print_error(f"Failed to load suites: {e}")
        ctx.exit(1)

    tests = registry.as_dict()
    try:
        if apply_filter:
            tests = filter_tests(tests, FilterCriteria(
                patterns=list(patterns) or ["*"],
                platform=platform,
                channel=channel,
                offering=offering,
                distro=distro,
                board=board,
            ))
        elif patterns:
            tests = match_names(tests, patterns)
    except FilterError as e:
        reporter.print_error(str(e))
        ctx.exit(1)

    ordered = [tests[name] for name in sorted(tests)]
    if as_json:
        click.echo(json.dumps([describe_test(t) for t in ordered], indent=2))
    else:
        reporter.print_test_list(ordered)


@cli.command("check-console")
@click.argument("files", nargs=-1)
def check_console_cmd(files: Tuple[str, ...]) -> None:
    """
    Scan console or journal logs for known failure signatures.

    Reads FILES, or stdin when none are given or a file is "-". Prints one
    line per finding and exits non-zero if anything was found.
    """
    failed = False
    for source in files or ("-",):
        try:
            if source == "-":
                data = click.get_binary_stream("stdin").read()
                source = "stdin"
            else:
                with open(source, "rb") as f:
                    data = f.read()
        except OSError as e:
            click.echo(f"{source}: {e}", err=True)
            failed = True
            continue
        for badness in check_console(data):
            click.echo(f"{source}: {badness}")
            failed = True
    sys.exit(1 if failed else 0)


def main() -> None:
    cli(auto_envvar_prefix="VMTEST")


if __name__ == "__main__":
    main()
