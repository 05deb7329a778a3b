"""
Command line interface.

Covers:
- check-console on files and stdin, exit status
- list: name patterns, --filter, --json, malformed patterns
- run: option validation and a programmatic run against the fake platform
- platform_options per backend
- vmtest-agent native function dispatch, including suite modules bundled into a frozen helper
"""

from __future__ import annotations

import json
import types
from pathlib import Path

import pytest
from click.testing import CliRunner

import vmtest.agent
from conftest import FakeFlight, make_test
from vmtest import __version__, vm_test
from vmtest.agent import agent
from vmtest.cli import cli, platform_options, run_cli
from vmtest.platform.base import PlatformOptions
from vmtest.platform.external import ExternalOptions
from vmtest.platform.qemu import QEMUOptions


SUITE_SOURCE = '''
from vmtest import vm_test


@vm_test("ext.cli.pass", min_version="3000")
def passes(c):
    c.must_ssh(c.machines()[0], "true")


@vm_test("ext.cli.fail")
def fails(c):
    c.fatal("always broken")
'''


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def suite_file(tmp_path: Path) -> Path:
    path = tmp_path / "ext_cli_suite.py"
    path.write_text(SUITE_SOURCE)
    return path


class TestGroup:

    def test_version(self, runner: CliRunner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner: CliRunner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("run", "list", "check-console"):
            assert command in result.output


# ---------------------------------------------------------------------------
# check-console
# ---------------------------------------------------------------------------

class TestCheckConsole:

    def test_finding_in_file(self, runner: CliRunner, tmp_path: Path):
        log_file = tmp_path / "console.txt"
        log_file.write_text("booting\nKernel panic - not syncing: VFS: Unable to mount root fs\n")
        result = runner.invoke(cli, ["check-console", str(log_file)])
        assert result.exit_code == 1
        assert f"{log_file}: kernel panic (VFS: Unable to mount root fs)" in result.output

    def test_clean_stdin(self, runner: CliRunner):
        result = runner.invoke(cli, ["check-console"], input="all quiet\n")
        assert result.exit_code == 0
        assert result.output == ""

    def test_dirty_stdin(self, runner: CliRunner):
        result = runner.invoke(cli, ["check-console", "-"], input="Oops: 0000 [#1] SMP\n")
        assert result.exit_code == 1
        assert "stdin: kernel oops" in result.output

    def test_missing_file(self, runner: CliRunner, tmp_path: Path):
        result = runner.invoke(cli, ["check-console", str(tmp_path / "nope.txt")])
        assert result.exit_code == 1


# ---------------------------------------------------------------------------
# list
# ---------------------------------------------------------------------------

class TestList:

    def test_json(self, runner: CliRunner):
        result = runner.invoke(cli, ["list", "--json"])
        assert result.exit_code == 0
        names = [t["Name"] for t in json.loads(result.output)]
        assert "cl.basic" in names
        assert names == sorted(names)

    def test_patterns(self, runner: CliRunner):
        result = runner.invoke(cli, ["--no-color", "list", "cl.*"])
        assert result.exit_code == 0
        assert "cl.basic" in result.output
        assert "fcos.basic" not in result.output

    def test_filter_applies_platform(self, runner: CliRunner):
        result = runner.invoke(cli, ["list", "--json", "--filter", "-p", "qemu-unpriv", "cl.*"])
        assert result.exit_code == 0
        names = [t["Name"] for t in json.loads(result.output)]
        assert "cl.basic" in names
        assert "cl.etcd.discovery" not in names

    def test_extra_suite(self, runner: CliRunner, suite_file: Path):
        result = runner.invoke(cli, ["list", "--json", "--suite", str(suite_file), "ext.*"])
        assert result.exit_code == 0
        assert [t["Name"] for t in json.loads(result.output)] == ["ext.cli.fail", "ext.cli.pass"]

    def test_malformed_pattern(self, runner: CliRunner):
        result = runner.invoke(cli, ["--no-color", "list", "cl.["])
        assert result.exit_code == 1
        assert "syntax error in pattern" in result.output


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------

class TestRun:

    def test_unknown_platform(self, runner: CliRunner):
        result = runner.invoke(cli, ["run", "-p", "vmware"])
        assert result.exit_code == 2

    def test_parallel_must_be_positive(self, runner: CliRunner):
        result = runner.invoke(cli, ["run", "-j", "0"])
        assert result.exit_code == 2

    def test_missing_image(self, runner: CliRunner, tmp_path: Path):
        result = runner.invoke(cli, [
            "--no-color", "run", "-d", str(tmp_path / "out"), "cl.basic",
        ])
        assert result.exit_code == 1
        assert "no disk image given" in result.output

    def test_run_cli_passing(self, suite_file: Path, tmp_path: Path):
        out = tmp_path / "out"
        code = run_cli(
            patterns=("ext.cli.p*",),
            output_dir=str(out),
            suite_paths=(str(suite_file),),
            no_color=True,
            flight_factory=FakeFlight,
        )
        assert code == 0
        report = json.loads((out / "report.json").read_text())
        assert report["result"] == "PASS"
        props = json.loads((out / "properties.json").read_text())
        assert props["platform"] == "qemu"
        assert props["version"] == "3510.2.0"

    def test_run_cli_failing(self, suite_file: Path, tmp_path: Path, capsys):
        out = tmp_path / "out"
        code = run_cli(
            patterns=("ext.cli.*",),
            output_dir=str(out),
            suite_paths=(str(suite_file),),
            no_color=True,
            flight_factory=FakeFlight,
        )
        assert code == 1
        assert "FAIL, output in" in capsys.readouterr().out
        report = json.loads((out / "report.json").read_text())
        results = {t["name"]: t["result"] for t in report["tests"]}
        assert results == {"ext.cli.pass": "PASS", "ext.cli.fail": "FAIL"}

    def test_run_cli_bad_suite(self, tmp_path: Path):
        broken = tmp_path / "ext_cli_broken.py"
        broken.write_text("raise RuntimeError('boom')\n")
        code = run_cli(suite_paths=(str(broken),), output_dir=str(tmp_path / "out"), no_color=True)
        assert code == 1


class TestPlatformOptions:

    def test_qemu(self):
        options = platform_options("qemu-unpriv", "cl", "arm64-usr", qemu_image="image.img")
        assert isinstance(options, QEMUOptions)
        assert options.image == "image.img"
        assert options.board == "arm64-usr"
        assert options.os_id == "flatcar"

    def test_external_reads_command_files(self, tmp_path: Path):
        provision = tmp_path / "provision.sh"
        provision.write_text("create-vm\n")
        deprovision = tmp_path / "deprovision.sh"
        deprovision.write_text("delete-vm $IPADDR\n")
        options = platform_options(
            "external", "cl", "",
            external_manager="mgmt",
            external_provisioning_cmds=str(provision),
            external_deprovisioning_cmds=str(deprovision),
        )
        assert isinstance(options, ExternalOptions)
        assert options.provisioning_cmds == "create-vm\n"
        assert options.deprovisioning_cmds == "delete-vm $IPADDR\n"
        assert options.serial_console_cmd == ""

    def test_other_platforms(self, tmp_path: Path):
        key_file = tmp_path / "id.pub"
        key_file.write_text("ssh-ed25519 AAAA one\n\nssh-ed25519 BBBB two\n")
        options = platform_options("aws", "fcos", "", key_files=(str(key_file),))
        assert type(options) is PlatformOptions
        assert options.os_id == "fcos"
        assert options.additional_ssh_keys == ["ssh-ed25519 AAAA one", "ssh-ed25519 BBBB two"]


# ---------------------------------------------------------------------------
# vmtest-agent
# ---------------------------------------------------------------------------

def broken_check():
    raise RuntimeError("resolv.conf is not a symlink")


class TestAgent:

    @pytest.fixture(autouse=True)
    def native_suite(self, monkeypatch: pytest.MonkeyPatch):
        def load(registry):
            registry.register(make_test(
                "ext.native",
                native_funcs={"Ok": lambda: None, "Broken": broken_check},
            ))
            return 1
        monkeypatch.setattr(vmtest.agent, "load_builtin_suites", load)

    def test_runs_function(self, runner: CliRunner):
        result = runner.invoke(agent, ["run", "ext.native", "Ok"])
        assert result.exit_code == 0

    def test_failing_function(self, runner: CliRunner):
        result = runner.invoke(agent, ["run", "ext.native", "Broken"])
        assert result.exit_code == 1
        assert "ext.native/Broken: resolv.conf is not a symlink" in result.output

    def test_unknown_test(self, runner: CliRunner):
        result = runner.invoke(agent, ["run", "ext.missing", "Ok"])
        assert result.exit_code == 1
        assert "no test named" in result.output

    def test_unknown_function(self, runner: CliRunner):
        result = runner.invoke(agent, ["run", "ext.native", "Nope"])
        assert result.exit_code == 1
        assert "no native function" in result.output

    def test_bundled_suite_modules(self, runner: CliRunner):
        calls = []

        @vm_test("ext.bundled", native_funcs={"Record": lambda: calls.append("Record")})
        def bundled(c):
            pass

        module = types.ModuleType("ext_bundled_suite")
        module.bundled = bundled
        result = runner.invoke(agent, ["run", "ext.bundled", "Record"], obj=[module])
        assert result.exit_code == 0
        assert calls == ["Record"]
