"""
Console and journal classification.

Covers:
- Clean output produces no findings
- Capture groups are reported in parentheses
- Rules fire in table order
- skip_if_match suppresses a rule (sr0 I/O errors, bonding)
- Test flags switch rules off
- Bytes input
"""

from __future__ import annotations

from conftest import make_test
from vmtest.console import CONSOLE_CHECKS, check_console
from vmtest.models import Flag


CLEAN_BOOT = """\
[    0.000000] Linux version 5.15.0-flatcar
[    1.234567] systemd[1]: Started Journal Service.
[    2.000000] systemd[1]: Reached target Multi-User System.
"""


class TestCleanOutput:

    def test_no_findings(self):
        assert check_console(CLEAN_BOOT) == []

    def test_empty(self):
        assert check_console("") == []
        assert check_console(b"") == []


class TestFindings:
    """Individual signatures."""

    def test_kernel_panic_reports_group(self):
        out = "Kernel panic - not syncing: VFS: Unable to mount root fs\n"
        assert check_console(out) == ["kernel panic (VFS: Unable to mount root fs)"]

    def test_oops_has_no_group(self):
        assert check_console("BUG: unable to handle page\nOops: 0002 [#1] SMP\n") == ["kernel oops"]

    def test_emergency_shell(self):
        assert check_console("You are in emergency mode.") == ["emergency shell"]

    def test_failed_unit(self):
        out = "systemd[1]: Failed to start Docker Application Container Engine.\n"
        assert check_console(out) == [
            "systemd unit failed to start (Docker Application Container Engine.)",
        ]

    def test_kernel_warning_reports_location(self):
        out = "WARNING: CPU: 2 PID: 100 at foo.c:10\n"
        assert check_console(out) == ["kernel warning (foo.c:10)"]

    def test_segfault(self):
        assert check_console("foo[123]: segfault, code=dumped, status=11/SEGV") == ["segfault"]

    def test_order_follows_rule_table(self):
        out = "Oops: 0000\nKernel panic - not syncing: Fatal exception\n"
        assert check_console(out) == [
            "kernel panic (Fatal exception)",
            "kernel oops",
        ]

    def test_ignition_race(self):
        out = "ignition[512]: failed to fetch config: context canceled\n"
        assert check_console(out) == ["Ignition fetch cancellation race"]

    def test_bytes_are_decoded(self):
        assert check_console(b"\xffOops: 0000\n") == ["kernel oops"]

    def test_every_rule_has_a_description(self):
        descriptions = [rule.description for rule in CONSOLE_CHECKS]
        assert all(descriptions)
        assert len(descriptions) == len(set(descriptions))


class TestSuppression:
    """Rules that are switched off by other output or by test flags."""

    def test_sr0_io_errors_ignored(self):
        out = "blk_update_request: I/O error, dev sr0, sector 0\n"
        assert check_console(out) == []

    def test_real_disk_io_errors(self):
        out = "blk_update_request: I/O error, dev vda, sector 12345\n"
        # the matching alternative has no group, so the parentheses stay empty
        assert check_console(out) == ["disk I/O errors ()"]

    def test_bonding_spam_needs_three_messages(self):
        line = "bond0: link status up for interface eth0, enabling it in 200 ms\n"
        assert check_console(line * 2) == []
        assert check_console(line * 3) == ["excessive bonding link status messages"]

    def test_bonding_spam_suppressed_once_up(self):
        line = "bond0: link status up for interface eth0, enabling it in 200 ms\n"
        out = line * 3 + "bond0: link status definitely up for interface eth0\n"
        assert check_console(out) == []

    def test_bonding_spam_suppressed_when_link_ready(self):
        line = "bond0: link status up for interface eth0, enabling it in 200 ms\n"
        out = line * 3 + "bond0: link becomes ready\n"
        assert check_console(out) == []

    def test_flag_disables_rule(self):
        out = "Kernel panic - not syncing: Attempted to kill init!\n"
        plain = make_test("cl.panic")
        flagged = make_test("cl.panic", flags=frozenset({Flag.NO_KERNEL_PANIC_CHECK}))
        assert check_console(out, plain) == ["kernel panic (Attempted to kill init!)"]
        assert check_console(out, flagged) == []

    def test_emergency_flag_covers_unit_failures(self):
        out = "Failed to start Foo.\nDependency failed for Bar.\nStarting Emergency Shell\n"
        flagged = make_test("cl.x", flags=frozenset({Flag.NO_EMERGENCY_SHELL_CHECK}))
        assert check_console(out, flagged) == []
        assert len(check_console(out)) == 3

    def test_no_test_applies_every_rule(self):
        out = "device-mapper: verity: 254:0: data block 7 is corrupted\n"
        assert check_console(out) == ["dm-verity detected disk corruption"]
        flagged = make_test("cl.verity", flags=frozenset({Flag.NO_VERITY_CORRUPTION_CHECK}))
        assert check_console(out, flagged) == []
