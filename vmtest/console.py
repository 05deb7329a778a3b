"""
Console and journal failure classification.

Scans captured machine output for known signatures of guest-side failures
(kernel panics, emergency shells, filesystem corruption, failed units, ...)
that a test body could otherwise pass straight through.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Union

from .models import Flag, TestDescriptor


@dataclass(frozen=True)
class ConsoleCheckRule:
    """A single failure signature."""
    description: str
    match: Pattern[str]
    skip_if_match: Optional[Pattern[str]] = None
    skip_flag: Optional[Flag] = None


def _rule(
    description: str,
    match: str,
    skip_if_match: Optional[str] = None,
    skip_flag: Optional[Flag] = None,
) -> ConsoleCheckRule:
    return ConsoleCheckRule(
        description=description,
        match=re.compile(match),
        skip_if_match=re.compile(skip_if_match) if skip_if_match else None,
        skip_flag=skip_flag,
    )


CONSOLE_CHECKS: List[ConsoleCheckRule] = [
    _rule(
        "emergency shell",
        r"Press Enter for emergency shell|Starting Emergency Shell|You are in emergency mode",
        skip_flag=Flag.NO_EMERGENCY_SHELL_CHECK,
    ),
    _rule(
        "kernel panic",
        r"Kernel panic - not syncing: (.*)",
        skip_flag=Flag.NO_KERNEL_PANIC_CHECK,
    ),
    _rule("kernel oops", r"Oops:"),
    _rule("kernel warning", r"WARNING: CPU: \d+ PID: \d+ at (.+)"),
    _rule("failure of disk under I/O", r"rejecting I/O to offline device"),
    _rule(
        "coreos-metadata failure to set up initramfs network",
        r"Failed to start CoreOS Static Network Agent",
    ),
    _rule(
        "excessive bonding link status messages",
        r"(?s:link status up for interface [^,]+, enabling it in [0-9]+ ms.*?){3}",
        skip_if_match=(
            r"(bond.*? link status definitely up for interface)"
            r"|(bond.*? first active interface up)"
            r"|(bond.*? Gained carrier)"
            r"|(bond.*? link becomes ready)"
        ),
    ),
    _rule(
        "ext4 delayed allocation failure",
        r"EXT4-fs \([^)]+\): Delayed block allocation failed for inode \d+ at "
        r"logical offset \d+ with max blocks \d+ with (error \d+)",
    ),
    _rule("GRUB memory corruption", r"((alloc|free) magic) (is )?broken"),
    _rule(
        "Ignition fetch cancellation race",
        r"ignition\[[0-9]+\]: failed to fetch config: context canceled",
    ),
    _rule(
        "initrd-cleanup.service terminated",
        r"initrd-cleanup\.service: Main process exited, code=killed, status=15/TERM",
    ),
    _rule("bad page table", r"mm/pgtable-generic.c:\d+: bad (p.d|pte)"),
    _rule("Go panic", r"panic: (.*)"),
    _rule("segfault", r"SIGSEGV|=11/SEGV"),
    _rule("core dump", r"[Cc]ore dump"),
    _rule(
        "ext4 filesystem corruption led to read-only mount",
        r"EXT4-fs \(.*\): Remounting filesystem read-only",
    ),
    _rule(
        "ext4 filesystem corruption",
        r"EXT4-fs error \(device .*\)|Aborting journal on device .*",
    ),
    _rule(
        "fsck.ext4 could not repair the filesystem unsupervised",
        r"UNEXPECTED INCONSISTENCY; RUN fsck MANUALLY.",
    ),
    _rule(
        "dm-verity detected disk corruption",
        r"device-mapper: verity: \d+:\d+: data block \d+ is corrupted",
        skip_flag=Flag.NO_VERITY_CORRUPTION_CHECK,
    ),
    _rule(
        "disk I/O errors",
        r"blk_update_request: I/O error, dev .*, sector \d+"
        r"|Buffer I/O error on (device|dev) .*, logical block \d+"
        r"|EXT4-fs warning \(device .*\): .*:\d+: I/O error .* writing to inode \d+",
        # sr0 is the virtual CD-ROM, which routinely logs read errors
        skip_if_match=(
            r"blk_update_request: I/O error, dev sr0, sector \d+"
            r"|Buffer I/O error on (device|dev) sr0, logical block \d+"
        ),
    ),
    _rule(
        "systemd unit failed to start",
        r"Failed to start (.*)",
        skip_flag=Flag.NO_EMERGENCY_SHELL_CHECK,
    ),
    _rule(
        "systemd dependency unit failed to start",
        r"Dependency failed for (.*)",
        skip_flag=Flag.NO_EMERGENCY_SHELL_CHECK,
    ),
    _rule(
        "systemd default target unit dependencies not met",
        r"Failed to isolate default target",
    ),
    _rule("systemd froze execution", r"systemd\[1\]: Freezing execution"),
    _rule(
        "systemd skipped execution of a unit due to an ordering cycle",
        r"Ordering cycle found, skipping (.*)"
        r"|Job (.*) deleted to break ordering cycle starting with (.*)"
        r"|Found ordering cycle on (.*)",
    ),
]


def check_console(
    output: Union[str, bytes],
    test: Optional[TestDescriptor] = None,
) -> List[str]:
    """
    Classify console or journal text.

    Args:
        output: Captured text; bytes are decoded as UTF-8 with replacement
        test: Descriptor whose flags gate individual rules, or None to apply
            every rule

    Returns:
        One human-readable string per firing rule, in rule order. Rules with
        a capture group report ``"<description> (<first group>)"``.
    """
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")

    badness: List[str] = []
    for rule in CONSOLE_CHECKS:
        if rule.skip_flag is not None and test is not None and test.has_flag(rule.skip_flag):
            continue
        match = rule.match.search(output)
        if match is None:
            continue
        if rule.skip_if_match is not None and rule.skip_if_match.search(output):
            continue
        if match.re.groups > 0:
            badness.append(f"{rule.description} ({match.group(1) or ''})")
        else:
            badness.append(rule.description)
    return badness
