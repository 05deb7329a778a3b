"""
Basic sanity checks for a freshly booted machine.

Every check is a subtest of the same name driven over SSH, so nothing has
to be installed in the guest first.
"""

import re
from typing import Callable, Dict, List

from vmtest import vm_test


TEST_USER = "vmtest-user"

SYMLINKS = {
    "/etc/coreos": "/etc/flatcar",
    "/usr/lib/coreos": "/usr/lib/flatcar",
    "/usr/share/coreos": "/usr/share/flatcar",
}

CL_SERVICES = [
    "multi-user.target",
    "docker.socket",
    "systemd-timesyncd.service",
    "update-engine.service",
]

MACHINE_ID = re.compile(r"^[0-9a-f]{32}$")


def check_port_ssh(c, machine) -> None:
    if not c.must_ssh(machine, "ss -Htln 'sport = :22'"):
        c.fatal("nothing is listening on port 22")


def check_symlink_resolv_conf(c, machine) -> None:
    c.must_ssh(machine, "test -L /etc/resolv.conf")


def check_symlink_flatcar(c, machine) -> None:
    for coreos_path, flatcar_path in SYMLINKS.items():
        resolved = c.must_ssh(machine, f"readlink {coreos_path}")
        if resolved.startswith("./"):
            resolved = resolved[2:]
        target = flatcar_path.rsplit("/", 1)[-1]
        if resolved != target:
            c.fatalf("resolved path %s of %s does not point to %s", resolved, coreos_path, target)
        c.must_ssh(machine, f"test -e {flatcar_path}")


def services_active(units: List[str]) -> Callable:
    def check(c, machine) -> None:
        # is-active exits non-zero when any unit is inactive
        c.must_ssh(machine, "systemctl is-active " + " ".join(units))
    return check


def check_read_only_usr(c, machine) -> None:
    options = c.must_ssh(machine, "findmnt -n -o OPTIONS /usr")
    if not options:
        c.fatal("/usr is not a separate mount")
    if "ro" not in options.split(","):
        c.fatalf("/usr is not mounted read-only: %s", options)


def check_machine_id(c, machine) -> None:
    machine_id = c.must_ssh(machine, "cat /etc/machine-id")
    if not MACHINE_ID.match(machine_id):
        c.fatalf("machine-id %r is not 32 hex digits", machine_id)


def check_useradd(c, machine) -> None:
    c.must_ssh(machine, f"sudo useradd -m {TEST_USER}")
    try:
        c.must_ssh(machine, f"test -d /home/{TEST_USER}")
    finally:
        c.ssh(machine, f"sudo userdel -r {TEST_USER}")


def run_checks(c, checks: Dict[str, Callable]) -> None:
    machine = c.machines()[0]
    for name, check in checks.items():
        c.run(name, lambda sub, check=check: check(sub, machine))


CL_CHECKS = {
    "PortSSH": check_port_ssh,
    "Symlink": check_symlink_resolv_conf,
    "SymlinkFlatcar": check_symlink_flatcar,
    "ServicesActive": services_active(CL_SERVICES),
    "ReadOnly": check_read_only_usr,
    "Useradd": check_useradd,
    "MachineID": check_machine_id,
}

FCOS_CHECKS = {
    "PortSSH": check_port_ssh,
    "ServicesActive": services_active(["multi-user.target"]),
    "ReadOnly": check_read_only_usr,
    "Useradd": check_useradd,
    "MachineID": check_machine_id,
}


@vm_test("cl.basic", distros=["cl"], tags=["basic"])
def cl_basic(c):
    run_checks(c, CL_CHECKS)


@vm_test("fcos.basic", distros=["fcos"], tags=["basic"])
def fcos_basic(c):
    run_checks(c, FCOS_CHECKS)
