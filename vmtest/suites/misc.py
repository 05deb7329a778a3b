"""Cluster, user and reboot checks."""

from vmtest import Flag, vm_test
from vmtest.platform.conf import UserData


VALID_SHELLS = {
    "root": "/bin/bash",
    "sync": "/bin/sync",
    "shutdown": "/sbin/shutdown",
    "halt": "/sbin/halt",
    "core": "/bin/bash",
}

ETCD_CLOUD_CONFIG = """#cloud-config
coreos:
  etcd2:
    name: $name
    discovery: $discovery
    advertise-client-urls: http://$private_ipv4:2379
    initial-advertise-peer-urls: http://$private_ipv4:2380
    listen-client-urls: http://0.0.0.0:2379
    listen-peer-urls: http://$private_ipv4:2380
  units:
    - name: etcd2.service
      command: start
"""


@vm_test("cl.users.shells", distros=["cl"], exclude_platforms=["gce"])
def user_shells(c):
    machine = c.machines()[0]
    bad_users = []
    for entry in c.must_ssh(machine, "getent passwd").splitlines():
        fields = entry.split(":")
        if len(fields) != 7:
            bad_users.append(entry)
            continue
        username, shell = fields[0], fields[6]
        # getent reports root with /bin/sh, which links to bash
        if shell == "/bin/sh":
            shell = "/bin/bash"
        if shell != VALID_SHELLS.get(username) and shell != "/sbin/nologin":
            bad_users.append(entry)

    if bad_users:
        c.fatalf("Invalid users: %s", bad_users)


@vm_test("cl.reboot", distros=["cl"], tags=["reboot"])
def reboot(c):
    machine = c.machines()[0]
    before = c.must_ssh(machine, "cat /proc/sys/kernel/random/boot_id")
    machine.reboot()
    after = c.must_ssh(machine, "cat /proc/sys/kernel/random/boot_id")
    if before == after:
        c.fatalf("boot id did not change across reboot: %s", before)


@vm_test(
    "cl.update.disabled",
    distros=["cl"],
)
def update_disabled(c):
    c.assert_cmd_output_contains(
        c.machines()[0], "cat /etc/flatcar/update.conf", "SERVER=disabled",
    )


@vm_test(
    "cl.update.enabled",
    distros=["cl"],
    flags=[Flag.NO_DISABLE_UPDATES],
)
def update_enabled(c):
    out = c.must_ssh(c.machines()[0], "cat /etc/flatcar/update.conf 2>/dev/null || true")
    if "SERVER=disabled" in out:
        c.fatal("updates were disabled although the test asked to keep them")


@vm_test(
    "cl.etcd.discovery",
    cluster_size=3,
    distros=["cl"],
    exclude_platforms=["qemu-unpriv"],
    end_version="2512",
    user_data=UserData.cloud_config(ETCD_CLOUD_CONFIG),
    tags=["etcd"],
)
def etcd_discovery(c):
    machines = c.machines()

    def member_list(sub):
        for machine in machines:
            out = sub.must_ssh(machine, "etcdctl member list")
            if len(out.splitlines()) != len(machines):
                sub.fatalf("machine %s sees members:\n%s", machine.id, out)

    c.run("members", member_list)

    def set_get(sub):
        sub.must_ssh(machines[0], "etcdctl set /vmtest/key value")
        for machine in machines[1:]:
            sub.assert_cmd_output_contains(machine, "etcdctl get /vmtest/key", "value")

    c.run("set-get", set_get)
