"""
Local QEMU backends.

``qemu`` boots each machine with KVM acceleration; ``qemu-unpriv`` lets
QEMU fall back to TCG and only accepts Ignition (or empty) user data.
Both use user-mode networking with an SSH port forwarded to localhost plus
a per-cluster multicast network so machines of one cluster can talk to
each other.
"""

import logging
import os
import socket
import subprocess
import threading
import uuid
from dataclasses import dataclass
from typing import IO, List, Optional, Tuple

from .base import (
    BaseCluster,
    BaseFlight,
    BaseMachine,
    MachineError,
    PlatformError,
    PlatformOptions,
    RuntimeConfig,
    start_machine,
)
from .conf import Conf, UserData
from .journal import Journal


log = logging.getLogger(__name__)

IGNITION_FW_CFG = "opt/org.flatcar-linux/config"
MCAST_GROUP = "230.0.0.1"
PRIVATE_NET = "172.24.213"
MAX_MACHINES = 253

QEMU_BINARIES = {
    "amd64": "qemu-system-x86_64",
    "arm64": "qemu-system-aarch64",
}


@dataclass
class QEMUOptions(PlatformOptions):
    """Options for the QEMU backends."""
    image: str = ""
    firmware: str = ""
    memory: str = "1024"
    cpus: int = 1
    qemu_img: str = "qemu-img"


def free_port() -> int:
    """A TCP port on localhost that nothing is listening on right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def virtio(arch: str, device: str, args: str) -> str:
    suffix = "device" if arch == "arm64" else "pci"
    return f"virtio-{device}-{suffix},{args}"


def metadata_unit(private_addr: str) -> str:
    return (
        "[Unit]\n"
        "Description=QEMU metadata agent\n"
        "After=network-online.target\n"
        "Wants=network-online.target\n"
        "\n"
        "[Service]\n"
        "Type=oneshot\n"
        "Environment=OUTPUT=/run/metadata/flatcar\n"
        "ExecStart=/usr/bin/mkdir --parent /run/metadata\n"
        "ExecStart=/usr/bin/bash -c 'echo \"COREOS_CUSTOM_PRIVATE_IPV4="
        f"{private_addr}\\nCOREOS_CUSTOM_PUBLIC_IPV4={private_addr}\\n\" > ${{OUTPUT}}'\n"
        "ExecStartPost=/usr/bin/ln -fs /run/metadata/flatcar /run/metadata/coreos\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )


def private_network(mac: str, private_addr: str) -> str:
    return (
        "[Match]\n"
        f"MACAddress={mac}\n"
        "[Link]\n"
        "RequiredForOnline=no\n"
        "[Address]\n"
        f"Address={private_addr}/24\n"
        "Scope=link\n"
        "[Network]\n"
        "DHCP=no\n"
        "LinkLocalAddressing=no\n"
    )


class QEMUFlight(BaseFlight):

    def __init__(self, options: QEMUOptions, unprivileged: bool = False):
        if not options.image:
            raise PlatformError("qemu: no disk image given")
        if not os.path.isfile(options.image):
            raise PlatformError(f"qemu: disk image {options.image} does not exist")
        super().__init__(options)
        self.unprivileged = unprivileged
        self.platform = "qemu-unpriv" if unprivileged else "qemu"

    @property
    def arch(self) -> str:
        board = self.options.board
        return board.split("-", 1)[0] if board else "amd64"

    def new_cluster(self, rconf: RuntimeConfig) -> "QEMUCluster":
        return QEMUCluster(self, rconf)


class QEMUCluster(BaseCluster):

    def __init__(self, flight: QEMUFlight, rconf: RuntimeConfig):
        super().__init__(flight, rconf)
        self._mu = threading.Lock()
        self._counter = 0
        # Holding the socket keeps the port number reserved for this cluster.
        self._mcast_holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._mcast_holder.bind(("127.0.0.1", 0))
        self.mcast_port = self._mcast_holder.getsockname()[1]

    def _new_addresses(self) -> Tuple[str, str]:
        with self._mu:
            if self._counter >= MAX_MACHINES:
                raise PlatformError("too many machines in one cluster")
            self._counter += 1
            return f"aa:bb:cc:dd:ee:{self._counter:02x}", f"{PRIVATE_NET}.{self._counter}"

    def new_machine(self, user_data: Optional[UserData] = None) -> "QEMUMachine":
        machine_id = str(uuid.uuid4())
        machine_dir = os.path.join(self.rconf.output_dir, machine_id)
        os.makedirs(machine_dir)

        conf = self.render_user_data(user_data, {
            "$public_ipv4": "${COREOS_CUSTOM_PUBLIC_IPV4}",
            "$private_ipv4": "${COREOS_CUSTOM_PRIVATE_IPV4}",
        })
        mac, private_addr = self._new_addresses()

        conf_path = ""
        if conf.is_ignition():
            conf.add_systemd_unit("coreos-metadata.service", metadata_unit(private_addr), enable=True)
            conf.add_file("/etc/systemd/network/10-private.network", private_network(mac, private_addr))
            conf_path = os.path.join(machine_dir, "ignition.json")
            conf.write_file(conf_path)
        elif not conf.is_empty() and self.flight.unprivileged:
            raise PlatformError("unprivileged qemu only supports Ignition or empty configs")
        elif not conf.is_empty():
            conf_path = os.path.join(machine_dir, "user-data")
            conf.write_file(conf_path)

        machine = QEMUMachine(self, machine_id, machine_dir, conf, conf_path, mac, private_addr)
        try:
            machine.boot()
            start_machine(machine, machine.journal)
        except Exception:
            machine.destroy()
            raise

        self.add_machine(machine)
        return machine

    def destroy(self) -> None:
        super().destroy()
        self._mcast_holder.close()


class QEMUMachine(BaseMachine):

    def __init__(
        self,
        cluster: QEMUCluster,
        machine_id: str,
        output_dir: str,
        conf: Conf,
        conf_path: str,
        mac: str,
        private_addr: str,
    ):
        super().__init__(cluster, machine_id, output_dir)
        self.conf = conf
        self.conf_path = conf_path
        self.mac = mac
        self.private_addr = private_addr
        self.console_path = os.path.join(output_dir, "console.txt")
        self.disk_path = os.path.join(output_dir, "disk.qcow2")
        self.journal = Journal(output_dir)
        self.process: Optional[subprocess.Popen] = None
        self._qemu_log: Optional[IO[bytes]] = None

    def _create_disk(self) -> None:
        options = self.cluster.flight.options
        cmd = [
            options.qemu_img, "create", "-f", "qcow2", "-F", "qcow2",
            "-b", os.path.abspath(options.image), self.disk_path,
        ]
        try:
            subprocess.run(cmd, check=True, capture_output=True)
        except (OSError, subprocess.CalledProcessError) as e:
            raise MachineError(f"creating disk overlay for {self.id}: {e}") from e

    def command(self, ssh_port: int) -> List[str]:
        flight = self.cluster.flight
        options = flight.options
        arch = flight.arch
        try:
            binary = QEMU_BINARIES[arch]
        except KeyError:
            raise PlatformError(f"qemu: unsupported architecture {arch}") from None

        accel = "kvm:tcg" if flight.unprivileged else "kvm"
        cpu = "max" if flight.unprivileged else "host"
        if arch == "arm64":
            cmd = [binary, "-machine", f"virt,accel={accel}", "-cpu", cpu]
        else:
            cmd = [binary, "-machine", f"accel={accel}", "-cpu", cpu]

        cmd += [
            "-m", options.memory,
            "-smp", str(options.cpus),
            "-uuid", self.id,
            "-display", "none",
            "-chardev", f"file,id=log,path={self.console_path}",
            "-serial", "chardev:log",
            "-drive", f"if=none,id=disk0,file={self.disk_path},format=qcow2",
            "-device", virtio(arch, "blk", "drive=disk0"),
            "-netdev", f"user,id=eth0,hostfwd=tcp:127.0.0.1:{ssh_port}-:22",
            "-device", virtio(arch, "net", "netdev=eth0"),
            "-netdev", f"socket,id=shared0,mcast={MCAST_GROUP}:{self.cluster.mcast_port}",
            "-device", virtio(arch, "net", "netdev=shared0") + f",mac={self.mac}",
        ]
        if options.firmware:
            cmd += ["-bios", options.firmware]
        if self.conf.is_ignition():
            cmd += ["-fw_cfg", f"name={IGNITION_FW_CFG},file={self.conf_path}"]
        elif self.conf_path:
            cmd += ["-fw_cfg", f"name=opt/com.coreos/config,file={self.conf_path}"]
        return cmd

    def boot(self) -> None:
        self._create_disk()
        port = free_port()
        cmd = self.command(port)
        log.debug("qemu command for %s: %s", self.id, cmd)
        self._qemu_log = open(os.path.join(self.output_dir, "qemu.log"), "wb")
        try:
            self.process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=self._qemu_log,
            )
        except OSError as e:
            raise MachineError(f"starting qemu for {self.id}: {e}") from e
        log.debug("qemu PID (manual cleanup needed if --no-remove): %d", self.process.pid)

        if self.process.poll() is not None:
            raise MachineError(f"qemu for {self.id} exited with status {self.process.returncode}")

        self._ip = "127.0.0.1"
        self.ssh_port = port

    def _release(self) -> None:
        if self.process is not None and self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
        if self._qemu_log is not None:
            self._qemu_log.close()
        if os.path.exists(self.disk_path):
            os.remove(self.disk_path)

    def _read_console(self) -> str:
        try:
            with open(self.console_path, "rb") as f:
                return f.read().decode("utf-8", errors="replace")
        except FileNotFoundError:
            return ""
