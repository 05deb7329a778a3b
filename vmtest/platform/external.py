"""
External provisioning backend.

Machines are created and deleted by shell snippets run on a management
host over SSH. The provisioning snippet sees the rendered user data in
``$USERDATA`` and must print the new machine's IP address; the
deprovisioning and serial-console snippets see it in ``$IPADDR``.
"""

import ipaddress
import logging
import os
import secrets
import threading
from dataclasses import dataclass
from typing import IO, Optional

import paramiko

from . import ssh
from .base import (
    BaseCluster,
    BaseFlight,
    BaseMachine,
    PlatformError,
    PlatformOptions,
    RuntimeConfig,
    start_machine,
)
from .conf import Conf, UserData
from .journal import Journal
from .ssh import SSHCommandError


log = logging.getLogger(__name__)

PROVISION_ATTEMPTS = 3

METADATA_UNIT = """[Unit]
Description=Custom metadata agent
After=nss-lookup.target
After=network-online.target
Wants=network-online.target

[Service]
Type=oneshot
Environment=OUTPUT=/run/metadata/flatcar
ExecStart=/usr/bin/mkdir --parent /run/metadata
ExecStart=/usr/bin/bash -c 'IP=$(ip -4 -o addr show $(ip route get 1 | head -n 1 | cut -d " " -f 5) | grep -m 1 -Po "inet \\K[\\d.]+"); echo -e "COREOS_CUSTOM_PRIVATE_IPV4=$IP\\nCOREOS_CUSTOM_PUBLIC_IPV4=$IP" > ${OUTPUT}'
ExecStartPost=/usr/bin/ln -fs /run/metadata/flatcar /run/metadata/coreos
"""


@dataclass
class ExternalOptions(PlatformOptions):
    """Options for the external backend."""
    management_host: str = ""
    management_user: str = "root"
    management_password: str = ""
    provisioning_cmds: str = ""
    serial_console_cmd: str = ""
    deprovisioning_cmds: str = ""


def set_env_cmd(name: str, content: str) -> str:
    """Shell prefix that sets ``name`` to ``content``, single-quoted."""
    quoted = content.replace("'", "'\"'\"'")
    return f"{name}='{quoted}';"


class ExternalFlight(BaseFlight):

    platform = "external"

    def __init__(self, options: ExternalOptions):
        if not options.management_host:
            raise PlatformError("external: no management host given")
        if not options.provisioning_cmds or not options.deprovisioning_cmds:
            raise PlatformError("external: provisioning and deprovisioning commands are required")
        super().__init__(options)
        host, _, port = options.management_host.partition(":")
        try:
            self.management = ssh.connect(
                host,
                port=int(port or 22),
                user=options.management_user,
                password=options.management_password or None,
            )
        except (paramiko.SSHException, OSError) as e:
            raise PlatformError(f"external: connecting to management host {host}: {e}") from e

    def run_management(self, cmd: str) -> str:
        out, _ = ssh.run(self.management, cmd)
        return out

    def new_cluster(self, rconf: RuntimeConfig) -> "ExternalCluster":
        return ExternalCluster(self, rconf)

    def destroy(self) -> None:
        super().destroy()
        self.management.close()


class ExternalCluster(BaseCluster):

    def new_machine(self, user_data: Optional[UserData] = None) -> "ExternalMachine":
        conf = self.render_user_data(user_data, {
            "$public_ipv4": "${COREOS_CUSTOM_PUBLIC_IPV4}",
            "$private_ipv4": "${COREOS_CUSTOM_PRIVATE_IPV4}",
        })
        conf.add_systemd_unit("coreos-metadata.service", METADATA_UNIT)

        last_error: Optional[Exception] = None
        for attempt in range(PROVISION_ATTEMPTS):
            if last_error is not None:
                log.warning("retrying to provision a machine after error: %s", last_error)
            try:
                machine = self._provision(conf)
            except (PlatformError, SSHCommandError, paramiko.SSHException) as e:
                last_error = e
                continue
            self.add_machine(machine)
            return machine

        raise PlatformError(f"external: provisioning failed: {last_error}") from last_error

    def _provision(self, conf: Conf) -> "ExternalMachine":
        log.info("creating machine")
        output = self.flight.run_management(
            set_env_cmd("USERDATA", conf.serialize()) + self.flight.options.provisioning_cmds
        )
        ip = output.strip()
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            raise PlatformError(f"script output {ip!r} is not a valid IP address") from None
        log.info("got IP address %s", ip)

        machine_id = f"{ip}-{secrets.token_hex(5)}"
        machine_dir = os.path.join(self.rconf.output_dir, machine_id)
        machine = ExternalMachine(self, machine_id, machine_dir, ip)
        try:
            os.makedirs(machine_dir)
            conf.write_file(os.path.join(machine_dir, "user-data"))
            if self.flight.options.serial_console_cmd:
                machine.start_console()
            log.info("starting machine %s", machine_id)
            start_machine(machine, machine.journal)
        except Exception:
            machine.destroy()
            raise
        return machine

    def delete_device(self, ip: str) -> None:
        log.info("deleting machine %s", ip)
        self.flight.run_management(
            set_env_cmd("IPADDR", ip) + self.flight.options.deprovisioning_cmds
        )


class ExternalMachine(BaseMachine):

    def __init__(self, cluster: ExternalCluster, machine_id: str, output_dir: str, ip: str):
        super().__init__(cluster, machine_id, output_dir)
        self._ip = ip
        self.console_path = os.path.join(output_dir, "console.txt")
        self.journal = Journal(output_dir)
        self._console_channel: Optional[paramiko.Channel] = None
        self._console_thread: Optional[threading.Thread] = None

    def start_console(self) -> None:
        log.info("attaching serial console for %s", self.ip)
        transport = self.cluster.flight.management.get_transport()
        channel = transport.open_session()
        channel.exec_command(
            set_env_cmd("IPADDR", self.ip) + self.cluster.flight.options.serial_console_cmd
        )
        f = open(self.console_path, "wb")
        self._console_channel = channel
        self._console_thread = threading.Thread(
            target=self._pump_console, args=(channel, f), name=f"console-{self.id}", daemon=True,
        )
        self._console_thread.start()

    def _pump_console(self, channel: paramiko.Channel, f: IO[bytes]) -> None:
        with f:
            while True:
                try:
                    data = channel.recv(32768)
                except (paramiko.SSHException, OSError) as e:
                    log.error("%s console session failed: %s", self.ip, e)
                    break
                if not data:
                    break
                f.write(data)
                f.flush()

    def _release(self) -> None:
        try:
            self.cluster.delete_device(self.ip)
        finally:
            if self._console_channel is not None:
                self._console_channel.close()
            if self._console_thread is not None:
                self._console_thread.join(timeout=5)

    def _read_console(self) -> str:
        try:
            with open(self.console_path, "rb") as f:
                return f.read().decode("utf-8", errors="replace")
        except FileNotFoundError:
            return ""
