"""
Platform abstraction.

A :class:`Flight` holds platform-wide resources (credentials, SSH keys) and
creates :class:`Cluster` objects; a cluster owns the :class:`Machine`
objects created through it. Backends subclass :class:`BaseFlight`,
:class:`BaseCluster` and :class:`BaseMachine`, which carry the behaviour
every backend shares.
"""

import logging
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union

import paramiko
import requests

from . import ssh
from .conf import DEFAULT_IGNITION, Conf, UserData
from .ssh import SSHCommandError


log = logging.getLogger(__name__)

T = TypeVar("T")

DISCOVERY_URL = "https://discovery.etcd.io/new?size={size}"
DISCOVERY_RETRIES = 3
DISCOVERY_DELAY = 5.0

SYSTEM_STATES = ("initializing", "starting", "running", "stopping")


class PlatformError(Exception):
    """Flight, cluster or machine setup failed."""
    pass


class MachineError(PlatformError):
    """A machine failed to come up or failed its boot checks."""
    pass


class DiscoveryError(PlatformError):
    """The etcd discovery service could not be reached."""
    pass


def retry(attempts: int, delay: float, func: Callable[[], T]) -> T:
    """
    Call ``func`` until it returns without raising.

    Sleeps ``delay`` seconds between attempts; the last exception is
    re-raised once ``attempts`` calls have failed.
    """
    if attempts < 1:
        attempts = 1
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except Exception as e:
            if attempt == attempts:
                raise
            log.debug("attempt %d/%d failed: %s", attempt, attempts, e)
            time.sleep(delay)
    raise AssertionError("unreachable")


@dataclass
class PlatformOptions:
    """Options shared by every backend."""
    base_name: str = "vmtest"
    distribution: str = "cl"
    board: str = ""
    os_id: str = "flatcar"
    use_agent_keys: bool = False
    additional_ssh_keys: List[str] = field(default_factory=list)


@dataclass
class RuntimeConfig:
    """Per-cluster settings derived from the test being run."""
    output_dir: str = ""
    no_ssh_key_in_user_data: bool = False
    no_ssh_key_in_metadata: bool = False
    no_disable_updates: bool = False
    allow_failed_units: bool = False
    ssh_retries: int = 60
    ssh_timeout: float = 10.0
    default_user: str = ""


class Machine(ABC):
    """A single provisioned VM."""

    @property
    @abstractmethod
    def id(self) -> str: ...

    @property
    @abstractmethod
    def ip(self) -> str: ...

    @abstractmethod
    def ssh(self, cmd: str, stdin: Union[bytes, str, IO[bytes], None] = None) -> Tuple[str, str]:
        """Run ``cmd``; raise :class:`SSHCommandError` on non-zero exit."""

    @abstractmethod
    def reboot(self) -> None: ...

    @abstractmethod
    def destroy(self) -> None:
        """Release the machine. Idempotent; never raises."""

    @abstractmethod
    def console_output(self) -> str: ...

    @abstractmethod
    def journal_output(self) -> str: ...


class Cluster(ABC):
    """A group of machines owned by a single test."""

    @abstractmethod
    def new_machine(self, user_data: Optional[UserData] = None) -> Machine: ...

    @abstractmethod
    def machines(self) -> List[Machine]: ...

    @abstractmethod
    def destroy(self) -> None: ...

    @abstractmethod
    def console_output(self) -> Dict[str, str]: ...

    @abstractmethod
    def journal_output(self) -> Dict[str, str]: ...

    @abstractmethod
    def drop_file(self, local_path: str) -> None: ...

    @abstractmethod
    def get_discovery_url(self, size: int) -> str: ...


class Flight(ABC):
    """Platform-wide state shared by every cluster of a run."""

    @abstractmethod
    def new_cluster(self, rconf: RuntimeConfig) -> Cluster: ...

    @abstractmethod
    def destroy(self) -> None: ...


class BaseFlight(Flight):
    """SSH key management and cluster bookkeeping."""

    platform = "base"

    def __init__(self, options: PlatformOptions):
        self.options = options
        self.ssh_key = ssh.generate_key()
        self._clusters: List["BaseCluster"] = []
        self._lock = threading.Lock()

    def public_keys(self) -> List[str]:
        """Keys authorized on every machine, the flight's own key first."""
        keys = [ssh.public_key_line(self.ssh_key)]
        if self.options.use_agent_keys:
            for key in paramiko.Agent().get_keys():
                keys.append(ssh.public_key_line(key, "agent"))
        keys.extend(self.options.additional_ssh_keys)
        return keys

    def add_cluster(self, cluster: "BaseCluster") -> None:
        with self._lock:
            self._clusters.append(cluster)

    def del_cluster(self, cluster: "BaseCluster") -> None:
        with self._lock:
            if cluster in self._clusters:
                self._clusters.remove(cluster)

    def clusters(self) -> List["BaseCluster"]:
        with self._lock:
            return list(self._clusters)

    def destroy(self) -> None:
        for cluster in self.clusters():
            cluster.destroy()


class BaseCluster(Cluster):
    """
    Machine bookkeeping shared by every backend.

    Live machines are tracked in a map; when a machine is destroyed its
    final console and journal text are kept so they can still be classified
    after the resource is gone.
    """

    def __init__(self, flight: BaseFlight, rconf: RuntimeConfig):
        self.flight = flight
        self.rconf = rconf
        self.name = f"{flight.options.base_name}-{uuid.uuid4()}"
        self._lock = threading.Lock()
        self._machines: Dict[str, Machine] = {}
        self._consoles: Dict[str, str] = {}
        self._journals: Dict[str, str] = {}
        flight.add_cluster(self)

    @property
    def user(self) -> str:
        return self.rconf.default_user or "core"

    def add_machine(self, machine: Machine) -> None:
        with self._lock:
            self._machines[machine.id] = machine

    def del_machine(self, machine: Machine, console: str, journal: str) -> None:
        with self._lock:
            self._machines.pop(machine.id, None)
            self._consoles[machine.id] = console
            self._journals[machine.id] = journal

    def machines(self) -> List[Machine]:
        with self._lock:
            return list(self._machines.values())

    def ssh_client(self, machine: "BaseMachine") -> paramiko.client.SSHClient:
        return ssh.connect(
            machine.ip,
            port=machine.ssh_port,
            user=self.user,
            pkey=self.flight.ssh_key,
            timeout=self.rconf.ssh_timeout,
        )

    def ssh(
        self,
        machine: "BaseMachine",
        cmd: str,
        stdin: Union[bytes, str, IO[bytes], None] = None,
    ) -> Tuple[str, str]:
        client = self.ssh_client(machine)
        try:
            return ssh.run(client, cmd, stdin=stdin)
        finally:
            client.close()

    def render_user_data(
        self,
        user_data: Optional[UserData],
        ignition_vars: Optional[Dict[str, str]] = None,
    ) -> Conf:
        """
        Render a test's user data for a machine of this cluster.

        Adds the login user, the flight's SSH keys (unless the test opted
        out) and disables the public update server (unless the test opted
        out).
        """
        if user_data is None:
            user_data = UserData.ignition(DEFAULT_IGNITION)
        user_data = user_data.with_user(self.user)

        if user_data.is_ignition_compatible():
            for old, new in (ignition_vars or {}).items():
                user_data = user_data.subst(old, new)

        conf = user_data.render()
        if conf.is_empty():
            return conf

        if self.user != "core":
            conf.add_user_to_groups(self.user, ["sudo"])

        if not self.rconf.no_ssh_key_in_user_data:
            conf.copy_keys(self.flight.public_keys())

        if not self.rconf.no_disable_updates:
            conf.add_file("/etc/flatcar/update.conf", "SERVER=disabled\n", 0o644)

        return conf

    def drop_file(self, local_path: str) -> None:
        """Install ``local_path`` into the login user's home on every machine."""
        name = os.path.basename(local_path)
        for machine in self.machines():
            with open(local_path, "rb") as f:
                install_file(f, machine, name)

    def get_discovery_url(self, size: int) -> str:
        url = DISCOVERY_URL.format(size=size)

        def fetch() -> str:
            resp = requests.get(url, timeout=30)
            if resp.status_code != 200:
                raise DiscoveryError(f"discovery service returned {resp.status_code} {resp.reason}")
            return resp.text.strip()

        try:
            return retry(DISCOVERY_RETRIES, DISCOVERY_DELAY, fetch)
        except requests.RequestException as e:
            raise DiscoveryError(f"fetching discovery URL: {e}") from e

    def console_output(self) -> Dict[str, str]:
        with self._lock:
            out = dict(self._consoles)
            live = list(self._machines.values())
        for machine in live:
            out[machine.id] = machine.console_output()
        return out

    def journal_output(self) -> Dict[str, str]:
        with self._lock:
            out = dict(self._journals)
            live = list(self._machines.values())
        for machine in live:
            out[machine.id] = machine.journal_output()
        return out

    def destroy(self) -> None:
        for machine in self.machines():
            machine.destroy()
        self.flight.del_cluster(self)


class BaseMachine(Machine):
    """
    Common machine behaviour.

    Subclasses implement :meth:`_release` (free the backing resource) and
    :meth:`_read_console`; :meth:`destroy` sequences them so it is
    idempotent and always records the final console and journal text with
    the cluster.
    """

    def __init__(self, cluster: BaseCluster, machine_id: str, output_dir: str):
        self.cluster = cluster
        self._id = machine_id
        self._ip = ""
        self.ssh_port = 22
        self.output_dir = output_dir
        self.journal: Optional[Any] = None
        self._destroyed = False
        self._destroy_lock = threading.Lock()

    @property
    def id(self) -> str:
        return self._id

    @property
    def ip(self) -> str:
        return self._ip

    @property
    def rconf(self) -> RuntimeConfig:
        return self.cluster.rconf

    def ssh_client(self) -> paramiko.client.SSHClient:
        return self.cluster.ssh_client(self)

    def ssh(self, cmd: str, stdin: Union[bytes, str, IO[bytes], None] = None) -> Tuple[str, str]:
        return self.cluster.ssh(self, cmd, stdin=stdin)

    def reboot(self) -> None:
        reboot_machine(self, self.journal)

    def journal_output(self) -> str:
        if self.journal is None:
            return ""
        return self.journal.read()

    def console_output(self) -> str:
        try:
            return self._read_console()
        except OSError as e:
            log.warning("machine %s: reading console: %s", self.id, e)
            return ""

    @abstractmethod
    def _release(self) -> None: ...

    def _read_console(self) -> str:
        return ""

    def destroy(self) -> None:
        with self._destroy_lock:
            if self._destroyed:
                return
            self._destroyed = True

        try:
            self._release()
        except Exception as e:
            log.warning("machine %s: releasing resources: %s", self.id, e)

        journal = ""
        if self.journal is not None:
            try:
                self.journal.destroy()
                journal = self.journal.read()
            except Exception as e:
                log.warning("machine %s: stopping journal: %s", self.id, e)

        console = self.console_output()
        self.cluster.del_machine(self, console, journal)


def new_machines(cluster: Cluster, user_data: Optional[UserData], n: int) -> List[Machine]:
    """
    Create ``n`` machines concurrently.

    If any creation fails, every machine that was created is destroyed and
    the first error (in submission order) is raised.
    """
    if n <= 0:
        return []

    machines: List[Machine] = []
    errors: List[BaseException] = []
    with ThreadPoolExecutor(max_workers=n) as executor:
        futures = [executor.submit(cluster.new_machine, user_data) for _ in range(n)]
        for future in futures:
            try:
                machines.append(future.result())
            except Exception as e:
                errors.append(e)

    if errors:
        for machine in machines:
            machine.destroy()
        raise errors[0]

    return machines


def install_file(source: Union[str, IO[bytes]], machine: Machine, to: str) -> None:
    """
    Install ``source`` on ``machine`` at ``to`` with mode 0755.

    Raises:
        PlatformError: creating the directory or installing the file failed.
    """
    directory = os.path.dirname(to) or "."
    try:
        machine.ssh(f"sudo mkdir -p {directory}")
    except SSHCommandError as e:
        raise PlatformError(f"failed creating directory {directory}: {e}") from e

    try:
        if isinstance(source, str):
            with open(source, "rb") as f:
                machine.ssh(f"sudo install -m 0755 /dev/stdin {to}", stdin=f)
        else:
            machine.ssh(f"sudo install -m 0755 /dev/stdin {to}", stdin=source)
    except SSHCommandError as e:
        raise PlatformError(f"failed executing install: {e}") from e


def check_machine(machine: Machine, rconf: RuntimeConfig, os_id: str = "flatcar") -> None:
    """
    Verify that ``machine`` booted into a healthy system.

    Raises:
        MachineError: SSH never came up, the OS is not the expected one, or
            systemd units failed during boot.
    """
    def system_running() -> None:
        try:
            out, _ = machine.ssh("systemctl is-system-running")
        except SSHCommandError as e:
            state = e.stdout.strip()
            if state and state not in SYSTEM_STATES:
                # degraded and friends: stop waiting, the unit check reports it
                return
            jobs = ""
            if state == "starting":
                try:
                    jobs_out, _ = machine.ssh("systemctl list-jobs")
                    jobs = f", jobs: {jobs_out}"
                except SSHCommandError as jobs_err:
                    jobs = f", systemctl list-jobs: {jobs_err}"
            raise MachineError(f"systemctl is-system-running returned {state!r}{jobs}") from e

    try:
        retry(rconf.ssh_retries, rconf.ssh_timeout, system_running)
    except Exception as e:
        raise MachineError(f"ssh unreachable or system not ready: {e}") from e

    try:
        out, _ = machine.ssh("grep ^ID= /etc/os-release")
    except SSHCommandError as e:
        raise MachineError(f"no /etc/os-release file: {e}") from e
    if out.strip() != f"ID={os_id}":
        raise MachineError(f"not a {os_id} instance: {out.strip()!r}")

    if rconf.allow_failed_units:
        return

    try:
        out, _ = machine.ssh("systemctl --no-legend --state failed list-units")
    except SSHCommandError as e:
        raise MachineError(f"systemctl: {e}") from e
    if out:
        unit = out.split()[0]
        info = ""
        try:
            status, _ = machine.ssh(f"systemctl status {unit}")
        except SSHCommandError as e:
            status = e.stdout
        try:
            journal, _ = machine.ssh(f"journalctl -b -u {unit}")
        except SSHCommandError as e:
            journal = e.stdout
        info = f"\nstatus: {status}\njournal:{journal}"
        raise MachineError(f"some systemd units failed:\n{out}{info}")


def start_machine(machine: BaseMachine, journal: Any) -> None:
    """Start journal capture on ``machine`` and run the boot checks."""
    try:
        journal.start(machine)
    except Exception as e:
        raise MachineError(f"machine {machine.id!r} failed to start: {e}") from e
    try:
        check_machine(machine, machine.rconf, machine.cluster.flight.options.os_id)
    except MachineError as e:
        raise MachineError(f"machine {machine.id!r} failed basic checks: {e}") from e


def reboot_machine(machine: BaseMachine, journal: Any) -> None:
    """
    Reboot ``machine`` and wait until it passes the boot checks again.

    sshd is stopped first so the checks can only pass once the machine has
    actually come back up.
    """
    try:
        machine.ssh("sudo systemctl stop sshd.socket && sudo reboot")
    except SSHCommandError as e:
        if not e.exit_missing:
            raise MachineError(f"machine {machine.id!r} failed to begin rebooting: {e}") from e
    except (paramiko.SSHException, EOFError, OSError):
        # the session dropping out from under us is expected here
        pass
    start_machine(machine, journal)
