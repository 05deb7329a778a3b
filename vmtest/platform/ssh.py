"""
SSH helpers built on paramiko.
"""

import io
import logging
import socket
import threading
from typing import BinaryIO, List, Optional, Tuple, Union

import paramiko
import paramiko.client


log = logging.getLogger(__name__)

# exit status paramiko reports when the server closed the channel without one
EXIT_MISSING = -1


class SSHCommandError(Exception):
    """A remote command failed or exited non-zero."""

    def __init__(self, cmd: str, exit_status: int, stdout: str = "", stderr: str = ""):
        self.cmd = cmd
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"{cmd!r} exited with status {exit_status}: {stderr.strip() or stdout.strip()}"
        )

    @property
    def exit_missing(self) -> bool:
        return self.exit_status == EXIT_MISSING


def generate_key(bits: int = 2048) -> paramiko.RSAKey:
    return paramiko.RSAKey.generate(bits)


def public_key_line(key: paramiko.PKey, comment: str = "vmtest") -> str:
    """OpenSSH ``authorized_keys`` line for ``key``."""
    return f"{key.get_name()} {key.get_base64()} {comment}"


def connect(
    host: str,
    port: int = 22,
    user: str = "core",
    pkey: Optional[paramiko.PKey] = None,
    password: Optional[str] = None,
    timeout: float = 10.0,
) -> paramiko.client.SSHClient:
    """
    Open an SSH connection to a test machine.

    Host keys are not verified: every machine is freshly provisioned and its
    key is unknown in advance.

    Raises:
        paramiko.SSHException, OSError: the connection could not be made.
    """
    client = paramiko.client.SSHClient()
    client.set_missing_host_key_policy(paramiko.client.AutoAddPolicy())
    try:
        client.connect(
            host,
            port=port,
            username=user,
            pkey=pkey,
            password=password,
            timeout=timeout,
            banner_timeout=timeout,
            auth_timeout=timeout,
            allow_agent=False,
            look_for_keys=False,
        )
    except (paramiko.SSHException, socket.error):
        client.close()
        raise
    return client


def run(
    client: paramiko.client.SSHClient,
    cmd: str,
    stdin: Union[bytes, str, BinaryIO, None] = None,
    timeout: Optional[float] = None,
) -> Tuple[str, str]:
    """
    Run ``cmd`` and wait for it.

    Args:
        client: Connected client
        cmd: Shell command line
        stdin: Data fed to the command's standard input
        timeout: Channel timeout in seconds

    Returns:
        (stdout, stderr), decoded and stripped of surrounding whitespace.

    Raises:
        SSHCommandError: the command exited non-zero, or the channel closed
            without an exit status.
    """
    chan_in, chan_out, chan_err = client.exec_command(cmd, bufsize=-1, timeout=timeout)
    if stdin is not None:
        if isinstance(stdin, str):
            stdin = stdin.encode("utf-8")
        if isinstance(stdin, bytes):
            stdin = io.BytesIO(stdin)
        while True:
            chunk = stdin.read(32768)
            if not chunk:
                break
            chan_in.write(chunk)
        chan_in.flush()
    chan_in.channel.shutdown_write()

    # stderr is drained on its own thread so neither stream can fill its
    # window and stall the command
    err_chunks: List[bytes] = []
    err_reader = threading.Thread(target=lambda: err_chunks.append(chan_err.read()), daemon=True)
    err_reader.start()
    out = chan_out.read().decode("utf-8", errors="replace").strip()
    err_reader.join()
    err = b"".join(err_chunks).decode("utf-8", errors="replace").strip()
    status = chan_out.channel.recv_exit_status()
    if status != 0:
        raise SSHCommandError(cmd, status, out, err)
    return out, err
