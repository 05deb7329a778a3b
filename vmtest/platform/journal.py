"""
Journal capture.

Follows the guest's systemd journal over SSH and appends it to
``journal.txt`` in the machine's output directory. Capture restarts after
a reboot, so the file spans every boot of the machine.
"""

import logging
import os
import threading
from typing import Any, Optional

import paramiko


log = logging.getLogger(__name__)

JOURNAL_CMD = "journalctl -q -b -f -o short-precise --no-tail"


class Journal:
    """Background ``journalctl -f`` stream for one machine."""

    def __init__(self, output_dir: str):
        self.path = os.path.join(output_dir, "journal.txt")
        self._client: Optional[paramiko.client.SSHClient] = None
        self._channel: Optional[paramiko.Channel] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self, machine: Any) -> None:
        """
        Start (or restart) following the journal of ``machine``.

        ``machine`` must provide ``ssh_client()``; SSH is retried by the
        caller's boot checks, so a single attempt is made here.
        """
        self.stop()
        client = machine.ssh_client()
        channel = client.get_transport().open_session()
        channel.exec_command(JOURNAL_CMD)
        with self._lock:
            self._client = client
            self._channel = channel
            self._thread = threading.Thread(
                target=self._pump, args=(channel,), name=f"journal-{machine.id}", daemon=True,
            )
            self._thread.start()

    def _pump(self, channel: paramiko.Channel) -> None:
        with open(self.path, "ab") as f:
            while True:
                try:
                    data = channel.recv(32768)
                except (paramiko.SSHException, OSError) as e:
                    log.debug("journal stream %s ended: %s", self.path, e)
                    break
                if not data:
                    break
                f.write(data)
                f.flush()

    def stop(self) -> None:
        with self._lock:
            channel, client, thread = self._channel, self._client, self._thread
            self._channel = self._client = self._thread = None
        if channel is not None:
            channel.close()
        if client is not None:
            client.close()
        if thread is not None:
            thread.join(timeout=5)

    def destroy(self) -> None:
        self.stop()

    def read(self) -> str:
        try:
            with open(self.path, "rb") as f:
                return f.read().decode("utf-8", errors="replace")
        except FileNotFoundError:
            return ""
