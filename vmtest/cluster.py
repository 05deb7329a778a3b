"""
The handle test bodies receive.

:class:`TestCluster` pairs the harness handle of the running test with the
cluster provisioned for it, and adds the SSH conveniences most tests need.
"""

import logging
from typing import Any, Callable, List, Optional, Sequence

from .harness import H
from .platform import Cluster, Machine, SSHCommandError


log = logging.getLogger(__name__)

NATIVE_HELPER = "vmtest-agent"


class TestCluster:
    """
    A test's view of its cluster.

    Attribute access that is not defined here falls through to the harness
    handle, so ``c.log``, ``c.errorf``, ``c.fatal`` and ``c.skip`` work as on
    :class:`~vmtest.harness.H`.
    """

    __test__ = False

    def __init__(
        self,
        h: H,
        cluster: Cluster,
        native_funcs: Sequence[str] = (),
        fail_fast: bool = False,
    ):
        self.h = h
        self.cluster = cluster
        self.native_funcs = list(native_funcs)
        self.fail_fast = fail_fast
        self._has_failure = False

    def __getattr__(self, name: str) -> Any:
        return getattr(self.h, name)

    @property
    def name(self) -> str:
        return self.h.name

    def machines(self) -> List[Machine]:
        return self.cluster.machines()

    def list_native_functions(self) -> List[str]:
        return list(self.native_funcs)

    def run(self, name: str, func: Callable[["TestCluster"], Any]) -> bool:
        """
        Run ``func`` as a subtest on the same cluster.

        When the test is fail-fast, every subtest after the first failing
        one is skipped.
        """
        if self.fail_fast and self._has_failure:
            def skipped(h: H) -> None:
                h.skip("A previous test has already failed")
            return self.h.run(name, skipped)

        passed = self.h.run(name, lambda h: func(TestCluster(h, self.cluster, self.native_funcs)))
        self._has_failure = not passed
        return passed

    def run_native(self, func_name: str, machine: Machine) -> bool:
        """Run native function ``func_name`` on ``machine`` as a subtest."""
        command = f'./{NATIVE_HELPER} run "{self.h.name}" "{func_name}"'
        log.info("run_native: running command %s", command)

        def body(c: "TestCluster") -> None:
            try:
                out, err = machine.ssh(command)
            except SSHCommandError as e:
                output = "\n".join(s for s in (e.stdout, e.stderr) if s)
                if output:
                    self.h.logf("%s:\n%s", NATIVE_HELPER, output)
                c.errorf("%s: %s", NATIVE_HELPER, e)
                return
            output = "\n".join(s for s in (out, err) if s)
            if output:
                self.h.logf("%s:\n%s", NATIVE_HELPER, output)

        return self.run(func_name, body)

    def drop_file(self, local_path: str) -> None:
        self.cluster.drop_file(local_path)

    def ssh(self, machine: Machine, cmd: str) -> str:
        """
        Run ``cmd`` on ``machine`` and return its stdout.

        stderr lines are added to the test log. Raises
        :class:`SSHCommandError` when the command fails.
        """
        log.info("SSH: running command: %s", cmd)
        try:
            out, err = machine.ssh(cmd)
        except SSHCommandError as e:
            self._log_stderr(e.stderr)
            raise
        self._log_stderr(err)
        for line in out.splitlines():
            log.debug("SSH: stdout: %s", line)
        return out

    def _log_stderr(self, stderr: Optional[str]) -> None:
        for line in (stderr or "").splitlines():
            self.h.log(line)
            log.debug("SSH: stderr: %s", line)

    def must_ssh(self, machine: Machine, cmd: str) -> str:
        """Like :meth:`ssh`, but a failure is fatal to the test."""
        try:
            return self.ssh(machine, cmd)
        except SSHCommandError as e:
            self.h.fatalf("%r failed: output %s, status %s", cmd, e.stdout, e.exit_status)
            raise

    def assert_cmd_output_contains(self, machine: Machine, cmd: str, expected: str) -> None:
        self.h.log("+ " + cmd)
        output = self.must_ssh(machine, cmd)
        if expected not in output:
            self.h.fatalf("cmd %s did not output %s", cmd, expected)
