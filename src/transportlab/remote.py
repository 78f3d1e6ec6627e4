"""
Remote execution of impairment policy commands.

The sequencer never logs in to the controller itself. It asks an
ImpairmentController to apply a policy, and the controller hands a
``transportlab impair`` argv to a RemoteExecutor. The executor can be SSH,
a local subprocess, or a fake in tests.
"""

import logging
import os
import shlex
import tempfile
from abc import ABC, abstractmethod
from functools import partial
from pathlib import Path
from typing import Optional, Sequence

from .commands import CommandResult, Runner, format_command, run_command
from .exceptions import LabError, RemoteDispatchError
from .policy import ImpairmentMode, ImpairmentPolicy

logger = logging.getLogger(__name__)

DEFAULT_REMOTE_COMMAND = ("transportlab", "impair")


class RemoteExecutor(ABC):
    """Capability to run a command on one host and report its status."""

    host: str = "localhost"

    @abstractmethod
    def execute(self, argv: Sequence[str]) -> CommandResult:
        """Run argv on the host and return its result."""
        pass

    def close(self) -> None:
        """Release any session held with the host."""
        pass

    def __enter__(self) -> "RemoteExecutor":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class LocalExecutor(RemoteExecutor):
    """Runs policy commands on this host."""

    def __init__(self, timeout: float = 60, runner: Optional[Runner] = None):
        self.host = "localhost"
        self._runner = runner or partial(run_command, timeout=timeout)

    def execute(self, argv: Sequence[str]) -> CommandResult:
        return self._runner(list(argv))


class SSHExecutor(RemoteExecutor):
    """
    Runs policy commands over SSH.

    Uses a multiplexed master connection so consecutive phases reuse one
    session; ``close`` tears it down.
    """

    def __init__(
        self,
        host: str,
        user: str = "root",
        connect_timeout: int = 10,
        timeout: float = 60,
        control_dir: Optional[str] = None,
        runner: Optional[Runner] = None,
    ):
        self.host = host
        self.user = user
        self.connect_timeout = connect_timeout
        self._runner = runner or partial(run_command, timeout=timeout)
        control_dir = control_dir or tempfile.gettempdir()
        self.control_path = str(Path(control_dir) / f"transportlab-{os.getpid()}-%r@%h:%p")
        self._opened = False

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def build_command(self, argv: Sequence[str]) -> list[str]:
        """ssh argv; the remote command is shell-quoted argument by argument."""
        return [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "ControlMaster=auto",
            "-o", f"ControlPath={self.control_path}",
            "-o", "ControlPersist=60",
            self.destination,
            shlex.join(argv),
        ]

    def execute(self, argv: Sequence[str]) -> CommandResult:
        cmd = self.build_command(argv)
        logger.debug(f"Dispatching to {self.host}: {format_command(argv)}")
        result = self._runner(cmd)
        self._opened = True
        return result

    def close(self) -> None:
        if not self._opened:
            return
        cmd = ["ssh", "-o", f"ControlPath={self.control_path}", "-O", "exit", self.destination]
        try:
            result = self._runner(cmd)
        except LabError as e:
            logger.warning(f"Failed to close SSH session to {self.host}: {e}")
            return
        finally:
            self._opened = False
        if not result.ok:
            logger.debug(f"SSH control master for {self.host} already closed")


class ImpairmentController:
    """
    Handle to the impairment policy engine on the controller host.

    The sequencer holds the only instance during a run.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        address: Optional[str] = None,
        interface: Optional[str] = None,
        command: Sequence[str] = DEFAULT_REMOTE_COMMAND,
    ):
        """
        Args:
            executor: Transport used to reach the controller.
            address: Address traffic is sent to on the controller. Defaults
                to the executor's host.
            interface: Interface to impair on the controller. None lets the
                controller auto-detect its default-route interface.
            command: Policy engine command on the controller.
        """
        self.executor = executor
        self.address = address or executor.host
        self.interface = interface
        self.command = list(command)
        self.current_policy: Optional[ImpairmentPolicy] = None

    def build_argv(self, policy: ImpairmentPolicy, preview: bool = False) -> list[str]:
        argv = self.command + ["-m", policy.mode.value]
        if policy.mode is ImpairmentMode.LOSS:
            argv += ["-l", f"{policy.loss_pct:g}"]
        elif policy.mode is ImpairmentMode.BOTTLENECK:
            argv += ["-r", policy.rate, "--burst", policy.burst, "--latency", policy.latency]
        interface = policy.interface or self.interface
        if interface:
            argv += ["-i", interface]
        if preview:
            argv.append("-d")
        return argv

    def apply(self, policy: ImpairmentPolicy, preview: bool = False) -> CommandResult:
        """
        Apply a policy on the controller.

        Raises:
            RemoteDispatchError: If the command could not be delivered or
                the controller reported failure.
        """
        argv = self.build_argv(policy, preview)
        logger.info(f"Configuring controller {self.executor.host}: {policy.describe()}")
        try:
            result = self.executor.execute(argv)
        except LabError as e:
            raise RemoteDispatchError(self.executor.host, -1, str(e))

        if not result.ok:
            raise RemoteDispatchError(self.executor.host, result.returncode, result.output)

        if not preview:
            self.current_policy = policy
        return result

    def clear(self, preview: bool = False) -> CommandResult:
        """Return the controller to a clean path."""
        return self.apply(ImpairmentPolicy.clean(), preview=preview)

    def close(self) -> None:
        self.executor.close()

    @property
    def remedy(self) -> str:
        """Manual command that clears the controller."""
        interface = self.interface or "eth0"
        if isinstance(self.executor, SSHExecutor):
            return f"ssh {self.executor.destination} 'tc qdisc del dev {interface} root'"
        return f"sudo tc qdisc del dev {interface} root"
