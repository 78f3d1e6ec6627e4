"""
External command invocation for transportlab.

Commands are always argument lists handed to ``subprocess`` without a shell,
so a preview of what would run is just the list itself.
"""

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .exceptions import CommandFailedError, ToolMissingError

logger = logging.getLogger(__name__)

# Install hints printed when a tool is missing.
INSTALL_HINTS = {
    "iperf3": "sudo apt-get install iperf3",
    "tcpdump": "sudo apt-get install tcpdump",
    "tc": "sudo apt-get install iproute2",
    "ip": "sudo apt-get install iproute2",
    "sysctl": "sudo apt-get install procps",
    "ssh": "sudo apt-get install openssh-client",
    "ping": "sudo apt-get install iputils-ping",
}


@dataclass
class CommandResult:
    """Outcome of one external command."""

    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, stripped."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


# A runner takes an argv and returns its result. Tests substitute fakes.
Runner = Callable[[list[str]], CommandResult]


def format_command(argv: Sequence[str]) -> str:
    """Render an argv for logs and previews."""
    return shlex.join(argv)


def run_command(
    argv: Sequence[str],
    *,
    timeout: Optional[float] = 10,
    check: bool = False,
) -> CommandResult:
    """
    Execute a command given as an argument list.

    Args:
        argv: Program and arguments. Never interpreted by a shell.
        timeout: Seconds before the command is killed.
        check: Raise CommandFailedError on a non-zero exit.

    Returns:
        CommandResult with captured output.

    Raises:
        ToolMissingError: If the program is not installed.
        CommandFailedError: If check is set and the command fails or times out.
    """
    argv = list(argv)
    logger.debug(f"Running: {format_command(argv)}")

    try:
        proc = subprocess.run(
            argv, capture_output=True, text=True, timeout=timeout
        )
    except FileNotFoundError:
        raise ToolMissingError(argv[0], INSTALL_HINTS.get(argv[0], ""))
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out: {format_command(argv)}")
        raise CommandFailedError(argv, -1, f"timed out after {timeout}s")

    result = CommandResult(
        argv=argv,
        returncode=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
    )
    if check and not result.ok:
        raise CommandFailedError(argv, result.returncode, result.stderr.strip())
    return result


def require_tools(tools: Sequence[str]) -> None:
    """
    Check that every tool is on PATH before anything stateful happens.

    Raises:
        ToolMissingError: For the first tool that is missing.
    """
    for tool in tools:
        if shutil.which(tool) is None:
            raise ToolMissingError(tool, INSTALL_HINTS.get(tool, ""))
        logger.debug(f"Found required tool: {tool}")


def is_root() -> bool:
    """Return True when running with an effective uid of 0."""
    return os.geteuid() == 0


_sudo_available: Optional[bool] = None


def check_sudo() -> bool:
    """
    Check if sudo is available without password.

    Returns:
        True if passwordless sudo is available.
    """
    global _sudo_available
    if _sudo_available is not None:
        return _sudo_available

    try:
        result = subprocess.run(
            ["sudo", "-n", "true"], capture_output=True, timeout=5
        )
        _sudo_available = result.returncode == 0
    except (OSError, subprocess.TimeoutExpired):
        _sudo_available = False

    return _sudo_available


def privileged(argv: Sequence[str]) -> list[str]:
    """Prefix argv with non-interactive sudo unless already root."""
    if is_root():
        return list(argv)
    return ["sudo", "-n", *argv]
