"""
Custom exceptions for the transportlab package.

Every error carries enough context to print the resolved cause. Where a
manual fix exists, it is exposed as ``remedy`` so the CLI can print it
before exiting.
"""

from typing import Optional, Sequence


class LabError(Exception):
    """Base exception for all transportlab errors."""

    remedy: Optional[str] = None


class ConfigurationError(LabError):
    """
    Raised for a bad or missing parameter, an invalid mode or an
    unreadable experiment plan.

    Configuration errors are detected before any state is mutated.
    """

    pass


class PermissionDeniedError(LabError):
    """
    Raised when an operation needs root privileges that are not available.

    Path impairment and packet capture both require root. Run as root or
    configure passwordless sudo for tc, sysctl and tcpdump.
    """

    def __init__(self, message: str = "Root privileges are required to mutate path state"):
        super().__init__(message)
        self.remedy = "Run with sudo or as root"


class InterfaceNotFoundError(LabError):
    """Raised when the named network interface does not exist."""

    def __init__(self, interface: str):
        self.interface = interface
        super().__init__(f"Network interface not found: {interface}")
        self.remedy = "List interfaces with: ip -brief link"


class PolicyConflictError(LabError):
    """
    Raised when an impairment policy cannot be installed because another
    queueing discipline is still present on the interface.
    """

    def __init__(self, interface: str, detail: str = ""):
        self.interface = interface
        message = f"Conflicting queueing discipline on {interface}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)
        self.remedy = f"tc qdisc del dev {interface} root"


class CaptureFailedToStartError(LabError):
    """
    Raised when the capture process is not alive after its startup delay.

    A phase must never generate traffic without a confirmed capture.
    """

    def __init__(self, target_file: str, returncode: Optional[int] = None, stderr: str = ""):
        self.target_file = target_file
        self.returncode = returncode
        self.stderr = stderr
        message = f"Packet capture failed to start: {target_file}"
        if returncode is not None:
            message += f" (exit {returncode})"
        if stderr:
            message += f"\nStderr: {stderr}"
        super().__init__(message)


class SessionAlreadyActiveError(LabError):
    """Raised when a second capture session is started while one is running."""

    def __init__(self, target_file: str):
        self.target_file = target_file
        super().__init__(f"A capture session is already active: {target_file}")


class ToolMissingError(LabError):
    """Raised at startup when a required external tool is not on PATH."""

    def __init__(self, tool: str, install_hint: str = ""):
        self.tool = tool
        message = f"Required tool is not installed: {tool}"
        super().__init__(message)
        self.remedy = install_hint or f"sudo apt-get install {tool}"


class RemoteDispatchError(LabError):
    """
    Raised when a policy command could not be delivered to the controller
    host, or the controller reported failure.
    """

    def __init__(self, host: str, returncode: int, output: str = ""):
        self.host = host
        self.returncode = returncode
        self.output = output
        message = f"Remote command on {host} failed (exit {returncode})"
        if output:
            message += f"\nOutput: {output}"
        super().__init__(message)


class CommandFailedError(LabError):
    """
    Raised when an external command exits non-zero.

    This may indicate insufficient permissions, invalid parameters,
    or missing kernel modules.
    """

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command failed (exit {returncode}): {' '.join(self.command)}"
        if stderr:
            message += f"\nStderr: {stderr}"
        super().__init__(message)


class RunInterrupted(KeyboardInterrupt):
    """
    Raised inside a run when a termination signal arrives.

    Derives from KeyboardInterrupt so SIGTERM unwinds exactly like Ctrl+C
    and is never mistaken for a phase error.
    """

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Run interrupted by signal {signum}")
