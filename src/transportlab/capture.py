"""
Capture supervisor for transportlab.

Manages the tcpdump process that records a phase. A capture is confirmed
alive before traffic starts and is always stopped (SIGTERM, then SIGKILL
after a grace period) when its phase ends, however it ends.
"""

import logging
import shlex
import subprocess
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional

from .commands import INSTALL_HINTS, Runner, format_command, privileged, run_command
from .exceptions import (
    CaptureFailedToStartError,
    LabError,
    PermissionDeniedError,
    SessionAlreadyActiveError,
    ToolMissingError,
)

logger = logging.getLogger(__name__)

DEFAULT_STARTUP_DELAY = 2.0
DEFAULT_GRACE_PERIOD = 3.0


class CaptureState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


def capture_filename(
    prefix: str,
    protocol: Optional[str] = None,
    when: Optional[datetime] = None,
    ext: str = "pcap",
) -> str:
    """
    Build a timestamped capture file name.

    Example:
        >>> capture_filename("exp1_baseline_tcp", when=datetime(2024, 5, 1, 12, 0, 0))
        'exp1_baseline_tcp_20240501_120000.pcap'
        >>> capture_filename("client_capture", "tcp", datetime(2024, 5, 1, 12, 0, 0))
        'client_capture_TCP_20240501_120000.pcap'
    """
    timestamp = (when or datetime.now()).strftime("%Y%m%d_%H%M%S")
    parts = [prefix]
    if protocol:
        parts.append(str(protocol).upper())
    parts.append(timestamp)
    return f"{'_'.join(parts)}.{ext}"


@dataclass
class CaptureSession:
    """
    One packet capture, owned by a single phase.

    Attributes:
        target_file: pcap file written by tcpdump.
        interface: Interface to capture on.
        filter_expression: BPF filter, e.g. "host 10.0.0.2 and port 5201".
        process: Handle of the running tcpdump.
        state: Lifecycle state.
        started_at: Time the process was launched.
        stopped_at: Time the process was confirmed gone.
        error: tcpdump's stderr when it died before confirmation.
        privileged: The capture runs under sudo.
    """

    target_file: Path
    interface: str
    filter_expression: str = ""
    process: Optional[subprocess.Popen] = field(default=None, repr=False)
    state: CaptureState = CaptureState.NOT_STARTED
    started_at: Optional[float] = None
    stopped_at: Optional[float] = None
    error: str = ""
    privileged: bool = False

    def build_command(self, tool: str = "tcpdump") -> list[str]:
        """tcpdump argv; the filter is split into separate arguments."""
        cmd = [
            tool,
            "-i", self.interface,
            "-w", str(self.target_file),
            "-U",  # Packet-buffered output
        ]
        if self.filter_expression:
            cmd.extend(shlex.split(self.filter_expression))
        return cmd


class CaptureSupervisor:
    """
    Starts, confirms and stops capture sessions, one at a time.

    Example:
        >>> supervisor = CaptureSupervisor()
        >>> session = CaptureSession(Path("out.pcap"), "eth0", "port 5201")
        >>> with supervisor.capturing(session):
        ...     run_traffic()
    """

    def __init__(
        self,
        startup_delay: float = DEFAULT_STARTUP_DELAY,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        tool: str = "tcpdump",
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
        runner: Optional[Runner] = None,
    ):
        """
        Initialize the supervisor.

        Args:
            startup_delay: Seconds to wait before checking the capture is alive.
            grace_period: Seconds to wait after SIGTERM before SIGKILL.
            tool: Capture program.
            popen: Process factory, replaced in tests.
            sleep: Sleep function, replaced in tests.
            runner: Runs the group kill of a sudo capture.
        """
        self.startup_delay = startup_delay
        self.grace_period = grace_period
        self.tool = tool
        self._popen = popen
        self._sleep = sleep
        self._runner = runner or run_command
        self._active: Optional[CaptureSession] = None

    @property
    def active(self) -> Optional[CaptureSession]:
        return self._active

    def start(self, session: CaptureSession) -> CaptureSession:
        """
        Launch the capture process and return without waiting for output.

        Raises:
            SessionAlreadyActiveError: If another session is running.
            ToolMissingError: If tcpdump is not installed.
            PermissionDeniedError: If the capture program may not be executed.
            CaptureFailedToStartError: If the process or its output
                directory cannot be created.
        """
        if self._active is not None:
            raise SessionAlreadyActiveError(str(self._active.target_file))

        session.target_file = Path(session.target_file)
        cmd = privileged(session.build_command(self.tool))
        session.privileged = cmd[0] == "sudo"

        logger.info(f"Starting capture: {format_command(cmd)}")
        try:
            session.target_file.parent.mkdir(parents=True, exist_ok=True)
            # Own process group, so a sudo-wrapped capture can be killed whole.
            session.process = self._popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError:
            session.state = CaptureState.STOPPED
            raise ToolMissingError(cmd[0], INSTALL_HINTS.get(cmd[0], ""))
        except PermissionError as e:
            session.state = CaptureState.STOPPED
            raise PermissionDeniedError(f"Cannot start capture: {e}")
        except OSError as e:
            session.state = CaptureState.STOPPED
            raise CaptureFailedToStartError(str(session.target_file), stderr=str(e))

        session.started_at = time.time()
        session.state = CaptureState.RUNNING
        self._active = session
        return session

    def confirm_alive(self, session: CaptureSession, timeout: Optional[float] = None) -> bool:
        """
        Wait a short fixed delay, then check the capture is still running.

        A dead capture is reaped and the session marked stopped.

        Returns:
            True if the process is alive.
        """
        self._sleep(self.startup_delay if timeout is None else timeout)

        if session.process is not None and session.process.poll() is None:
            logger.info(f"Packet capture started (PID: {session.process.pid})")
            return True

        session.error = self._stderr_of(session)
        logger.error(f"Capture process exited early: {session.target_file}")
        self._reap(session)
        return False

    def stop(self, session: CaptureSession, grace_period: Optional[float] = None) -> None:
        """
        Stop a capture: SIGTERM, wait up to the grace period, then SIGKILL.

        Stopping a session that is not running does nothing.
        """
        if session.state in (CaptureState.STOPPED, CaptureState.NOT_STARTED) or session.process is None:
            return

        grace = self.grace_period if grace_period is None else grace_period
        session.state = CaptureState.STOPPING
        process = session.process

        logger.info(f"Stopping capture (PID: {process.pid})")
        try:
            process.terminate()
            process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning(f"Capture did not exit within {grace}s, force stopping")
            if session.privileged:
                self._kill_group(process.pid)
            process.kill()
            process.wait()
        except ProcessLookupError:
            logger.debug("Capture process already gone")

        self._reap(session)
        logger.info(f"Capture stopped: {session.target_file}")

    def _kill_group(self, pgid: int) -> None:
        """
        SIGKILL the capture's process group through sudo.

        sudo cannot relay SIGKILL to tcpdump, and the group belongs to root.
        """
        cmd = ["sudo", "-n", "kill", "-KILL", "--", f"-{pgid}"]
        try:
            result = self._runner(cmd)
        except LabError as e:
            logger.error(f"Failed to kill capture group {pgid}: {e}")
            return
        if not result.ok:
            logger.error(
                f"Failed to kill capture group {pgid}: {result.stderr.strip()}. "
                f"Clean manually: sudo kill -KILL -- -{pgid}"
            )

    def _reap(self, session: CaptureSession) -> None:
        if session.process is not None and session.process.stderr is not None:
            session.process.stderr.close()
        session.stopped_at = time.time()
        session.state = CaptureState.STOPPED
        if self._active is session:
            self._active = None

    def _stderr_of(self, session: CaptureSession) -> str:
        process = session.process
        if process is None or process.stderr is None or process.stderr.closed:
            return ""
        try:
            data = process.stderr.read()
        except (OSError, ValueError):
            return ""
        if isinstance(data, bytes):
            data = data.decode(errors="replace")
        return (data or "").strip()

    @contextmanager
    def capturing(self, session: CaptureSession) -> Iterator[CaptureSession]:
        """
        Run a block with a confirmed capture around it.

        The capture is stopped on every exit from the block: normal
        completion, an exception, or KeyboardInterrupt.

        Raises:
            CaptureFailedToStartError: If the capture is not alive after
                the startup delay. The block is not entered.
        """
        self.start(session)
        try:
            if not self.confirm_alive(session):
                process = session.process
                raise CaptureFailedToStartError(
                    str(session.target_file),
                    returncode=process.returncode if process is not None else None,
                    stderr=session.error,
                )
            yield session
        finally:
            self.stop(session)
