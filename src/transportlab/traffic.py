"""
iperf3 traffic endpoints for transportlab.

The client runs in the foreground for a fixed duration and its JSON report
is reduced to a TrafficResult. The server runs until it exits or is
interrupted.
"""

import json
import logging
import re
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Optional

from .commands import INSTALL_HINTS, Runner, format_command, run_command
from .exceptions import CommandFailedError, ConfigurationError, ToolMissingError

logger = logging.getLogger(__name__)

DEFAULT_BITRATE = "5M"
_BITRATE_RE = re.compile(r"^\d+(?:\.\d+)?[KMGkmg]?$")


class Transport(str, Enum):
    TCP = "tcp"
    UDP = "udp"


def validate_bitrate(bitrate: str) -> str:
    """Validate an iperf3 bitrate such as ``5M``."""
    if not _BITRATE_RE.match(str(bitrate).strip()):
        raise ConfigurationError(f"Invalid bitrate '{bitrate}': expected e.g. 5M or 500K")
    return str(bitrate).strip()


@dataclass
class TrafficResult:
    """Outcome of one iperf3 client run."""

    argv: list[str]
    returncode: int
    output: str = ""
    started_at: float = 0.0
    finished_at: float = 0.0
    bytes_transferred: int = 0
    bits_per_second: float = 0.0
    lost_percent: Optional[float] = None
    retransmits: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and self.error is None

    def to_dict(self) -> dict:
        return {
            "command": format_command(self.argv),
            "returncode": self.returncode,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "bytes_transferred": self.bytes_transferred,
            "bits_per_second": self.bits_per_second,
            "lost_percent": self.lost_percent,
            "retransmits": self.retransmits,
            "error": self.error,
        }


def build_client_command(
    target: str,
    port: int,
    transport: Transport,
    duration_sec: int,
    bitrate: Optional[str] = None,
    tool: str = "iperf3",
) -> list[str]:
    """Build the iperf3 client argv. The bitrate applies to UDP only."""
    cmd = [tool, "-c", target, "-p", str(port), "-t", str(duration_sec)]
    if Transport(transport) is Transport.UDP:
        cmd.extend(["-u", "-b", bitrate or DEFAULT_BITRATE])
    cmd.append("-J")
    return cmd


def parse_iperf_report(output: str) -> dict:
    """
    Reduce an iperf3 JSON report to the figures a phase records.

    Returns an empty dict when the output is not a JSON report.
    """
    try:
        report = json.loads(output)
    except (json.JSONDecodeError, TypeError):
        return {}
    if not isinstance(report, dict):
        return {}

    end = report.get("end") or {}
    parsed: dict = {}
    if report.get("error"):
        parsed["error"] = report["error"]

    if "sum" in end:
        # UDP reports a single sum with loss figures.
        summary = end["sum"]
        parsed["bytes_transferred"] = int(summary.get("bytes", 0))
        parsed["bits_per_second"] = float(summary.get("bits_per_second", 0.0))
        if "lost_percent" in summary:
            parsed["lost_percent"] = float(summary["lost_percent"])
    else:
        sent = end.get("sum_sent") or {}
        received = end.get("sum_received") or {}
        summary = received or sent
        parsed["bytes_transferred"] = int(summary.get("bytes", 0))
        parsed["bits_per_second"] = float(summary.get("bits_per_second", 0.0))
        if "retransmits" in sent:
            parsed["retransmits"] = int(sent["retransmits"])

    return parsed


class TrafficClient:
    """Foreground iperf3 client."""

    def __init__(
        self,
        tool: str = "iperf3",
        timeout_margin: float = 30,
        runner: Optional[Runner] = None,
    ):
        """
        Args:
            tool: iperf3 binary.
            timeout_margin: Seconds allowed beyond the test duration before
                the client is killed.
            runner: Command runner, replaced in tests.
        """
        self.tool = tool
        self.timeout_margin = timeout_margin
        self._runner = runner

    def run(
        self,
        target: str,
        port: int,
        transport: Transport,
        duration_sec: int,
        bitrate: Optional[str] = None,
    ) -> TrafficResult:
        """
        Run one test and block until it finishes.

        Returns:
            TrafficResult; a failed or timed out run is a result with an
            error, not an exception.

        Raises:
            ToolMissingError: If iperf3 is not installed.
        """
        argv = build_client_command(target, port, transport, duration_sec, bitrate, self.tool)
        runner = self._runner or partial(run_command, timeout=duration_sec + self.timeout_margin)

        logger.info(f"Starting iperf3 {Transport(transport).value.upper()} test: {format_command(argv)}")
        started_at = time.time()
        try:
            completed = runner(argv)
        except CommandFailedError as e:
            return TrafficResult(
                argv=argv,
                returncode=e.returncode,
                started_at=started_at,
                finished_at=time.time(),
                error=e.stderr or str(e),
            )
        finished_at = time.time()

        result = TrafficResult(
            argv=argv,
            returncode=completed.returncode,
            output=completed.stdout,
            started_at=started_at,
            finished_at=finished_at,
        )
        parsed = parse_iperf_report(completed.stdout)
        for key, value in parsed.items():
            setattr(result, key, value)
        if not completed.ok and result.error is None:
            result.error = completed.stderr.strip() or f"iperf3 exited with {completed.returncode}"

        if result.ok:
            logger.info(
                f"Test complete: {result.bytes_transferred} bytes, "
                f"{result.bits_per_second / 1e6:.2f} Mbit/s"
            )
        else:
            logger.error(f"Traffic generation failed: {result.error}")
        return result


class TrafficServer:
    """iperf3 server for the sink role."""

    def __init__(self, tool: str = "iperf3"):
        self.tool = tool

    def build_command(self, port: int) -> list[str]:
        return [self.tool, "-s", "-p", str(port)]

    def run(self, port: int) -> int:
        """
        Serve until iperf3 exits or the caller is interrupted.

        Output goes straight to the terminal.

        Returns:
            iperf3's exit status.
        """
        argv = self.build_command(port)
        logger.info(f"Starting iperf3 server on port {port}")
        try:
            return subprocess.run(argv).returncode
        except FileNotFoundError:
            raise ToolMissingError(self.tool, INSTALL_HINTS.get(self.tool, ""))
