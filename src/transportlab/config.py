"""
Settings for transportlab runs.

Defaults match the lab's reference setup and can be overridden from the
environment (or a .env file loaded by the CLI) and then from the command
line.
"""

import os
from dataclasses import dataclass
from typing import Optional

from .exceptions import ConfigurationError
from .policy import DEFAULT_BURST, DEFAULT_LATENCY


@dataclass
class LabSettings:
    """
    Run-wide settings.

    Attributes:
        port: iperf3 server port.
        duration_sec: Default traffic duration per phase.
        udp_bitrate: Default UDP send rate.
        settle_sec: Pause between phases so lingering retransmissions drain.
        capture_startup_delay: Wait before confirming tcpdump is alive.
        capture_grace_sec: Wait after SIGTERM before killing tcpdump.
        results_root: Directory under which run directories are created.
        interface: Local capture interface; None auto-detects.
        controller: Impairment controller address; None means direct.
        controller_user: Login used to reach the controller.
        controller_interface: Interface to impair on the controller.
        ssh_connect_timeout: SSH connection timeout in seconds.
        bottleneck_burst: Token bucket burst for bottleneck policies.
        bottleneck_latency: Token bucket latency bound.
        tcp_retries: net.ipv4.tcp_retries2 on the controller while impaired.
        ping_check: Ping the target before each phase.
        dry_run: Preview instead of acting.
    """

    port: int = 5201
    duration_sec: int = 20
    udp_bitrate: str = "5M"
    settle_sec: float = 5.0
    capture_startup_delay: float = 2.0
    capture_grace_sec: float = 3.0
    results_root: str = "."
    interface: Optional[str] = None
    controller: Optional[str] = None
    controller_user: str = "root"
    controller_interface: Optional[str] = None
    ssh_connect_timeout: int = 10
    bottleneck_burst: str = DEFAULT_BURST
    bottleneck_latency: str = DEFAULT_LATENCY
    tcp_retries: int = 15
    ping_check: bool = True
    dry_run: bool = False

    def __post_init__(self):
        if not 0 < int(self.port) < 65536:
            raise ConfigurationError(f"Invalid port: {self.port}")
        if int(self.duration_sec) <= 0:
            raise ConfigurationError(f"Duration must be positive: {self.duration_sec}")
        if float(self.settle_sec) < 0:
            raise ConfigurationError(f"Settle interval cannot be negative: {self.settle_sec}")

    @classmethod
    def from_env(cls) -> "LabSettings":
        """Build settings from TRANSPORTLAB_* environment variables."""
        defaults = cls()
        return cls(
            port=_parse_int_env("TRANSPORTLAB_PORT", defaults.port),
            duration_sec=_parse_int_env("TRANSPORTLAB_DURATION", defaults.duration_sec),
            udp_bitrate=os.environ.get("TRANSPORTLAB_UDP_BITRATE", defaults.udp_bitrate),
            settle_sec=_parse_float_env("TRANSPORTLAB_SETTLE_SEC", defaults.settle_sec),
            results_root=os.environ.get("TRANSPORTLAB_RESULTS_ROOT", defaults.results_root),
            interface=os.environ.get("TRANSPORTLAB_INTERFACE") or None,
            controller=os.environ.get("TRANSPORTLAB_CONTROLLER") or None,
            controller_user=os.environ.get("TRANSPORTLAB_CONTROLLER_USER", defaults.controller_user),
            controller_interface=os.environ.get("TRANSPORTLAB_CONTROLLER_INTERFACE") or None,
            bottleneck_burst=os.environ.get("TRANSPORTLAB_BURST", defaults.bottleneck_burst),
            bottleneck_latency=os.environ.get("TRANSPORTLAB_LATENCY", defaults.bottleneck_latency),
            tcp_retries=_parse_int_env("TRANSPORTLAB_TCP_RETRIES", defaults.tcp_retries),
        )


def _parse_int_env(key: str, default: int) -> int:
    raw = os.environ.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")


def _parse_float_env(key: str, default: float) -> float:
    raw = os.environ.get(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}")
