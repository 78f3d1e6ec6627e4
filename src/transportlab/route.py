"""
Route resolution for transportlab.

Decides whether a phase talks to the sink directly or through the
impairment controller, and which host/port pair the capture should record.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .commands import CommandResult, Runner, run_command
from .exceptions import ConfigurationError, LabError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 5201


class RouteMode(str, Enum):
    DIRECT = "direct"
    VIA_CONTROLLER = "via_controller"


@dataclass(frozen=True)
class RouteTarget:
    """Where a phase sends its traffic. Immutable for the phase's lifetime."""

    sink_address: str
    effective_address: str
    port: int = DEFAULT_PORT
    mode: RouteMode = RouteMode.DIRECT

    @property
    def capture_filter(self) -> str:
        """tcpdump filter for the first hop of this route."""
        return f"host {self.effective_address} and port {self.port}"

    def describe(self) -> str:
        if self.mode is RouteMode.VIA_CONTROLLER:
            return f"via controller {self.effective_address}"
        return "direct connection"


class RouteResolver:
    """
    Resolves the traffic target for a phase.

    Resolution itself is pure. ``check_reachable`` is a separate, best-effort
    reachability check that never fails the phase.
    """

    def __init__(self, runner: Optional[Runner] = None, ping_timeout: float = 10):
        self._runner = runner
        self.ping_timeout = ping_timeout

    def resolve(
        self,
        sink_address: str,
        controller_address: Optional[str] = None,
        port: int = DEFAULT_PORT,
    ) -> RouteTarget:
        """
        Resolve the route for one phase.

        Args:
            sink_address: Address of the traffic sink.
            controller_address: Address of the impairment controller, if any.
            port: Sink port.

        Returns:
            RouteTarget whose effective address is the controller when one
            is configured, otherwise the sink.

        Raises:
            ConfigurationError: If the sink address or port is invalid.
        """
        if not sink_address or not sink_address.strip():
            raise ConfigurationError("Server address is required")
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid port: {port!r}")
        if not 0 < port < 65536:
            raise ConfigurationError(f"Invalid port: {port}")

        if controller_address:
            return RouteTarget(
                sink_address=sink_address,
                effective_address=controller_address,
                port=port,
                mode=RouteMode.VIA_CONTROLLER,
            )
        return RouteTarget(
            sink_address=sink_address,
            effective_address=sink_address,
            port=port,
            mode=RouteMode.DIRECT,
        )

    def check_reachable(self, target: RouteTarget) -> bool:
        """
        Ping the effective address.

        Returns:
            True if the host answered. Failures are logged as warnings only,
            since ICMP is often filtered.
        """
        argv = ["ping", "-c", "2", "-W", "2", target.effective_address]
        try:
            if self._runner is not None:
                result = self._runner(argv)
            else:
                result = run_command(argv, timeout=self.ping_timeout)
        except LabError as e:
            logger.warning(f"Reachability check to {target.effective_address} failed: {e}")
            return False

        if result.ok:
            logger.info(f"Host reachable: {target.effective_address}")
            return True

        logger.warning(
            f"Host {target.effective_address} not responding to ping; "
            "continuing anyway (ping may be blocked)"
        )
        return False


def parse_default_interface(route_output: str) -> Optional[str]:
    """
    Extract the device of the first default route from ``ip route`` output.

    Example:
        >>> parse_default_interface("default via 10.0.0.1 dev eth0 proto dhcp")
        'eth0'
    """
    for line in route_output.splitlines():
        tokens = line.split()
        if not tokens or tokens[0] != "default":
            continue
        if "dev" in tokens:
            index = tokens.index("dev")
            if index + 1 < len(tokens):
                return tokens[index + 1]
    return None


def default_route_interface(runner: Optional[Runner] = None) -> str:
    """
    Return the interface of the default outbound route.

    Raises:
        ConfigurationError: If no default route exists. There is no
            fallback interface.
    """
    argv = ["ip", "route", "show", "default"]
    result: CommandResult = runner(argv) if runner is not None else run_command(argv)
    interface = parse_default_interface(result.stdout) if result.ok else None
    if not interface:
        raise ConfigurationError(
            "Could not auto-detect network interface (no default route). "
            "Specify one with -i."
        )
    logger.info(f"Auto-detected network interface: {interface}")
    return interface
