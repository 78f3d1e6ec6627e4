"""
Impairment policy engine using Linux tc.

Provides the ImpairmentEngine class, the only component allowed to mutate
the queueing discipline of the impaired interface. Every apply is
clear-then-configure, so at most one discipline is ever installed and
repeating an apply changes nothing.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .commands import CommandResult, Runner, check_sudo, format_command, is_root, run_command
from .exceptions import (
    CommandFailedError,
    InterfaceNotFoundError,
    PermissionDeniedError,
    PolicyConflictError,
)
from .policy import ImpairmentMode, ImpairmentPolicy
from .route import default_route_interface

logger = logging.getLogger(__name__)

DEFAULT_TCP_RETRIES = 15

LOSS_QDISCS = frozenset({"netem"})
SHAPING_QDISCS = frozenset({"tbf", "htb", "hfsc", "cbq"})

# Answers from "tc qdisc del" that mean there was nothing to remove.
_ALREADY_CLEAN = (
    "No such file or directory",
    "Cannot delete qdisc with handle of zero",
    "Cannot find specified qdisc",
)
_CONFLICT = ("File exists", "Exclusivity flag on")
_NOT_PERMITTED = ("Operation not permitted", "Permission denied")


@dataclass
class AppliedState:
    """What an apply did, or would have done in preview mode."""

    policy: ImpairmentPolicy
    interface: str
    preview: bool = False
    commands: list[list[str]] = field(default_factory=list)

    def describe(self) -> list[str]:
        return [format_command(cmd) for cmd in self.commands]


@dataclass
class ObservedState:
    """
    Root discipline found on an interface.

    Attributes:
        interface: Interface inspected.
        kind: Root qdisc kind reported by tc, e.g. "netem" or "tbf".
        impairment_class: "loss", "shaping" or None when no impairment.
        raw: Raw ``tc qdisc show`` output.
        expected: Class that was requested, if verification was asked for.
        matches: Whether the observed class equals the expected one.
    """

    interface: str
    kind: Optional[str] = None
    impairment_class: Optional[str] = None
    raw: str = ""
    expected: Optional[str] = None
    matches: Optional[bool] = None

    @property
    def active(self) -> bool:
        return self.impairment_class is not None

    def to_dict(self) -> dict:
        return {
            "interface": self.interface,
            "kind": self.kind,
            "impairment_class": self.impairment_class,
            "active": self.active,
            "expected": self.expected,
            "matches": self.matches,
        }


def classify_qdisc(kind: Optional[str]) -> Optional[str]:
    """Map a qdisc kind to an impairment class."""
    if kind in LOSS_QDISCS:
        return "loss"
    if kind in SHAPING_QDISCS:
        return "shaping"
    return None


def parse_root_qdisc(tc_output: str) -> Optional[str]:
    """
    Return the kind of the root qdisc in ``tc qdisc show`` output.

    Example:
        >>> parse_root_qdisc("qdisc tbf 8002: root refcnt 2 rate 10Mbit burst 4Kb lat 400ms")
        'tbf'
    """
    for line in tc_output.splitlines():
        tokens = line.split()
        if len(tokens) >= 2 and tokens[0] == "qdisc" and "root" in tokens:
            return tokens[1]
    return None


def _format_pct(value: float) -> str:
    return f"{value:g}%"


class ImpairmentEngine:
    """
    Applies, clears and verifies impairment on one network interface.

    Requires root, or passwordless sudo, to mutate state. In preview
    (dry-run) mode the same checks run and the same commands are built and
    logged, but nothing that changes the system is executed.

    Example:
        >>> engine = ImpairmentEngine(interface="eth0")
        >>> engine.apply(ImpairmentPolicy.loss(1))
        >>> engine.verify().impairment_class
        'loss'
        >>> engine.apply(ImpairmentPolicy.clean())
    """

    def __init__(
        self,
        interface: Optional[str] = None,
        dry_run: bool = False,
        tcp_retries: int = DEFAULT_TCP_RETRIES,
        runner: Optional[Runner] = None,
    ):
        """
        Initialize the engine.

        Args:
            interface: Interface to manage. None auto-detects the interface
                of the default route when first needed.
            dry_run: Preview mode; mutating commands are logged, not run.
            tcp_retries: Value for net.ipv4.tcp_retries2 while impaired.
            runner: Command runner, replaced in tests.
        """
        self.interface = interface
        self.dry_run = dry_run
        self.tcp_retries = tcp_retries
        self.current_policy: Optional[ImpairmentPolicy] = None
        self._runner = runner or run_command
        self._prefix: Optional[list[str]] = None

    def resolve_interface(self, interface: Optional[str] = None) -> str:
        """
        Resolve the interface to act on.

        Raises:
            ConfigurationError: If auto-detection finds no default route.
        """
        resolved = interface or self.interface
        if not resolved:
            resolved = default_route_interface(self._runner)
            self.interface = resolved
        return resolved

    def _ensure_interface(self, interface: str) -> None:
        result = self._runner(["ip", "link", "show", "dev", interface])
        if not result.ok:
            raise InterfaceNotFoundError(interface)

    def _privilege_prefix(self) -> list[str]:
        if self._prefix is not None:
            return self._prefix
        if is_root():
            self._prefix = []
        elif check_sudo():
            self._prefix = ["sudo", "-n"]
        else:
            raise PermissionDeniedError(
                "This operation must be run as root (or with passwordless sudo)"
            )
        return self._prefix

    def _mutate(
        self, argv: list[str], interface: str, tolerate: tuple[str, ...] = ()
    ) -> list[str]:
        """Run a state-changing command, or log it in preview mode."""
        if self.dry_run:
            logger.info(f"[DRY RUN] {format_command(argv)}")
            return argv

        full = self._privilege_prefix() + argv
        logger.info(f"Executing: {format_command(full)}")
        result: CommandResult = self._runner(full)
        if result.ok:
            return full

        stderr = result.stderr.strip()
        if any(marker in stderr for marker in tolerate):
            logger.debug(f"Ignoring expected tc answer: {stderr}")
            return full
        if any(marker in stderr for marker in _NOT_PERMITTED):
            raise PermissionDeniedError(f"Not permitted: {format_command(full)}")
        if any(marker in stderr for marker in _CONFLICT):
            raise PolicyConflictError(interface, stderr)
        if "Cannot find device" in stderr:
            raise InterfaceNotFoundError(interface)
        raise CommandFailedError(full, result.returncode, stderr)

    def _prepare(self, interface: Optional[str]) -> str:
        resolved = self.resolve_interface(interface)
        self._ensure_interface(resolved)
        if not self.dry_run:
            self._privilege_prefix()
        return resolved

    @staticmethod
    def build_clear_command(interface: str) -> list[str]:
        return ["tc", "qdisc", "del", "dev", interface, "root"]

    @staticmethod
    def build_install_command(interface: str, policy: ImpairmentPolicy) -> Optional[list[str]]:
        """
        Build the single tc command that installs a policy.

        Returns:
            The argv, or None for a clean policy, which installs nothing.
        """
        base = ["tc", "qdisc", "add", "dev", interface, "root"]
        if policy.mode is ImpairmentMode.LOSS:
            return base + ["netem", "loss", _format_pct(policy.loss_pct)]
        if policy.mode is ImpairmentMode.BOTTLENECK:
            return base + [
                "tbf",
                "rate", policy.rate,
                "burst", policy.burst,
                "latency", policy.latency,
            ]
        return None

    def build_tuning_commands(self) -> list[list[str]]:
        """sysctl settings the impairment host needs while impaired."""
        return [
            ["sysctl", "-w", "net.ipv4.ip_forward=1"],
            # The midpoint must outlast the endpoints' own retransmissions.
            ["sysctl", "-w", f"net.ipv4.tcp_retries2={self.tcp_retries}"],
        ]

    def tune_host(self) -> list[list[str]]:
        """Enable forwarding and widen the TCP retry budget on this host."""
        logger.info("Configuring impairment host system settings")
        return [self._mutate(cmd, interface="") for cmd in self.build_tuning_commands()]

    def clear(self, interface: Optional[str] = None) -> list[list[str]]:
        """
        Remove any root discipline from the interface.

        Clearing an already clean interface succeeds.

        Returns:
            The commands executed (or previewed).
        """
        resolved = self._prepare(interface)
        return self._clear(resolved)

    def _clear(self, interface: str) -> list[list[str]]:
        logger.info(f"Cleaning tc rules on {interface}")
        executed = self._mutate(
            self.build_clear_command(interface), interface, tolerate=_ALREADY_CLEAN
        )
        if not self.dry_run:
            self.current_policy = None
        return [executed]

    def apply(self, policy: ImpairmentPolicy) -> AppliedState:
        """
        Apply a policy, replacing whatever was installed before.

        Args:
            policy: Policy to apply. Its interface overrides the engine's.

        Returns:
            AppliedState listing the commands run (or previewed).

        Raises:
            ConfigurationError: If the interface cannot be auto-detected.
            InterfaceNotFoundError: If the interface does not exist.
            PermissionDeniedError: If the caller cannot mutate tc state.
            PolicyConflictError: If a discipline survives the clear.
        """
        interface = self._prepare(policy.interface)
        state = AppliedState(policy=policy, interface=interface, preview=self.dry_run)

        if policy.requires_controller:
            state.commands.extend(self.tune_host())

        state.commands.extend(self._clear(interface))

        install = self.build_install_command(interface, policy)
        if install is not None:
            if not self.dry_run:
                residual = self.verify(interface)
                if residual.active:
                    raise PolicyConflictError(
                        interface, f"{residual.kind} still installed after clear"
                    )
            state.commands.append(self._mutate(install, interface))

        if self.dry_run:
            logger.info(f"[DRY RUN] Would apply {policy.describe()} on {interface}")
        else:
            self.current_policy = policy
            logger.info(f"Applied {policy.describe()} on {interface}")
        return state

    def verify(
        self,
        interface: Optional[str] = None,
        expected: Optional[ImpairmentPolicy] = None,
    ) -> ObservedState:
        """
        Inspect the interface and report the active impairment.

        A mismatch against ``expected`` is reported and logged, not fixed.
        """
        resolved = self.resolve_interface(interface)
        result = self._runner(["tc", "qdisc", "show", "dev", resolved])
        if not result.ok:
            stderr = result.stderr.strip()
            if "Cannot find device" in stderr:
                raise InterfaceNotFoundError(resolved)
            raise CommandFailedError(result.argv, result.returncode, stderr)

        kind = parse_root_qdisc(result.stdout)
        observed = ObservedState(
            interface=resolved,
            kind=kind,
            impairment_class=classify_qdisc(kind),
            raw=result.stdout,
        )

        if expected is not None:
            observed.expected = expected.impairment_class
            observed.matches = observed.impairment_class == observed.expected
            if not observed.matches:
                logger.warning(
                    f"Impairment mismatch on {resolved}: expected "
                    f"{observed.expected or 'none'}, found {observed.impairment_class or 'none'}"
                    f" (root qdisc: {kind or 'none'})"
                )

        return observed
