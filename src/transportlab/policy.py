"""
Impairment policy data class for transportlab.

An ImpairmentPolicy is the declarative intent for one interface: a clean
path, random loss, or a bandwidth bottleneck. Policies are immutable and
are replaced wholesale, never edited.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .exceptions import ConfigurationError

DEFAULT_BURST = "32kbit"
DEFAULT_LATENCY = "400ms"

_RATE_RE = re.compile(r"^(\d+(?:\.\d+)?)(bit|kbit|mbit|gbit|tbit|bps|kbps|mbps|gbps|tbps)$", re.IGNORECASE)
_SIZE_RE = re.compile(r"^\d+(?:\.\d+)?(b|kb|k|mb|m|gb|g|bit|kbit|mbit|gbit)?$", re.IGNORECASE)
_TIME_RE = re.compile(r"^\d+(?:\.\d+)?(s|sec|ms|msec|us|usec)$", re.IGNORECASE)


class ImpairmentMode(str, Enum):
    """Class of impairment applied to a path."""

    CLEAN = "clean"
    LOSS = "loss"
    BOTTLENECK = "bottleneck"


def validate_rate(rate: str) -> str:
    """
    Validate a tc bandwidth value such as ``10mbit``.

    Raises:
        ConfigurationError: If the value is not a positive rate with a unit.
    """
    match = _RATE_RE.match(str(rate).strip())
    if not match or float(match.group(1)) <= 0:
        raise ConfigurationError(
            f"Invalid rate '{rate}': expected a positive value with a unit, e.g. 10mbit"
        )
    return str(rate).strip().lower()


def validate_loss(loss_pct: float) -> float:
    """Validate a loss percentage in (0, 100]."""
    try:
        value = float(loss_pct)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid loss percentage: {loss_pct!r}")
    if not 0 < value <= 100:
        raise ConfigurationError(
            f"Invalid loss percentage {value}: must be greater than 0 and at most 100"
        )
    return value


@dataclass(frozen=True)
class ImpairmentPolicy:
    """
    Impairment configuration for one interface.

    Attributes:
        mode: CLEAN, LOSS or BOTTLENECK.
        interface: Interface to apply to. None means the interface of the
            default route on the host that applies the policy.
        loss_pct: Random per-packet drop probability in percent (LOSS only).
        rate: Token bucket rate with a tc unit, e.g. "10mbit" (BOTTLENECK only).
        burst: Token bucket burst size. Kept small so the limiter acts as a
            link-rate cap rather than a deep buffer.
        latency: Maximum time a packet may wait in the token bucket queue.
    """

    mode: ImpairmentMode = ImpairmentMode.CLEAN
    interface: Optional[str] = None
    loss_pct: Optional[float] = None
    rate: Optional[str] = None
    burst: str = DEFAULT_BURST
    latency: str = DEFAULT_LATENCY

    def __post_init__(self):
        mode = ImpairmentMode(self.mode)
        object.__setattr__(self, "mode", mode)

        if mode is ImpairmentMode.LOSS:
            if self.loss_pct is None:
                raise ConfigurationError("Loss mode requires a loss percentage")
            object.__setattr__(self, "loss_pct", validate_loss(self.loss_pct))
        elif mode is ImpairmentMode.BOTTLENECK:
            if not self.rate:
                raise ConfigurationError("Bottleneck mode requires a rate")
            object.__setattr__(self, "rate", validate_rate(self.rate))
            if not _SIZE_RE.match(self.burst):
                raise ConfigurationError(f"Invalid burst size: {self.burst}")
            if not _TIME_RE.match(self.latency):
                raise ConfigurationError(f"Invalid latency bound: {self.latency}")

    @classmethod
    def clean(cls, interface: Optional[str] = None) -> "ImpairmentPolicy":
        return cls(ImpairmentMode.CLEAN, interface=interface)

    @classmethod
    def loss(cls, loss_pct: float, interface: Optional[str] = None) -> "ImpairmentPolicy":
        return cls(ImpairmentMode.LOSS, interface=interface, loss_pct=loss_pct)

    @classmethod
    def bottleneck(
        cls,
        rate: str,
        interface: Optional[str] = None,
        burst: str = DEFAULT_BURST,
        latency: str = DEFAULT_LATENCY,
    ) -> "ImpairmentPolicy":
        return cls(
            ImpairmentMode.BOTTLENECK,
            interface=interface,
            rate=rate,
            burst=burst,
            latency=latency,
        )

    @property
    def requires_controller(self) -> bool:
        """True when the policy can only be realized on an impairment host."""
        return self.mode is not ImpairmentMode.CLEAN

    @property
    def impairment_class(self) -> Optional[str]:
        """Observed class this policy should produce: "loss", "shaping" or None."""
        if self.mode is ImpairmentMode.LOSS:
            return "loss"
        if self.mode is ImpairmentMode.BOTTLENECK:
            return "shaping"
        return None

    def describe(self) -> str:
        """Short human-readable label, e.g. "loss 1.0%"."""
        if self.mode is ImpairmentMode.LOSS:
            return f"loss {self.loss_pct}%"
        if self.mode is ImpairmentMode.BOTTLENECK:
            return f"bottleneck {self.rate}"
        return "clean"

    def to_dict(self) -> dict:
        data: dict = {"mode": self.mode.value}
        if self.interface:
            data["interface"] = self.interface
        if self.mode is ImpairmentMode.LOSS:
            data["loss_pct"] = self.loss_pct
        elif self.mode is ImpairmentMode.BOTTLENECK:
            data.update(rate=self.rate, burst=self.burst, latency=self.latency)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ImpairmentPolicy":
        """
        Create an ImpairmentPolicy from a dictionary.

        Example:
            >>> policy = ImpairmentPolicy.from_dict({"mode": "loss", "loss_pct": 1})
            >>> policy.loss_pct
            1.0
        """
        mode = data.get("mode", "clean")
        try:
            mode = ImpairmentMode(str(mode).lower())
        except ValueError:
            raise ConfigurationError(
                f"Invalid mode '{mode}': valid modes are clean, loss, bottleneck"
            )
        return cls(
            mode=mode,
            interface=data.get("interface"),
            loss_pct=data.get("loss_pct"),
            rate=data.get("rate"),
            burst=data.get("burst", DEFAULT_BURST),
            latency=data.get("latency", DEFAULT_LATENCY),
        )
