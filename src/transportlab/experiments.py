"""
Experiment catalog for transportlab.

An experiment groups phases that share one impairment (for instance TCP
then UDP over a 1% lossy path). The built-in catalog reproduces the lab's
three reference experiments; plans can also be loaded from YAML.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import yaml

from .config import LabSettings
from .exceptions import ConfigurationError
from .policy import ImpairmentPolicy
from .traffic import Transport, validate_bitrate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExperimentPhase:
    """
    One trial: a single transport/impairment/duration combination.

    Attributes:
        name: Unique phase name, e.g. "exp2_loss_tcp".
        impairment: Policy the controller must hold during the phase.
            None leaves the controller untouched unless an earlier phase
            impaired it, in which case the path is cleaned first.
        transport: TCP or UDP.
        duration_sec: Traffic duration.
        bitrate: UDP send rate; ignored for TCP.
        output_prefix: Capture file prefix. Defaults to the name.
        tag_protocol: Add the protocol to the capture file name.
        description: Human-readable description for logs.
    """

    name: str
    impairment: Optional[ImpairmentPolicy] = None
    transport: Transport = Transport.TCP
    duration_sec: int = 20
    bitrate: Optional[str] = None
    output_prefix: str = ""
    tag_protocol: bool = False
    description: str = ""

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Phase name is required")
        try:
            transport = Transport(str(getattr(self.transport, "value", self.transport)).lower())
        except ValueError:
            raise ConfigurationError(
                f"Invalid transport '{self.transport}' in phase {self.name}: use tcp or udp"
            )
        object.__setattr__(self, "transport", transport)

        try:
            duration = int(self.duration_sec)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Phase {self.name}: invalid duration {self.duration_sec!r}, expected seconds"
            )
        if duration <= 0:
            raise ConfigurationError(f"Phase {self.name}: duration must be positive")
        object.__setattr__(self, "duration_sec", duration)

        if transport is Transport.UDP:
            object.__setattr__(self, "bitrate", validate_bitrate(self.bitrate or "5M"))
        else:
            object.__setattr__(self, "bitrate", None)

        if not self.output_prefix:
            object.__setattr__(self, "output_prefix", self.name)

    def describe(self) -> str:
        if self.description:
            return self.description
        text = f"{self.transport.value.upper()} for {self.duration_sec}s"
        if self.bitrate:
            text += f" at {self.bitrate}"
        if self.impairment is not None:
            text += f" ({self.impairment.describe()})"
        return text


@dataclass
class Experiment:
    """An ordered group of phases with their expected observations."""

    key: str
    title: str
    phases: list[ExperimentPhase] = field(default_factory=list)
    expectations: list[str] = field(default_factory=list)


def builtin_experiments(settings: Optional[LabSettings] = None) -> dict[str, Experiment]:
    """
    Return the reference experiments keyed "1", "2" and "3".

    Args:
        settings: Supplies duration, UDP bitrate, interface and bottleneck
            tuning. Defaults are used when omitted.
    """
    settings = settings or LabSettings()
    duration = settings.duration_sec
    interface = settings.controller_interface

    clean = ImpairmentPolicy.clean(interface=interface)
    loss = ImpairmentPolicy.loss(1, interface=interface)
    bottleneck = ImpairmentPolicy.bottleneck(
        "10mbit",
        interface=interface,
        burst=settings.bottleneck_burst,
        latency=settings.bottleneck_latency,
    )

    return {
        "1": Experiment(
            key="1",
            title="Baseline (Clean Path)",
            phases=[
                ExperimentPhase("exp1_baseline_tcp", clean, Transport.TCP, duration),
                ExperimentPhase(
                    "exp1_baseline_udp", clean, Transport.UDP, duration, settings.udp_bitrate
                ),
            ],
            expectations=[
                "TCP: Exponential ramp-up (slow start), then linear growth",
                f"UDP: Immediate constant rate at {settings.udp_bitrate}bit/s",
            ],
        ),
        "2": Experiment(
            key="2",
            title="Moderate Random Loss (1%)",
            phases=[
                ExperimentPhase("exp2_loss_tcp", loss, Transport.TCP, duration),
                ExperimentPhase(
                    "exp2_loss_udp", loss, Transport.UDP, duration, settings.udp_bitrate
                ),
            ],
            expectations=[
                "TCP: Duplicate ACKs, retransmissions, cwnd reductions (sawtooth)",
                "UDP: Constant send rate, ~1% loss at receiver",
            ],
        ),
        "3": Experiment(
            key="3",
            title="Bottlenecked Link (10 Mbit/s limit)",
            phases=[
                ExperimentPhase("exp3_bottleneck_tcp", bottleneck, Transport.TCP, duration),
                # UDP deliberately sends at twice the link capacity.
                ExperimentPhase("exp3_bottleneck_udp", bottleneck, Transport.UDP, duration, "20M"),
            ],
            expectations=[
                "TCP: Converges to ~9-10 Mbit/s, self-throttles",
                "UDP: Sends at 20 Mbit/s, ~50% loss at receiver",
            ],
        ),
    }


def select_experiments(choice: str, catalog: dict[str, Experiment]) -> list[Experiment]:
    """
    Pick experiments by key, or all of them in catalog order.

    Raises:
        ConfigurationError: If the key is unknown.
    """
    choice = str(choice).strip().lower()
    if choice == "all":
        return list(catalog.values())
    if choice in catalog:
        return [catalog[choice]]
    valid = ", ".join([*catalog.keys(), "all"])
    raise ConfigurationError(f"Invalid experiment '{choice}'. Valid values: {valid}")


def load_plan(path: str, settings: Optional[LabSettings] = None) -> dict[str, Experiment]:
    """
    Load experiments from a YAML plan.

    Expected layout::

        defaults:
          duration_sec: 20
          bitrate: 5M
        experiments:
          "2":
            title: Moderate Random Loss (1%)
            impairment: {mode: loss, loss_pct: 1}
            expectations: ["TCP: retransmissions"]
            phases:
              - {name: exp2_loss_tcp, transport: tcp}
              - {name: exp2_loss_udp, transport: udp, bitrate: 5M}

    A phase may carry its own ``impairment``, which overrides the
    experiment's.

    Raises:
        ConfigurationError: If the file cannot be read or is malformed.
    """
    settings = settings or LabSettings()
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Failed to load plan from {path} (file not found)")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to load plan from {path} (invalid YAML: {e})")

    if not data:
        raise ConfigurationError(f"Failed to load plan from {path} (empty file)")
    if not isinstance(data, dict):
        raise ConfigurationError(f"Failed to load plan from {path} (expected a mapping)")

    defaults = _mapping(data.get("defaults"), "defaults", path)
    duration = defaults.get("duration_sec", settings.duration_sec)
    bitrate = defaults.get("bitrate", settings.udp_bitrate)

    experiments_data = _mapping(data.get("experiments"), "experiments", path)
    if not experiments_data:
        raise ConfigurationError(f"Failed to load plan from {path} (no experiments defined)")

    catalog: dict[str, Experiment] = {}
    for key, config in experiments_data.items():
        key = str(key)
        config = _mapping(config, f"experiment {key}", path)
        impairment = _policy_or_none(config.get("impairment"), settings)
        phases_data = config.get("phases") or []
        if not isinstance(phases_data, list):
            raise ConfigurationError(
                f"Failed to load plan from {path} (phases of experiment {key} must be a list)"
            )
        phases = []
        for phase_config in phases_data:
            phase_config = _mapping(phase_config, f"a phase of experiment {key}", path)
            if "impairment" in phase_config:
                phase_impairment = _policy_or_none(phase_config["impairment"], settings)
            else:
                phase_impairment = impairment
            phases.append(
                ExperimentPhase(
                    name=phase_config.get("name", ""),
                    impairment=phase_impairment,
                    transport=phase_config.get("transport", "tcp"),
                    duration_sec=phase_config.get("duration_sec", duration),
                    bitrate=phase_config.get("bitrate", bitrate),
                    output_prefix=phase_config.get("output_prefix", ""),
                    description=phase_config.get("description", ""),
                )
            )
        if not phases:
            raise ConfigurationError(f"Experiment {key} in {path} has no phases defined")
        catalog[key] = Experiment(
            key=key,
            title=config.get("title", f"Experiment {key}"),
            phases=phases,
            expectations=_expectations(config.get("expectations")),
        )

    names = [phase.name for experiment in catalog.values() for phase in experiment.phases]
    duplicates = {name for name in names if names.count(name) > 1}
    if duplicates:
        raise ConfigurationError(f"Duplicate phase names in {path}: {', '.join(sorted(duplicates))}")

    logger.info(f"Loaded {len(catalog)} experiments from {path}")
    return catalog


def _mapping(value, what: str, path: str) -> dict:
    """Plan section as a dict; a missing section is empty."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(
            f"Failed to load plan from {path} ({what} must be a mapping, got {type(value).__name__})"
        )
    return value


def _expectations(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ConfigurationError(f"Expectations must be a list of text, got {type(value).__name__}")
    return [str(line) for line in value]


def _policy_or_none(data: Optional[dict], settings: LabSettings) -> Optional[ImpairmentPolicy]:
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ConfigurationError(f"Impairment must be a mapping, got {data!r}")
    data = dict(data)
    data.setdefault("interface", settings.controller_interface)
    data.setdefault("burst", settings.bottleneck_burst)
    data.setdefault("latency", settings.bottleneck_latency)
    return ImpairmentPolicy.from_dict(data)
