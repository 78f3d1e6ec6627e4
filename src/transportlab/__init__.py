"""
transportlab - TCP vs UDP transport comparison lab orchestrator.

This package drives a three-host lab: a traffic source, an optional
impairment controller shaping the path with Linux tc, and an iperf3 sink.
Each phase of an experiment configures the path, captures packets around
one iperf3 run, and records the outcome. Whatever happens, captures are
stopped and the path is returned to clean.

Example:
    >>> from transportlab import ImpairmentEngine, ImpairmentPolicy
    >>> engine = ImpairmentEngine(interface="eth0")
    >>> engine.apply(ImpairmentPolicy.loss(1))
    >>> engine.apply(ImpairmentPolicy.clean())

Running experiments:
    >>> from transportlab import ExperimentSequencer, builtin_experiments, select_experiments
    >>> sequencer = ExperimentSequencer("10.0.0.3")
    >>> run = sequencer.run(select_experiments("1", builtin_experiments()))
"""

from .capture import CaptureSession, CaptureState, CaptureSupervisor
from .config import LabSettings
from .exceptions import (
    CaptureFailedToStartError,
    CommandFailedError,
    ConfigurationError,
    InterfaceNotFoundError,
    LabError,
    PermissionDeniedError,
    PolicyConflictError,
    RemoteDispatchError,
    RunInterrupted,
    SessionAlreadyActiveError,
    ToolMissingError,
)
from .experiments import Experiment, ExperimentPhase, builtin_experiments, load_plan, select_experiments
from .impairment import ImpairmentEngine, ObservedState
from .policy import ImpairmentMode, ImpairmentPolicy
from .remote import ImpairmentController, LocalExecutor, RemoteExecutor, SSHExecutor
from .report import PhaseResult, PhaseStatus
from .route import RouteMode, RouteResolver, RouteTarget
from .sequencer import ExperimentRun, ExperimentSequencer, RunState
from .traffic import TrafficClient, TrafficResult, Transport

__version__ = "0.1.0"

__all__ = [
    # Core classes
    "ImpairmentEngine",
    "ImpairmentPolicy",
    "ImpairmentMode",
    "ObservedState",
    "CaptureSupervisor",
    "CaptureSession",
    "CaptureState",
    "RouteResolver",
    "RouteTarget",
    "RouteMode",
    "ExperimentSequencer",
    "ExperimentRun",
    "RunState",
    "Experiment",
    "ExperimentPhase",
    "PhaseResult",
    "PhaseStatus",
    "TrafficClient",
    "TrafficResult",
    "Transport",
    "ImpairmentController",
    "RemoteExecutor",
    "SSHExecutor",
    "LocalExecutor",
    "LabSettings",
    # Exceptions
    "LabError",
    "ConfigurationError",
    "PermissionDeniedError",
    "InterfaceNotFoundError",
    "PolicyConflictError",
    "CaptureFailedToStartError",
    "SessionAlreadyActiveError",
    "ToolMissingError",
    "RemoteDispatchError",
    "CommandFailedError",
    "RunInterrupted",
    # Convenience functions
    "builtin_experiments",
    "select_experiments",
    "load_plan",
    # Version
    "__version__",
]
