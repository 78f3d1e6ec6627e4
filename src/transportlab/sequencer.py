"""
Experiment sequencer for transportlab.

Runs phases in order. Each phase configures the controller, resolves the
route, captures around one traffic run and records the result. Whatever
happens (success, phase failure, Ctrl+C or SIGTERM), the capture is stopped
first, then the controller is returned to a clean path, then its session is
released, and finally the summary is written.
"""

import logging
import signal
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional

from .capture import CaptureSession, CaptureState, CaptureSupervisor, capture_filename
from .commands import format_command
from .config import LabSettings
from .exceptions import (
    CaptureFailedToStartError,
    ConfigurationError,
    InterfaceNotFoundError,
    LabError,
    PermissionDeniedError,
    PolicyConflictError,
    RemoteDispatchError,
    RunInterrupted,
    ToolMissingError,
)
from .experiments import Experiment, ExperimentPhase
from .policy import ImpairmentMode, ImpairmentPolicy
from .remote import ImpairmentController
from .report import PhaseResult, PhaseStatus, write_summary
from .route import RouteResolver, default_route_interface
from .traffic import TrafficClient, build_client_command

logger = logging.getLogger(__name__)

# Reason codes recorded for phase-local failures.
_REASONS = (
    (CaptureFailedToStartError, "CaptureFailedToStart"),
    (RemoteDispatchError, "RemoteDispatchFailure"),
    (PolicyConflictError, "PolicyConflict"),
    (InterfaceNotFoundError, "InterfaceNotFound"),
    (PermissionDeniedError, "PermissionDenied"),
    (ToolMissingError, "ToolMissing"),
    (ConfigurationError, "ConfigurationError"),
)


def _reason_for(error: LabError) -> str:
    for error_type, reason in _REASONS:
        if isinstance(error, error_type):
            return reason
    return type(error).__name__


class RunState(str, Enum):
    IDLE = "idle"
    CONFIGURING_IMPAIRMENT = "configuring_impairment"
    CAPTURING = "capturing"
    GENERATING_TRAFFIC = "generating_traffic"
    TEARING_DOWN = "tearing_down"
    COMPLETE = "complete"
    INTERRUPTED = "interrupted"


@dataclass
class ExperimentRun:
    """
    One invocation of the sequencer.

    Attributes:
        phases: Phases scheduled, in order.
        results_dir: Directory for captures, log and summary.
        record: Write test_log.txt and the summary files.
        results: Ledger of phase results, one per scheduled phase.
        state: Current state of the run.
        interrupted: Set when a signal cut the run short.
        teardown_error: Set when the controller could not be cleaned.
    """

    phases: list[ExperimentPhase]
    results_dir: Path
    record: bool = True
    results: list[PhaseResult] = field(default_factory=list)
    state: RunState = RunState.IDLE
    interrupted: bool = False
    teardown_error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def log_path(self) -> Path:
        return Path(self.results_dir) / "test_log.txt"

    @property
    def failed(self) -> list[PhaseResult]:
        return [r for r in self.results if r.status is PhaseStatus.FAILED]

    @property
    def succeeded(self) -> bool:
        return not (self.interrupted or self.teardown_error or self.failed)

    def transition(self, state: RunState) -> None:
        logger.debug(f"Run state: {self.state.value} -> {state.value}")
        self.state = state

    def log(self, message: str) -> None:
        """Log a line and append it to test_log.txt."""
        logger.info(message)
        if self.record:
            with open(self.log_path, "a") as f:
                f.write(f"{datetime.now().isoformat(timespec='seconds')} {message}\n")


@contextmanager
def interrupt_on_sigterm() -> Iterator[None]:
    """Turn SIGTERM into RunInterrupted for the duration of a run."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        raise RunInterrupted(signum)

    previous = signal.signal(signal.SIGTERM, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


class ExperimentSequencer:
    """
    Drives an ordered list of experiments against one sink.

    The sequencer is the only component that changes impairment during a
    run; it receives the controller handle explicitly.
    """

    def __init__(
        self,
        sink_address: str,
        settings: Optional[LabSettings] = None,
        controller: Optional[ImpairmentController] = None,
        capture: Optional[CaptureSupervisor] = None,
        traffic: Optional[TrafficClient] = None,
        resolver: Optional[RouteResolver] = None,
        capture_interface: Optional[str] = None,
        via: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the sequencer.

        Args:
            sink_address: Address of the iperf3 server.
            settings: Run settings.
            controller: Impairment controller handle; None runs direct.
            capture: Capture supervisor.
            traffic: iperf3 client.
            resolver: Route resolver.
            capture_interface: Local interface to capture on. Defaults to
                settings.interface, then the default-route interface.
            via: Send traffic through this address without managing it.
                Used when the controller is configured by hand.
            sleep: Sleep function for the settle interval.
        """
        self.settings = settings or LabSettings()
        if not sink_address:
            raise ConfigurationError("Server address is required")
        self.sink_address = sink_address
        self.controller = controller
        self.capture = capture or CaptureSupervisor(
            startup_delay=self.settings.capture_startup_delay,
            grace_period=self.settings.capture_grace_sec,
        )
        self.traffic = traffic or TrafficClient()
        self.resolver = resolver or RouteResolver()
        self.capture_interface = capture_interface or self.settings.interface
        self.via = via
        self._sleep = sleep

    @property
    def controller_address(self) -> Optional[str]:
        if self.controller is not None:
            return self.controller.address
        return self.via

    def configuration(self, experiments: list[Experiment]) -> dict:
        return {
            "server": self.sink_address,
            "connection": "proxy" if self.controller_address else "direct",
            "controller": self.controller_address,
            "port": self.settings.port,
            "experiments": ", ".join(e.key for e in experiments),
            "capture_interface": self.capture_interface,
            "settle_sec": self.settings.settle_sec,
            "dry_run": self.settings.dry_run,
        }

    def run(
        self,
        experiments: list[Experiment],
        results_dir: Optional[Path] = None,
        record: bool = True,
    ) -> ExperimentRun:
        """
        Run experiments in order.

        Phase failures are recorded and the run moves on. An interrupt
        stops the active phase, marks the run interrupted and skips the
        remaining phases.

        Args:
            experiments: Experiments to run.
            results_dir: Output directory; defaults to a timestamped
                directory under settings.results_root.
            record: Write test_log.txt and the summary files.

        Returns:
            The finished ExperimentRun.

        Raises:
            ConfigurationError: If there is nothing to run or no capture
                interface can be found. Nothing has been changed yet.
        """
        phases = [phase for experiment in experiments for phase in experiment.phases]
        if not phases:
            raise ConfigurationError("No phases to run")

        if not self.capture_interface:
            self.capture_interface = default_route_interface()

        if results_dir is None:
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            results_dir = Path(self.settings.results_root) / f"results_{stamp}"
        run = ExperimentRun(phases=phases, results_dir=Path(results_dir), record=record)
        if record:
            run.results_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created results directory: {run.results_dir}")

        run.started_at = time.time()
        try:
            with interrupt_on_sigterm():
                self._run_experiments(run, experiments)
        except (KeyboardInterrupt, RunInterrupted):
            run.interrupted = True
            run.transition(RunState.INTERRUPTED)
            logger.warning("Run interrupted, tearing down")
        finally:
            self._finalize(run, experiments)

        return run

    def _run_experiments(self, run: ExperimentRun, experiments: list[Experiment]) -> None:
        settle_pending = False
        for experiment in experiments:
            run.log(f"EXPERIMENT {experiment.key}: {experiment.title.upper()}")
            for phase in experiment.phases:
                if settle_pending:
                    self._settle()
                result = self._run_phase(run, phase)
                settle_pending = result.capture_started_at is not None

            if experiment.expectations:
                logger.info(f"Experiment {experiment.key} complete. Expected observations:")
                for line in experiment.expectations:
                    logger.info(f"  - {line}")

    def _settle(self) -> None:
        if self.settings.dry_run or self.settings.settle_sec <= 0:
            return
        logger.info(f"Waiting {self.settings.settle_sec:g} seconds before next test...")
        self._sleep(self.settings.settle_sec)

    def _configure_impairment(
        self, run: ExperimentRun, phase: ExperimentPhase, result: PhaseResult
    ) -> bool:
        """Put the controller in the phase's policy; False if the phase is skipped."""
        policy = phase.impairment
        if policy is None:
            if self.controller is None or not self._controller_impaired():
                return True
            # An earlier phase left impairment behind; unimpaired phases run clean.
            policy = ImpairmentPolicy.clean()

        if self.controller is None:
            if policy.requires_controller:
                message = f"{policy.describe()} requires an impairment controller; none configured"
                logger.warning(f"Skipping {phase.name}: {message}")
                result.mark(PhaseStatus.SKIPPED, "RequiresController", message)
                return False
            return True

        run.transition(RunState.CONFIGURING_IMPAIRMENT)
        self.controller.apply(policy, preview=self.settings.dry_run)
        return True

    def _controller_impaired(self) -> bool:
        current = self.controller.current_policy
        return current is not None and current.mode is not ImpairmentMode.CLEAN

    def _run_phase(self, run: ExperimentRun, phase: ExperimentPhase) -> PhaseResult:
        result = PhaseResult(phase=phase)
        session: Optional[CaptureSession] = None
        run.log(f"Phase {phase.name}: {phase.describe()}")

        try:
            if not self._configure_impairment(run, phase, result):
                return result

            target = self.resolver.resolve(
                self.sink_address, self.controller_address, self.settings.port
            )
            logger.info(f"Routing: {target.describe()}")

            protocol = phase.transport.value if phase.tag_protocol else None
            session = CaptureSession(
                target_file=run.results_dir / capture_filename(phase.output_prefix, protocol),
                interface=self.capture_interface,
                filter_expression=target.capture_filter,
            )

            if self.settings.dry_run:
                client = build_client_command(
                    target.effective_address,
                    target.port,
                    phase.transport,
                    phase.duration_sec,
                    phase.bitrate,
                )
                logger.info(f"[DRY RUN] {format_command(session.build_command())}")
                logger.info(f"[DRY RUN] {format_command(client)}")
                result.mark(PhaseStatus.SKIPPED, "DryRun", "Preview only")
                return result

            if self.settings.ping_check:
                self.resolver.check_reachable(target)

            run.transition(RunState.CAPTURING)
            with self.capture.capturing(session):
                run.transition(RunState.GENERATING_TRAFFIC)
                result.traffic = self.traffic.run(
                    target.effective_address,
                    target.port,
                    phase.transport,
                    phase.duration_sec,
                    phase.bitrate,
                )
                run.transition(RunState.TEARING_DOWN)

            if result.traffic.ok:
                result.mark(PhaseStatus.SUCCESS)
            else:
                result.mark(PhaseStatus.FAILED, "TrafficFailed", result.traffic.error or "")

        except (KeyboardInterrupt, RunInterrupted):
            result.mark(PhaseStatus.FAILED, "Interrupted", "Interrupted during phase")
            raise
        except LabError as e:
            result.mark(PhaseStatus.FAILED, _reason_for(e), str(e))
            logger.error(f"Phase {phase.name} failed: {e}")
        except OSError as e:
            result.mark(PhaseStatus.FAILED, type(e).__name__, str(e))
            logger.error(f"Phase {phase.name} failed: {e}")
        finally:
            if session is not None and session.state is not CaptureState.NOT_STARTED:
                result.capture_file = session.target_file
                result.capture_started_at = session.started_at
                result.capture_stopped_at = session.stopped_at
            run.results.append(result)
            outcome = result.status.value.upper()
            if result.reason:
                outcome += f" ({result.reason})"
            run.log(f"Phase {phase.name}: {outcome}")

        return result

    def _finalize(self, run: ExperimentRun, experiments: list[Experiment]) -> None:
        """
        Single teardown path for every way a run can end.

        SIGTERM stays translated while tearing down, and a second interrupt
        during the clean is recorded instead of cutting teardown short.
        """
        run.transition(RunState.TEARING_DOWN)

        for phase in run.phases[len(run.results):]:
            result = PhaseResult(phase=phase)
            result.mark(PhaseStatus.SKIPPED, "NotRun", "Run ended before this phase")
            run.results.append(result)

        with interrupt_on_sigterm():
            try:
                if self.controller is not None:
                    self._release_controller(run)
            finally:
                run.finished_at = time.time()
                run.transition(RunState.COMPLETE)
                if run.record:
                    write_summary(run, self.configuration(experiments), experiments)
                    logger.info(f"Results saved in: {run.results_dir}")

    def _release_controller(self, run: ExperimentRun) -> None:
        try:
            logger.info("Cleaning up proxy configuration...")
            self.controller.clear(preview=self.settings.dry_run)
        except (KeyboardInterrupt, RunInterrupted):
            run.interrupted = True
            run.teardown_error = "Interrupted while cleaning controller"
            logger.error(run.teardown_error)
            logger.error(f"Clean manually: {self.controller.remedy}")
        except Exception as e:
            run.teardown_error = f"Failed to clean controller: {e}"
            logger.error(run.teardown_error)
            logger.error(f"Clean manually: {self.controller.remedy}")
        finally:
            try:
                self.controller.close()
            except Exception as e:
                logger.warning(f"Failed to release controller session: {e}")
                run.teardown_error = run.teardown_error or f"Failed to release controller session: {e}"
