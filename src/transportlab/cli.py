"""
Command line entry point for transportlab.

One program plays every role of the lab:

    transportlab impair -m loss -l 1      # on the impairment controller
    transportlab server                   # on the sink
    transportlab client 10.0.0.3 -u       # one manual phase on the source
    transportlab run -s 10.0.0.3 -P 10.0.0.2 -e all
"""

import argparse
import logging
import shlex
import sys
from dataclasses import fields, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .capture import CaptureSession, CaptureSupervisor, capture_filename
from .commands import check_sudo, is_root, require_tools
from .config import LabSettings
from .exceptions import (
    CaptureFailedToStartError,
    ConfigurationError,
    InterfaceNotFoundError,
    LabError,
    PermissionDeniedError,
    RunInterrupted,
    ToolMissingError,
)
from .experiments import Experiment, ExperimentPhase, builtin_experiments, load_plan, select_experiments
from .impairment import ImpairmentEngine
from .policy import ImpairmentMode, ImpairmentPolicy
from .remote import DEFAULT_REMOTE_COMMAND, ImpairmentController, LocalExecutor, SSHExecutor
from .report import PhaseStatus
from .route import default_route_interface
from .sequencer import ExperimentRun, ExperimentSequencer, interrupt_on_sigterm
from .traffic import Transport, TrafficServer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PHASE_FAILED = 1
EXIT_CONFIG = 2
EXIT_TOOL_MISSING = 3
EXIT_PERMISSION = 4
EXIT_CAPTURE_FAILED = 5
EXIT_TEARDOWN_FAILED = 6
EXIT_INTERRUPTED = 130

_EXIT_CODES = (
    (ToolMissingError, EXIT_TOOL_MISSING),
    (PermissionDeniedError, EXIT_PERMISSION),
    (CaptureFailedToStartError, EXIT_CAPTURE_FAILED),
    (ConfigurationError, EXIT_CONFIG),
    (InterfaceNotFoundError, EXIT_CONFIG),
)

# Phase reasons that map to a more specific exit status in client mode.
_REASON_EXIT_CODES = {
    "ToolMissing": EXIT_TOOL_MISSING,
    "PermissionDenied": EXIT_PERMISSION,
    "CaptureFailedToStart": EXIT_CAPTURE_FAILED,
    "ConfigurationError": EXIT_CONFIG,
}


def exit_code_for(error: LabError) -> int:
    for error_type, code in _EXIT_CODES:
        if isinstance(error, error_type):
            return code
    return EXIT_PHASE_FAILED


def run_exit_code(run: ExperimentRun, detailed: bool = False) -> int:
    """
    Exit status for a finished run.

    Args:
        run: Finished run.
        detailed: Report the specific cause of a single failed phase
            instead of the generic phase failure status.
    """
    if run.interrupted:
        return EXIT_INTERRUPTED
    if run.teardown_error:
        return EXIT_TEARDOWN_FAILED
    failed = run.failed
    if not failed:
        return EXIT_OK
    if detailed and len(failed) == 1:
        return _REASON_EXIT_CODES.get(failed[0].reason, EXIT_PHASE_FAILED)
    return EXIT_PHASE_FAILED


def _configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _settings_from_args(args: argparse.Namespace) -> LabSettings:
    """Environment settings overridden by any option given on the command line."""
    settings = LabSettings.from_env()
    overrides = {}
    for f in fields(LabSettings):
        value = getattr(args, f.name, None)
        if value is not None:
            overrides[f.name] = value
    return replace(settings, **overrides)


def _require_capture_privileges() -> None:
    if not is_root() and not check_sudo():
        raise PermissionDeniedError(
            "Packet capture requires root (or passwordless sudo for tcpdump)"
        )


def _print_run_summary(run: ExperimentRun) -> None:
    print("")
    print("=" * 60)
    print("Run summary")
    print("=" * 60)
    for result in run.results:
        line = f"  {result.phase.name}: {result.status.value.upper()}"
        if result.reason:
            line += f" ({result.reason})"
        if result.status is PhaseStatus.FAILED and result.message:
            line += f" - {result.message}"
        print(line)
    if run.interrupted:
        print("Run was interrupted; results are partial.")
    if run.teardown_error:
        print(f"Teardown error: {run.teardown_error}")
    if run.record:
        print(f"Results saved in: {run.results_dir}")


def cmd_impair(args: argparse.Namespace, settings: LabSettings) -> int:
    """Controller role: apply, clear or inspect impairment on this host."""
    dry_run = bool(settings.dry_run)
    require_tools(["tc", "ip"] if dry_run or args.verify else ["tc", "ip", "sysctl"])

    engine = ImpairmentEngine(
        interface=settings.interface,
        dry_run=dry_run,
        tcp_retries=settings.tcp_retries,
    )

    if args.verify:
        observed = engine.verify()
        print(f"Current tc configuration on {observed.interface}:")
        print(observed.raw.strip() or "(none)")
        print(f"Active impairment: {observed.impairment_class or 'none'}")
        return EXIT_OK

    if not args.mode:
        raise ConfigurationError("Mode is required: use -m clean, loss or bottleneck")

    policy = ImpairmentPolicy(
        mode=ImpairmentMode(args.mode),
        interface=settings.interface,
        loss_pct=args.loss,
        rate=args.rate,
        burst=settings.bottleneck_burst,
        latency=settings.bottleneck_latency,
    )
    state = engine.apply(policy)

    prefix = "[DRY RUN] " if dry_run else ""
    print(f"{prefix}Applied {policy.describe()} on {state.interface}:")
    for line in state.describe():
        print(f"  {line}")
    if dry_run:
        return EXIT_OK

    observed = engine.verify(expected=policy)
    print(f"Current tc configuration on {observed.interface}:")
    print(observed.raw.strip() or "(none)")
    if not observed.matches:
        print(
            f"Expected {observed.expected or 'no impairment'}, "
            f"found {observed.impairment_class or 'none'}",
            file=sys.stderr,
        )
        return EXIT_PHASE_FAILED

    if policy.mode is not ImpairmentMode.CLEAN:
        print(f"Remember to reset when done: transportlab impair -m clean -i {state.interface}")
    return EXIT_OK


def cmd_server(args: argparse.Namespace, settings: LabSettings) -> int:
    """Sink role: iperf3 server with a capture of its port."""
    require_tools(["iperf3", "tcpdump"])
    _require_capture_privileges()

    interface = settings.interface or default_route_interface()
    session = CaptureSession(
        target_file=Path(settings.results_root) / capture_filename(args.prefix),
        interface=interface,
        filter_expression=f"port {settings.port}",
    )
    supervisor = CaptureSupervisor(
        startup_delay=settings.capture_startup_delay,
        grace_period=settings.capture_grace_sec,
    )
    server = TrafficServer()

    returncode = 0
    try:
        with interrupt_on_sigterm(), supervisor.capturing(session):
            print(f"Server ready on port {settings.port}. Press Ctrl+C to stop.")
            returncode = server.run(settings.port)
    except (KeyboardInterrupt, RunInterrupted):
        logger.info("Server stopped")

    print(f"Capture saved to: {session.target_file}")
    return EXIT_OK if returncode == 0 else EXIT_PHASE_FAILED


def cmd_client(args: argparse.Namespace, settings: LabSettings) -> int:
    """Source role: a single captured phase against one server."""
    if not settings.dry_run:
        require_tools(["iperf3", "tcpdump"])
        _require_capture_privileges()

    transport = Transport.UDP if args.udp else Transport.TCP
    phase = ExperimentPhase(
        name=f"client_{transport.value}",
        transport=transport,
        duration_sec=settings.duration_sec,
        bitrate=settings.udp_bitrate,
        output_prefix=args.prefix,
        tag_protocol=True,
    )
    experiment = Experiment(key="client", title="Client test", phases=[phase])

    sequencer = ExperimentSequencer(args.server, settings, via=settings.controller)
    run = sequencer.run([experiment], results_dir=Path(settings.results_root), record=False)

    result = run.results[0]
    if result.capture_file is not None:
        print(f"Capture saved to: {result.capture_file}")
    if result.traffic is not None and result.traffic.ok:
        print(f"Throughput: {result.traffic.bits_per_second / 1e6:.2f} Mbit/s")
        if result.traffic.lost_percent is not None:
            print(f"Loss: {result.traffic.lost_percent:.2f}%")
    _print_run_summary(run)
    return run_exit_code(run, detailed=True)


def _build_controller(args: argparse.Namespace, settings: LabSettings) -> Optional[ImpairmentController]:
    if not settings.controller:
        return None
    if args.controller_transport == "local":
        executor = LocalExecutor()
    else:
        require_tools(["ssh"])
        executor = SSHExecutor(
            settings.controller,
            user=settings.controller_user,
            connect_timeout=settings.ssh_connect_timeout,
        )
    return ImpairmentController(
        executor,
        address=settings.controller,
        interface=settings.controller_interface,
        command=shlex.split(args.controller_command),
    )


def cmd_run(args: argparse.Namespace, settings: LabSettings) -> int:
    """Run built-in or planned experiments end to end."""
    catalog = load_plan(args.plan, settings) if args.plan else builtin_experiments(settings)
    experiments = select_experiments(args.experiment, catalog)

    if not settings.dry_run:
        require_tools(["iperf3", "tcpdump"])
        _require_capture_privileges()

    controller = _build_controller(args, settings)
    sequencer = ExperimentSequencer(args.server, settings, controller=controller)

    print("=" * 60)
    print("TCP vs UDP Transport Comparison Lab")
    print("=" * 60)
    print(f"Server: {args.server}")
    if controller is not None:
        print(f"Proxy: {controller.address} (via {controller.executor.host})")
    else:
        print("Connection: direct (impaired phases will be skipped)")
    print(f"Experiments: {', '.join(e.key for e in experiments)}")
    if settings.dry_run:
        print("Dry run: nothing will be changed")
    print("")

    run = sequencer.run(experiments)
    _print_run_summary(run)
    return run_exit_code(run)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="transportlab",
        description="TCP vs UDP transport comparison lab"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    impair = subparsers.add_parser(
        "impair",
        help="Apply, clear or inspect path impairment on this host"
    )
    impair.add_argument(
        "--mode", "-m",
        choices=[mode.value for mode in ImpairmentMode],
        help="Impairment mode"
    )
    impair.add_argument(
        "--loss", "-l",
        type=float,
        help="Packet loss percentage (loss mode)"
    )
    impair.add_argument(
        "--rate", "-r",
        help="Bandwidth limit, e.g. 10mbit (bottleneck mode)"
    )
    impair.add_argument(
        "--burst",
        dest="bottleneck_burst",
        help="Token bucket burst (default: 32kbit)"
    )
    impair.add_argument(
        "--latency",
        dest="bottleneck_latency",
        help="Token bucket latency bound (default: 400ms)"
    )
    impair.add_argument(
        "--interface", "-i",
        dest="interface",
        help="Interface to impair (default: interface of the default route)"
    )
    impair.add_argument(
        "--dry-run", "-d",
        dest="dry_run",
        action="store_true",
        default=None,
        help="Show the commands without executing them"
    )
    impair.add_argument(
        "--verify",
        action="store_true",
        help="Only show the current impairment; change nothing"
    )
    impair.set_defaults(handler=cmd_impair)

    server = subparsers.add_parser(
        "server",
        help="Run the iperf3 server with packet capture"
    )
    server.add_argument(
        "--port", "-p",
        type=int,
        help="Server port (default: 5201)"
    )
    server.add_argument(
        "--prefix", "-c",
        default="server_capture",
        help="Capture file prefix"
    )
    server.add_argument(
        "--interface", "-i",
        help="Capture interface (default: interface of the default route)"
    )
    server.add_argument(
        "--results-dir",
        dest="results_root",
        help="Directory for the capture file"
    )
    server.set_defaults(handler=cmd_server)

    client = subparsers.add_parser(
        "client",
        help="Run one captured iperf3 test"
    )
    client.add_argument(
        "server",
        help="Server address"
    )
    client.add_argument(
        "--time", "-t",
        dest="duration_sec",
        type=int,
        help="Test duration in seconds (default: 20)"
    )
    client.add_argument(
        "--port", "-p",
        type=int,
        help="Server port (default: 5201)"
    )
    client.add_argument(
        "--udp", "-u",
        action="store_true",
        help="Use UDP instead of TCP"
    )
    client.add_argument(
        "--bitrate", "-b",
        dest="udp_bitrate",
        help="UDP bitrate (default: 5M)"
    )
    client.add_argument(
        "--prefix", "-c",
        default="client_capture",
        help="Capture file prefix"
    )
    client.add_argument(
        "--interface", "-i",
        help="Capture interface (default: interface of the default route)"
    )
    client.add_argument(
        "--proxy", "-P",
        dest="controller",
        help="Send traffic through this proxy address"
    )
    client.add_argument(
        "--results-dir",
        dest="results_root",
        help="Directory for the capture file"
    )
    client.add_argument(
        "--dry-run", "-d",
        dest="dry_run",
        action="store_true",
        default=None,
        help="Show the commands without executing them"
    )
    client.set_defaults(handler=cmd_client)

    run = subparsers.add_parser(
        "run",
        help="Run experiments end to end"
    )
    run.add_argument(
        "--server", "-s",
        required=True,
        help="Server address"
    )
    run.add_argument(
        "--proxy", "-P",
        dest="controller",
        help="Impairment controller address (omit for direct connection)"
    )
    run.add_argument(
        "--experiment", "-e",
        default="all",
        help="Experiment to run: 1, 2, 3 or all"
    )
    run.add_argument(
        "--plan",
        help="YAML experiment plan to use instead of the built-in experiments"
    )
    run.add_argument(
        "--time", "-t",
        dest="duration_sec",
        type=int,
        help="Duration of each phase in seconds (default: 20)"
    )
    run.add_argument(
        "--port", "-p",
        type=int,
        help="Server port (default: 5201)"
    )
    run.add_argument(
        "--bitrate", "-b",
        dest="udp_bitrate",
        help="UDP bitrate for loss and baseline phases (default: 5M)"
    )
    run.add_argument(
        "--interface", "-i",
        help="Local capture interface (default: interface of the default route)"
    )
    run.add_argument(
        "--user",
        dest="controller_user",
        help="Login on the controller (default: root)"
    )
    run.add_argument(
        "--controller-interface",
        help="Interface to impair on the controller (default: its default route)"
    )
    run.add_argument(
        "--controller-transport",
        choices=["ssh", "local"],
        default="ssh",
        help="How to reach the controller"
    )
    run.add_argument(
        "--controller-command",
        default=shlex.join(DEFAULT_REMOTE_COMMAND),
        help="Impairment command on the controller"
    )
    run.add_argument(
        "--settle",
        dest="settle_sec",
        type=float,
        help="Seconds to wait between phases (default: 5)"
    )
    run.add_argument(
        "--results-dir",
        dest="results_root",
        help="Directory under which the results directory is created"
    )
    run.add_argument(
        "--no-ping",
        dest="ping_check",
        action="store_false",
        default=None,
        help="Skip the ping check before each phase"
    )
    run.add_argument(
        "--dry-run", "-d",
        dest="dry_run",
        action="store_true",
        default=None,
        help="Show what would be done without changing anything"
    )
    run.set_defaults(handler=cmd_run)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        settings = _settings_from_args(args)
        return args.handler(args, settings)
    except (KeyboardInterrupt, RunInterrupted):
        print("\nInterrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    except LabError as e:
        print(f"Error: {e}", file=sys.stderr)
        if e.remedy:
            print(f"Fix: {e.remedy}", file=sys.stderr)
        return exit_code_for(e)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        if isinstance(e, PermissionError):
            return EXIT_PERMISSION
        return EXIT_PHASE_FAILED


if __name__ == "__main__":
    sys.exit(main())
