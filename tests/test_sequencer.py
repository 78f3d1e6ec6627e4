"""Tests for ExperimentSequencer."""

import json
import signal

import pytest

from transportlab import (
    CaptureSupervisor,
    Experiment,
    ExperimentPhase,
    ExperimentSequencer,
    ImpairmentController,
    ImpairmentPolicy,
    LabSettings,
    PhaseStatus,
    RunState,
    Transport,
)
from transportlab.exceptions import ConfigurationError, RunInterrupted
from transportlab.experiments import builtin_experiments, select_experiments
from transportlab.sequencer import interrupt_on_sigterm

from conftest import FakeExecutor, FakePopen, FakeTrafficClient


def make_sequencer(settings, supervisor, traffic, controller=None, sleeps=None):
    return ExperimentSequencer(
        "10.0.0.3",
        settings,
        controller=controller,
        capture=supervisor,
        traffic=traffic,
        capture_interface="eth0",
        sleep=sleeps.append if sleeps is not None else (lambda s: None),
    )


def experiments(choice, settings):
    return select_experiments(choice, builtin_experiments(settings))


def statuses(run):
    return [(r.phase.name, r.status, r.reason) for r in run.results]


class TestBaselineDirect:
    """Baseline experiment without a controller."""

    def test_phases_succeed(self, settings, supervisor, traffic, tmp_path):
        """Test both baseline phases run and succeed."""
        sequencer = make_sequencer(settings, supervisor, traffic)

        run = sequencer.run(experiments("1", settings), results_dir=tmp_path)

        assert statuses(run) == [
            ("exp1_baseline_tcp", PhaseStatus.SUCCESS, None),
            ("exp1_baseline_udp", PhaseStatus.SUCCESS, None),
        ]
        assert run.state is RunState.COMPLETE
        assert run.succeeded

    def test_capture_brackets_traffic(self, settings, supervisor, traffic, events, tmp_path):
        """Test each phase is capture start, traffic, capture stop."""
        sequencer = make_sequencer(settings, supervisor, traffic)

        sequencer.run(experiments("1", settings), results_dir=tmp_path)

        assert events == [
            "capture:start", "traffic:tcp", "capture:stop",
            "capture:start", "traffic:udp", "capture:stop",
        ]

    def test_capture_targets_sink(self, settings, supervisor, popen, traffic, tmp_path):
        """Test the capture filter and traffic both use the sink directly."""
        sequencer = make_sequencer(settings, supervisor, traffic)

        sequencer.run(experiments("1", settings), results_dir=tmp_path)

        assert popen.calls[0][-5:] == ["host", "10.0.0.3", "and", "port", "5201"]
        assert traffic.calls[0][:2] == ("10.0.0.3", 5201)
        assert traffic.calls[1][2] is Transport.UDP
        assert traffic.calls[1][4] == "5M"

    def test_capture_timestamps_cover_traffic(self, settings, supervisor, traffic, tmp_path):
        """Test the capture window contains the traffic window."""
        sequencer = make_sequencer(settings, supervisor, traffic)

        run = sequencer.run(experiments("1", settings), results_dir=tmp_path)

        for result in run.results:
            assert result.capture_started_at <= result.traffic.started_at
            assert result.traffic.finished_at <= result.capture_stopped_at
            assert result.capture_file.name.startswith(result.phase.name)
            assert result.capture_file.parent == tmp_path

    def test_settle_between_phases(self, settings, supervisor, traffic, tmp_path):
        """Test the settle interval is waited between phases only."""
        sleeps = []
        sequencer = make_sequencer(settings, supervisor, traffic, sleeps=sleeps)

        sequencer.run(experiments("1", settings), results_dir=tmp_path)

        assert sleeps == [5.0]

    def test_summary_files(self, settings, supervisor, traffic, tmp_path):
        """Test summary.json, README.txt and test_log.txt are written."""
        sequencer = make_sequencer(settings, supervisor, traffic)

        sequencer.run(experiments("1", settings), results_dir=tmp_path)

        summary = json.loads((tmp_path / "summary.json").read_text())
        assert summary["counts"] == {"success": 2, "failed": 0, "skipped": 0}
        assert summary["configuration"]["connection"] == "direct"
        assert summary["phases"][0]["capture_file"].startswith("exp1_baseline_tcp_")
        readme = (tmp_path / "README.txt").read_text()
        assert "exp1_baseline_udp: success" in readme
        assert "tcp.analysis.retransmission" in readme
        assert "Experiment 1 (Baseline (Clean Path)) expected observations:" in readme
        assert "- TCP: Exponential ramp-up (slow start), then linear growth" in readme
        assert "EXPERIMENT 1" in (tmp_path / "test_log.txt").read_text()

    def test_no_record(self, settings, supervisor, traffic, tmp_path):
        """Test nothing but captures is written when recording is off."""
        sequencer = make_sequencer(settings, supervisor, traffic)

        sequencer.run(experiments("1", settings), results_dir=tmp_path / "out", record=False)

        assert not (tmp_path / "out" / "summary.json").exists()
        assert not (tmp_path / "out" / "test_log.txt").exists()

    def test_nothing_to_run(self, settings, supervisor, traffic):
        """Test an empty selection is a configuration error."""
        sequencer = make_sequencer(settings, supervisor, traffic)

        with pytest.raises(ConfigurationError):
            sequencer.run([])


class TestWithoutController:
    """Impaired experiments when no controller is configured."""

    def test_loss_is_skipped(self, settings, supervisor, popen, traffic, tmp_path):
        """Test impaired phases are skipped, never run unimpaired."""
        sequencer = make_sequencer(settings, supervisor, traffic)

        run = sequencer.run(experiments("2", settings), results_dir=tmp_path)

        assert statuses(run) == [
            ("exp2_loss_tcp", PhaseStatus.SKIPPED, "RequiresController"),
            ("exp2_loss_udp", PhaseStatus.SKIPPED, "RequiresController"),
        ]
        assert popen.calls == []
        assert traffic.calls == []
        assert run.succeeded

    def test_mixed_run_skips_only_impaired(self, settings, supervisor, traffic, tmp_path):
        """Test clean phases still run alongside skipped ones."""
        sleeps = []
        sequencer = make_sequencer(settings, supervisor, traffic, sleeps=sleeps)

        run = sequencer.run(experiments("all", settings), results_dir=tmp_path)

        counts = [r.status for r in run.results]
        assert counts.count(PhaseStatus.SUCCESS) == 2
        assert counts.count(PhaseStatus.SKIPPED) == 4
        assert sleeps == [5.0, 5.0]


class TestViaController:
    """Runs that drive an impairment controller."""

    def test_policy_applied_before_capture(self, settings, supervisor, traffic, controller, events, tmp_path):
        """Test each phase configures impairment before capturing."""
        sequencer = make_sequencer(settings, supervisor, traffic, controller)

        run = sequencer.run(experiments("2", settings), results_dir=tmp_path)

        assert run.succeeded
        assert events == [
            "impair:loss", "capture:start", "traffic:tcp", "capture:stop",
            "impair:loss", "capture:start", "traffic:udp", "capture:stop",
            "impair:clean", "close",
        ]

    def test_traffic_goes_through_controller(self, settings, supervisor, popen, traffic, controller, tmp_path):
        """Test traffic and capture target the controller address."""
        sequencer = make_sequencer(settings, supervisor, traffic, controller)

        run = sequencer.run(experiments("3", settings), results_dir=tmp_path)

        assert traffic.calls[0][0] == "10.0.0.2"
        assert popen.calls[0][-5:] == ["host", "10.0.0.2", "and", "port", "5201"]
        assert traffic.calls[1][4] == "20M"
        summary = json.loads((tmp_path / "summary.json").read_text())
        assert summary["configuration"]["connection"] == "proxy"
        assert run.results[0].phase.impairment.rate == "10mbit"

    def test_bottleneck_arguments(self, settings, supervisor, traffic, controller, executor, tmp_path):
        """Test the bottleneck policy reaches the controller with its tuning."""
        sequencer = make_sequencer(settings, supervisor, traffic, controller)

        sequencer.run(experiments("3", settings), results_dir=tmp_path)

        first = executor.commands[0]
        assert first[first.index("-r") + 1] == "10mbit"
        assert first[first.index("--burst") + 1] == "32kbit"
        assert executor.mode == "clean"

    def test_unimpaired_phase_after_loss_runs_clean(self, settings, supervisor, events, controller, executor, tmp_path):
        """Test a phase without a policy does not inherit the previous phase's loss."""
        modes = []

        class RecordingTraffic(FakeTrafficClient):
            def run(self, *args, **kwargs):
                modes.append(executor.mode)
                return super().run(*args, **kwargs)

        phases = [
            ExperimentPhase("lossy", impairment=ImpairmentPolicy.loss(5)),
            ExperimentPhase("plain", transport=Transport.UDP),
        ]
        sequencer = make_sequencer(settings, supervisor, RecordingTraffic(events), controller)

        run = sequencer.run([Experiment("x", "X", phases)], results_dir=tmp_path)

        assert run.succeeded
        assert modes == ["loss", "clean"]
        assert events[:5] == ["impair:loss", "capture:start", "traffic:tcp", "capture:stop", "impair:clean"]

    def test_unimpaired_phase_leaves_untouched_controller(self, settings, supervisor, events, controller, traffic, tmp_path):
        """Test a phase without a policy sends nothing while the path is clean."""
        sequencer = make_sequencer(settings, supervisor, traffic, controller)

        sequencer.run([Experiment("x", "X", [ExperimentPhase("plain")])], results_dir=tmp_path)

        assert events == ["capture:start", "traffic:tcp", "capture:stop", "impair:clean", "close"]


class TestTeardown:
    """The controller is returned to clean however the run ends."""

    def test_traffic_failure(self, settings, supervisor, events, controller, executor, tmp_path):
        """Test a failed traffic run is recorded and the run continues."""
        traffic = FakeTrafficClient(events, returncode=1, error="Connection refused")
        sequencer = make_sequencer(settings, supervisor, traffic, controller)

        run = sequencer.run(experiments("2", settings), results_dir=tmp_path)

        assert [r.reason for r in run.results] == ["TrafficFailed", "TrafficFailed"]
        assert run.results[0].message == "Connection refused"
        assert events.count("capture:stop") == 2
        assert events[-2:] == ["impair:clean", "close"]
        assert executor.mode == "clean"

    def test_capture_failed_to_start(self, settings, events, traffic, controller, as_root, tmp_path):
        """Test no traffic is generated without a confirmed capture."""
        popen = FakePopen(events, alive=False, stderr=b"tcpdump: permission denied")
        supervisor = CaptureSupervisor(startup_delay=0, popen=popen, sleep=lambda s: None)
        sequencer = make_sequencer(settings, supervisor, traffic, controller)

        run = sequencer.run(experiments("2", settings), results_dir=tmp_path)

        assert [r.reason for r in run.results] == ["CaptureFailedToStart", "CaptureFailedToStart"]
        assert "permission denied" in run.results[0].message
        assert traffic.calls == []
        assert events[-2:] == ["impair:clean", "close"]

    def test_remote_dispatch_failure(self, settings, supervisor, popen, traffic, events, tmp_path):
        """Test a policy that cannot be delivered fails its phase without capturing."""
        executor = FakeExecutor(events, fail_modes={"loss"})
        controller = ImpairmentController(executor)
        sequencer = make_sequencer(settings, supervisor, traffic, controller)

        run = sequencer.run(experiments("2", settings), results_dir=tmp_path)

        assert [r.reason for r in run.results] == ["RemoteDispatchFailure", "RemoteDispatchFailure"]
        assert popen.calls == []
        assert events[-2:] == ["impair:clean", "close"]

    def test_teardown_failure(self, settings, supervisor, traffic, events, tmp_path, caplog):
        """Test a failed final clean is recorded with its remedy and the session closed."""
        executor = FakeExecutor(events, fail_modes={"clean"})
        controller = ImpairmentController(executor, interface="eth1")
        sequencer = make_sequencer(settings, supervisor, traffic, controller)

        run = sequencer.run(experiments("2", settings), results_dir=tmp_path)

        assert run.teardown_error
        assert executor.closed
        assert not run.succeeded
        assert "tc qdisc del dev eth1 root" in caplog.text
        summary = json.loads((tmp_path / "summary.json").read_text())
        assert summary["teardown_error"]

    def test_capture_not_permitted(self, settings, events, traffic, controller, as_root, tmp_path):
        """Test a capture the OS refuses to launch fails only its own phase."""
        popen = FakePopen(events)
        calls = []

        def refusing_once(argv, **kwargs):
            calls.append(argv)
            if len(calls) == 1:
                raise PermissionError(13, "Permission denied", "tcpdump")
            return popen(argv, **kwargs)

        supervisor = CaptureSupervisor(startup_delay=0, popen=refusing_once, sleep=lambda s: None)
        sequencer = make_sequencer(settings, supervisor, traffic, controller)

        run = sequencer.run(experiments("2", settings), results_dir=tmp_path)

        assert statuses(run) == [
            ("exp2_loss_tcp", PhaseStatus.FAILED, "PermissionDenied"),
            ("exp2_loss_udp", PhaseStatus.SUCCESS, None),
        ]
        assert len(calls) == 2
        assert [c[2].value for c in traffic.calls] == ["udp"]
        assert events[-2:] == ["impair:clean", "close"]

    def test_os_error_during_traffic(self, settings, supervisor, events, tmp_path):
        """Test an OS error inside a phase is recorded and the run continues."""
        traffic = FakeTrafficClient(events, raise_on_call=1, exc=OSError(101, "Network is unreachable"))
        sequencer = make_sequencer(settings, supervisor, traffic)

        run = sequencer.run(experiments("1", settings), results_dir=tmp_path)

        assert statuses(run) == [
            ("exp1_baseline_tcp", PhaseStatus.FAILED, "OSError"),
            ("exp1_baseline_udp", PhaseStatus.SUCCESS, None),
        ]
        assert "Network is unreachable" in run.results[0].message
        assert events.count("capture:stop") == 2


class TestInterrupted:
    """Interrupts stop the capture first, then clean the controller."""

    @pytest.mark.parametrize("exc", [KeyboardInterrupt(), RunInterrupted(signal.SIGTERM)])
    def test_interrupt_during_traffic(self, settings, supervisor, events, controller, executor, tmp_path, exc):
        """Test ordering and ledger after an interrupt in the first phase."""
        traffic = FakeTrafficClient(events, raise_on_call=1, exc=exc)
        sequencer = make_sequencer(settings, supervisor, traffic, controller)

        run = sequencer.run(experiments("all", settings), results_dir=tmp_path)

        assert events == [
            "impair:clean", "capture:start", "traffic:tcp", "capture:stop",
            "impair:clean", "close",
        ]
        assert run.interrupted
        assert run.results[0].status is PhaseStatus.FAILED
        assert run.results[0].reason == "Interrupted"
        assert all(r.reason == "NotRun" for r in run.results[1:])
        assert len(run.results) == 6
        assert run.state is RunState.COMPLETE
        assert json.loads((tmp_path / "summary.json").read_text())["interrupted"] is True

    def test_capture_stopped_before_clean(self, settings, supervisor, events, controller, tmp_path):
        """Test the capture is gone before the controller is touched again."""
        traffic = FakeTrafficClient(events, raise_on_call=1, exc=KeyboardInterrupt())
        sequencer = make_sequencer(settings, supervisor, traffic, controller)

        sequencer.run(experiments("2", settings), results_dir=tmp_path)

        assert events.index("capture:stop") < events.index("impair:clean")
        assert supervisor.active is None

    @pytest.mark.parametrize("exc", [KeyboardInterrupt(), RunInterrupted(signal.SIGTERM)])
    def test_interrupt_during_final_clean(self, settings, supervisor, traffic, controller, executor, mocker, tmp_path, caplog, exc):
        """Test a second interrupt during teardown still releases the session and writes the summary."""
        mocker.patch.object(controller, "clear", side_effect=exc)
        sequencer = make_sequencer(settings, supervisor, traffic, controller)

        run = sequencer.run(experiments("2", settings), results_dir=tmp_path)

        assert executor.closed
        assert run.interrupted
        assert run.teardown_error == "Interrupted while cleaning controller"
        assert run.state is RunState.COMPLETE
        assert "Clean manually" in caplog.text
        summary = json.loads((tmp_path / "summary.json").read_text())
        assert summary["interrupted"] is True

    def test_sigterm_translated_during_teardown(self, settings, supervisor, traffic, controller, tmp_path):
        """Test SIGTERM raises RunInterrupted while the controller is being cleaned."""
        handlers = []
        controller.clear = lambda preview=False: handlers.append(signal.getsignal(signal.SIGTERM))
        sequencer = make_sequencer(settings, supervisor, traffic, controller)
        previous = signal.getsignal(signal.SIGTERM)

        sequencer.run(experiments("1", settings), results_dir=tmp_path)

        with pytest.raises(RunInterrupted):
            handlers[0](signal.SIGTERM, None)
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_sigterm_handler_restored(self):
        """Test the SIGTERM translation is scoped to the run."""
        previous = signal.getsignal(signal.SIGTERM)

        with interrupt_on_sigterm():
            handler = signal.getsignal(signal.SIGTERM)
            with pytest.raises(RunInterrupted):
                handler(signal.SIGTERM, None)

        assert signal.getsignal(signal.SIGTERM) == previous


class TestDryRun:
    """Preview runs change nothing."""

    def test_dry_run(self, supervisor, popen, traffic, controller, executor, tmp_path):
        """Test the controller gets preview commands and nothing else runs."""
        settings = LabSettings(dry_run=True, ping_check=False)
        sleeps = []
        sequencer = make_sequencer(settings, supervisor, traffic, controller, sleeps=sleeps)

        run = sequencer.run(experiments("all", settings), results_dir=tmp_path)

        assert all(r.status is PhaseStatus.SKIPPED and r.reason == "DryRun" for r in run.results)
        assert all(cmd[-1] == "-d" for cmd in executor.commands)
        assert executor.mode == "clean"
        assert popen.calls == []
        assert traffic.calls == []
        assert sleeps == []

    def test_dry_run_logs_commands(self, supervisor, traffic, tmp_path, caplog):
        """Test the capture and traffic commands are previewed."""
        settings = LabSettings(dry_run=True, ping_check=False)
        sequencer = make_sequencer(settings, supervisor, traffic)

        with caplog.at_level("INFO"):
            sequencer.run(experiments("1", settings), results_dir=tmp_path)

        assert "[DRY RUN] tcpdump -i eth0" in caplog.text
        assert "[DRY RUN] iperf3 -c 10.0.0.3 -p 5201 -t 20 -u -b 5M -J" in caplog.text


class TestCustomPhases:
    """Phases built outside the catalog."""

    def test_protocol_tagged_capture(self, settings, supervisor, traffic, tmp_path):
        """Test client-style phases put the protocol in the capture name."""
        phase = ExperimentPhase(
            "client_udp",
            transport=Transport.UDP,
            output_prefix="client_capture",
            tag_protocol=True,
        )
        sequencer = make_sequencer(settings, supervisor, traffic)

        run = sequencer.run([Experiment("client", "Client", [phase])], results_dir=tmp_path)

        assert run.results[0].capture_file.name.startswith("client_capture_UDP_")

    def test_clean_policy_without_controller(self, settings, supervisor, traffic, tmp_path):
        """Test a clean policy needs no controller."""
        phase = ExperimentPhase("p1", impairment=ImpairmentPolicy.clean())
        sequencer = make_sequencer(settings, supervisor, traffic)

        run = sequencer.run([Experiment("x", "X", [phase])], results_dir=tmp_path)

        assert run.results[0].status is PhaseStatus.SUCCESS

    def test_manual_proxy(self, settings, supervisor, traffic, tmp_path):
        """Test traffic can go through a proxy the sequencer does not manage."""
        sequencer = ExperimentSequencer(
            "10.0.0.3",
            settings,
            capture=supervisor,
            traffic=traffic,
            capture_interface="eth0",
            via="10.0.0.2",
        )

        run = sequencer.run(experiments("1", settings), results_dir=tmp_path)

        assert traffic.calls[0][0] == "10.0.0.2"
        assert run.succeeded
