"""Pytest configuration and fixtures for transportlab tests."""

import io
import subprocess
import time

import pytest

from transportlab.capture import CaptureSupervisor
from transportlab.commands import CommandResult
from transportlab.config import LabSettings
from transportlab.remote import ImpairmentController, RemoteExecutor
from transportlab.traffic import TrafficResult, Transport


class FakeTc:
    """
    Stands in for ip, tc and sysctl, keeping one root qdisc per interface.

    Like the kernel, adding a root qdisc where one exists fails, and
    deleting from a clean interface reports a handle of zero.
    """

    def __init__(self, interfaces=("eth0",), default_interface="eth0"):
        self.qdiscs = {name: None for name in interfaces}
        self.default_interface = default_interface
        self.sysctl = {}
        self.calls = []
        self.stuck = set()
        self.add_error = None

    @property
    def mutations(self):
        return [
            call for call in self.calls
            if self._strip(call)[:3] in (["tc", "qdisc", "add"], ["tc", "qdisc", "del"])
            or self._strip(call)[:1] == ["sysctl"]
        ]

    @staticmethod
    def _strip(argv):
        return argv[2:] if argv[:2] == ["sudo", "-n"] else argv

    def _missing(self, argv, interface):
        return CommandResult(argv, 1, "", f"Cannot find device \"{interface}\"")

    def __call__(self, argv):
        argv = list(argv)
        self.calls.append(argv)
        args = self._strip(argv)

        if args[:4] == ["ip", "route", "show", "default"]:
            if self.default_interface is None:
                return CommandResult(argv, 0, "")
            return CommandResult(
                argv, 0, f"default via 10.0.0.1 dev {self.default_interface} proto dhcp metric 100\n"
            )

        if args[:3] == ["ip", "link", "show"]:
            interface = args[-1]
            if interface not in self.qdiscs:
                return CommandResult(argv, 1, "", f"Device \"{interface}\" does not exist.")
            return CommandResult(argv, 0, f"2: {interface}: <BROADCAST,MULTICAST,UP> mtu 1500\n")

        if args[:2] == ["sysctl", "-w"]:
            key, value = args[2].split("=", 1)
            self.sysctl[key] = value
            return CommandResult(argv, 0, f"{key} = {value}\n")

        if args[:3] == ["tc", "qdisc", "show"]:
            interface = args[4]
            if interface not in self.qdiscs:
                return self._missing(argv, interface)
            kind = self.qdiscs[interface]
            if kind is None:
                return CommandResult(argv, 0, "qdisc noqueue 0: root refcnt 2\n")
            return CommandResult(argv, 0, f"qdisc {kind} 8001: root refcnt 2\n")

        if args[:3] == ["tc", "qdisc", "del"]:
            interface = args[4]
            if interface not in self.qdiscs:
                return self._missing(argv, interface)
            if self.qdiscs[interface] is None:
                return CommandResult(
                    argv, 2, "", "Error: Cannot delete qdisc with handle of zero."
                )
            if interface not in self.stuck:
                self.qdiscs[interface] = None
            return CommandResult(argv, 0)

        if args[:3] == ["tc", "qdisc", "add"]:
            interface = args[4]
            if interface not in self.qdiscs:
                return self._missing(argv, interface)
            if self.add_error:
                return CommandResult(argv, 2, "", self.add_error)
            if self.qdiscs[interface] is not None:
                return CommandResult(argv, 2, "", "Error: Exclusivity flag on, cannot modify.")
            self.qdiscs[interface] = args[6]
            return CommandResult(argv, 0)

        raise AssertionError(f"Unexpected command: {argv}")


class FakeProcess:
    """A tcpdump process that never touches the system."""

    def __init__(self, events=None, pid=4242, alive=True, returncode=1, stderr=b"", ignore_term=False):
        self.events = events if events is not None else []
        self.pid = pid
        self.alive = alive
        self.returncode = None if alive else returncode
        self.stderr = io.BytesIO(stderr)
        self.signals = []
        self.ignore_term = ignore_term

    def _exit(self, code):
        self.alive = False
        self.returncode = code

    def poll(self):
        return None if self.alive else self.returncode

    def terminate(self):
        self.signals.append("TERM")
        self.events.append("capture:stop")
        if not self.ignore_term:
            self._exit(0)

    def kill(self):
        self.signals.append("KILL")
        self._exit(-9)

    def wait(self, timeout=None):
        if self.alive:
            raise subprocess.TimeoutExpired("tcpdump", timeout)
        return self.returncode


class FakePopen:
    """Process factory that hands out a new FakeProcess per capture."""

    def __init__(self, events, **process_kwargs):
        self.events = events
        self.process_kwargs = process_kwargs
        self.calls = []
        self.processes = []

    def __call__(self, argv, **kwargs):
        self.calls.append(list(argv))
        self.events.append("capture:start")
        process = FakeProcess(self.events, **self.process_kwargs)
        self.processes.append(process)
        return process


class FakeExecutor(RemoteExecutor):
    """Controller transport that records policy commands."""

    def __init__(self, events, host="10.0.0.2", fail_modes=()):
        self.host = host
        self.events = events
        self.fail_modes = set(fail_modes)
        self.commands = []
        self.mode = "clean"
        self.closed = False

    def execute(self, argv):
        argv = list(argv)
        mode = argv[argv.index("-m") + 1]
        self.commands.append(argv)
        self.events.append(f"impair:{mode}")
        if mode in self.fail_modes:
            return CommandResult(argv, 1, "", "Error: Exclusivity flag on, cannot modify.")
        if "-d" not in argv:
            self.mode = mode
        return CommandResult(argv, 0, f"Applied {mode}\n")

    def close(self):
        self.closed = True
        self.events.append("close")


class FakeTrafficClient:
    """iperf3 client double; optionally fails or raises on a given call."""

    def __init__(self, events, returncode=0, error=None, raise_on_call=None, exc=None):
        self.events = events
        self.returncode = returncode
        self.error = error
        self.raise_on_call = raise_on_call
        self.exc = exc
        self.calls = []

    def run(self, target, port, transport, duration_sec, bitrate=None):
        self.calls.append((target, port, Transport(transport), duration_sec, bitrate))
        self.events.append(f"traffic:{Transport(transport).value}")
        if self.raise_on_call is not None and len(self.calls) == self.raise_on_call:
            raise self.exc
        started_at = time.time()
        return TrafficResult(
            argv=["iperf3", "-c", target],
            returncode=self.returncode,
            output="{}",
            started_at=started_at,
            finished_at=time.time(),
            bytes_transferred=12_500_000,
            bits_per_second=5_000_000.0,
            error=self.error,
        )


@pytest.fixture
def events():
    """Shared, ordered record of what the fakes were asked to do."""
    return []


@pytest.fixture
def fake_tc():
    """Simulated ip/tc/sysctl with a single eth0 interface."""
    return FakeTc()


@pytest.fixture
def tc_factory():
    """Build a FakeTc with custom interfaces or default route."""
    return FakeTc


@pytest.fixture
def as_root(mocker):
    """Pretend the tests run with an effective uid of 0."""
    mocker.patch("transportlab.commands.is_root", return_value=True)
    mocker.patch("transportlab.impairment.is_root", return_value=True)


@pytest.fixture
def popen(events):
    return FakePopen(events)


@pytest.fixture
def supervisor(popen, as_root):
    """Capture supervisor backed by fake processes and no real waiting."""
    return CaptureSupervisor(startup_delay=0, grace_period=0.1, popen=popen, sleep=lambda s: None)


@pytest.fixture
def executor(events):
    return FakeExecutor(events)


@pytest.fixture
def controller(executor):
    return ImpairmentController(executor, address="10.0.0.2")


@pytest.fixture
def traffic(events):
    return FakeTrafficClient(events)


@pytest.fixture
def settings():
    """Settings with probing disabled and short phases."""
    return LabSettings(duration_sec=2, settle_sec=5, ping_check=False)


@pytest.fixture
def sample_plan_yaml(tmp_path):
    """Create a temporary experiment plan YAML file."""
    content = """
defaults:
  duration_sec: 10
  bitrate: 2M

experiments:
  "1":
    title: Baseline
    impairment: {mode: clean}
    expectations:
      - "TCP: slow start"
    phases:
      - {name: base_tcp, transport: tcp}
      - {name: base_udp, transport: udp}

  "2":
    title: Loss
    impairment: {mode: loss, loss_pct: 2}
    phases:
      - {name: loss_tcp, transport: tcp, duration_sec: 5}
      - name: shaped_udp
        transport: udp
        bitrate: 20M
        impairment: {mode: bottleneck, rate: 10mbit}
"""
    plan_file = tmp_path / "plan.yaml"
    plan_file.write_text(content)
    return str(plan_file)
