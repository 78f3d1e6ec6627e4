"""
Results ledger and run summary for transportlab.

Each phase appends a PhaseResult. At the end of a run the ledger is written
as summary.json (for tools) and README.txt (for people).
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .traffic import TrafficResult

if TYPE_CHECKING:
    from .experiments import Experiment, ExperimentPhase
    from .sequencer import ExperimentRun

logger = logging.getLogger(__name__)


class PhaseStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class PhaseResult:
    """Outcome of one phase."""

    phase: "ExperimentPhase"
    status: PhaseStatus = PhaseStatus.SUCCESS
    reason: Optional[str] = None
    message: str = ""
    capture_file: Optional[Path] = None
    capture_started_at: Optional[float] = None
    capture_stopped_at: Optional[float] = None
    traffic: Optional[TrafficResult] = None

    def mark(self, status: PhaseStatus, reason: Optional[str] = None, message: str = "") -> None:
        self.status = status
        self.reason = reason
        self.message = message

    def to_dict(self, base_dir: Optional[Path] = None) -> dict:
        capture_file = None
        if self.capture_file is not None:
            capture_file = str(self.capture_file)
            if base_dir is not None:
                try:
                    capture_file = str(Path(self.capture_file).relative_to(base_dir))
                except ValueError:
                    pass
        impairment = self.phase.impairment
        return {
            "name": self.phase.name,
            "transport": self.phase.transport.value,
            "duration_sec": self.phase.duration_sec,
            "bitrate": self.phase.bitrate,
            "impairment": impairment.to_dict() if impairment is not None else None,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "capture_file": capture_file,
            "capture_started_at": self.capture_started_at,
            "capture_stopped_at": self.capture_stopped_at,
            "traffic": self.traffic.to_dict() if self.traffic is not None else None,
        }


ANALYSIS_GUIDE = """Analysis Guide:
1. Open captures in Wireshark: wireshark {results_dir}/*.pcap
2. TCP analysis:
   - Statistics -> TCP Stream Graphs -> Time-Sequence (Stevens)
   - Filter: tcp.analysis.retransmission
   - Filter: tcp.analysis.duplicate_ack
3. UDP analysis:
   - Statistics -> IO Graph
   - Compare sent vs received packet counts
4. Command-line quick check:
   tshark -r {results_dir}/exp2_loss_tcp_*.pcap -Y 'tcp.analysis.duplicate_ack' | wc -l

Key Metrics:
- TCP: Look for retransmissions, duplicate ACKs, cwnd behavior
- UDP: Calculate loss percentage, measure jitter
"""


def build_summary(run: "ExperimentRun", configuration: dict) -> dict:
    """Machine-readable summary of a run."""
    counts = {status.value: 0 for status in PhaseStatus}
    for result in run.results:
        counts[result.status.value] += 1

    return {
        "generated_at": datetime.now().isoformat(),
        "configuration": configuration,
        "started_at": run.started_at,
        "finished_at": run.finished_at,
        "interrupted": run.interrupted,
        "teardown_error": run.teardown_error,
        "counts": counts,
        "phases": [result.to_dict(run.results_dir) for result in run.results],
    }


def render_readme(
    run: "ExperimentRun",
    configuration: dict,
    experiments: Optional[list["Experiment"]] = None,
) -> str:
    """Human-readable summary of a run."""
    lines = [
        "TCP vs UDP Transport Comparison Lab Results",
        f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        "Configuration:",
        f"- Server: {configuration.get('server')}",
        f"- Connection: {configuration.get('connection')}",
    ]
    if configuration.get("controller"):
        lines.append(f"- Proxy: {configuration['controller']}")
    if configuration.get("dry_run"):
        lines.append("- Dry run: no traffic generated")
    lines += [
        "",
        f"Experiments Run: {configuration.get('experiments', '')}",
    ]
    if run.interrupted:
        lines.append("Status: INTERRUPTED (partial results)")
    if run.teardown_error:
        lines.append(f"Teardown error: {run.teardown_error}")

    lines += ["", "Phases:"]
    for result in run.results:
        line = f"- {result.phase.name}: {result.status.value}"
        if result.reason:
            line += f" ({result.reason})"
        if result.traffic is not None and result.traffic.ok:
            line += f", {result.traffic.bits_per_second / 1e6:.2f} Mbit/s"
            if result.traffic.lost_percent is not None:
                line += f", {result.traffic.lost_percent:.2f}% lost"
            if result.traffic.retransmits is not None:
                line += f", {result.traffic.retransmits} retransmits"
        lines.append(line)

    for experiment in experiments or []:
        if not experiment.expectations:
            continue
        lines += ["", f"Experiment {experiment.key} ({experiment.title}) expected observations:"]
        lines += [f"- {text}" for text in experiment.expectations]

    lines += ["", "Files:"]
    pcaps = [r.capture_file for r in run.results if r.capture_file is not None]
    if pcaps:
        lines += [f"- {Path(p).name}" for p in pcaps]
    else:
        lines.append("- (none)")

    lines += ["", ANALYSIS_GUIDE.format(results_dir=run.results_dir)]
    return "\n".join(lines)


def write_summary(
    run: "ExperimentRun",
    configuration: dict,
    experiments: Optional[list["Experiment"]] = None,
) -> tuple[Path, Path]:
    """
    Write summary.json and README.txt into the run's results directory.

    Returns:
        Paths of the JSON and text summaries.
    """
    results_dir = Path(run.results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)

    json_path = results_dir / "summary.json"
    with open(json_path, "w") as f:
        json.dump(build_summary(run, configuration), f, indent=2, default=str)

    readme_path = results_dir / "README.txt"
    readme_path.write_text(render_readme(run, configuration, experiments))

    logger.info(f"Summary saved: {readme_path}")
    return json_path, readme_path
