"""
Run reports: the JSON artifact and the console summary.

A :class:`RunReport` is built once, after the scheduler has finished and
the aggregator is sealed, and is never modified afterwards.  It is
written to ``<results_dir>/<name>-<UTC timestamp>.json`` and summarised
as a fixed-width table on stdout for CI logs.

Statistics without data are serialised as ``null`` in JSON and rendered
as ``no data`` in the table.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, TextIO

from loadstage.assessment import Assessment
from loadstage.exceptions import ReportWriteError
from loadstage.metrics import AggregateSnapshot
from loadstage.scheduler import ScheduleResult
from loadstage.thresholds import BreachRecord, ThresholdResult

logger = logging.getLogger(__name__)

NO_DATA = "no data"


@dataclass(frozen=True)
class RunReport:
    """
    Immutable record of one finished run.

    Attributes:
        name: Run name from the plan.
        seed: Run seed, ``None`` when the run was not seeded.
        config: The run configuration as a dictionary.
        started_at: UTC time the run started.
        finished_at: UTC time the report was built.
        duration_seconds: Scheduled run time until the stop signal.
        completed_all_stages: ``True`` when the plan ran to its end.
        aborted: ``True`` when an abort-on-breach rule stopped the run.
        stop_reason: ``"completed"`` or the reason for the early stop.
        breach: The breach that aborted the run, if any.
        snapshot: Final aggregate over the whole run.
        thresholds: Final evaluation of every rule.
        assessment: Verdict of the configured assessment profile.
        peak_users: Highest live virtual-user count.
        forced_terminations: Users abandoned after the grace period.
        dropped_outcomes: Outcomes discarded after the aggregator was sealed.
    """

    name: str
    seed: int | None
    config: dict[str, Any]
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    completed_all_stages: bool
    aborted: bool
    stop_reason: str
    breach: BreachRecord | None
    snapshot: AggregateSnapshot
    thresholds: tuple[ThresholdResult, ...]
    assessment: Assessment
    peak_users: int = 0
    forced_terminations: int = 0
    dropped_outcomes: int = 0

    @property
    def passed(self) -> bool:
        """A run passes only if it ran every stage and every rule passed."""
        return (
            self.completed_all_stages
            and not self.aborted
            and all(result.passed for result in self.thresholds)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "seed": self.seed,
            "passed": self.passed,
            "completed_all_stages": self.completed_all_stages,
            "aborted": self.aborted,
            "stop_reason": self.stop_reason,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "peak_users": self.peak_users,
            "forced_terminations": self.forced_terminations,
            "dropped_outcomes": self.dropped_outcomes,
            "breach": self.breach.to_dict() if self.breach is not None else None,
            "config": self.config,
            "metrics": self.snapshot.to_dict(),
            "thresholds": [result.to_dict() for result in self.thresholds],
            "assessment": self.assessment.to_dict(),
        }


def build_report(
    *,
    config: dict[str, Any],
    name: str,
    seed: int | None,
    started_at: datetime,
    finished_at: datetime,
    schedule: ScheduleResult,
    breach: BreachRecord | None,
    snapshot: AggregateSnapshot,
    thresholds: tuple[ThresholdResult, ...],
    assessment: Assessment,
) -> RunReport:
    """Assemble the final report from the pieces of a finished run."""
    return RunReport(
        name=name,
        seed=seed,
        config=config,
        started_at=started_at,
        finished_at=finished_at,
        duration_seconds=schedule.elapsed,
        completed_all_stages=schedule.completed_all_stages,
        aborted=breach is not None,
        stop_reason=schedule.stop_reason,
        breach=breach,
        snapshot=snapshot,
        thresholds=thresholds,
        assessment=assessment,
        peak_users=schedule.peak_users,
        forced_terminations=schedule.forced_terminations,
        dropped_outcomes=snapshot.dropped,
    )


def report_filename(name: str, started_at: datetime) -> str:
    """
    Build a filesystem-safe report file name.

    ``:`` and ``.`` in the ISO timestamp are replaced with ``-`` so the
    name is valid on every platform.
    """
    stamp = started_at.isoformat().replace(":", "-").replace(".", "-")
    safe_name = "".join(ch if ch.isalnum() or ch in "-_" else "-" for ch in name) or "run"
    return f"{safe_name}-{stamp}.json"


def write_report(report: RunReport, results_dir: Path | str) -> Path:
    """
    Write the report as pretty-printed JSON.

    Returns:
        Path of the written file.

    Raises:
        ReportWriteError: If the directory or file cannot be written.
    """
    directory = Path(results_dir)
    path = directory / report_filename(report.name, report.started_at)
    try:
        directory.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            json.dump(report.to_dict(), handle, indent=2)
            handle.write("\n")
    except OSError as exc:
        raise ReportWriteError(f"Cannot write report to {path}: {exc}") from exc

    logger.info("Report written to %s", path)
    return path


def _fmt(value: float | None, spec: str = ".2f") -> str:
    if value is None:
        return NO_DATA
    return format(value, spec)


def _fmt_percent(value: float | None) -> str:
    if value is None:
        return NO_DATA
    return f"{value * 100:.2f}"


def print_summary(report: RunReport, stream: TextIO | None = None) -> None:
    """Print a human-readable results table for CI logs."""
    out = stream if stream is not None else sys.stdout
    snapshot = report.snapshot
    latency = snapshot.latency

    def line(text: str = "") -> None:
        print(text, file=out)

    line(f"Load Run Summary: {report.name}")
    line("-" * 60)
    line(f"{'Metric':<26}{'Value':>34}")
    line("-" * 60)
    line(f"{'Requests':<26}{snapshot.count:>34}")
    line(f"{'Requests/sec':<26}{_fmt(snapshot.requests_per_sec):>34}")
    line(f"{'Error rate (%)':<26}{_fmt_percent(snapshot.error_rate):>34}")
    line(f"{'Rate limited (429)':<26}{snapshot.rate_limited:>34}")
    line(f"{'Transport errors':<26}{snapshot.transport_errors:>34}")
    line(f"{'Avg latency (ms)':<26}{_fmt(latency.avg):>34}")
    line(f"{'P95 latency (ms)':<26}{_fmt(latency.p95):>34}")
    line(f"{'P99 latency (ms)':<26}{_fmt(latency.p99):>34}")
    line(f"{'Max latency (ms)':<26}{_fmt(latency.max):>34}")
    line(f"{'Peak users':<26}{report.peak_users:>34}")
    line("-" * 60)

    if report.thresholds:
        line(f"{'Threshold':<30}{'Actual':>16}{'Status':>14}")
        line("-" * 60)
        for result in report.thresholds:
            line(
                f"{result.rule.describe():<30}{_fmt(result.observed, '.4g'):>16}"
                f"{result.status.value.upper():>14}"
            )
        line("-" * 60)

    tier = report.assessment.tier or "-"
    line(f"Assessment ({report.assessment.profile.value}): {tier}")
    for warning in report.assessment.warnings:
        line(f"  WARNING: {warning}")
    if report.breach is not None:
        line(
            f"Aborted at {report.breach.elapsed_seconds:.1f}s: "
            f"{report.breach.rule.describe()} (observed {report.breach.observed:.4g})"
        )
    elif not report.completed_all_stages:
        line(f"Stopped early: {report.stop_reason}")
    line(f"Overall: {'PASS' if report.passed else 'FAIL'}")
