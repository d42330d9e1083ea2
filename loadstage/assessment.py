"""
Post-run assessment heuristics.

Each profile is a pure function of the run configuration, the final
aggregate snapshot and the final threshold results.  It returns an
:class:`Assessment` carrying a qualitative tier, the numbers the tier was
derived from and any warnings.  Assessments never change whether a run
passed; that is decided by the thresholds alone.

Profiles:

- **soak**: endurance stability, with a max/avg latency leak heuristic
- **spike**: failure rate during burst stages only
- **load**: p95 latency and error percentage tiers
- **stress**: highest stage level served under the breaking error rate
- **benchmark**: requests per second, p95 and error percentage against a
  per-endpoint-class criteria table
- **none**: no tier
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loadstage.metrics import AggregateSnapshot, BreakdownStats, StageStats
from loadstage.models import AssessmentProfile, BenchmarkClass, StageKind
from loadstage.thresholds import ThresholdResult

if TYPE_CHECKING:
    from loadstage.plan import RunConfig

NO_DATA_TIER = "no_data"


@dataclass(frozen=True)
class Assessment:
    """
    Qualitative verdict produced by one assessment profile.

    Attributes:
        profile: Profile that produced the verdict.
        tier: Tier label, ``None`` for the ``none`` profile.
        basis: Metric values the tier was derived from.
        warnings: Human-readable warnings (e.g. a possible memory leak).
    """

    profile: AssessmentProfile
    tier: str | None
    basis: dict[str, Any] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile": self.profile.value,
            "tier": self.tier,
            "basis": dict(self.basis),
            "warnings": list(self.warnings),
        }


def _failure_rate(stats: BreakdownStats, config: RunConfig) -> float | None:
    if config.expect_rate_limiting:
        return stats.error_rate_excluding_rate_limited
    return stats.error_rate


def _failed_thresholds(results: Sequence[ThresholdResult]) -> list[str]:
    return [result.rule.describe() for result in results if not result.passed]


def assess_soak(
    config: RunConfig,
    snapshot: AggregateSnapshot,
    threshold_results: Sequence[ThresholdResult],
) -> Assessment:
    """
    Grade endurance stability.

    ``excellent`` needs an error rate under 1 % and an average latency
    under 500 ms, ``good`` under 5 % and 1000 ms; anything else is
    ``needs_investigation``.  A max/avg latency ratio above
    ``config.leak_ratio`` adds a possible-leak warning.
    """
    error_rate = _failure_rate(snapshot, config)
    avg = snapshot.latency.avg
    peak = snapshot.latency.max
    ratio = peak / avg if avg and peak is not None else None

    basis = {
        "error_rate": error_rate,
        "avg_latency_ms": avg,
        "max_latency_ms": peak,
        "max_avg_ratio": ratio,
        "thresholds_failed": _failed_thresholds(threshold_results),
    }

    if error_rate is None or avg is None:
        return Assessment(AssessmentProfile.SOAK, NO_DATA_TIER, basis)

    if error_rate < 0.01 and avg < 500:
        tier = "excellent"
    elif error_rate < 0.05 and avg < 1000:
        tier = "good"
    else:
        tier = "needs_investigation"

    warnings = []
    if ratio is not None and ratio > config.leak_ratio:
        warnings.append(
            f"High response variance: max/avg latency ratio {ratio:.2f}x exceeds "
            f"{config.leak_ratio:g}x, possible memory leak or resource pressure"
        )
    return Assessment(AssessmentProfile.SOAK, tier, basis, tuple(warnings))


def burst_stages(stages: Sequence[StageStats]) -> list[StageStats]:
    """
    Return the stages that count as bursts for the spike profile.

    The baseline is the lowest positive stage target.  A ramp is a burst
    when either end rises above the baseline; a hold is a burst when its
    level is above the baseline.
    """
    positive = [stage.target for stage in stages if stage.target > 0]
    if not positive:
        return []
    baseline = min(positive)

    bursts = []
    for stage in stages:
        if stage.kind is StageKind.HOLD:
            if stage.target > baseline:
                bursts.append(stage)
        elif max(stage.start_target, stage.target) > baseline:
            bursts.append(stage)
    return bursts


def assess_spike(
    config: RunConfig,
    snapshot: AggregateSnapshot,
    threshold_results: Sequence[ThresholdResult],
) -> Assessment:
    """
    Grade resilience to sudden bursts.

    The failure rate is taken over burst stages only (the whole run when
    the plan has none).  Tiers: ``excellent`` under 10 %, ``degraded``
    under 25 %, otherwise ``failing``.  With ``expect_rate_limiting`` a
    429 answer is an expected defence, not a failure.
    """
    bursts = burst_stages(snapshot.stages)
    if bursts:
        count = sum(stage.count for stage in bursts)
        failures = sum(stage.failures for stage in bursts)
        rate_limited = sum(stage.rate_limited for stage in bursts)
        scope = "burst_stages"
    else:
        count = snapshot.count
        failures = snapshot.failures
        rate_limited = snapshot.rate_limited
        scope = "whole_run"

    if config.expect_rate_limiting:
        failures -= rate_limited
    failure_rate = failures / count if count else None

    basis = {
        "scope": scope,
        "burst_stage_indexes": [stage.index for stage in bursts],
        "requests": count,
        "failure_rate": failure_rate,
        "rate_limited": rate_limited,
        "thresholds_failed": _failed_thresholds(threshold_results),
    }

    if failure_rate is None:
        return Assessment(AssessmentProfile.SPIKE, NO_DATA_TIER, basis)
    if failure_rate < 0.10:
        tier = "excellent"
    elif failure_rate < 0.25:
        tier = "degraded"
    else:
        tier = "failing"
    return Assessment(AssessmentProfile.SPIKE, tier, basis)


def assess_load(
    config: RunConfig,
    snapshot: AggregateSnapshot,
    threshold_results: Sequence[ThresholdResult],
) -> Assessment:
    """Grade sustained load by p95 latency and error percentage."""
    p95 = snapshot.latency.p95
    error_rate = _failure_rate(snapshot, config)
    basis = {
        "p95_latency_ms": p95,
        "error_rate": error_rate,
        "thresholds_failed": _failed_thresholds(threshold_results),
    }
    if p95 is None or error_rate is None:
        return Assessment(AssessmentProfile.LOAD, NO_DATA_TIER, basis)

    error_percent = error_rate * 100
    if p95 < 500 and error_percent < 0.5:
        tier = "legendary"
    elif p95 < 1000 and error_percent < 2:
        tier = "epic"
    elif p95 < 2000 and error_percent < 5:
        tier = "good"
    else:
        tier = "needs_work"
    return Assessment(AssessmentProfile.LOAD, tier, basis)


def assess_stress(
    config: RunConfig,
    snapshot: AggregateSnapshot,
    threshold_results: Sequence[ThresholdResult],
) -> Assessment:
    """
    Estimate the breaking point of the target.

    The sustained level is the highest stage target whose stage failure
    rate stayed under ``config.breaking_error_rate``; the breaking level
    is the lowest target above it whose stage went over.  Tiers follow
    the overall failure rate: ``no_breaking_point`` under the breaking
    rate, ``degraded`` under 20 %, otherwise ``broken``.
    """
    limit = config.breaking_error_rate
    sustained = None
    breaking = None
    for stage in snapshot.stages:
        rate = _failure_rate(stage, config)
        if rate is None:
            continue
        if rate < limit:
            if sustained is None or stage.target > sustained:
                sustained = stage.target
        elif breaking is None or stage.target < breaking:
            breaking = stage.target
    if breaking is not None and sustained is not None and breaking <= sustained:
        breaking = None

    overall = _failure_rate(snapshot, config)
    basis = {
        "breaking_error_rate": limit,
        "max_sustained_users": sustained,
        "breaking_users": breaking,
        "error_rate": overall,
        "max_latency_ms": snapshot.latency.max,
        "thresholds_failed": _failed_thresholds(threshold_results),
    }

    if overall is None:
        return Assessment(AssessmentProfile.STRESS, NO_DATA_TIER, basis)
    if overall < limit:
        tier = "no_breaking_point"
    elif overall < 0.20:
        tier = "degraded"
    else:
        tier = "broken"

    warnings = []
    if breaking is not None:
        warnings.append(
            f"Stage failure rate reached {limit:.0%} at {breaking} users; "
            f"recommended maximum is {sustained if sustained is not None else 0} users"
        )
    return Assessment(AssessmentProfile.STRESS, tier, basis, tuple(warnings))


BENCHMARK_NEEDS_IMPROVEMENT = "needs_improvement"


@dataclass(frozen=True)
class BenchmarkCriteria:
    """One row of a benchmark table: all three limits must hold."""

    min_rps: float
    max_p95_ms: float
    max_error_percent: float

    def met(self, rps: float, p95: float, error_percent: float) -> bool:
        return (
            rps > self.min_rps
            and p95 < self.max_p95_ms
            and error_percent < self.max_error_percent
        )


# Tiers best first, then the separate pass line.
BENCHMARK_TIERS: dict[BenchmarkClass, tuple[tuple[str, BenchmarkCriteria], ...]] = {
    BenchmarkClass.LIGHT: (
        ("legendary", BenchmarkCriteria(1000, 100, 0.1)),
        ("epic", BenchmarkCriteria(500, 200, 1)),
        ("good", BenchmarkCriteria(200, 500, 5)),
    ),
    BenchmarkClass.MEDIUM: (
        ("legendary", BenchmarkCriteria(500, 100, 0.1)),
        ("epic", BenchmarkCriteria(300, 200, 1)),
        ("good", BenchmarkCriteria(100, 500, 5)),
    ),
    BenchmarkClass.HEAVY: (
        ("legendary", BenchmarkCriteria(100, 500, 0.1)),
        ("epic", BenchmarkCriteria(50, 1000, 1)),
        ("good", BenchmarkCriteria(20, 2000, 5)),
    ),
}

BENCHMARK_PASS: dict[BenchmarkClass, BenchmarkCriteria] = {
    BenchmarkClass.LIGHT: BenchmarkCriteria(500, 100, 1),
    BenchmarkClass.MEDIUM: BenchmarkCriteria(300, 200, 1),
    BenchmarkClass.HEAVY: BenchmarkCriteria(50, 1000, 1),
}


def assess_benchmark(
    config: RunConfig,
    snapshot: AggregateSnapshot,
    threshold_results: Sequence[ThresholdResult],
) -> Assessment:
    """
    Grade raw throughput of a single-endpoint benchmark.

    Requests per second, p95 latency and error percentage are checked
    against the table for ``config.benchmark_class``.  The first tier
    whose three limits all hold wins, otherwise ``needs_improvement``.
    Missing the class's pass line adds a warning.
    """
    rps = snapshot.requests_per_sec
    p95 = snapshot.latency.p95
    error_rate = _failure_rate(snapshot, config)
    basis: dict[str, Any] = {
        "benchmark_class": config.benchmark_class.value,
        "requests_per_sec": rps,
        "p95_latency_ms": p95,
        "error_rate": error_rate,
        "benchmark_passed": None,
        "thresholds_failed": _failed_thresholds(threshold_results),
    }
    if rps is None or p95 is None or error_rate is None:
        return Assessment(AssessmentProfile.BENCHMARK, NO_DATA_TIER, basis)

    error_percent = error_rate * 100
    tier = BENCHMARK_NEEDS_IMPROVEMENT
    for name, criteria in BENCHMARK_TIERS[config.benchmark_class]:
        if criteria.met(rps, p95, error_percent):
            tier = name
            break

    pass_line = BENCHMARK_PASS[config.benchmark_class]
    passed = pass_line.met(rps, p95, error_percent)
    basis["benchmark_passed"] = passed

    warnings = []
    if not passed:
        warnings.append(
            f"Benchmark needs improvement: wanted > {pass_line.min_rps:g} req/s, "
            f"p95 < {pass_line.max_p95_ms:g}ms and errors < {pass_line.max_error_percent:g}%; "
            f"got {rps:.1f} req/s, p95 {p95:.1f}ms, errors {error_percent:.3f}%"
        )
    return Assessment(AssessmentProfile.BENCHMARK, tier, basis, tuple(warnings))


def assess_none(
    config: RunConfig,
    snapshot: AggregateSnapshot,
    threshold_results: Sequence[ThresholdResult],
) -> Assessment:
    return Assessment(
        AssessmentProfile.NONE,
        None,
        {"thresholds_failed": _failed_thresholds(threshold_results)},
    )


PROFILES: dict[
    AssessmentProfile,
    Callable[[Any, AggregateSnapshot, Sequence[ThresholdResult]], Assessment],
] = {
    AssessmentProfile.SOAK: assess_soak,
    AssessmentProfile.SPIKE: assess_spike,
    AssessmentProfile.LOAD: assess_load,
    AssessmentProfile.STRESS: assess_stress,
    AssessmentProfile.BENCHMARK: assess_benchmark,
    AssessmentProfile.NONE: assess_none,
}


def assess(
    config: RunConfig,
    snapshot: AggregateSnapshot,
    threshold_results: Sequence[ThresholdResult],
) -> Assessment:
    """Run the assessment profile selected by the run configuration."""
    return PROFILES[config.profile](config, snapshot, threshold_results)
