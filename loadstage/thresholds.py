"""
Threshold rules: parsing, evaluation and live abort.

A rule is an independent predicate over one metric of an
:class:`~loadstage.metrics.AggregateSnapshot`, e.g. ``p95 < 500`` or
``error_rate < 0.01``.  Rules can be written in plan files either as
k6-style expressions (``"p(95)<500"``, ``"rate<0.01"``) or as mappings
with explicit ``metric`` / ``comparator`` / ``bound`` keys.

Evaluation is exact: a ``<`` rule passes if and only if the observed
value is strictly below the bound.  A metric with no data (empty sample)
yields ``no_data``; the live watcher ignores it, the final evaluation
counts it as a failure.
"""

from __future__ import annotations

import logging
import math
import operator
import re
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from loadstage.exceptions import ConfigurationError
from loadstage.metrics import AggregateSnapshot, BreakdownStats, MetricsAggregator

logger = logging.getLogger(__name__)


class Comparator(str, Enum):
    """Enumeration of supported comparison operators."""

    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="


_COMPARATOR_FUNCS: dict[Comparator, Callable[[float, float], bool]] = {
    Comparator.LT: operator.lt,
    Comparator.LTE: operator.le,
    Comparator.GT: operator.gt,
    Comparator.GTE: operator.ge,
}

_COMPARATOR_ALIASES = {
    "lt": Comparator.LT,
    "lte": Comparator.LTE,
    "le": Comparator.LTE,
    "gt": Comparator.GT,
    "gte": Comparator.GTE,
    "ge": Comparator.GTE,
}

# Metric name -> attribute on LatencySummary.
LATENCY_METRICS = {
    "min_latency": "min",
    "avg_latency": "avg",
    "p50": "p50",
    "p90": "p90",
    "p95": "p95",
    "p99": "p99",
    "max_latency": "max",
}

# Metrics only defined for the whole snapshot, not per endpoint.
RATE_METRICS = ("throughput", "requests_per_sec")

METRICS = frozenset({"error_rate", "count", *LATENCY_METRICS, *RATE_METRICS})

# k6 summary names accepted in expressions.
_METRIC_ALIASES = {
    "rate": "error_rate",
    "http_req_failed": "error_rate",
    "med": "p50",
    "avg": "avg_latency",
    "min": "min_latency",
    "max": "max_latency",
    "p(50)": "p50",
    "p(90)": "p90",
    "p(95)": "p95",
    "p(99)": "p99",
    "rps": "requests_per_sec",
}

_EXPRESSION = re.compile(
    r"^\s*(?P<metric>[A-Za-z_]+(?:\(\d+(?:\.\d+)?\))?)\s*"
    r"(?P<comparator><=|>=|<|>)\s*"
    r"(?P<bound>-?\d+(?:\.\d+)?(?:[eE]-?\d+)?)\s*$"
)


class ThresholdStatus(str, Enum):
    """Enumeration of rule evaluation outcomes."""

    PASS = "pass"
    FAIL = "fail"
    NO_DATA = "no_data"


@dataclass(frozen=True)
class ThresholdRule:
    """
    A pass/fail predicate over one snapshot metric.

    Attributes:
        metric: Canonical metric name (see :data:`METRICS`).
        comparator: Comparison applied as ``observed <comparator> bound``.
        bound: Limit the observed value is compared against.
        abort_on_breach: Stop the run as soon as a live sample breaches.
        endpoint: Restrict the rule to one endpoint path.
        exclude_rate_limited: For ``error_rate``, count 429 as non-failing.
    """

    metric: str
    comparator: Comparator
    bound: float
    abort_on_breach: bool = False
    endpoint: str | None = None
    exclude_rate_limited: bool = False

    def check(self, observed: float) -> bool:
        return _COMPARATOR_FUNCS[self.comparator](observed, self.bound)

    def describe(self) -> str:
        text = f"{self.metric}{self.comparator.value}{self.bound:g}"
        if self.exclude_rate_limited and self.metric == "error_rate":
            text += " (429 excluded)"
        if self.endpoint:
            text += f" [{self.endpoint}]"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "comparator": self.comparator.value,
            "bound": self.bound,
            "abort_on_breach": self.abort_on_breach,
            "endpoint": self.endpoint,
            "exclude_rate_limited": self.exclude_rate_limited,
        }


@dataclass(frozen=True)
class ThresholdResult:
    """Outcome of evaluating one rule against one snapshot."""

    rule: ThresholdRule
    observed: float | None
    status: ThresholdStatus

    @property
    def passed(self) -> bool:
        return self.status is ThresholdStatus.PASS

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule.describe(),
            "definition": self.rule.to_dict(),
            "observed": self.observed,
            "status": self.status.value,
            "passed": self.passed,
        }


@dataclass(frozen=True)
class BreachRecord:
    """
    First abort-on-breach rule seen failing during the run.

    Attributes:
        rule: The breached rule.
        observed: Metric value in the trailing window at breach time.
        elapsed_seconds: Seconds since run start when the breach was seen.
        window_count: Requests in the trailing window that was evaluated.
    """

    rule: ThresholdRule
    observed: float
    elapsed_seconds: float
    window_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule.describe(),
            "observed": self.observed,
            "elapsed_seconds": self.elapsed_seconds,
            "window_count": self.window_count,
        }


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------


def _canonical_metric(name: str) -> str:
    key = name.strip()
    metric = _METRIC_ALIASES.get(key, key)
    if metric not in METRICS:
        raise ConfigurationError(f"Unknown threshold metric: {name!r}")
    return metric


def _parse_comparator(value: Any) -> Comparator:
    text = str(value).strip()
    if text in _COMPARATOR_ALIASES:
        return _COMPARATOR_ALIASES[text]
    try:
        return Comparator(text)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown threshold comparator: {value!r}") from exc


def _finite_bound(value: Any) -> float:
    bound = float(value)
    if not math.isfinite(bound):
        raise ConfigurationError(f"Threshold bound must be finite: {value!r}")
    return bound


def parse_expression(expression: str) -> tuple[str, Comparator, float]:
    """
    Split a k6-style expression such as ``"p(95)<500"`` into its parts.

    Raises:
        ConfigurationError: If the expression is not ``metric op number``.
    """
    match = _EXPRESSION.match(expression)
    if match is None:
        raise ConfigurationError(f"Cannot parse threshold expression: {expression!r}")
    return (
        _canonical_metric(match.group("metric")),
        Comparator(match.group("comparator")),
        _finite_bound(match.group("bound")),
    )


def parse_rule(entry: Any, *, exclude_rate_limited: bool = False) -> ThresholdRule:
    """
    Build a :class:`ThresholdRule` from one plan entry.

    Args:
        entry: An expression string, or a mapping with either ``expr``
            or ``metric``/``comparator``/``bound`` plus optional
            ``abort_on_breach``, ``endpoint`` and ``exclude_rate_limited``.
        exclude_rate_limited: Run-level default for rules that do not
            say otherwise.

    Raises:
        ConfigurationError: If the entry is malformed.
    """
    if isinstance(entry, str):
        metric, comparator, bound = parse_expression(entry)
        return ThresholdRule(
            metric=metric,
            comparator=comparator,
            bound=bound,
            exclude_rate_limited=exclude_rate_limited,
        )

    if not isinstance(entry, Mapping):
        raise ConfigurationError(f"Invalid threshold entry: {entry!r}")

    if "expr" in entry:
        metric, comparator, bound = parse_expression(str(entry["expr"]))
    else:
        try:
            metric = _canonical_metric(str(entry["metric"]))
            comparator = _parse_comparator(entry["comparator"])
            bound = _finite_bound(entry["bound"])
        except ConfigurationError:
            raise
        except KeyError as exc:
            raise ConfigurationError(f"Threshold entry missing key {exc}: {entry!r}") from exc
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Non-numeric threshold bound: {entry!r}") from exc

    endpoint = entry.get("endpoint")
    if endpoint is not None and metric in RATE_METRICS:
        raise ConfigurationError(f"Metric {metric!r} cannot be scoped to an endpoint")

    return ThresholdRule(
        metric=metric,
        comparator=comparator,
        bound=bound,
        abort_on_breach=bool(entry.get("abort_on_breach", False)),
        endpoint=endpoint,
        exclude_rate_limited=bool(entry.get("exclude_rate_limited", exclude_rate_limited)),
    )


def parse_rules(
    entries: Iterable[Any] | None, *, exclude_rate_limited: bool = False
) -> tuple[ThresholdRule, ...]:
    """Parse every threshold entry of a plan."""
    if entries is None:
        return ()
    if isinstance(entries, (str, Mapping)):
        raise ConfigurationError("thresholds must be a list")
    return tuple(parse_rule(entry, exclude_rate_limited=exclude_rate_limited) for entry in entries)


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------


def observe(rule: ThresholdRule, snapshot: AggregateSnapshot) -> float | None:
    """Return the value of the rule's metric in *snapshot*, or ``None`` without data."""
    if rule.metric == "throughput":
        return snapshot.throughput_bytes_per_sec
    if rule.metric == "requests_per_sec":
        return snapshot.requests_per_sec

    stats: BreakdownStats | None = snapshot
    if rule.endpoint is not None:
        stats = snapshot.endpoints.get(rule.endpoint)
    if stats is None:
        return None

    if rule.metric == "count":
        return float(stats.count)
    if rule.metric == "error_rate":
        if rule.exclude_rate_limited:
            return stats.error_rate_excluding_rate_limited
        return stats.error_rate
    return getattr(stats.latency, LATENCY_METRICS[rule.metric])


def sample_count(rule: ThresholdRule, snapshot: AggregateSnapshot) -> int:
    """Number of requests in *snapshot* that the rule's metric is computed over."""
    if rule.endpoint is None:
        return snapshot.count
    stats = snapshot.endpoints.get(rule.endpoint)
    return 0 if stats is None else stats.count


def evaluate_rule(rule: ThresholdRule, snapshot: AggregateSnapshot) -> ThresholdResult:
    observed = observe(rule, snapshot)
    if observed is None:
        return ThresholdResult(rule=rule, observed=None, status=ThresholdStatus.NO_DATA)
    status = ThresholdStatus.PASS if rule.check(observed) else ThresholdStatus.FAIL
    return ThresholdResult(rule=rule, observed=observed, status=status)


def evaluate_rules(
    rules: Sequence[ThresholdRule], snapshot: AggregateSnapshot
) -> tuple[ThresholdResult, ...]:
    """Evaluate every rule independently against the same snapshot."""
    return tuple(evaluate_rule(rule, snapshot) for rule in rules)


# ----------------------------------------------------------------------
# Live evaluation
# ----------------------------------------------------------------------


class ThresholdWatcher(threading.Thread):
    """
    Poll abort-on-breach rules against the trailing window.

    The first breach observed is stored in :attr:`breach` and handed to
    ``on_breach`` (which the runner wires to the scheduler's global stop);
    the watcher then exits.

    Args:
        rules: Rules to watch; those without ``abort_on_breach`` are ignored.
        aggregator: Shared aggregator to sample.
        on_breach: Callback receiving the :class:`BreachRecord`.
        poll_interval: Seconds between polls.
        min_samples: Minimum requests a rule must observe in the window
            (its endpoint's requests for scoped rules) before it can breach.
    """

    def __init__(
        self,
        rules: Sequence[ThresholdRule],
        aggregator: MetricsAggregator,
        on_breach: Callable[[BreachRecord], None],
        *,
        poll_interval: float = 1.0,
        min_samples: int = 1,
    ) -> None:
        super().__init__(name="threshold-watcher", daemon=True)
        self.rules = tuple(rule for rule in rules if rule.abort_on_breach)
        self.poll_interval = poll_interval
        self.min_samples = max(1, min_samples)
        self.breach: BreachRecord | None = None
        self.polls = 0
        self._aggregator = aggregator
        self._on_breach = on_breach
        self._stopped = threading.Event()

    def stop(self) -> None:
        self._stopped.set()

    def poll(self) -> BreachRecord | None:
        """Evaluate the watched rules once against the current window."""
        self.polls += 1
        snapshot = self._aggregator.window_snapshot()
        for rule in self.rules:
            samples = sample_count(rule, snapshot)
            if samples < self.min_samples:
                continue
            result = evaluate_rule(rule, snapshot)
            if result.status is ThresholdStatus.FAIL:
                return BreachRecord(
                    rule=rule,
                    observed=result.observed,
                    elapsed_seconds=self._aggregator.elapsed(),
                    window_count=samples,
                )
        return None

    def run(self) -> None:
        if not self.rules:
            return
        while not self._stopped.wait(self.poll_interval):
            breach = self.poll()
            if breach is not None:
                self.breach = breach
                logger.warning(
                    "Threshold breached at %.1fs: %s (observed %.4g over %d requests)",
                    breach.elapsed_seconds,
                    breach.rule.describe(),
                    breach.observed,
                    breach.window_count,
                )
                self._on_breach(breach)
                return
