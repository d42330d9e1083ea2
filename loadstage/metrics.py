"""
Thread-safe metrics aggregation.

Every virtual user appends :class:`~loadstage.models.RequestOutcome`
records to one :class:`MetricsAggregator` owned by the run.  Snapshots
are derived on demand and never stored:

- :meth:`MetricsAggregator.snapshot` covers everything since the run
  started, built from running tallies.
- :meth:`MetricsAggregator.window_snapshot` covers only the trailing
  window, built from a bounded ring of recent outcomes so live
  threshold polling never rescans the whole run.

Both paths summarise through the same :class:`_Tally` so that a window
wide enough to cover the whole run yields the same numbers as the full
snapshot.

Percentiles use the nearest-rank method: the value at 1-based rank
``ceil(p / 100 * n)`` of the sorted sample.  Statistics over an empty
sample are ``None``, which reports render as "no data".
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import Counter, deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from loadstage.models import RequestOutcome, Stage, StageKind, classify_stages, stage_index_at

logger = logging.getLogger(__name__)

TRANSPORT_ERROR_KEY = "transport_error"


def percentile(sorted_values: Sequence[float], pct: float) -> float | None:
    """
    Return the nearest-rank percentile of an ascending sequence.

    Args:
        sorted_values: Samples sorted in ascending order.
        pct: Percentile in the range ``(0, 100]``.

    Returns:
        The sample at rank ``ceil(pct / 100 * n)``, or ``None`` when the
        sequence is empty.
    """
    if not sorted_values:
        return None
    rank = max(1, math.ceil(pct / 100.0 * len(sorted_values)))
    return sorted_values[min(rank, len(sorted_values)) - 1]


def _ratio(numerator: int, denominator: int) -> float | None:
    if denominator <= 0:
        return None
    return numerator / denominator


@dataclass(frozen=True)
class LatencySummary:
    """Latency distribution in milliseconds; every field is ``None`` without data."""

    min: float | None = None
    avg: float | None = None
    p50: float | None = None
    p90: float | None = None
    p95: float | None = None
    p99: float | None = None
    max: float | None = None

    @classmethod
    def from_samples(cls, samples: Sequence[float]) -> LatencySummary:
        if not samples:
            return cls()
        ordered = sorted(samples)
        return cls(
            min=ordered[0],
            avg=sum(ordered) / len(ordered),
            p50=percentile(ordered, 50),
            p90=percentile(ordered, 90),
            p95=percentile(ordered, 95),
            p99=percentile(ordered, 99),
            max=ordered[-1],
        )

    def to_dict(self) -> dict[str, float | None]:
        return {
            "min": self.min,
            "avg": self.avg,
            "p50": self.p50,
            "p90": self.p90,
            "p95": self.p95,
            "p99": self.p99,
            "max": self.max,
        }


@dataclass(frozen=True)
class BreakdownStats:
    """
    Counts and latency for a subset of outcomes (one endpoint or one stage).

    Attributes:
        count: Number of requests in the subset.
        failures: Requests that did not return a 2xx status, including
            transport errors and 429 responses.
        rate_limited: Requests answered with 429.
        transport_errors: Requests that never got an HTTP status.
        bytes_received: Total response body bytes.
        latency: Latency distribution of the subset.
    """

    count: int = 0
    failures: int = 0
    rate_limited: int = 0
    transport_errors: int = 0
    bytes_received: int = 0
    latency: LatencySummary = field(default_factory=LatencySummary)

    @property
    def error_rate(self) -> float | None:
        return _ratio(self.failures, self.count)

    @property
    def error_rate_excluding_rate_limited(self) -> float | None:
        """Error rate with 429 responses counted as non-failing."""
        return _ratio(self.failures - self.rate_limited, self.count)

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "failures": self.failures,
            "rate_limited": self.rate_limited,
            "transport_errors": self.transport_errors,
            "bytes_received": self.bytes_received,
            "error_rate": self.error_rate,
            "error_rate_excluding_rate_limited": self.error_rate_excluding_rate_limited,
            "latency_ms": self.latency.to_dict(),
        }


@dataclass(frozen=True)
class StageStats(BreakdownStats):
    """Per-stage breakdown, tagged with the stage's position and shape."""

    index: int = 0
    start_target: int = 0
    target: int = 0
    kind: StageKind = StageKind.HOLD

    def to_dict(self) -> dict[str, Any]:
        data = {
            "index": self.index,
            "start_target": self.start_target,
            "target": self.target,
            "kind": self.kind.value,
        }
        data.update(super().to_dict())
        return data


@dataclass(frozen=True)
class AggregateSnapshot(BreakdownStats):
    """
    Aggregate view over an outcome set at the moment of the query.

    Extends :class:`BreakdownStats` with wall-clock derived rates and
    the per-status, per-endpoint and per-stage breakdowns.

    Attributes:
        window_seconds: Wall-clock span the rates are computed over.
        status_counts: Requests per HTTP status (``"transport_error"``
            for requests without a status).
        endpoints: Breakdown keyed by endpoint path.
        stages: Breakdown per stage of the plan, in plan order.
        dropped: Outcomes discarded because they arrived after the
            aggregator was sealed.
    """

    window_seconds: float = 0.0
    status_counts: dict[str, int] = field(default_factory=dict)
    endpoints: dict[str, BreakdownStats] = field(default_factory=dict)
    stages: tuple[StageStats, ...] = ()
    dropped: int = 0

    @property
    def throughput_bytes_per_sec(self) -> float | None:
        if self.window_seconds <= 0:
            return None
        return self.bytes_received / self.window_seconds

    @property
    def requests_per_sec(self) -> float | None:
        if self.window_seconds <= 0:
            return None
        return self.count / self.window_seconds

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "window_seconds": self.window_seconds,
                "throughput_bytes_per_sec": self.throughput_bytes_per_sec,
                "requests_per_sec": self.requests_per_sec,
                "status_counts": dict(sorted(self.status_counts.items())),
                "endpoints": {
                    name: stats.to_dict() for name, stats in sorted(self.endpoints.items())
                },
                "stages": [stage.to_dict() for stage in self.stages],
                "dropped": self.dropped,
            }
        )
        return data


class _Tally:
    """Running counters plus raw latencies for one subset of outcomes."""

    __slots__ = (
        "count",
        "failures",
        "rate_limited",
        "transport_errors",
        "bytes_received",
        "latencies",
        "statuses",
    )

    def __init__(self) -> None:
        self.count = 0
        self.failures = 0
        self.rate_limited = 0
        self.transport_errors = 0
        self.bytes_received = 0
        self.latencies: list[float] = []
        self.statuses: Counter[str] = Counter()

    def add(self, outcome: RequestOutcome) -> None:
        self.count += 1
        self.bytes_received += outcome.bytes_received
        self.latencies.append(outcome.latency_ms)
        if not outcome.is_success:
            self.failures += 1
        if outcome.is_rate_limited:
            self.rate_limited += 1
        if outcome.is_transport_error:
            self.transport_errors += 1
            self.statuses[TRANSPORT_ERROR_KEY] += 1
        else:
            self.statuses[str(outcome.status_code)] += 1

    def copy(self) -> _Tally:
        clone = _Tally()
        clone.count = self.count
        clone.failures = self.failures
        clone.rate_limited = self.rate_limited
        clone.transport_errors = self.transport_errors
        clone.bytes_received = self.bytes_received
        clone.latencies = list(self.latencies)
        clone.statuses = Counter(self.statuses)
        return clone

    def fields(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "failures": self.failures,
            "rate_limited": self.rate_limited,
            "transport_errors": self.transport_errors,
            "bytes_received": self.bytes_received,
            "latency": LatencySummary.from_samples(self.latencies),
        }


class MetricsAggregator:
    """
    Append-only, internally synchronised store of request outcomes.

    One instance is created per run and passed explicitly to the request
    driver (writer) and to the threshold watcher, progress ticks and
    reporting (readers).  The lock guards only in-memory bookkeeping, so
    a virtual user is never blocked for longer than a counter update.

    Args:
        stages: The run's stage plan, used to bucket outcomes per stage.
        window_seconds: Width of the trailing window.
        window_max_samples: Capacity of the ring buffer backing the
            trailing window.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        stages: Sequence[Stage] = (),
        *,
        window_seconds: float = 10.0,
        window_max_samples: int = 50_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.stages = tuple(stages)
        self._kinds = classify_stages(self.stages)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._started_at: float | None = None
        self._sealed_at: float | None = None
        self._dropped = 0
        self._total = _Tally()
        self._by_endpoint: dict[str, _Tally] = {}
        self._by_stage: list[_Tally] = [_Tally() for _ in self.stages]
        self._recent: deque[RequestOutcome] = deque(maxlen=window_max_samples)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, at: float | None = None) -> None:
        """Mark the start of the run; outcome timestamps are relative to it."""
        with self._lock:
            self._started_at = self._clock() if at is None else at

    def seal(self) -> None:
        """Stop accepting outcomes and freeze the run's elapsed time."""
        with self._lock:
            if self._sealed_at is None:
                self._sealed_at = self._clock()
                logger.debug("Aggregator sealed after %d outcomes", self._total.count)

    @property
    def sealed(self) -> bool:
        return self._sealed_at is not None

    @property
    def dropped(self) -> int:
        return self._dropped

    def elapsed(self) -> float:
        """Seconds since :meth:`start`, frozen once the aggregator is sealed."""
        if self._started_at is None:
            return 0.0
        end = self._sealed_at if self._sealed_at is not None else self._clock()
        return max(0.0, end - self._started_at)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record(self, outcome: RequestOutcome) -> bool:
        """
        Append one outcome.

        Returns:
            ``True`` if the outcome was counted, ``False`` if it was
            dropped because the aggregator is sealed.
        """
        with self._lock:
            if self._sealed_at is not None:
                self._dropped += 1
                return False
            self._total.add(outcome)
            tally = self._by_endpoint.get(outcome.endpoint)
            if tally is None:
                tally = self._by_endpoint[outcome.endpoint] = _Tally()
            tally.add(outcome)
            if self._by_stage:
                self._by_stage[stage_index_at(self.stages, outcome.timestamp)].add(outcome)
            self._recent.append(outcome)
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> AggregateSnapshot:
        """Build a snapshot of every outcome recorded since the run started."""
        with self._lock:
            total = self._total.copy()
            by_endpoint = {name: tally.copy() for name, tally in self._by_endpoint.items()}
            by_stage = [tally.copy() for tally in self._by_stage]
            dropped = self._dropped
        return self._build(total, by_endpoint, by_stage, self.elapsed(), dropped)

    def window_snapshot(self, window_seconds: float | None = None) -> AggregateSnapshot:
        """
        Build a snapshot of outcomes completed within the trailing window.

        Args:
            window_seconds: Override for the window width; defaults to the
                aggregator's configured window.
        """
        width = self.window_seconds if window_seconds is None else float(window_seconds)
        with self._lock:
            recent = list(self._recent)
            dropped = self._dropped
        now = self.elapsed()
        cutoff = now - width

        total = _Tally()
        by_endpoint: dict[str, _Tally] = {}
        by_stage = [_Tally() for _ in self.stages]
        for outcome in recent:
            if outcome.timestamp + outcome.latency_ms / 1000.0 < cutoff:
                continue
            total.add(outcome)
            by_endpoint.setdefault(outcome.endpoint, _Tally()).add(outcome)
            if by_stage:
                by_stage[stage_index_at(self.stages, outcome.timestamp)].add(outcome)
        return self._build(total, by_endpoint, by_stage, min(width, now), dropped)

    def _build(
        self,
        total: _Tally,
        by_endpoint: dict[str, _Tally],
        by_stage: list[_Tally],
        window_seconds: float,
        dropped: int,
    ) -> AggregateSnapshot:
        stages = []
        previous_target = 0
        for index, (stage, kind, tally) in enumerate(zip(self.stages, self._kinds, by_stage)):
            stages.append(
                StageStats(
                    index=index,
                    start_target=previous_target,
                    target=stage.target,
                    kind=kind,
                    **tally.fields(),
                )
            )
            previous_target = stage.target

        return AggregateSnapshot(
            window_seconds=window_seconds,
            status_counts=dict(total.statuses),
            endpoints={
                name: BreakdownStats(**tally.fields()) for name, tally in by_endpoint.items()
            },
            stages=tuple(stages),
            dropped=dropped,
            **total.fields(),
        )
