"""
Unit tests for metrics aggregation.

Key Concepts Demonstrated:
- Deterministic time via a manually advanced clock
- Concurrent writers hitting one aggregator
- Agreement between full and trailing-window snapshots
"""

import threading

import pytest

from loadstage.metrics import LatencySummary, MetricsAggregator, percentile
from loadstage.models import Stage, StageKind


pytestmark = pytest.mark.unit


# =============================================================================
# Percentiles
# =============================================================================

class TestPercentile:
    """Tests for the nearest-rank percentile."""

    def test_empty_sample_has_no_data(self):
        assert percentile([], 95) is None

    def test_single_sample(self):
        assert percentile([42.0], 50) == 42.0
        assert percentile([42.0], 99) == 42.0

    def test_nearest_rank_on_one_to_hundred(self):
        values = [float(v) for v in range(1, 101)]

        assert percentile(values, 50) == 50.0
        assert percentile(values, 90) == 90.0
        assert percentile(values, 95) == 95.0
        assert percentile(values, 99) == 99.0
        assert percentile(values, 100) == 100.0

    def test_rank_rounds_up(self):
        # ceil(0.95 * 10) = 10 -> the largest sample
        values = [float(v) for v in range(1, 11)]

        assert percentile(values, 95) == 10.0
        assert percentile(values, 50) == 5.0


def test_latency_summary_without_samples_is_all_none():
    summary = LatencySummary.from_samples([])

    assert summary.to_dict() == {
        "min": None, "avg": None, "p50": None, "p90": None, "p95": None, "p99": None, "max": None,
    }


# =============================================================================
# Aggregator
# =============================================================================

@pytest.fixture
def aggregator(fake_clock):
    agg = MetricsAggregator(
        [Stage(10, 10), Stage(10, 10), Stage(0, 10)],
        window_seconds=5.0,
        clock=fake_clock,
    )
    agg.start()
    return agg


class TestMetricsAggregator:
    """Tests for MetricsAggregator."""

    def test_empty_snapshot_reports_no_data(self, aggregator):
        snapshot = aggregator.snapshot()

        assert snapshot.count == 0
        assert snapshot.error_rate is None
        assert snapshot.latency.p95 is None
        assert snapshot.requests_per_sec is None

    def test_counts_failures_rate_limits_and_transport_errors(self, aggregator, outcome_factory):
        # Arrange
        outcomes = [
            outcome_factory(status_code=200),
            outcome_factory(status_code=201),
            outcome_factory(status_code=500),
            outcome_factory(status_code=429),
            outcome_factory(status_code=None, bytes_received=0),
        ]

        # Act
        for outcome in outcomes:
            aggregator.record(outcome)
        snapshot = aggregator.snapshot()

        # Assert
        assert snapshot.count == 5
        assert snapshot.failures == 3
        assert snapshot.rate_limited == 1
        assert snapshot.transport_errors == 1
        assert snapshot.error_rate == pytest.approx(0.6)
        assert snapshot.error_rate_excluding_rate_limited == pytest.approx(0.4)
        assert snapshot.status_counts == {
            "200": 1, "201": 1, "500": 1, "429": 1, "transport_error": 1,
        }

    def test_rates_use_elapsed_time(self, aggregator, fake_clock, outcome_factory):
        for _ in range(20):
            aggregator.record(outcome_factory(bytes_received=50))
        fake_clock.advance(4.0)

        snapshot = aggregator.snapshot()

        assert snapshot.window_seconds == pytest.approx(4.0)
        assert snapshot.requests_per_sec == pytest.approx(5.0)
        assert snapshot.throughput_bytes_per_sec == pytest.approx(250.0)

    def test_per_endpoint_breakdown(self, aggregator, outcome_factory):
        aggregator.record(outcome_factory(endpoint="/api/health", latency_ms=5))
        aggregator.record(outcome_factory(endpoint="/api/stats", latency_ms=50, status_code=503))
        aggregator.record(outcome_factory(endpoint="/api/stats", latency_ms=70))

        snapshot = aggregator.snapshot()

        assert set(snapshot.endpoints) == {"/api/health", "/api/stats"}
        assert snapshot.endpoints["/api/stats"].count == 2
        assert snapshot.endpoints["/api/stats"].error_rate == pytest.approx(0.5)
        assert snapshot.endpoints["/api/stats"].latency.max == 70
        assert snapshot.endpoints["/api/health"].latency.avg == 5

    def test_outcomes_are_bucketed_by_stage_of_send_time(self, aggregator, outcome_factory):
        aggregator.record(outcome_factory(timestamp=1.0))
        aggregator.record(outcome_factory(timestamp=12.0, status_code=500))
        aggregator.record(outcome_factory(timestamp=25.0))
        aggregator.record(outcome_factory(timestamp=45.0))

        stages = aggregator.snapshot().stages

        assert [stage.count for stage in stages] == [1, 1, 2]
        assert [stage.kind for stage in stages] == [
            StageKind.RAMP_UP, StageKind.HOLD, StageKind.RAMP_DOWN,
        ]
        assert [stage.start_target for stage in stages] == [0, 10, 10]
        assert stages[1].error_rate == 1.0

    def test_sealed_aggregator_drops_late_outcomes(self, aggregator, fake_clock, outcome_factory):
        # Arrange
        aggregator.record(outcome_factory())
        fake_clock.advance(2.0)
        aggregator.seal()
        fake_clock.advance(3.0)

        # Act
        accepted = aggregator.record(outcome_factory())
        snapshot = aggregator.snapshot()

        # Assert
        assert accepted is False
        assert aggregator.sealed
        assert snapshot.count == 1
        assert snapshot.dropped == 1
        assert aggregator.elapsed() == pytest.approx(2.0)

    def test_window_excludes_outcomes_completed_before_the_window(
        self, aggregator, fake_clock, outcome_factory
    ):
        # Arrange: one early outcome, one recent one
        aggregator.record(outcome_factory(timestamp=0.5, latency_ms=100, status_code=500))
        fake_clock.advance(9.0)
        aggregator.record(outcome_factory(timestamp=8.0, latency_ms=200))
        fake_clock.advance(1.0)

        # Act
        window = aggregator.window_snapshot()
        full = aggregator.snapshot()

        # Assert
        assert full.count == 2
        assert window.count == 1
        assert window.error_rate == 0.0
        assert window.window_seconds == pytest.approx(5.0)

    def test_window_covering_whole_run_matches_full_snapshot(
        self, aggregator, fake_clock, outcome_factory
    ):
        # Arrange
        for index in range(30):
            status = 500 if index % 7 == 0 else 200
            aggregator.record(
                outcome_factory(
                    endpoint=f"/api/e{index % 3}",
                    status_code=status,
                    latency_ms=float(index * 3 + 1),
                    timestamp=index * 0.5,
                )
            )
        fake_clock.advance(15.0)

        # Act
        window = aggregator.window_snapshot(window_seconds=60.0)
        full = aggregator.snapshot()

        # Assert
        assert window.to_dict() == full.to_dict()

    def test_concurrent_writers_lose_nothing(self, aggregator, outcome_factory):
        # Arrange
        writers = 8
        per_writer = 500

        def write(user_id):
            for _ in range(per_writer):
                aggregator.record(outcome_factory(user_id=user_id))

        threads = [threading.Thread(target=write, args=(n,)) for n in range(writers)]

        # Act
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # Assert
        snapshot = aggregator.snapshot()
        assert snapshot.count == writers * per_writer
        assert snapshot.endpoints["/api/health"].count == writers * per_writer

    def test_snapshot_to_dict_shape(self, aggregator, fake_clock, outcome_factory):
        aggregator.record(outcome_factory(latency_ms=12.5))
        fake_clock.advance(1.0)

        data = aggregator.snapshot().to_dict()

        assert data["count"] == 1
        assert data["latency_ms"]["p95"] == 12.5
        assert data["requests_per_sec"] == pytest.approx(1.0)
        assert len(data["stages"]) == 3
        assert data["stages"][0]["kind"] == "ramp_up"
        assert data["endpoints"]["/api/health"]["count"] == 1

    def test_window_must_be_positive(self):
        with pytest.raises(ValueError):
            MetricsAggregator(window_seconds=0)
