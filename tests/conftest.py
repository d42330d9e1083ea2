"""
Shared pytest fixtures for the loadstage test suite.

Key Concepts Demonstrated:
- Manually advanced clock for deterministic timing tests
- Factory fixtures for outcomes and run plans
- Live stub target served from a background thread
"""

import os
from collections.abc import Generator
from typing import Any

import pytest

# Set testing environment before importing the engine
os.environ["LOADSTAGE_ENV"] = "testing"

from loadstage.models import RequestOutcome
from loadstage.plan import RunConfig, plan_from_dict
from shared.stub_target import StubBehavior, StubTarget, running_stub_target


# -----------------------------------------------------------------------------
# Clock Fixtures
# -----------------------------------------------------------------------------

class FakeClock:
    """Monotonic clock that only moves when a test advances it."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# -----------------------------------------------------------------------------
# Test Data Factory Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def outcome_factory():
    """
    Factory fixture for :class:`RequestOutcome` records.

    Example:
        def test_something(outcome_factory):
            outcome = outcome_factory(status_code=500, latency_ms=80)
    """

    def _create_outcome(
        endpoint: str = "/api/health",
        status_code: int | None = 200,
        latency_ms: float = 10.0,
        timestamp: float = 0.0,
        bytes_received: int = 100,
        error: str | None = None,
        user_id: int | None = 0,
    ) -> RequestOutcome:
        return RequestOutcome(
            endpoint=endpoint,
            status_code=status_code,
            latency_ms=latency_ms,
            timestamp=timestamp,
            bytes_received=bytes_received,
            error=error if status_code is not None else (error or "ConnectionError"),
            user_id=user_id,
        )

    return _create_outcome


@pytest.fixture
def plan_data() -> dict[str, Any]:
    """Provide a minimal valid run plan mapping."""
    return {
        "name": "unit",
        "base_url": "http://localhost:5001",
        "stages": [
            {"target": 2, "duration": "1s"},
            {"target": 2, "duration": "2s"},
            {"target": 0, "duration": "1s"},
        ],
        "endpoints": {"policy": "uniform", "paths": ["/api/health", "/api/stats"]},
        "think_time": {"min": 0, "max": 0},
        "timeout": 2,
    }


@pytest.fixture
def plan_factory(plan_data):
    """Factory fixture building a :class:`RunConfig` from ``plan_data`` plus overrides."""

    def _create_plan(**overrides: Any) -> RunConfig:
        data = dict(plan_data)
        data.update(overrides)
        return plan_from_dict(data)

    return _create_plan


# -----------------------------------------------------------------------------
# Server Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def stub_target() -> Generator[StubTarget, None, None]:
    """
    Start a stub HTTP target for one test.

    Tests tune ``stub_target.behavior`` before starting a run.

    Yields:
        StubTarget: Running target; ``stub_target.url`` is its base URL.
    """
    yield from running_stub_target(StubBehavior())


@pytest.fixture
def results_dir(tmp_path):
    return tmp_path / "results"
