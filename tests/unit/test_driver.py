"""
Unit tests for endpoint selection, think time and the request driver.

Key Concepts Demonstrated:
- Stubbing HTTP with a fake session instead of a live server
- Seeded random sources for reproducible selection sequences
"""

import random
from collections import Counter

import pytest
import requests

from loadstage.driver import EndpointSet, RequestDriver, ThinkTime, endpoint_set_from_paths
from loadstage.exceptions import ConfigurationError
from loadstage.metrics import MetricsAggregator
from loadstage.models import EndpointPolicy
from loadstage.scheduler import VirtualUser


pytestmark = pytest.mark.unit


class _FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b'{"ok": true}') -> None:
        self.status_code = status_code
        self.content = content


class _FakeSession:
    """Records requested URLs and answers from a canned response or error."""

    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response or _FakeResponse()
        self.error = error
        self.calls: list[tuple[str, float]] = []
        self.closed = False

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        if self.error is not None:
            raise self.error
        return self.response

    def close(self):
        self.closed = True


# =============================================================================
# Think time
# =============================================================================

class TestThinkTime:
    """Tests for ThinkTime."""

    def test_fixed_pause(self):
        assert ThinkTime(1.5, 1.5).sample(random.Random(1)) == 1.5

    def test_uniform_pause_stays_within_bounds(self):
        think = ThinkTime(1.0, 3.0)
        rng = random.Random(3)

        samples = [think.sample(rng) for _ in range(200)]

        assert all(1.0 <= sample <= 3.0 for sample in samples)
        assert len(set(samples)) > 1

    @pytest.mark.parametrize("minimum, maximum", [(-1, 1), (2, 1), (0, -0.5)])
    def test_invalid_bounds(self, minimum, maximum):
        with pytest.raises(ConfigurationError):
            ThinkTime(minimum, maximum)


# =============================================================================
# Endpoint selection
# =============================================================================

class TestEndpointSet:
    """Tests for EndpointSet selection policies."""

    def test_fixed_always_returns_single_path(self):
        endpoints = EndpointSet(EndpointPolicy.FIXED, ("/api/health",))
        rng = random.Random(0)

        assert {endpoints.choose(rng) for _ in range(20)} == {"/api/health"}

    def test_uniform_covers_every_path(self):
        endpoints = EndpointSet(EndpointPolicy.UNIFORM, ("/a", "/b", "/c"))
        rng = random.Random(0)

        picks = Counter(endpoints.choose(rng) for _ in range(3000))

        assert set(picks) == {"/a", "/b", "/c"}
        assert all(800 < count < 1200 for count in picks.values())

    def test_weighted_respects_weights(self):
        endpoints = EndpointSet(EndpointPolicy.WEIGHTED, ("/light", "/heavy"), (8.0, 2.0))
        rng = random.Random(11)

        picks = Counter(endpoints.choose(rng) for _ in range(5000))

        assert 0.75 < picks["/light"] / 5000 < 0.85

    def test_zero_weight_path_is_never_chosen(self):
        endpoints = EndpointSet(EndpointPolicy.WEIGHTED, ("/a", "/never"), (1.0, 0.0))
        rng = random.Random(5)

        assert {endpoints.choose(rng) for _ in range(500)} == {"/a"}

    def test_same_seed_same_sequence(self):
        endpoints = EndpointSet(EndpointPolicy.UNIFORM, ("/a", "/b", "/c", "/d"))

        rng_a, rng_b = random.Random("7:3"), random.Random("7:3")

        assert [endpoints.choose(rng_a) for _ in range(50)] == [
            endpoints.choose(rng_b) for _ in range(50)
        ]

    @pytest.mark.parametrize(
        "policy, paths, weights",
        [
            (EndpointPolicy.UNIFORM, (), None),
            (EndpointPolicy.UNIFORM, ("no-slash",), None),
            (EndpointPolicy.FIXED, ("/a", "/b"), None),
            (EndpointPolicy.WEIGHTED, ("/a", "/b"), None),
            (EndpointPolicy.WEIGHTED, ("/a", "/b"), (1.0,)),
            (EndpointPolicy.WEIGHTED, ("/a",), (0.0,)),
        ],
    )
    def test_invalid_sets(self, policy, paths, weights):
        with pytest.raises(ConfigurationError):
            EndpointSet(policy, paths, weights)

    def test_from_paths_accepts_mappings(self):
        endpoints = endpoint_set_from_paths(
            EndpointPolicy.WEIGHTED, ["/a", {"path": "/b", "weight": 3}]
        )

        assert endpoints.paths == ("/a", "/b")
        assert endpoints.weights == (1.0, 3.0)
        assert endpoints.to_dict() == {
            "policy": "weighted",
            "paths": [{"path": "/a", "weight": 1.0}, {"path": "/b", "weight": 3.0}],
        }

    def test_from_paths_rejects_non_numeric_weight(self):
        with pytest.raises(ConfigurationError, match="Non-numeric weight"):
            endpoint_set_from_paths(EndpointPolicy.WEIGHTED, [{"path": "/a", "weight": "lots"}])


# =============================================================================
# Request driver
# =============================================================================

@pytest.fixture
def driver(fake_clock):
    aggregator = MetricsAggregator(clock=fake_clock)
    aggregator.start()
    return RequestDriver(
        base_url="http://target.test/",
        endpoints=EndpointSet(EndpointPolicy.FIXED, ("/api/health",)),
        think_time=ThinkTime(0.25, 0.25),
        aggregator=aggregator,
        timeout=3.0,
        headers={"X-Run": "unit"},
    )


class TestRequestDriver:
    """Tests for RequestDriver."""

    def test_issue_records_status_and_size(self, driver):
        # Arrange
        session = _FakeSession(_FakeResponse(201, b"12345"))

        # Act
        outcome = driver.issue(session, "/api/health", user_id=4)

        # Assert
        assert session.calls == [("http://target.test/api/health", 3.0)]
        assert outcome.status_code == 201
        assert outcome.bytes_received == 5
        assert outcome.user_id == 4
        assert outcome.latency_ms >= 0

    def test_transport_error_becomes_outcome(self, driver):
        session = _FakeSession(error=requests.ConnectionError("refused"))

        outcome = driver.issue(session, "/api/health")

        assert outcome.status_code is None
        assert outcome.error == "ConnectionError"
        assert outcome.is_transport_error

    def test_timeout_becomes_outcome(self, driver):
        session = _FakeSession(error=requests.Timeout("slow"))

        outcome = driver.issue(session, "/api/health")

        assert outcome.error == "Timeout"

    def test_iterate_records_outcome_and_returns_think_time(self, driver):
        # Arrange
        user = VirtualUser(0, driver.iterate, rng=random.Random(1), session=_FakeSession())

        # Act
        pause = driver.iterate(user)

        # Assert
        assert pause == 0.25
        assert driver.aggregator.snapshot().count == 1

    def test_new_session_carries_plan_headers(self, driver):
        session = driver.new_session()
        try:
            assert session.headers["X-Run"] == "unit"
            assert session.headers["User-Agent"].startswith("loadstage/")
        finally:
            session.close()
