"""
Unit tests for runner helpers: per-user random sources and preflight.
"""

import pytest
import requests

from loadstage import create_runner
from loadstage.config import get_config
from loadstage.exceptions import LoadstageError, PreflightError, RunError
from loadstage.runner import LoadRunner, user_rng
from loadstage.scheduler import VirtualUser


pytestmark = pytest.mark.unit

SETTINGS = get_config("testing")


class _FakeResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


def test_seeded_users_repeat_their_sequences():
    first, again = user_rng(42, 3), user_rng(42, 3)

    assert [first.random() for _ in range(5)] == [again.random() for _ in range(5)]


def test_users_of_one_run_get_independent_sequences():
    a = user_rng(42, 0)
    b = user_rng(42, 1)

    assert [a.random() for _ in range(5)] != [b.random() for _ in range(5)]


def test_unseeded_users_are_not_identical():
    assert user_rng(None, 0).random() != user_rng(None, 0).random()


class TestPreflight:
    """Tests for the health check run before load starts."""

    def test_skipped_without_preflight_path(self, plan_factory, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("no request expected")

        monkeypatch.setattr("loadstage.runner.requests.get", fail)

        LoadRunner(plan_factory(), settings=SETTINGS, write=False).preflight()

    def test_healthy_target(self, plan_factory, monkeypatch):
        seen = {}

        def fake_get(url, timeout=None, headers=None):
            seen["url"] = url
            return _FakeResponse(200)

        monkeypatch.setattr("loadstage.runner.requests.get", fake_get)
        plan = plan_factory(preflight_path="/api/health")

        LoadRunner(plan, settings=SETTINGS, write=False).preflight()

        assert seen["url"] == "http://localhost:5001/api/health"

    def test_unhealthy_status(self, plan_factory, monkeypatch):
        monkeypatch.setattr(
            "loadstage.runner.requests.get", lambda *a, **kw: _FakeResponse(503)
        )
        runner = LoadRunner(
            plan_factory(preflight_path="/api/health"), settings=SETTINGS, write=False
        )

        with pytest.raises(PreflightError, match="HTTP 503"):
            runner.preflight()

    def test_unreachable_target(self, plan_factory, monkeypatch):
        def refuse(*args, **kwargs):
            raise requests.ConnectionError("connection refused")

        monkeypatch.setattr("loadstage.runner.requests.get", refuse)
        runner = LoadRunner(
            plan_factory(preflight_path="/api/health"), settings=SETTINGS, write=False
        )

        with pytest.raises(PreflightError, match="connection refused"):
            runner.run()


def test_create_runner_uses_named_config(plan_factory, tmp_path):
    runner = create_runner(plan_factory(), env="testing", results_dir=tmp_path)

    assert runner.settings is SETTINGS
    assert runner.results_dir == tmp_path


def test_scheduler_failure_is_raised_as_run_error(plan_factory, monkeypatch, tmp_path):
    # Arrange: the OS refuses to start another thread
    class _UnstartableUser(VirtualUser):
        def start(self):
            raise RuntimeError("can't start new thread")

    monkeypatch.setattr("loadstage.runner.VirtualUser", _UnstartableUser)
    runner = LoadRunner(plan_factory(), settings=SETTINGS, results_dir=tmp_path)

    # Act
    with pytest.raises(RunError, match="can't start new thread") as excinfo:
        runner.run()

    # Assert
    assert isinstance(excinfo.value, LoadstageError)
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert runner.report_path is None
    assert list(tmp_path.iterdir()) == []
