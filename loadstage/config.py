"""
Engine configuration module.

Defines configuration classes for the timing knobs of the engine
(scheduler cadence, threshold polling, grace period, trailing window)
and where reports are written.  Values are loaded from environment
variables with sensible defaults; the run plan itself (stages,
endpoints, thresholds) lives in YAML and is handled by
:mod:`loadstage.plan`.
"""

from __future__ import annotations

import os
from pathlib import Path

# Base directory of the project
BASE_DIR = Path(__file__).resolve().parent.parent


class Config:
    """Base configuration with default settings."""

    # How often the scheduler re-computes desired concurrency and
    # spawns/retires virtual users.  Must stay sub-second.
    ADJUST_INTERVAL: float = float(os.environ.get("LOADSTAGE_ADJUST_INTERVAL", "0.1"))

    # Cadence of live threshold evaluation against the trailing window.
    POLL_INTERVAL: float = float(os.environ.get("LOADSTAGE_POLL_INTERVAL", "1.0"))

    # Seconds to wait for virtual users to finish their last iteration
    # after the final stage before they are abandoned.
    GRACE_PERIOD: float = float(os.environ.get("LOADSTAGE_GRACE_PERIOD", "5.0"))

    # Trailing window used for live evaluation and progress ticks.
    WINDOW_SECONDS: float = float(os.environ.get("LOADSTAGE_WINDOW_SECONDS", "10.0"))
    WINDOW_MAX_SAMPLES: int = int(os.environ.get("LOADSTAGE_WINDOW_MAX_SAMPLES", "50000"))

    # A live abort is only considered once this many requests are in the window.
    ABORT_MIN_SAMPLES: int = int(os.environ.get("LOADSTAGE_ABORT_MIN_SAMPLES", "20"))

    PROGRESS_INTERVAL: float = float(os.environ.get("LOADSTAGE_PROGRESS_INTERVAL", "5.0"))

    RESULTS_DIR: str = os.environ.get("LOADSTAGE_RESULTS_DIR", str(BASE_DIR / "results"))

    LOG_LEVEL: str = os.environ.get("LOADSTAGE_LOG_LEVEL", "INFO")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    LOG_LEVEL: str = os.environ.get("LOADSTAGE_LOG_LEVEL", "DEBUG")


class TestingConfig(Config):
    """
    Testing environment configuration.

    Shrinks every cadence so condensed scenarios of a few seconds still
    get several scheduler adjustments and threshold polls.
    """

    ADJUST_INTERVAL: float = 0.05
    POLL_INTERVAL: float = 0.25
    GRACE_PERIOD: float = 1.0
    WINDOW_SECONDS: float = 2.0
    ABORT_MIN_SAMPLES: int = 10
    PROGRESS_INTERVAL: float = 1.0
    RESULTS_DIR: str = os.environ.get(
        "TEST_LOADSTAGE_RESULTS_DIR", str(BASE_DIR / "instance" / "test_results")
    )


class ProductionConfig(Config):
    """Configuration for CI gates and scheduled runs."""

    LOG_LEVEL: str = os.environ.get("LOADSTAGE_LOG_LEVEL", "INFO")


# Configuration mapping for easy access
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": ProductionConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Get the configuration class for the specified environment.

    Args:
        env: Environment name (development, testing, production).
             If None, uses the LOADSTAGE_ENV environment variable.

    Returns:
        Configuration class for the specified environment.
    """
    if env is None:
        env = os.environ.get("LOADSTAGE_ENV", "production")
    return config.get(env, config["default"])
