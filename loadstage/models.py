"""
Core value types shared by every part of the engine.

This module defines the immutable records that flow between the
scheduler, the request driver and the aggregator.  None of them hold
behaviour beyond small derived properties and ``to_dict`` helpers used
when a report is serialised.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any


class StageKind(str, Enum):
    """Shape of a stage relative to the stage before it."""

    RAMP_UP = "ramp_up"
    RAMP_DOWN = "ramp_down"
    HOLD = "hold"


class EndpointPolicy(str, Enum):
    """Enumeration of endpoint selection policies."""

    FIXED = "fixed"
    UNIFORM = "uniform"
    WEIGHTED = "weighted"


class AssessmentProfile(str, Enum):
    """Enumeration of post-run assessment heuristics."""

    SOAK = "soak"
    SPIKE = "spike"
    LOAD = "load"
    STRESS = "stress"
    BENCHMARK = "benchmark"
    NONE = "none"


class BenchmarkClass(str, Enum):
    """Expected weight of the endpoint a benchmark run hammers."""

    LIGHT = "light"
    MEDIUM = "medium"
    HEAVY = "heavy"


@dataclass(frozen=True)
class Stage:
    """
    A time-boxed segment of a run with a target concurrency level.

    Attributes:
        target: Number of virtual users desired at the end of the stage.
        duration: Length of the stage in seconds (strictly positive).
        name: Optional label carried into reports.
    """

    target: int
    duration: float
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert the stage to a dictionary representation."""
        data: dict[str, Any] = {"target": self.target, "duration": self.duration}
        if self.name:
            data["name"] = self.name
        return data


def classify_stages(stages: Sequence[Stage]) -> list[StageKind]:
    """
    Label each stage as a ramp up, ramp down or hold.

    The first stage is compared against the implicit starting
    concurrency of zero.
    """
    kinds: list[StageKind] = []
    previous = 0
    for stage in stages:
        if stage.target > previous:
            kinds.append(StageKind.RAMP_UP)
        elif stage.target < previous:
            kinds.append(StageKind.RAMP_DOWN)
        else:
            kinds.append(StageKind.HOLD)
        previous = stage.target
    return kinds


def stage_index_at(stages: Sequence[Stage], elapsed: float) -> int:
    """
    Return the index of the stage active at *elapsed* seconds.

    Times before zero map to the first stage and times past the end of
    the plan map to the last one, so late outcomes from users finishing
    their final iteration still land in a bucket.
    """
    start = 0.0
    for index, stage in enumerate(stages):
        if elapsed < start + stage.duration:
            return index
        start += stage.duration
    return len(stages) - 1


@dataclass(frozen=True)
class RequestOutcome:
    """
    Result of a single HTTP request issued by a virtual user.

    Attributes:
        endpoint: Path suffix that was requested.
        status_code: HTTP status, or ``None`` for a transport failure.
        latency_ms: Wall-clock time from send to full response (or failure).
        timestamp: Seconds since run start at which the request was sent.
        bytes_received: Size of the response body.
        error: Transport error class name when ``status_code`` is ``None``.
        user_id: Identifier of the virtual user that issued the request.
    """

    endpoint: str
    status_code: int | None
    latency_ms: float
    timestamp: float
    bytes_received: int = 0
    error: str | None = None
    user_id: int | None = None

    @property
    def is_transport_error(self) -> bool:
        return self.status_code is None

    @property
    def is_success(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429
