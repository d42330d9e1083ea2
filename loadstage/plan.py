"""
Run plan loading and validation.

A run plan is a YAML document describing one load run: target, stage
profile, endpoint mix, think time, thresholds and assessment profile.
Everything is validated here, before a single request is sent; any
problem is raised as :class:`~loadstage.exceptions.ConfigurationError`.

Example::

    name: spike
    base_url: http://localhost:5001
    profile: spike
    expect_rate_limiting: true
    stages:
      - {target: 10, duration: 30s}
      - {target: 200, duration: 10s}
      - {target: 200, duration: 30s}
      - {target: 10, duration: 30s}
    endpoints:
      policy: uniform
      paths: [/api/health, /api/stats, /api/threat-counts]
    think_time: {min: 0, max: 2}
    timeout: 10
    thresholds:
      - "rate<0.25"
      - {expr: "p(95)<3000", abort_on_breach: true}
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from loadstage.driver import EndpointSet, ThinkTime, endpoint_set_from_paths
from loadstage.exceptions import ConfigurationError
from loadstage.models import AssessmentProfile, BenchmarkClass, EndpointPolicy, Stage
from loadstage.thresholds import ThresholdRule, parse_rules

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

DEFAULT_TIMEOUT = 10.0
DEFAULT_LEAK_RATIO = 10.0
DEFAULT_BREAKING_ERROR_RATE = 0.05


def parse_duration(value: Any) -> float:
    """
    Convert a duration to seconds.

    Accepts plain numbers (seconds) and k6-style strings such as
    ``"500ms"``, ``"30s"``, ``"2m"``, ``"1h"`` or ``"1m30s"``.

    Raises:
        ConfigurationError: If the value cannot be parsed.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        seconds = _parse_duration_text(value)
    else:
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if not math.isfinite(seconds):
        raise ConfigurationError(f"Duration must be finite: {value!r}")
    return seconds


def _parse_duration_text(value: str) -> float:
    text = value.strip().lower()
    try:
        return float(text)
    except ValueError:
        pass

    parts = _DURATION_PART.findall(text)
    if not parts or "".join(number + unit for number, unit in parts) != text:
        raise ConfigurationError(f"Invalid duration: {value!r}")
    return sum(float(number) * _UNIT_SECONDS[unit] for number, unit in parts)


@dataclass(frozen=True)
class RunConfig:
    """
    Immutable description of one load run.

    Attributes:
        name: Label used in logs and the report file name.
        base_url: Target origin; endpoint paths are appended to it.
        stages: Ordered stage plan.
        endpoints: Endpoint set and selection policy.
        think_time: Pause between a user's iterations.
        timeout: Per-request timeout in seconds.
        thresholds: Pass/fail rules.
        profile: Post-run assessment heuristic.
        expect_rate_limiting: Treat 429 as an expected, non-failing
            answer in assessments and as the default for error-rate rules.
        seed: Seed for every random choice; ``None`` for fresh randomness.
        preflight_path: Optional health path checked before the run.
        headers: Extra headers sent with every request.
        leak_ratio: Max/avg latency ratio above which the soak profile
            warns about a possible leak.
        breaking_error_rate: Per-stage error rate the stress profile
            treats as the breaking point.
        benchmark_class: Criteria table the benchmark profile grades
            against.
    """

    name: str
    base_url: str
    stages: tuple[Stage, ...]
    endpoints: EndpointSet
    think_time: ThinkTime = field(default_factory=ThinkTime)
    timeout: float = DEFAULT_TIMEOUT
    thresholds: tuple[ThresholdRule, ...] = ()
    profile: AssessmentProfile = AssessmentProfile.NONE
    expect_rate_limiting: bool = False
    seed: int | None = None
    preflight_path: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    leak_ratio: float = DEFAULT_LEAK_RATIO
    breaking_error_rate: float = DEFAULT_BREAKING_ERROR_RATE
    benchmark_class: BenchmarkClass = BenchmarkClass.LIGHT

    @property
    def total_duration(self) -> float:
        return sum(stage.duration for stage in self.stages)

    @property
    def abort_rules(self) -> tuple[ThresholdRule, ...]:
        return tuple(rule for rule in self.thresholds if rule.abort_on_breach)

    def to_dict(self) -> dict[str, Any]:
        """Convert the plan to the dictionary embedded in reports."""
        return {
            "name": self.name,
            "base_url": self.base_url,
            "stages": [stage.to_dict() for stage in self.stages],
            "endpoints": self.endpoints.to_dict(),
            "think_time": self.think_time.to_dict(),
            "timeout": self.timeout,
            "thresholds": [rule.to_dict() for rule in self.thresholds],
            "profile": self.profile.value,
            "expect_rate_limiting": self.expect_rate_limiting,
            "seed": self.seed,
            "preflight_path": self.preflight_path,
            "leak_ratio": self.leak_ratio,
            "breaking_error_rate": self.breaking_error_rate,
            "benchmark_class": self.benchmark_class.value,
        }


def _parse_stages(raw: Any) -> tuple[Stage, ...]:
    if not isinstance(raw, list) or not raw:
        raise ConfigurationError("stages must be a non-empty list")

    stages = []
    for position, entry in enumerate(raw, start=1):
        if not isinstance(entry, Mapping):
            raise ConfigurationError(f"stage {position} must be a mapping")
        try:
            target = entry["target"]
            duration = parse_duration(entry["duration"])
        except KeyError as exc:
            raise ConfigurationError(f"stage {position} is missing {exc}") from exc
        if isinstance(target, bool) or not isinstance(target, int) or target < 0:
            raise ConfigurationError(f"stage {position} target must be a non-negative integer")
        if duration <= 0:
            raise ConfigurationError(f"stage {position} duration must be positive")
        stages.append(Stage(target=target, duration=duration, name=entry.get("name")))
    return tuple(stages)


def _parse_endpoints(raw: Any) -> EndpointSet:
    if isinstance(raw, str):
        return endpoint_set_from_paths(EndpointPolicy.FIXED, [raw])
    if isinstance(raw, list):
        policy = EndpointPolicy.FIXED if len(raw) == 1 else EndpointPolicy.UNIFORM
        return endpoint_set_from_paths(policy, raw)
    if not isinstance(raw, Mapping):
        raise ConfigurationError("endpoints must be a path, a list of paths or a mapping")

    paths = raw.get("paths")
    if paths is None and "path" in raw:
        paths = [raw["path"]]
    if not isinstance(paths, list) or not paths:
        raise ConfigurationError("endpoint set must contain at least one path")

    default_policy = EndpointPolicy.FIXED if len(paths) == 1 else EndpointPolicy.UNIFORM
    try:
        policy = EndpointPolicy(raw.get("policy", default_policy.value))
    except ValueError as exc:
        raise ConfigurationError(f"Unknown endpoint policy: {raw.get('policy')!r}") from exc
    return endpoint_set_from_paths(policy, paths)


def _parse_think_time(raw: Any) -> ThinkTime:
    if raw is None:
        return ThinkTime()
    if isinstance(raw, Mapping):
        minimum = parse_duration(raw.get("min", 0))
        maximum = parse_duration(raw.get("max", minimum))
        return ThinkTime(minimum=minimum, maximum=maximum)
    fixed = parse_duration(raw)
    return ThinkTime(minimum=fixed, maximum=fixed)


def _positive_float(data: Mapping[str, Any], key: str, default: float) -> float:
    value = data.get(key, default)
    try:
        number = parse_duration(value) if key == "timeout" else float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{key} must be a number") from exc
    if not math.isfinite(number):
        raise ConfigurationError(f"{key} must be a finite number")
    if number <= 0:
        raise ConfigurationError(f"{key} must be positive")
    return number


def plan_from_dict(data: Mapping[str, Any]) -> RunConfig:
    """
    Validate a plan mapping and build a :class:`RunConfig`.

    Raises:
        ConfigurationError: On any malformed or missing value.
    """
    if not isinstance(data, Mapping):
        raise ConfigurationError("run plan must be a mapping")

    base_url = data.get("base_url")
    if not isinstance(base_url, str) or not base_url.startswith(("http://", "https://")):
        raise ConfigurationError("base_url must be an http(s) URL")

    if "endpoints" not in data:
        raise ConfigurationError("endpoints are required")

    try:
        profile = AssessmentProfile(data.get("profile", AssessmentProfile.NONE.value))
    except ValueError as exc:
        raise ConfigurationError(f"Unknown assessment profile: {data.get('profile')!r}") from exc

    expect_rate_limiting = bool(data.get("expect_rate_limiting", False))

    seed = data.get("seed")
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int)):
        raise ConfigurationError("seed must be an integer")

    preflight_path = data.get("preflight_path")
    if preflight_path is not None and not str(preflight_path).startswith("/"):
        raise ConfigurationError("preflight_path must start with '/'")

    headers = data.get("headers") or {}
    if not isinstance(headers, Mapping):
        raise ConfigurationError("headers must be a mapping")

    assessment = data.get("assessment") or {}
    if not isinstance(assessment, Mapping):
        raise ConfigurationError("assessment options must be a mapping")

    breaking_error_rate = _positive_float(
        assessment, "breaking_error_rate", DEFAULT_BREAKING_ERROR_RATE
    )
    if breaking_error_rate > 1:
        raise ConfigurationError("breaking_error_rate must be a fraction between 0 and 1")

    try:
        benchmark_class = BenchmarkClass(
            assessment.get("benchmark_class", BenchmarkClass.LIGHT.value)
        )
    except ValueError as exc:
        raise ConfigurationError(
            f"Unknown benchmark class: {assessment.get('benchmark_class')!r}"
        ) from exc

    return RunConfig(
        name=str(data.get("name") or "run"),
        base_url=base_url.rstrip("/"),
        stages=_parse_stages(data.get("stages")),
        endpoints=_parse_endpoints(data["endpoints"]),
        think_time=_parse_think_time(data.get("think_time")),
        timeout=_positive_float(data, "timeout", DEFAULT_TIMEOUT),
        thresholds=parse_rules(
            data.get("thresholds"), exclude_rate_limited=expect_rate_limiting
        ),
        profile=profile,
        expect_rate_limiting=expect_rate_limiting,
        seed=seed,
        preflight_path=preflight_path,
        headers={str(key): str(value) for key, value in headers.items()},
        leak_ratio=_positive_float(assessment, "leak_ratio", DEFAULT_LEAK_RATIO),
        breaking_error_rate=breaking_error_rate,
        benchmark_class=benchmark_class,
    )


def load_plan(path: Path | str, **overrides: Any) -> RunConfig:
    """
    Read a YAML run plan from disk.

    Args:
        path: Path to the plan file.
        **overrides: Top-level keys that replace the file's values when
            not ``None`` (e.g. ``base_url`` or ``seed`` from the CLI).

    Raises:
        ConfigurationError: If the file is missing, is not valid YAML or
            describes an invalid plan.
    """
    plan_path = Path(path)
    try:
        with plan_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigurationError(f"Cannot read run plan {plan_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Run plan {plan_path} is not valid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError("run plan must be a mapping")

    data.setdefault("name", plan_path.stem)
    for key, value in overrides.items():
        if value is not None:
            data[key] = value
    return plan_from_dict(data)
