"""
Request driver for virtual-user iterations.

One iteration is: pick an endpoint according to the configured policy,
issue exactly one ``GET``, record the outcome in the shared aggregator,
and return how long the user should think before the next iteration.

Selection policies:

- **fixed**: hammer a single endpoint (autocannon-style benchmark)
- **uniform**: uniform random choice over a set (spike mix)
- **weighted**: probabilistic branch, e.g. 80 % light endpoints and
  20 % a heavy query, like Locust ``@task(weight)`` declarations

All randomness is drawn from the calling user's own ``random.Random``
so a fixed run seed reproduces each user's sequence exactly.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import requests

from loadstage.exceptions import ConfigurationError
from loadstage.metrics import MetricsAggregator
from loadstage.models import EndpointPolicy, RequestOutcome

if TYPE_CHECKING:
    from loadstage.scheduler import VirtualUser

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "loadstage/0.1"


@dataclass(frozen=True)
class ThinkTime:
    """
    Pause between iterations, fixed or uniform within ``[minimum, maximum]``.

    Equivalent to Locust's ``between(minimum, maximum)``; a fixed pause
    is expressed with ``minimum == maximum``.
    """

    minimum: float = 0.0
    maximum: float = 0.0

    def __post_init__(self) -> None:
        if self.minimum < 0 or self.maximum < 0:
            raise ConfigurationError("think_time bounds must be non-negative")
        if self.minimum > self.maximum:
            raise ConfigurationError("think_time min must not exceed max")

    def sample(self, rng: random.Random) -> float:
        if self.minimum == self.maximum:
            return self.minimum
        return rng.uniform(self.minimum, self.maximum)

    def to_dict(self) -> dict[str, float]:
        return {"min": self.minimum, "max": self.maximum}


@dataclass(frozen=True)
class EndpointSet:
    """
    Paths a run targets and the policy used to choose between them.

    Attributes:
        policy: Selection policy.
        paths: Path suffixes appended to the base URL.
        weights: Relative weights, one per path (weighted policy only).
    """

    policy: EndpointPolicy
    paths: tuple[str, ...]
    weights: tuple[float, ...] | None = None

    def __post_init__(self) -> None:
        if not self.paths:
            raise ConfigurationError("endpoint set must contain at least one path")
        for path in self.paths:
            if not isinstance(path, str) or not path.startswith("/"):
                raise ConfigurationError(f"endpoint path must start with '/': {path!r}")
        if self.policy is EndpointPolicy.FIXED and len(self.paths) != 1:
            raise ConfigurationError("fixed policy takes exactly one path")
        if self.policy is EndpointPolicy.WEIGHTED:
            if self.weights is None or len(self.weights) != len(self.paths):
                raise ConfigurationError("weighted policy needs one weight per path")
            if any(weight < 0 for weight in self.weights) or sum(self.weights) <= 0:
                raise ConfigurationError("weights must be non-negative with a positive total")

    def choose(self, rng: random.Random) -> str:
        """Select the next path for one iteration."""
        if self.policy is EndpointPolicy.FIXED:
            return self.paths[0]
        if self.policy is EndpointPolicy.UNIFORM:
            return rng.choice(self.paths)
        return rng.choices(self.paths, weights=self.weights, k=1)[0]

    def to_dict(self) -> dict[str, Any]:
        if self.policy is EndpointPolicy.WEIGHTED:
            paths: list[Any] = [
                {"path": path, "weight": weight} for path, weight in zip(self.paths, self.weights)
            ]
        else:
            paths = list(self.paths)
        return {"policy": self.policy.value, "paths": paths}


@dataclass
class RequestDriver:
    """
    Issue requests on behalf of virtual users and record their outcomes.

    The driver itself is stateless between calls; per-user state (HTTP
    session, random source) lives on the
    :class:`~loadstage.scheduler.VirtualUser`.  Its only side effect is
    appending to the shared :class:`~loadstage.metrics.MetricsAggregator`.
    """

    base_url: str
    endpoints: EndpointSet
    think_time: ThinkTime
    aggregator: MetricsAggregator
    timeout: float = 10.0
    headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")

    def new_session(self) -> requests.Session:
        """Build the HTTP session owned by one virtual user."""
        session = requests.Session()
        session.headers.update({"User-Agent": DEFAULT_USER_AGENT, "Accept": "*/*"})
        session.headers.update(self.headers)
        return session

    def issue(
        self,
        session: requests.Session,
        path: str,
        *,
        user_id: int | None = None,
    ) -> RequestOutcome:
        """
        Send one ``GET`` and measure it.

        Transport failures (connection refused, DNS failure, timeout) are
        returned as an outcome with ``status_code=None`` rather than raised.
        """
        url = f"{self.base_url}{path}"
        sent_at = self.aggregator.elapsed()
        started = time.perf_counter()
        try:
            response = session.get(url, timeout=self.timeout)
            body = response.content
        except requests.RequestException as exc:
            latency_ms = (time.perf_counter() - started) * 1000.0
            logger.debug("GET %s failed after %.1fms: %s", url, latency_ms, exc)
            return RequestOutcome(
                endpoint=path,
                status_code=None,
                latency_ms=latency_ms,
                timestamp=sent_at,
                error=type(exc).__name__,
                user_id=user_id,
            )

        latency_ms = (time.perf_counter() - started) * 1000.0
        return RequestOutcome(
            endpoint=path,
            status_code=response.status_code,
            latency_ms=latency_ms,
            timestamp=sent_at,
            bytes_received=len(body or b""),
            user_id=user_id,
        )

    def iterate(self, user: VirtualUser) -> float:
        """
        Run one virtual-user iteration.

        Returns:
            The think time, in seconds, the user should wait before its
            next iteration.
        """
        path = self.endpoints.choose(user.rng)
        outcome = self.issue(user.session, path, user_id=user.user_id)
        self.aggregator.record(outcome)
        return self.think_time.sample(user.rng)


def endpoint_set_from_paths(
    policy: EndpointPolicy,
    paths: Sequence[Any],
) -> EndpointSet:
    """
    Build an :class:`EndpointSet` from plan entries.

    Entries are either plain path strings or ``{"path": ..., "weight": ...}``
    mappings; weights are required for the weighted policy and default to
    ``1`` otherwise.
    """
    resolved: list[str] = []
    weights: list[float] = []
    for entry in paths:
        if isinstance(entry, str):
            resolved.append(entry)
            weights.append(1.0)
            continue
        if not isinstance(entry, Mapping) or "path" not in entry:
            raise ConfigurationError(f"Invalid endpoint entry: {entry!r}")
        resolved.append(entry["path"])
        try:
            weights.append(float(entry.get("weight", 1)))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Non-numeric weight for {entry['path']!r}") from exc

    return EndpointSet(
        policy=policy,
        paths=tuple(resolved),
        weights=tuple(weights) if policy is EndpointPolicy.WEIGHTED else None,
    )
