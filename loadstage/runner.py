"""
Run orchestration.

:class:`LoadRunner` wires the parts of one run together:

1. optional preflight ``GET`` against the target's health path
2. a fresh :class:`~loadstage.metrics.MetricsAggregator` for the run
3. a :class:`~loadstage.driver.RequestDriver` and a user factory handing
   every virtual user its own seeded random source and HTTP session
4. the :class:`~loadstage.scheduler.StageScheduler`, whose shutdown hook
   seals the aggregator
5. a :class:`~loadstage.thresholds.ThresholdWatcher` whose breach hook
   triggers the scheduler's global stop
6. final threshold evaluation, assessment and the JSON report

Example::

    plan = load_plan("scenarios/smoke.yml")
    report = LoadRunner(plan).run()
    print(report.passed)
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import requests

from loadstage.assessment import assess
from loadstage.config import Config
from loadstage.driver import RequestDriver
from loadstage.exceptions import PreflightError, RunError
from loadstage.metrics import MetricsAggregator
from loadstage.plan import RunConfig
from loadstage.report import RunReport, build_report, write_report
from loadstage.scheduler import StageScheduler, VirtualUser
from loadstage.thresholds import BreachRecord, ThresholdWatcher, evaluate_rules

logger = logging.getLogger(__name__)


def user_rng(seed: int | None, user_id: int) -> random.Random:
    """
    Build the random source owned by one virtual user.

    With a run seed every user gets an independent, reproducible
    sequence keyed by ``"<seed>:<user_id>"``; without one, fresh
    system randomness.
    """
    if seed is None:
        return random.Random()
    return random.Random(f"{seed}:{user_id}")


class LoadRunner:
    """
    Execute one run plan and produce its report.

    Args:
        plan: Validated run configuration.
        settings: Engine configuration class (see :mod:`loadstage.config`).
        results_dir: Directory for the JSON report; defaults to
            ``settings.RESULTS_DIR``.
        clock: Monotonic time source shared by scheduler and aggregator.
        write: Write the JSON report to disk when ``True``.
    """

    def __init__(
        self,
        plan: RunConfig,
        *,
        settings: type[Config] = Config,
        results_dir: Path | str | None = None,
        clock: Callable[[], float] = time.monotonic,
        write: bool = True,
    ) -> None:
        self.plan = plan
        self.settings = settings
        self.results_dir = Path(results_dir or settings.RESULTS_DIR)
        self.write = write
        self.report_path: Path | None = None
        self._clock = clock
        self._last_progress = float("-inf")
        self._aggregator: MetricsAggregator | None = None

    def preflight(self) -> None:
        """
        Check the target is up before generating load.

        Raises:
            PreflightError: On a transport error or a non-2xx answer.
        """
        if not self.plan.preflight_path:
            return
        url = f"{self.plan.base_url}{self.plan.preflight_path}"
        try:
            response = requests.get(url, timeout=self.plan.timeout, headers=dict(self.plan.headers))
        except requests.RequestException as exc:
            raise PreflightError(f"Target health check {url} failed: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise PreflightError(
                f"Target health check {url} returned HTTP {response.status_code}"
            )
        logger.info("Preflight OK: %s -> %d", url, response.status_code)

    def run(self) -> RunReport:
        """
        Execute the plan once.

        Returns:
            The finished :class:`~loadstage.report.RunReport`.

        Raises:
            PreflightError: If the target fails the health check.
            RunError: If the scheduler fails while driving load.
            ReportWriteError: If the report cannot be written.
        """
        plan = self.plan
        self.preflight()

        aggregator = MetricsAggregator(
            plan.stages,
            window_seconds=self.settings.WINDOW_SECONDS,
            window_max_samples=self.settings.WINDOW_MAX_SAMPLES,
            clock=self._clock,
        )
        self._aggregator = aggregator
        driver = RequestDriver(
            base_url=plan.base_url,
            endpoints=plan.endpoints,
            think_time=plan.think_time,
            aggregator=aggregator,
            timeout=plan.timeout,
            headers=plan.headers,
        )

        def user_factory(user_id: int) -> VirtualUser:
            return VirtualUser(
                user_id,
                driver.iterate,
                rng=user_rng(plan.seed, user_id),
                session=driver.new_session(),
            )

        def on_breach(breach: BreachRecord) -> None:
            scheduler.stop(f"threshold breached: {breach.rule.describe()}")

        watcher = ThresholdWatcher(
            plan.thresholds,
            aggregator,
            on_breach,
            poll_interval=self.settings.POLL_INTERVAL,
            min_samples=self.settings.ABORT_MIN_SAMPLES,
        )
        scheduler = StageScheduler(
            plan.stages,
            user_factory,
            adjust_interval=self.settings.ADJUST_INTERVAL,
            grace_period=self.settings.GRACE_PERIOD,
            clock=self._clock,
            on_adjust=self._progress,
            on_stop=watcher.stop,
            on_shutdown=aggregator.seal,
        )

        logger.info(
            "Run %r: %d stage(s), %.1fs against %s (seed=%s)",
            plan.name,
            len(plan.stages),
            plan.total_duration,
            plan.base_url,
            plan.seed,
        )
        started_at = datetime.now(timezone.utc)
        aggregator.start()
        future = scheduler.start()
        watcher.start()
        try:
            schedule = future.result()
        except Exception as exc:
            raise RunError(f"Run {plan.name!r} failed while driving load: {exc}") from exc
        finally:
            watcher.stop()
            watcher.join(self.settings.POLL_INTERVAL * 2)

        breach = watcher.breach
        if breach is not None and schedule.completed_all_stages:
            # Seen after the last stage ended; the run was not cut short.
            logger.info(
                "Ignoring breach observed after the plan finished: %s", breach.rule.describe()
            )
            breach = None

        snapshot = aggregator.snapshot()
        results = evaluate_rules(plan.thresholds, snapshot)
        assessment = assess(plan, snapshot, results)
        report = build_report(
            config=plan.to_dict(),
            name=plan.name,
            seed=plan.seed,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            schedule=schedule,
            breach=breach,
            snapshot=snapshot,
            thresholds=results,
            assessment=assessment,
        )
        logger.info(
            "Run %r finished (%s): %d requests, passed=%s",
            plan.name,
            schedule.stop_reason,
            snapshot.count,
            report.passed,
        )

        if self.write:
            self.report_path = write_report(report, self.results_dir)
        return report

    def _progress(self, elapsed: float, desired: int, live: int) -> None:
        if elapsed - self._last_progress < self.settings.PROGRESS_INTERVAL:
            return
        self._last_progress = elapsed
        window = self._aggregator.window_snapshot()
        p95 = window.latency.p95
        error_rate = window.error_rate
        logger.info(
            "elapsed=%.1fs users desired=%d live=%d window p95=%s error_rate=%s",
            elapsed,
            desired,
            live,
            f"{p95:.1f}ms" if p95 is not None else "no data",
            f"{error_rate:.2%}" if error_rate is not None else "no data",
        )
