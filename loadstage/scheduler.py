"""
Stage scheduler and virtual-user lifecycle.

The scheduler turns an ordered list of :class:`~loadstage.models.Stage`
into a live population of :class:`VirtualUser` threads.  Every
``adjust_interval`` it computes the desired concurrency for the current
elapsed time (linear interpolation inside each stage) and converges the
population towards it: new users are spawned when below target, the
newest users are asked to retire when above.

Retirement and the global stop are cooperative.  A user finishes its
in-flight request, never gets cancelled mid-request, and leaves during
its next think-time wait or before its next iteration.  At the end of
the plan every user is told to stop and given ``grace_period`` seconds;
stragglers are abandoned and the caller's ``on_shutdown`` hook (the
aggregator's ``seal``) guarantees their late outcomes are dropped.

Completion is published through a :class:`concurrent.futures.Future`
returned by :meth:`StageScheduler.start`.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any

from loadstage.exceptions import ConfigurationError
from loadstage.models import Stage

logger = logging.getLogger(__name__)

STOP_REASON_COMPLETED = "completed"


def total_duration(stages: Sequence[Stage]) -> float:
    """Return the summed duration of a stage plan in seconds."""
    return sum(stage.duration for stage in stages)


def desired_concurrency(stages: Sequence[Stage], elapsed: float) -> int:
    """
    Return the number of virtual users wanted at *elapsed* seconds.

    Inside stage ``i`` the value moves linearly from stage ``i-1``'s
    target (``0`` for the first stage) to stage ``i``'s target; equal
    targets produce a flat hold.  Values round half up.  Past the end of
    the plan the last stage's target is returned.
    """
    if not stages:
        return 0
    if elapsed <= 0:
        return 0

    start = 0.0
    previous = 0
    for stage in stages:
        if elapsed < start + stage.duration:
            progress = (elapsed - start) / stage.duration
            value = previous + (stage.target - previous) * progress
            return int(value + 0.5)
        start += stage.duration
        previous = stage.target
    return stages[-1].target


class VirtualUser(threading.Thread):
    """
    Simulated client executing request/think-time iterations.

    Args:
        user_id: Sequential identifier assigned by the scheduler.
        iteration: Callable running one iteration for this user and
            returning the think time in seconds.
        rng: Random source owned by this user.
        session: HTTP session owned by this user; closed on exit.
    """

    def __init__(
        self,
        user_id: int,
        iteration: Callable[[VirtualUser], float],
        *,
        rng: random.Random | None = None,
        session: Any = None,
    ) -> None:
        super().__init__(name=f"vu-{user_id}", daemon=True)
        self.user_id = user_id
        self.rng = rng if rng is not None else random.Random()
        self.session = session
        self.iterations = 0
        self._iteration = iteration
        self._retire = threading.Event()

    @property
    def retiring(self) -> bool:
        return self._retire.is_set()

    def retire(self) -> None:
        """Ask the user to exit after its current iteration."""
        self._retire.set()

    def run(self) -> None:
        try:
            while not self._retire.is_set():
                pause = self._iteration(self)
                self.iterations += 1
                if pause > 0:
                    self._retire.wait(pause)
        except Exception:
            # A broken iteration must not take the run down; the scheduler
            # replaces dead users on its next adjustment.
            logger.exception("Virtual user %s stopped unexpectedly", self.user_id)
        finally:
            if self.session is not None:
                self.session.close()


@dataclass(frozen=True)
class ScheduleResult:
    """
    How the scheduled part of a run ended.

    Attributes:
        completed_all_stages: ``True`` when the plan ran to its end
            without a global stop.
        stop_reason: ``"completed"`` or the reason given to :meth:`StageScheduler.stop`.
        elapsed: Seconds from start until the stop signal was sent to users.
        peak_users: Highest live population observed.
        users_spawned: Total virtual users created.
        forced_terminations: Users still running after the grace period.
    """

    completed_all_stages: bool
    stop_reason: str
    elapsed: float
    peak_users: int
    users_spawned: int
    forced_terminations: int


class StageScheduler:
    """
    Drive virtual-user concurrency through a stage plan.

    Args:
        stages: Ordered stage plan.
        user_factory: Builds an unstarted :class:`VirtualUser` for a
            given user id.
        adjust_interval: Seconds between population adjustments.
        grace_period: Seconds users get to finish once stopped.
        clock: Monotonic time source in seconds.
        on_adjust: Optional hook called after every adjustment with
            ``(elapsed, desired, live)``.
        on_stop: Optional hook called as soon as the stages stop driving
            load (plan finished, global stop or failure), before the grace
            period starts.
        on_shutdown: Optional hook called once the grace period is over,
            before the completion future resolves.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        user_factory: Callable[[int], VirtualUser],
        *,
        adjust_interval: float = 0.1,
        grace_period: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        on_adjust: Callable[[float, int, int], None] | None = None,
        on_stop: Callable[[], None] | None = None,
        on_shutdown: Callable[[], None] | None = None,
        history_limit: int = 100_000,
    ) -> None:
        if not stages:
            raise ConfigurationError("stage plan must contain at least one stage")
        if adjust_interval <= 0:
            raise ConfigurationError("adjust_interval must be positive")
        if grace_period < 0:
            raise ConfigurationError("grace_period must be non-negative")

        self.stages = tuple(stages)
        self.adjust_interval = adjust_interval
        self.grace_period = grace_period
        self.history: deque[tuple[float, int, int]] = deque(maxlen=history_limit)

        self._user_factory = user_factory
        self._clock = clock
        self._on_adjust = on_adjust
        self._on_stop = on_stop
        self._on_shutdown = on_shutdown
        self._stop = threading.Event()
        self._stop_reason: str | None = None
        self._users: list[VirtualUser] = []
        self._retiring: list[VirtualUser] = []
        self._next_user_id = 0
        self._peak_users = 0
        self._future: Future[ScheduleResult] = Future()
        self._thread: threading.Thread | None = None

    @property
    def live_count(self) -> int:
        """Users currently counted towards concurrency (not retiring)."""
        return len(self._users)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def start(self) -> Future[ScheduleResult]:
        """Run the plan on a background thread and return its completion future."""
        if self._thread is not None:
            raise RuntimeError("scheduler has already been started")
        self._future.set_running_or_notify_cancel()
        self._thread = threading.Thread(target=self._run, name="stage-scheduler", daemon=True)
        self._thread.start()
        return self._future

    def run(self) -> ScheduleResult:
        """Run the plan and block until it finishes."""
        return self.start().result()

    def stop(self, reason: str = "stopped") -> None:
        """
        Trigger the global stop.

        Safe to call from any thread; only the first reason is kept.
        """
        if self._stop.is_set():
            return
        self._stop_reason = reason
        self._stop.set()
        logger.info("Global stop requested: %s", reason)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run(self) -> None:
        try:
            result = self._drive()
        except Exception as exc:
            logger.exception("Stage scheduler failed")
            self._stop.set()
            self._shutdown()
            self._future.set_exception(exc)
            return
        self._future.set_result(result)

    def _drive(self) -> ScheduleResult:
        plan_length = total_duration(self.stages)
        started = self._clock()
        logger.info(
            "Starting %d stage(s) over %.1fs (adjust every %.2fs)",
            len(self.stages),
            plan_length,
            self.adjust_interval,
        )

        completed = False
        while not self._stop.is_set():
            elapsed = self._clock() - started
            if elapsed >= plan_length:
                completed = True
                self._stop_reason = STOP_REASON_COMPLETED
                self._stop.set()
                break
            desired = desired_concurrency(self.stages, elapsed)
            self._converge(desired)
            self.history.append((elapsed, desired, len(self._users)))
            if self._on_adjust is not None:
                self._on_adjust(elapsed, desired, len(self._users))
            self._stop.wait(self.adjust_interval)

        stopped_at = self._clock() - started
        reason = STOP_REASON_COMPLETED if completed else (self._stop_reason or "stopped")
        forced = self._shutdown()
        return ScheduleResult(
            completed_all_stages=completed,
            stop_reason=reason,
            elapsed=stopped_at,
            peak_users=self._peak_users,
            users_spawned=self._next_user_id,
            forced_terminations=forced,
        )

    def _converge(self, desired: int) -> None:
        # Users whose thread died on an unexpected error are replaced.
        self._users = [user for user in self._users if user.is_alive()]
        self._retiring = [user for user in self._retiring if user.is_alive()]

        while len(self._users) < desired:
            user = self._user_factory(self._next_user_id)
            self._next_user_id += 1
            user.start()
            self._users.append(user)

        while len(self._users) > desired:
            user = self._users.pop()
            user.retire()
            self._retiring.append(user)

        self._peak_users = max(self._peak_users, len(self._users))

    def _shutdown(self) -> int:
        if self._on_stop is not None:
            self._on_stop()
        everyone = self._users + self._retiring
        self._users = []
        self._retiring = []
        for user in everyone:
            user.retire()

        deadline = self._clock() + self.grace_period
        for user in everyone:
            user.join(max(0.0, deadline - self._clock()))

        stragglers = [user for user in everyone if user.is_alive()]
        if self._on_shutdown is not None:
            self._on_shutdown()
        if stragglers:
            logger.warning(
                "%d virtual user(s) still running after %.1fs grace period; "
                "their in-flight outcomes are discarded",
                len(stragglers),
                self.grace_period,
            )
        return len(stragglers)
