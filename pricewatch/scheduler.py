from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

from .config import CLEANUP_CADENCE, GRANULARITIES, LIVE_POLL_CADENCE, Cadence, Granularity, validate_granularities

logger = logging.getLogger(__name__)

CANONICAL_BRANCH = "canonical_refresh"


def canonical_cadence_seconds(dirty_count: int) -> int:
    """Refresh interval for the canonical table, tightening as the backlog grows."""
    depth = int(dirty_count)
    if depth <= 0:
        return 60
    if depth <= 200:
        return 30
    if depth <= 1000:
        return 15
    return 0


@dataclass
class Branch:
    name: str
    cadence: Cadence | None
    job: object
    args: tuple = ()
    skip_if_running: bool = False


@dataclass
class BranchStatus:
    runs: int = 0
    failures: int = 0
    running: int = 0
    last_boundary: int | None = None
    last_fired_ts: int | None = None
    last_started_ts: int | None = None
    last_finished_ts: int | None = None
    last_duration_seconds: float | None = None
    last_error: str | None = None
    last_result: object = None


@dataclass
class SchedulerStatus:
    started_ts: int | None = None
    cold_start_done: bool = False
    cold_start_error: str | None = None
    last_tick_ts: int | None = None
    dirty_count: int | None = None
    canonical_cadence_seconds: int | None = None
    branches: dict[str, BranchStatus] = field(default_factory=dict)


def _spawn_thread(name: str, target, *args) -> None:
    threading.Thread(target=target, args=args, name=f"job-{name}", daemon=True).start()


class AdaptiveScheduler:
    def __init__(
        self,
        *,
        pipeline,
        granularities: dict[str, Granularity] | None = None,
        clock=time.time,
        dispatch=None,
        grace_seconds: int = 2,
        backfill_on_startup: bool = True,
    ) -> None:
        self.pipeline = pipeline
        self.granularities = GRANULARITIES if granularities is None else granularities
        self.grace_seconds = int(grace_seconds)
        self.backfill_on_startup = bool(backfill_on_startup)
        self._clock = clock
        self._dispatch = dispatch or _spawn_thread

        self._status = SchedulerStatus()
        self._status_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

        self._canonical_last_fire_ts: int | None = None
        self._branches = self._build_branches()
        self._status.branches = {branch.name: BranchStatus() for branch in self._branches}
        self._status.branches[CANONICAL_BRANCH] = BranchStatus()
        self._canonical_branch = Branch(CANONICAL_BRANCH, None, pipeline.refresh_canonical, skip_if_running=True)

    def _build_branches(self) -> list[Branch]:
        branches = [Branch("live_poll", LIVE_POLL_CADENCE, self.pipeline.poll_latest, skip_if_running=True)]
        for name, granularity in self.granularities.items():
            branches.append(Branch(f"poll_{name}", granularity.poll_cadence, self.pipeline.poll_granularity, (name,)))
        for name, granularity in self.granularities.items():
            branches.append(Branch(f"backfill_{name}", granularity.backfill_cadence, self.pipeline.backfill, (name,)))
        branches.append(Branch("cleanup", CLEANUP_CADENCE, self.pipeline.cleanup))
        return branches

    def validate(self) -> None:
        validate_granularities(self.granularities, grace_seconds=self.grace_seconds)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self.validate()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="price-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=3)

    def run_forever(self) -> None:
        self.validate()
        try:
            self._run_loop()
        except KeyboardInterrupt:
            logger.info("scheduler interrupted")

    def get_status(self) -> dict:
        with self._status_lock:
            return {
                "started_ts": self._status.started_ts,
                "cold_start_done": self._status.cold_start_done,
                "cold_start_error": self._status.cold_start_error,
                "last_tick_ts": self._status.last_tick_ts,
                "dirty_count": self._status.dirty_count,
                "canonical_cadence_seconds": self._status.canonical_cadence_seconds,
                "running": bool(self._thread and self._thread.is_alive()),
                "branches": {
                    name: {
                        "runs": state.runs,
                        "failures": state.failures,
                        "running": state.running,
                        "last_fired_ts": state.last_fired_ts,
                        "last_started_ts": state.last_started_ts,
                        "last_finished_ts": state.last_finished_ts,
                        "last_duration_seconds": state.last_duration_seconds,
                        "last_error": state.last_error,
                        "last_result": state.last_result,
                    }
                    for name, state in self._status.branches.items()
                },
            }

    def _set_status(self, **kwargs) -> None:
        with self._status_lock:
            for key, value in kwargs.items():
                setattr(self._status, key, value)

    def _run_loop(self) -> None:
        self._set_status(started_ts=int(self._clock()))
        if self.backfill_on_startup:
            self._cold_start()
        self._set_status(cold_start_done=True)

        while not self._stop_event.is_set():
            self.tick()
            # sleep to the next wall-clock second so ticks do not drift
            self._stop_event.wait(max(1.0 - (self._clock() % 1.0), 0.05))

    def _cold_start(self) -> None:
        logger.info("cold start backfill for %s", ", ".join(self.granularities.keys()))
        try:
            results = self.pipeline.cold_start_backfill()
            logger.info("cold start backfill done: %s", results)
        except Exception as exc:
            self._set_status(cold_start_error=str(exc))
            logger.error("cold start backfill failed: %s", exc)

    def tick(self, now_ts: float | None = None) -> list[str]:
        """Evaluate every branch once; returns the names fired on this tick."""
        now = int(self._clock() if now_ts is None else now_ts)
        self._set_status(last_tick_ts=now)
        fired: list[str] = []

        for branch in self._branches:
            boundary = branch.cadence.boundary(now)
            if now - boundary > self.grace_seconds:
                continue
            with self._status_lock:
                state = self._status.branches[branch.name]
                if state.last_boundary == boundary:
                    continue
                state.last_boundary = boundary
            if self._fire(branch, now):
                fired.append(branch.name)

        if self._tick_canonical(now):
            fired.append(CANONICAL_BRANCH)
        return fired

    def _tick_canonical(self, now: int) -> bool:
        try:
            depth = int(self.pipeline.dirty_count())
        except Exception as exc:
            logger.error("dirty queue depth read failed: %s", exc)
            return False

        cadence = canonical_cadence_seconds(depth)
        self._set_status(dirty_count=depth, canonical_cadence_seconds=cadence)
        last = self._canonical_last_fire_ts
        if cadence > 0 and last is not None and now - last < cadence:
            return False
        if self._fire(self._canonical_branch, now):
            self._canonical_last_fire_ts = now
            return True
        return False

    def _fire(self, branch: Branch, now: int) -> bool:
        with self._status_lock:
            state = self._status.branches[branch.name]
            if branch.skip_if_running and state.running > 0:
                return False
            state.running += 1
            state.last_fired_ts = now
        self._dispatch(branch.name, self._run_job, branch)
        return True

    def _run_job(self, branch: Branch) -> None:
        started = self._clock()
        with self._status_lock:
            self._status.branches[branch.name].last_started_ts = int(started)
        error = None
        result = None
        try:
            result = branch.job(*branch.args)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.error("%s job failed: %s", branch.name, exc)
        finally:
            finished = self._clock()
            with self._status_lock:
                state = self._status.branches[branch.name]
                state.running = max(state.running - 1, 0)
                state.last_finished_ts = int(finished)
                state.last_duration_seconds = round(float(finished - started), 3)
                if error is None:
                    state.runs += 1
                    state.last_error = None
                    state.last_result = result
                else:
                    state.failures += 1
                    state.last_error = error
