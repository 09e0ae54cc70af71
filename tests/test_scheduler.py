import pytest

from pricewatch.config import Cadence, ConfigurationError, Granularity
from pricewatch.scheduler import CANONICAL_BRANCH, AdaptiveScheduler, canonical_cadence_seconds

DAY = 1_699_920_000  # 2023-11-14 00:00:00 UTC


class _FakePipeline:
    def __init__(self, dirty=0):
        self.dirty = dirty
        self.calls = []
        self.fail = set()

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise RuntimeError(f"{name} exploded")
        return {"ok": True}

    def poll_latest(self):
        return self._record("poll_latest")

    def poll_granularity(self, granularity):
        return self._record("poll", granularity)

    def backfill(self, granularity):
        return self._record("backfill", granularity)

    def cleanup(self):
        return self._record("cleanup")

    def refresh_canonical(self):
        return self._record("refresh_canonical")

    def dirty_count(self):
        if "dirty_count" in self.fail:
            raise RuntimeError("db locked")
        return self.dirty

    def cold_start_backfill(self):
        return self._record("cold_start")


def _sync_dispatch(name, target, *args):
    target(*args)


class _HeldDispatch:
    def __init__(self):
        self.pending = []

    def __call__(self, name, target, *args):
        self.pending.append((name, target, args))

    def run_all(self):
        pending, self.pending = self.pending, []
        for _, target, args in pending:
            target(*args)


def _scheduler(pipeline, dispatch=_sync_dispatch):
    return AdaptiveScheduler(pipeline=pipeline, clock=lambda: DAY, dispatch=dispatch)


def _fired_without_canonical(scheduler, now):
    return sorted(name for name in scheduler.tick(now) if name != CANONICAL_BRANCH)


@pytest.mark.parametrize(
    "depth,expected",
    [(0, 60), (1, 30), (200, 30), (201, 15), (1000, 15), (1001, 0), (1500, 0)],
)
def test_canonical_cadence_tracks_backlog(depth, expected):
    assert canonical_cadence_seconds(depth) == expected


def test_live_poll_fires_once_per_fifteen_second_boundary():
    scheduler = _scheduler(_FakePipeline())
    assert "live_poll" in scheduler.tick(DAY + 15)
    assert "live_poll" not in scheduler.tick(DAY + 15)
    assert "live_poll" not in scheduler.tick(DAY + 16)
    assert "live_poll" not in scheduler.tick(DAY + 20)
    # late tick inside the grace window still catches the :30 boundary
    assert "live_poll" in scheduler.tick(DAY + 31)
    assert "live_poll" not in scheduler.tick(DAY + 32)


def test_granularity_polls_fire_on_their_wall_clock_offsets():
    scheduler = _scheduler(_FakePipeline())
    assert _fired_without_canonical(scheduler, DAY + 30) == ["live_poll", "poll_1h", "poll_5m", "poll_6h"]
    assert _fired_without_canonical(scheduler, DAY + 300) == ["live_poll"]
    assert _fired_without_canonical(scheduler, DAY + 330) == ["live_poll", "poll_5m"]
    assert _fired_without_canonical(scheduler, DAY + 3630) == ["live_poll", "poll_1h", "poll_5m"]
    assert _fired_without_canonical(scheduler, DAY + 7230) == ["live_poll", "poll_1h", "poll_24h", "poll_5m"]
    assert _fired_without_canonical(scheduler, DAY + 21630) == ["live_poll", "poll_1h", "poll_5m", "poll_6h"]


def test_backfills_and_cleanup_fire_on_offset_minutes():
    scheduler = _scheduler(_FakePipeline())
    assert _fired_without_canonical(scheduler, DAY + 60) == ["cleanup", "live_poll"]
    assert _fired_without_canonical(scheduler, DAY + 120) == ["backfill_1h", "backfill_5m", "backfill_6h", "live_poll"]
    assert _fired_without_canonical(scheduler, DAY + 420) == ["backfill_5m", "live_poll"]
    assert _fired_without_canonical(scheduler, DAY + 660) == ["cleanup", "live_poll"]
    assert _fired_without_canonical(scheduler, DAY + 7320) == ["backfill_1h", "backfill_24h", "backfill_5m", "live_poll"]


def test_jobs_receive_their_granularity():
    pipeline = _FakePipeline()
    scheduler = _scheduler(pipeline)
    scheduler.tick(DAY + 7230)
    assert ("poll", "24h") in pipeline.calls
    assert ("poll", "6h") not in pipeline.calls


def test_canonical_refresh_cadence_follows_dirty_depth():
    pipeline = _FakePipeline(dirty=0)
    scheduler = _scheduler(pipeline)
    assert CANONICAL_BRANCH in scheduler.tick(DAY + 1)
    assert CANONICAL_BRANCH not in scheduler.tick(DAY + 11)
    assert CANONICAL_BRANCH not in scheduler.tick(DAY + 60)
    assert CANONICAL_BRANCH in scheduler.tick(DAY + 61)

    pipeline.dirty = 1500
    assert CANONICAL_BRANCH in scheduler.tick(DAY + 62)
    assert scheduler.get_status()["canonical_cadence_seconds"] == 0
    assert CANONICAL_BRANCH in scheduler.tick(DAY + 63)

    pipeline.dirty = 150
    assert CANONICAL_BRANCH not in scheduler.tick(DAY + 64)
    assert CANONICAL_BRANCH in scheduler.tick(DAY + 93)


def test_canonical_refresh_does_not_overlap_itself():
    dispatch = _HeldDispatch()
    pipeline = _FakePipeline(dirty=5000)
    scheduler = _scheduler(pipeline, dispatch=dispatch)
    assert CANONICAL_BRANCH in scheduler.tick(DAY + 1)
    assert CANONICAL_BRANCH not in scheduler.tick(DAY + 2)

    dispatch.run_all()
    assert CANONICAL_BRANCH in scheduler.tick(DAY + 3)
    assert scheduler.get_status()["branches"][CANONICAL_BRANCH]["runs"] == 1


def test_job_failure_is_isolated_and_recorded():
    pipeline = _FakePipeline()
    pipeline.fail.add("poll_latest")
    scheduler = _scheduler(pipeline)

    fired = scheduler.tick(DAY + 30)
    assert "poll_5m" in fired
    status = scheduler.get_status()["branches"]
    assert status["live_poll"]["failures"] == 1
    assert status["live_poll"]["last_error"] == "poll_latest exploded"
    assert status["live_poll"]["running"] == 0
    assert status["poll_5m"]["runs"] == 1
    assert status["poll_5m"]["last_error"] is None
    assert status["poll_5m"]["last_result"] == {"ok": True}
    assert status["live_poll"]["last_result"] is None


def test_dirty_depth_read_failure_skips_canonical_only():
    pipeline = _FakePipeline()
    pipeline.fail.add("dirty_count")
    scheduler = _scheduler(pipeline)
    fired = scheduler.tick(DAY + 15)
    assert fired == ["live_poll"]


def test_invalid_retention_fails_before_loop_starts():
    broken = {
        "5m": Granularity("5m", "price_5m", 300, 0, Cadence(300, 30), Cadence(300, 120)),
    }
    pipeline = _FakePipeline()
    scheduler = AdaptiveScheduler(pipeline=pipeline, granularities=broken, dispatch=_sync_dispatch)
    with pytest.raises(ConfigurationError):
        scheduler.start()
    assert pipeline.calls == []
    assert scheduler.get_status()["running"] is False


def test_run_loop_does_cold_start_before_first_tick():
    pipeline = _FakePipeline()
    scheduler = _scheduler(pipeline)

    def _stop_after_first_tick(now_ts=None):
        scheduler._stop_event.set()
        return []

    scheduler.tick = _stop_after_first_tick
    scheduler._run_loop()
    assert pipeline.calls == [("cold_start",)]
    assert scheduler.get_status()["cold_start_done"] is True
