from __future__ import annotations

import time

from .config import ConfigurationError


def retention_seconds(retention_hours: float) -> int:
    # 24 + 5/60 and 24.0833 must both land on 86700
    return int(round(float(retention_hours) * 3600))


def align_down(ts: int, interval_seconds: int) -> int:
    interval = int(interval_seconds)
    return int(ts) - (int(ts) % interval)


def align_up(ts: int, interval_seconds: int) -> int:
    interval = int(interval_seconds)
    remainder = int(ts) % interval
    return int(ts) if remainder == 0 else int(ts) + (interval - remainder)


def to_stored_timestamp(upstream_ts: int, interval_seconds: int) -> int:
    """Upstream reports interval start; the store keys points by interval end."""
    return int(upstream_ts) + int(interval_seconds)


def to_upstream_timestamp(stored_ts: int, interval_seconds: int) -> int:
    return int(stored_ts) - int(interval_seconds)


def expected_timestamps(
    interval_seconds: int,
    retention_hours: float,
    anchor: int | None = None,
    now: float | None = None,
) -> list[int]:
    """Upstream (start-of-interval) timestamps a granularity should hold.

    Retention is stated as N intervals plus one leading step, so the extra
    step is removed before counting intervals and the closed range holds
    N + 1 points ending at ``anchor`` or at the last completed interval.
    """
    interval = int(interval_seconds)
    if interval <= 0:
        raise ConfigurationError(f"Interval must be positive, got {interval_seconds}")

    base_seconds = retention_seconds(retention_hours) - interval
    if base_seconds < 0 or retention_hours <= 0:
        raise ConfigurationError(
            f"Retention {retention_hours}h is shorter than one {interval}s interval"
        )
    num_intervals = base_seconds // interval

    if anchor is not None:
        end = align_down(int(anchor), interval)
    else:
        now_ts = int(time.time() if now is None else now)
        end = align_down(now_ts, interval) - interval

    start = align_up(end - num_intervals * interval, interval)
    if end < start:
        raise ConfigurationError(f"Empty timestamp range for interval {interval}s")

    return list(range(start, end + 1, interval))
