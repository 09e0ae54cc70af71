from __future__ import annotations

import logging

from sqlalchemy import delete

from .config import GRANULARITIES, INSTANT_STALE_SECONDS, get_granularity
from .db import PriceInstant
from .series import delete_before, latest_timestamp
from .timegrid import align_down, retention_seconds

logger = logging.getLogger(__name__)


def retention_cutoff(latest_ts: int, granularity: str) -> int:
    """Oldest timestamp kept, measured back from the newest stored point.

    One interval of buffer beyond retention plus one more aligned step keeps
    the leading-edge point the grid expects.
    """
    config = get_granularity(granularity)
    interval = config.interval_seconds
    window = retention_seconds(config.retention_hours) + interval
    return align_down(int(latest_ts) - window, interval) - interval


def cleanup_granularity(session, granularity: str) -> int:
    config = get_granularity(granularity)
    latest = latest_timestamp(session, config.name)
    if latest is None:
        return 0
    deleted = delete_before(session, config.name, retention_cutoff(latest, config.name))
    if deleted:
        logger.info("cleanup %s: deleted %s rows older than retention", config.table, deleted)
    return deleted


def cleanup_stale_instants(session, *, now_ts: int) -> int:
    cutoff = int(now_ts) - INSTANT_STALE_SECONDS
    result = session.execute(delete(PriceInstant).where(PriceInstant.updated_ts < cutoff))
    return int(result.rowcount or 0)


def cleanup_all(session, *, now_ts: int) -> dict:
    summary = {name: cleanup_granularity(session, name) for name in GRANULARITIES}
    summary["price_instants"] = cleanup_stale_instants(session, now_ts=now_ts)
    return summary
