from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from .config import get_granularity
from .db import ensure_items, get_item_ids, mark_items_dirty, session_scope
from .ingest import snapshot_rows
from .series import distinct_timestamps, upsert_points
from .timegrid import expected_timestamps, to_stored_timestamp, to_upstream_timestamp
from .wiki_prices import WikiPricesError

logger = logging.getLogger(__name__)


@dataclass
class BackfillResult:
    granularity: str
    expected: int = 0
    missing: int = 0
    fetched: int = 0
    failed: int = 0
    rows_written: int = 0
    failed_timestamps: list[int] = field(default_factory=list)
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            "granularity": self.granularity,
            "expected": self.expected,
            "missing": self.missing,
            "fetched": self.fetched,
            "failed": self.failed,
            "rows_written": self.rows_written,
            "failed_timestamps": list(self.failed_timestamps),
            "error": self.error,
        }


def missing_timestamps(session, granularity: str, *, now_ts: int, anchor: int | None = None) -> tuple[list[int], int]:
    """Stored (end-of-interval) timestamps absent from the table, oldest first."""
    config = get_granularity(granularity)
    interval = config.interval_seconds
    upstream_anchor = to_upstream_timestamp(anchor, interval) if anchor is not None else None
    grid = expected_timestamps(interval, config.retention_hours, anchor=upstream_anchor, now=now_ts)
    expected = [to_stored_timestamp(ts, interval) for ts in grid]
    actual = distinct_timestamps(session, config.name)
    return [ts for ts in expected if ts not in actual], len(expected)


class BackfillEngine:
    def __init__(
        self,
        client,
        *,
        delay_seconds: float = 0.15,
        clock=time.time,
        sleep=time.sleep,
    ) -> None:
        self.client = client
        self.delay_seconds = max(float(delay_seconds), 0.0)
        self._clock = clock
        self._sleep = sleep

    def backfill(self, granularity: str, *, anchor: int | None = None) -> BackfillResult:
        config = get_granularity(granularity)
        now_ts = int(self._clock())
        result = BackfillResult(granularity=config.name)

        with session_scope() as session:
            missing, result.expected = missing_timestamps(session, config.name, now_ts=now_ts, anchor=anchor)
        result.missing = len(missing)
        if not missing:
            logger.info("backfill %s: nothing missing (%s expected)", config.name, result.expected)
            return result

        logger.info("backfill %s: %s of %s timestamps missing", config.name, len(missing), result.expected)
        for index, stored_ts in enumerate(missing):
            if index > 0 and self.delay_seconds > 0:
                self._sleep(self.delay_seconds)
            try:
                result.rows_written += self._fill_timestamp(config, stored_ts)
                result.fetched += 1
            except (WikiPricesError, ValueError, SQLAlchemyError) as exc:
                result.failed += 1
                result.failed_timestamps.append(stored_ts)
                logger.warning("backfill %s ts=%s failed: %s", config.name, stored_ts, exc)

        logger.info(
            "backfill %s done: fetched=%s failed=%s rows=%s",
            config.name,
            result.fetched,
            result.failed,
            result.rows_written,
        )
        return result

    def _fill_timestamp(self, config, stored_ts: int) -> int:
        interval = config.interval_seconds
        snapshot = self.client.fetch_interval(config.name, to_upstream_timestamp(stored_ts, interval))
        if to_stored_timestamp(snapshot.timestamp, interval) != stored_ts:
            raise WikiPricesError(
                f"/{config.name} answered ts={snapshot.timestamp} for request ts={to_upstream_timestamp(stored_ts, interval)}"
            )

        with session_scope() as session:
            ensure_items(session, snapshot.data.keys())
            rows = snapshot_rows(snapshot, get_item_ids(session), interval_seconds=interval)
            gained = upsert_points(session, config.name, rows)
            mark_items_dirty(session, gained, now_ts=int(self._clock()))
        return len(rows)

    def backfill_all(self, granularities) -> dict[str, BackfillResult]:
        results = {}
        for name in granularities:
            try:
                results[name] = self.backfill(name)
            except Exception as exc:
                logger.error("backfill %s aborted: %s", name, exc, exc_info=True)
                results[name] = BackfillResult(granularity=name, error=str(exc))
        return results
