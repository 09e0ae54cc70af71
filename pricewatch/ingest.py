from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from .config import get_granularity
from .db import BATCH_SIZE, PriceInstant, ensure_items, get_item_ids, mark_items_dirty, upsert_items
from .series import upsert_points
from .timegrid import to_stored_timestamp
from .wiki_prices import IntervalSnapshot, WikiPricesError

logger = logging.getLogger(__name__)


def _to_int(value) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_float(value) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def snapshot_rows(snapshot: IntervalSnapshot, item_ids, *, interval_seconds: int) -> list[dict]:
    """One row per item; items the snapshot omits become null/null markers."""
    stored_ts = to_stored_timestamp(snapshot.timestamp, interval_seconds)
    rows = []
    for item_id in sorted({int(i) for i in item_ids} | set(snapshot.data.keys())):
        entry = snapshot.data.get(item_id) or {}
        rows.append(
            {
                "item_id": item_id,
                "timestamp": stored_ts,
                "avg_high": _to_float(entry.get("avgHighPrice")),
                "avg_low": _to_float(entry.get("avgLowPrice")),
                "high_volume": _to_int(entry.get("highPriceVolume")),
                "low_volume": _to_int(entry.get("lowPriceVolume")),
            }
        )
    return rows


def refresh_item_mapping(session, client) -> int:
    rows = client.fetch_mapping()
    written = upsert_items(session, rows)
    logger.info("item mapping refreshed: %s items", written)
    return written


def poll_latest(session, client, *, now_ts: int) -> dict:
    latest = client.fetch_latest()
    if not latest:
        return {"items_seen": 0, "changed": 0}

    existing = {
        int(item_id): (high, high_time, low, low_time)
        for item_id, high, high_time, low, low_time in session.execute(
            select(PriceInstant.item_id, PriceInstant.high, PriceInstant.high_time, PriceInstant.low, PriceInstant.low_time)
        )
    }

    changed_rows: list[dict] = []
    for item_id, entry in latest.items():
        row = {
            "item_id": int(item_id),
            "high": _to_int(entry.get("high")),
            "high_time": _to_int(entry.get("highTime")),
            "low": _to_int(entry.get("low")),
            "low_time": _to_int(entry.get("lowTime")),
            "updated_ts": int(now_ts),
        }
        if row["high"] is None and row["low"] is None:
            continue
        if existing.get(int(item_id)) == (row["high"], row["high_time"], row["low"], row["low_time"]):
            continue
        changed_rows.append(row)

    if changed_rows:
        ensure_items(session, [row["item_id"] for row in changed_rows])
        insert_stmt = sqlite_insert(PriceInstant)
        upsert_stmt = insert_stmt.on_conflict_do_update(
            index_elements=[PriceInstant.item_id],
            set_={
                "high": insert_stmt.excluded.high,
                "high_time": insert_stmt.excluded.high_time,
                "low": insert_stmt.excluded.low,
                "low_time": insert_stmt.excluded.low_time,
                "updated_ts": insert_stmt.excluded.updated_ts,
            },
        )
        for i in range(0, len(changed_rows), BATCH_SIZE):
            session.execute(upsert_stmt, changed_rows[i:i + BATCH_SIZE])
        mark_items_dirty(session, [row["item_id"] for row in changed_rows], now_ts=now_ts)

    return {"items_seen": len(latest), "changed": len(changed_rows)}


def poll_granularity(session, client, granularity: str, *, now_ts: int) -> dict:
    config = get_granularity(granularity)
    snapshot = client.fetch_interval(config.name)
    if not snapshot.data:
        raise WikiPricesError(f"/{config.name} snapshot {snapshot.timestamp} is empty; interval not settled")

    ensure_items(session, snapshot.data.keys())
    rows = snapshot_rows(snapshot, get_item_ids(session), interval_seconds=config.interval_seconds)
    gained = upsert_points(session, config.name, rows, replace_placeholders=True)
    mark_items_dirty(session, gained, now_ts=now_ts)
    return {
        "granularity": config.name,
        "timestamp": to_stored_timestamp(snapshot.timestamp, config.interval_seconds),
        "items": len(rows),
        "new_points": len(gained),
    }
