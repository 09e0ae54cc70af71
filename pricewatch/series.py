from __future__ import annotations

import logging

from sqlalchemy import and_, case, delete, func, or_, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from .config import ConfigurationError
from .db import BATCH_SIZE, PRICE_MODELS

logger = logging.getLogger(__name__)


def price_model(granularity: str):
    model = PRICE_MODELS.get(str(granularity))
    if model is None:
        raise ConfigurationError(f"No price table for granularity {granularity!r}")
    return model


def has_data(row) -> bool:
    if isinstance(row, dict):
        return row.get("avg_high") is not None or row.get("avg_low") is not None
    return row.avg_high is not None or row.avg_low is not None


def mid_price(point) -> float | None:
    if point is None:
        return None
    high = point.avg_high
    low = point.avg_low
    if high is None and low is None:
        return None
    if high is None:
        return float(low)
    if low is None:
        return float(high)
    return (float(high) + float(low)) / 2.0


def _existing_state(session, model, timestamp: int, item_ids: list[int]) -> dict[int, bool]:
    """Map item_id -> whether the stored row at ``timestamp`` carries data."""
    state: dict[int, bool] = {}
    for i in range(0, len(item_ids), 500):
        chunk = item_ids[i:i + 500]
        rows = session.execute(
            select(model.item_id, model.avg_high, model.avg_low)
            .where(model.timestamp == int(timestamp))
            .where(model.item_id.in_(chunk))
        ).all()
        for item_id, avg_high, avg_low in rows:
            state[int(item_id)] = avg_high is not None or avg_low is not None
    return state


def upsert_points(
    session,
    granularity: str,
    rows: list[dict],
    *,
    replace_placeholders: bool = False,
) -> list[int]:
    """Insert-or-ignore price points; returns item ids whose row gained data.

    Existing points are never overwritten. With ``replace_placeholders`` a
    stored null/null marker may still be filled in by a fresh reading.
    """
    if not rows:
        return []
    model = price_model(granularity)

    by_ts: dict[int, list[dict]] = {}
    for row in rows:
        by_ts.setdefault(int(row["timestamp"]), []).append(row)

    gained: list[int] = []
    for timestamp, ts_rows in sorted(by_ts.items()):
        existing = _existing_state(session, model, timestamp, [int(r["item_id"]) for r in ts_rows])
        for row in ts_rows:
            item_id = int(row["item_id"])
            if not has_data(row):
                continue
            if item_id not in existing:
                gained.append(item_id)
            elif replace_placeholders and not existing[item_id]:
                gained.append(item_id)

        insert_stmt = sqlite_insert(model)
        if replace_placeholders:
            stmt = insert_stmt.on_conflict_do_update(
                index_elements=[model.item_id, model.timestamp],
                set_={
                    "avg_high": insert_stmt.excluded.avg_high,
                    "avg_low": insert_stmt.excluded.avg_low,
                    "high_volume": insert_stmt.excluded.high_volume,
                    "low_volume": insert_stmt.excluded.low_volume,
                },
                where=and_(model.avg_high.is_(None), model.avg_low.is_(None)),
            )
        else:
            stmt = insert_stmt.on_conflict_do_nothing(index_elements=[model.item_id, model.timestamp])

        payload = [
            {
                "item_id": int(row["item_id"]),
                "timestamp": timestamp,
                "avg_high": row.get("avg_high"),
                "avg_low": row.get("avg_low"),
                "high_volume": row.get("high_volume"),
                "low_volume": row.get("low_volume"),
            }
            for row in ts_rows
        ]
        for i in range(0, len(payload), BATCH_SIZE):
            session.execute(stmt, payload[i:i + BATCH_SIZE])

    return gained


def distinct_timestamps(session, granularity: str) -> set[int]:
    model = price_model(granularity)
    return {int(ts) for ts in session.execute(select(model.timestamp).distinct()).scalars()}


def latest_timestamp(session, granularity: str) -> int | None:
    model = price_model(granularity)
    value = session.execute(select(func.max(model.timestamp))).scalar_one()
    return int(value) if value is not None else None


def count_points(session, granularity: str) -> int:
    model = price_model(granularity)
    return int(session.execute(select(func.count()).select_from(model)).scalar_one())


def nearest(
    session,
    item_id: int,
    granularity: str,
    target_ts: int,
    tolerance_seconds: int,
    not_after: int,
):
    """Point closest to ``target_ts`` within tolerance and not after ``not_after``.

    Null/null markers are never candidates. A point with both sides present
    beats any one-sided point in range, then the smaller distance wins, then
    the earlier timestamp.
    """
    model = price_model(granularity)
    target = int(target_ts)
    tolerance = max(int(tolerance_seconds), 0)

    distance = func.abs(model.timestamp - target)
    one_sided = case(
        (and_(model.avg_high.is_not(None), model.avg_low.is_not(None)), 0),
        else_=1,
    )
    stmt = (
        select(model)
        .where(model.item_id == int(item_id))
        .where(model.timestamp <= int(not_after))
        .where(model.timestamp >= target - tolerance)
        .where(model.timestamp <= target + tolerance)
        .where(or_(model.avg_high.is_not(None), model.avg_low.is_not(None)))
        .order_by(one_sided.asc(), distance.asc(), model.timestamp.asc())
        .limit(1)
    )
    return session.execute(stmt).scalars().first()


def latest_point(session, granularity: str, item_id: int):
    model = price_model(granularity)
    stmt = (
        select(model)
        .where(model.item_id == int(item_id))
        .where(or_(model.avg_high.is_not(None), model.avg_low.is_not(None)))
        .order_by(model.timestamp.desc())
        .limit(1)
    )
    return session.execute(stmt).scalars().first()


def window_totals(
    session,
    granularity: str,
    item_id: int,
    *,
    start_exclusive: int,
    end_inclusive: int,
) -> dict:
    model = price_model(granularity)
    high_volume = func.coalesce(model.high_volume, 0)
    low_volume = func.coalesce(model.low_volume, 0)
    mid = case(
        (and_(model.avg_high.is_not(None), model.avg_low.is_not(None)), (model.avg_high + model.avg_low) / 2.0),
        (model.avg_high.is_not(None), model.avg_high),
        else_=model.avg_low,
    )
    row = session.execute(
        select(
            func.count(),
            func.sum(high_volume),
            func.sum(low_volume),
            func.sum(mid * (high_volume + low_volume)),
        )
        .where(model.item_id == int(item_id))
        .where(model.timestamp > int(start_exclusive))
        .where(model.timestamp <= int(end_inclusive))
    ).one()

    rows, high_sum, low_sum, turnover = row
    if not rows:
        return {"rows": 0, "volume": None, "turnover": None, "high_volume": None, "low_volume": None}
    high_sum = int(high_sum or 0)
    low_sum = int(low_sum or 0)
    return {
        "rows": int(rows),
        "volume": high_sum + low_sum,
        "turnover": float(turnover or 0.0),
        "high_volume": high_sum,
        "low_volume": low_sum,
    }


def series_rows(session, granularity: str, item_id: int, *, since: int) -> list[dict]:
    model = price_model(granularity)
    rows = session.execute(
        select(model)
        .where(model.item_id == int(item_id))
        .where(model.timestamp >= int(since))
        .where(or_(model.avg_high.is_not(None), model.avg_low.is_not(None)))
        .order_by(model.timestamp.asc())
    ).scalars()
    return [point_to_dict(point) for point in rows]


def point_to_dict(point) -> dict | None:
    if point is None:
        return None
    return {
        "item_id": int(point.item_id),
        "timestamp": int(point.timestamp),
        "avg_high": point.avg_high,
        "avg_low": point.avg_low,
        "high_volume": point.high_volume,
        "low_volume": point.low_volume,
        "mid": mid_price(point),
    }


def delete_before(session, granularity: str, cutoff: int) -> int:
    model = price_model(granularity)
    result = session.execute(delete(model).where(model.timestamp < int(cutoff)))
    return int(result.rowcount or 0)
