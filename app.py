from __future__ import annotations

import logging
import os
import time

from dotenv import load_dotenv
from flask import Flask, jsonify, request
import pandas as pd
from sqlalchemy import Integer, Numeric, func, or_, select

load_dotenv()

from pricewatch.config import (  # noqa: E402
    GRANULARITIES,
    ConfigurationError,
    env_bool,
    env_int,
    get_granularity,
    validate_granularities,
)
from pricewatch.db import CanonicalItem, PriceInstant, count_dirty, get_counts, init_db, session_scope  # noqa: E402
from pricewatch.pipeline import Pipeline  # noqa: E402
from pricewatch.scheduler import AdaptiveScheduler  # noqa: E402
from pricewatch.series import latest_timestamp, series_rows  # noqa: E402
from pricewatch.timegrid import retention_seconds  # noqa: E402
from pricewatch.trends import TrendResolver  # noqa: E402
from pricewatch.wiki_prices import WikiPricesClient  # noqa: E402

os.environ.setdefault("FLASK_RUN_PORT", "5004")

PORT = env_int("PORT", 5004)
DEBUG = env_bool("DEBUG", False)
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()

WIKI_USER_AGENT = (os.getenv("WIKI_USER_AGENT") or "").strip()
WIKI_MIN_REQUEST_INTERVAL_MS = max(0, env_int("WIKI_MIN_REQUEST_INTERVAL_MS", 100))
WIKI_MAX_RETRIES = max(1, env_int("WIKI_MAX_RETRIES", 3))
BACKFILL_DELAY_MS = max(0, env_int("BACKFILL_DELAY_MS", 150))
BACKFILL_ON_STARTUP = env_bool("BACKFILL_ON_STARTUP", True)
CANONICAL_BATCH_SIZE = max(1, env_int("CANONICAL_BATCH_SIZE", 500))
SCHEDULER_ENABLED = env_bool("SCHEDULER_ENABLED", True)
SCHEDULER_GRACE_SECONDS = env_int("SCHEDULER_GRACE_SECONDS", 2)
ITEMS_PAGE_LIMIT = 500
CHART_MAX_POINTS = 1000

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger("pricewatch")

validate_granularities(grace_seconds=SCHEDULER_GRACE_SECONDS)
init_db()
client = WikiPricesClient(
    WIKI_USER_AGENT,
    max_retries=WIKI_MAX_RETRIES,
    min_request_interval_seconds=WIKI_MIN_REQUEST_INTERVAL_MS / 1000.0,
)
pipeline = Pipeline(
    client,
    backfill_delay_seconds=BACKFILL_DELAY_MS / 1000.0,
    canonical_batch_size=CANONICAL_BATCH_SIZE,
)
scheduler = AdaptiveScheduler(
    pipeline=pipeline,
    grace_seconds=SCHEDULER_GRACE_SECONDS,
    backfill_on_startup=BACKFILL_ON_STARTUP,
)

app = Flask(__name__)
_scheduler_started = False

SORTABLE_COLUMNS = {column.name for column in CanonicalItem.__table__.columns}
RANGE_FILTER_COLUMNS = {
    column.name
    for column in CanonicalItem.__table__.columns
    if isinstance(column.type, (Integer, Numeric))
}


def start_scheduler_if_needed() -> None:
    global _scheduler_started
    if _scheduler_started or not SCHEDULER_ENABLED:
        return
    scheduler.start()
    _scheduler_started = True
    logger.info("pricewatch scheduler started")


@app.before_request
def _ensure_background_scheduler() -> None:
    start_scheduler_if_needed()


def _parse_int_arg(name: str, default: int, *, minimum: int, maximum: int) -> int:
    raw = request.args.get(name)
    try:
        value = int(raw) if raw is not None else int(default)
    except ValueError:
        value = int(default)
    return min(max(value, minimum), maximum)


def _range_filters() -> list:
    """`min_<column>` / `max_<column>` query args as bounded WHERE clauses."""
    clauses = []
    for key, raw in request.args.items():
        bound, _, name = key.partition("_")
        if bound not in {"min", "max"} or not name or raw is None or raw.strip() == "":
            continue
        if name not in RANGE_FILTER_COLUMNS:
            raise ValueError(f"unsupported filter column: {name}")
        try:
            value = float(raw)
        except ValueError:
            raise ValueError(f"{key} must be a number") from None
        column = getattr(CanonicalItem, name)
        clauses.append(column >= value if bound == "min" else column <= value)
    return clauses


def _canonical_to_dict(row: CanonicalItem) -> dict:
    return {column.name: getattr(row, column.name) for column in CanonicalItem.__table__.columns}


def _downsample_frame_even(df: pd.DataFrame, max_points: int) -> pd.DataFrame:
    limit = max(int(max_points), 1)
    if df.empty or len(df.index) <= limit:
        return df

    step = max((len(df.index) + limit - 1) // limit, 1)
    sampled = df.iloc[::step].copy()
    if sampled.index[-1] != df.index[-1]:
        sampled = pd.concat([sampled, df.iloc[[-1]]], axis=0)
    sampled = sampled[~sampled.index.duplicated(keep="last")]
    if len(sampled.index) > limit:
        sampled = sampled.iloc[-limit:]
    return sampled


def _frame_to_records(df: pd.DataFrame) -> list[dict]:
    if df.empty:
        return []
    cleaned = df.astype(object).where(pd.notna(df), None)
    return cleaned.to_dict(orient="records")


@app.get("/health")
def health() -> object:
    return jsonify({"ok": True, "ts": int(time.time())})


@app.get("/api/status")
def api_status() -> object:
    with session_scope() as session:
        counts = get_counts(session)
        latest = {name: latest_timestamp(session, name) for name in GRANULARITIES}
    return jsonify(
        {
            "scheduler": scheduler.get_status(),
            "scheduler_enabled": SCHEDULER_ENABLED,
            "counts": counts,
            "latest_timestamps": latest,
        }
    )


@app.get("/api/items")
def api_items() -> object:
    sort = str(request.args.get("sort") or "margin").strip().lower()
    if sort not in SORTABLE_COLUMNS:
        return jsonify({"ok": False, "error": f"unsupported sort column: {sort}"}), 400
    order = str(request.args.get("order") or "desc").strip().lower()
    limit = _parse_int_arg("limit", 50, minimum=1, maximum=ITEMS_PAGE_LIMIT)
    offset = _parse_int_arg("offset", 0, minimum=0, maximum=10_000_000)
    search = str(request.args.get("search") or "").strip()
    members = request.args.get("members")
    try:
        range_filters = _range_filters()
    except ValueError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400

    sort_column = getattr(CanonicalItem, sort)
    ordering = sort_column.asc() if order == "asc" else sort_column.desc()

    stmt = select(CanonicalItem)
    if range_filters:
        stmt = stmt.where(*range_filters)
    if search:
        stmt = stmt.where(CanonicalItem.name.ilike(f"%{search}%"))
    if members is not None and members != "":
        wanted = 1 if members.strip().lower() in {"1", "true", "yes", "on"} else 0
        if wanted:
            stmt = stmt.where(CanonicalItem.members == 1)
        else:
            stmt = stmt.where(or_(CanonicalItem.members == 0, CanonicalItem.members.is_(None)))

    with session_scope() as session:
        total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        rows = session.execute(
            stmt.order_by(ordering.nulls_last(), CanonicalItem.item_id.asc()).limit(limit).offset(offset)
        ).scalars().all()
        items = [_canonical_to_dict(row) for row in rows]

    return jsonify({"items": items, "total": int(total), "limit": limit, "offset": offset})


@app.get("/api/items/<int:item_id>")
def api_item(item_id: int) -> object:
    with session_scope() as session:
        row = session.get(CanonicalItem, item_id)
        if row is None:
            return jsonify({"ok": False, "error": "item not found"}), 404
        return jsonify(_canonical_to_dict(row))


@app.get("/api/items/<int:item_id>/trend-details")
def api_trend_details(item_id: int) -> object:
    now_ts = int(time.time())
    with session_scope() as session:
        canonical = session.get(CanonicalItem, item_id)
        resolver = TrendResolver(session, now_ts=now_ts)
        windows = {}
        for name, result in resolver.resolve_all(item_id).items():
            details = result.as_dict()
            details["stored_trend"] = getattr(canonical, f"trend_{name}") if canonical is not None else None
            windows[name] = details
    return jsonify({"item_id": item_id, "now_ts": now_ts, "windows": windows})


@app.get("/api/prices/latest/<int:item_id>")
def api_latest_price(item_id: int) -> object:
    with session_scope() as session:
        instant = session.get(PriceInstant, item_id)
        if instant is None:
            return jsonify({"ok": False, "error": "no latest price"}), 404
        return jsonify(
            {
                "item_id": item_id,
                "high": instant.high,
                "high_time": instant.high_time,
                "low": instant.low,
                "low_time": instant.low_time,
                "updated_ts": instant.updated_ts,
            }
        )


@app.get("/api/prices/chart/<granularity>/<int:item_id>")
def api_chart(granularity: str, item_id: int) -> object:
    try:
        config = get_granularity(granularity)
    except ConfigurationError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400
    max_points = _parse_int_arg("max_points", CHART_MAX_POINTS, minimum=1, maximum=CHART_MAX_POINTS)

    with session_scope() as session:
        latest = latest_timestamp(session, config.name)
        if latest is None:
            return jsonify({"granularity": config.name, "item_id": item_id, "points": []})
        since = latest - retention_seconds(config.retention_hours) + config.interval_seconds
        rows = series_rows(session, config.name, item_id, since=since)

    df = pd.DataFrame(rows)
    if not df.empty:
        df = _downsample_frame_even(df.set_index("timestamp", drop=False), max_points)
    return jsonify({"granularity": config.name, "item_id": item_id, "points": _frame_to_records(df)})


@app.get("/api/dirty")
def api_dirty() -> object:
    with session_scope() as session:
        depth = count_dirty(session)
    return jsonify({"dirty_count": depth})


if __name__ == "__main__":
    start_scheduler_if_needed()
    port = int(os.getenv("PORT", PORT))
    print(f"Starting pricewatch flask runtime on port={port}")
    app.run(host="0.0.0.0", port=port, debug=DEBUG)
