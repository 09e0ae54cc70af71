from __future__ import annotations

import logging
import math
import time

from .db import (
    Item,
    PriceInstant,
    clear_dirty,
    count_dirty,
    fetch_dirty_batch,
    session_scope,
    upsert_canonical_items,
)
from .series import latest_point, window_totals
from .trends import TREND_WINDOWS, TrendResolver

logger = logging.getLogger(__name__)

GE_TAX_RATE = 0.02

# Exempt from the Grand Exchange sell-side fee.
TAX_EXEMPT_ITEMS = frozenset(
    name.lower()
    for name in (
        "Old school bond",
        "Energy potion",
        "Energy potion(1)",
        "Energy potion(2)",
        "Energy potion(3)",
        "Energy potion(4)",
        "Bronze arrow",
        "Bronze dart",
        "Iron arrow",
        "Iron dart",
        "Mind rune",
        "Steel arrow",
        "Steel dart",
        "Bass",
        "Bread",
        "Cake",
        "Cooked chicken",
        "Cooked meat",
        "Herring",
        "Lobster",
        "Mackerel",
        "Meat pie",
        "Pike",
        "Salmon",
        "Shrimps",
        "Tuna",
        "Ardougne teleport",
        "Ardougne teleport (tablet)",
        "Camelot teleport",
        "Camelot teleport (tablet)",
        "Civitas illa fortis teleport",
        "Civitas illa fortis teleport (tablet)",
        "Falador teleport",
        "Falador teleport (tablet)",
        "Games necklace(8)",
        "Kourend castle teleport",
        "Kourend castle teleport (tablet)",
        "Lumbridge teleport",
        "Lumbridge teleport (tablet)",
        "Ring of dueling(8)",
        "Teleport to house",
        "Teleport to house (tablet)",
        "Varrock teleport",
        "Varrock teleport (tablet)",
        "Chisel",
        "Gardening trowel",
        "Glassblowing pipe",
        "Hammer",
        "Needle",
        "Pestle and mortar",
        "Rake",
        "Saw",
        "Secateurs",
        "Seed dibber",
        "Shears",
        "Spade",
        "Watering can (0)",
    )
)


def is_tax_exempt(name: str | None) -> bool:
    return bool(name) and name.strip().lower() in TAX_EXEMPT_ITEMS


def sell_tax(high: int | None, *, name: str | None = None) -> int | None:
    if high is None:
        return None
    if is_tax_exempt(name):
        return 0
    return int(math.floor(int(high) * GE_TAX_RATE))


def compute_core_fields(high: int | None, low: int | None, *, name: str | None, limit: int | None) -> dict:
    tax = sell_tax(high, name=name)
    margin = None
    roi = None
    spread = None
    max_profit = None
    max_investment = None

    if high is not None and low is not None:
        margin = int(high) - int(tax or 0) - int(low)
        if low > 0:
            roi = round(margin * 100.0 / low, 2)
        if high > 0:
            spread = round((high - low) * 100.0 / high, 2)
        if limit is not None:
            max_profit = margin * int(limit)
    if low is not None and limit is not None:
        max_investment = int(low) * int(limit)

    return {
        "tax": tax,
        "margin": margin,
        "roi_percent": roi,
        "spread_percent": spread,
        "max_profit": max_profit,
        "max_investment": max_investment,
    }


def _buy_sell_rate(high_volume: int | None, low_volume: int | None) -> float | None:
    if high_volume is None or not low_volume:
        return None
    return round(high_volume / low_volume, 2)


def project_one(session, item_id: int, *, now_ts: int) -> dict:
    """Recompute and write the canonical row for one item."""
    item_id = int(item_id)
    now_ts = int(now_ts)
    item = session.get(Item, item_id)
    instant = session.get(PriceInstant, item_id)

    name = item.name if item is not None else None
    limit = item.limit if item is not None else None
    high = instant.high if instant is not None else None
    low = instant.low if instant is not None else None

    row = {
        "item_id": item_id,
        "name": name,
        "members": item.members if item is not None else None,
        "limit": limit,
        "icon": item.icon if item is not None else None,
        "high": high,
        "low": low,
        "high_time": instant.high_time if instant is not None else None,
        "low_time": instant.low_time if instant is not None else None,
        "timestamp_updated": now_ts,
    }
    row.update(compute_core_fields(high, low, name=name, limit=limit))

    for granularity in ("5m", "1h"):
        point = latest_point(session, granularity, item_id)
        row[f"price_{granularity}_high"] = point.avg_high if point is not None else None
        row[f"price_{granularity}_low"] = point.avg_low if point is not None else None

    resolver = TrendResolver(session, now_ts=now_ts)
    for name_w, window in TREND_WINDOWS.items():
        totals = window_totals(
            session,
            window.source,
            item_id,
            start_exclusive=now_ts - window.period_seconds,
            end_inclusive=now_ts,
        )
        row[f"volume_{name_w}"] = totals["volume"]
        row[f"turnover_{name_w}"] = round(totals["turnover"], 2) if totals["turnover"] is not None else None
        row[f"buy_sell_rate_{name_w}"] = _buy_sell_rate(totals["high_volume"], totals["low_volume"])
        row[f"trend_{name_w}"] = resolver.resolve(item_id, window).value

    upsert_canonical_items(session, [row])
    return row


def refresh_dirty(*, now_ts: int | None = None, batch_size: int = 500, clock=time.time) -> int:
    """Drain the dirty set observed at start; returns items projected.

    Each item is projected in its own transaction so one failure leaves only
    that item queued.
    """
    with session_scope() as session:
        budget = count_dirty(session)
    if budget == 0:
        return 0

    projected = 0
    attempted = 0
    skipped: set[int] = set()
    while attempted < budget:
        with session_scope() as session:
            batch = [
                entry
                for entry in fetch_dirty_batch(session, limit=batch_size + len(skipped))
                if entry[0] not in skipped
            ][:batch_size]
        if not batch:
            break

        for item_id, touched_ts in batch:
            attempted += 1
            stamp = int(now_ts) if now_ts is not None else int(clock())
            try:
                with session_scope() as session:
                    project_one(session, item_id, now_ts=stamp)
                    clear_dirty(session, item_id, touched_ts=touched_ts)
                projected += 1
            except Exception as exc:
                skipped.add(item_id)
                logger.error("canonical projection for item %s failed: %s", item_id, exc)
            if attempted >= budget:
                break

    logger.info("canonical refresh: projected=%s of %s dirty", projected, budget)
    return projected
