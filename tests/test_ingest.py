import pytest
from sqlalchemy import delete

from pricewatch.db import (
    DirtyItem,
    Item,
    PriceInstant,
    count_dirty,
    fetch_dirty_batch,
    session_scope,
    upsert_items,
)
from pricewatch.ingest import poll_granularity, poll_latest, refresh_item_mapping
from pricewatch.series import nearest, upsert_points
from pricewatch.wiki_prices import WikiPricesError

NOW = 1_700_000_130
UPSTREAM_5M = 1_699_999_800


def _dirty_ids(session):
    return {item_id for item_id, _ in fetch_dirty_batch(session, limit=100)}


def test_poll_latest_marks_only_changed_items_dirty(db, fake_client):
    fake_client.latest = {
        4151: {"high": 1_500_000, "highTime": 1_699_999_990, "low": 1_480_000, "lowTime": 1_699_999_950},
        379: {"high": 150, "highTime": 1_699_999_000, "low": 140, "lowTime": 1_699_999_100},
    }
    with session_scope() as session:
        assert poll_latest(session, fake_client, now_ts=NOW) == {"items_seen": 2, "changed": 2}
        assert _dirty_ids(session) == {4151, 379}

    with session_scope() as session:
        session.execute(delete(DirtyItem))

    fake_client.latest[379] = {"high": 151, "highTime": 1_700_000_100, "low": 140, "lowTime": 1_699_999_100}
    with session_scope() as session:
        assert poll_latest(session, fake_client, now_ts=NOW + 15)["changed"] == 1
        assert _dirty_ids(session) == {379}
        instant = session.get(PriceInstant, 379)
        assert (instant.high, instant.low, instant.updated_ts) == (151, 140, NOW + 15)
        assert session.get(Item, 4151) is not None


def test_poll_granularity_stores_end_of_interval_and_fills_markers(db, fake_client):
    with session_scope() as session:
        upsert_items(session, [{"id": 1}, {"id": 2}, {"id": 3}])
        upsert_points(
            session,
            "5m",
            [{"item_id": 2, "timestamp": UPSTREAM_5M + 300, "avg_high": None, "avg_low": None}],
        )

    fake_client.current["5m"] = (
        UPSTREAM_5M,
        {
            1: {"avgHighPrice": 100, "avgLowPrice": 95, "highPriceVolume": 12, "lowPriceVolume": 30},
            2: {"avgHighPrice": 10, "avgLowPrice": 9, "highPriceVolume": 1, "lowPriceVolume": 2},
        },
    )
    with session_scope() as session:
        result = poll_granularity(session, fake_client, "5m", now_ts=NOW)
    assert result["timestamp"] == UPSTREAM_5M + 300
    assert result["items"] == 3
    assert result["new_points"] == 2

    with session_scope() as session:
        stored = UPSTREAM_5M + 300
        assert nearest(session, 1, "5m", stored, 0, stored).avg_high == 100
        assert nearest(session, 2, "5m", stored, 0, stored).avg_low == 9
        assert nearest(session, 3, "5m", stored, 0, stored) is None
        assert _dirty_ids(session) == {1, 2}


def test_poll_granularity_rejects_unsettled_interval(db, fake_client):
    fake_client.current["1h"] = (UPSTREAM_5M, {})
    with session_scope() as session:
        with pytest.raises(WikiPricesError):
            poll_granularity(session, fake_client, "1h", now_ts=NOW)
        assert count_dirty(session) == 0


def test_refresh_item_mapping_upserts_metadata(db, fake_client):
    fake_client.mapping = [
        {"id": 4151, "name": "Abyssal whip", "members": True, "limit": 70, "icon": "Abyssal whip.png"},
        {"id": 2, "name": "Cannonball", "members": True, "limit": 11000},
        {"name": "no id"},
    ]
    with session_scope() as session:
        assert refresh_item_mapping(session, fake_client) == 2
    with session_scope() as session:
        whip = session.get(Item, 4151)
        assert (whip.name, whip.members, whip.limit) == ("Abyssal whip", 1, 70)
