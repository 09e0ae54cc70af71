from pricewatch.cleanup import cleanup_all, cleanup_granularity, retention_cutoff
from pricewatch.db import PriceInstant, session_scope
from pricewatch.series import distinct_timestamps, upsert_points
from pricewatch.timegrid import expected_timestamps, to_stored_timestamp

LATEST = 1_700_000_100


def _rows(timestamps):
    return [{"item_id": 1, "timestamp": ts, "avg_high": 10, "avg_low": 9} for ts in timestamps]


def test_retention_cutoff_is_relative_to_latest_point():
    # 24h + 5m retention, one interval buffer, one aligned step
    assert retention_cutoff(LATEST, "5m") == LATEST - 86_700 - 300 - 300


def test_cleanup_keeps_the_full_expected_grid(db):
    grid = [to_stored_timestamp(ts, 300) for ts in expected_timestamps(300, 24 + 5 / 60, anchor=LATEST - 300)]
    stale = [grid[0] - 300 * k for k in range(1, 6)]
    with session_scope() as session:
        upsert_points(session, "5m", _rows(grid + stale))

    with session_scope() as session:
        deleted = cleanup_granularity(session, "5m")
        remaining = distinct_timestamps(session, "5m")
    assert set(grid) <= remaining
    assert deleted == len(stale) - len(remaining - set(grid))
    assert min(remaining) == retention_cutoff(LATEST, "5m")


def test_cleanup_on_empty_table_is_noop(db):
    with session_scope() as session:
        assert cleanup_granularity(session, "24h") == 0


def test_cleanup_all_drops_stale_instants(db):
    with session_scope() as session:
        session.add(PriceInstant(item_id=1, high=5, low=4, updated_ts=LATEST - 20 * 86400))
        session.add(PriceInstant(item_id=2, high=5, low=4, updated_ts=LATEST - 60))

    with session_scope() as session:
        summary = cleanup_all(session, now_ts=LATEST)
        assert summary["price_instants"] == 1
        assert summary["5m"] == 0
        assert session.get(PriceInstant, 2) is not None
        assert session.get(PriceInstant, 1) is None
