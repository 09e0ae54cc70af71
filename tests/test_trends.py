import pytest

from pricewatch.db import session_scope
from pricewatch.series import upsert_points
from pricewatch.trends import TREND_WINDOWS, TrendResolver, get_window, percent_change

NOW = 1_700_000_100  # aligned to 5m


def _point(item_id, ts, high, low):
    return {"item_id": item_id, "timestamp": ts, "avg_high": high, "avg_low": low, "high_volume": 1, "low_volume": 1}


def test_percent_change_rounds_and_guards_zero():
    assert percent_change(110, 100) == 10.0
    assert percent_change(100, 300) == -66.67
    assert percent_change(110, 0) is None
    assert percent_change(None, 100) is None
    assert percent_change(110, None) is None


def test_one_hour_trend_from_mid_prices(db):
    with session_scope() as session:
        upsert_points(session, "5m", [_point(1, NOW, 120, 100), _point(1, NOW - 3600, 100, 100)])

    with session_scope() as session:
        result = TrendResolver(session, now_ts=NOW).resolve(1, "1h")
        assert result.value == 10.0
        assert result.current.timestamp == NOW
        assert result.previous.timestamp == NOW - 3600
        assert result.target_ts == NOW - 3600
        assert result.formula == "100 * (110 - 100) / 100 = 10.00%"


def test_current_is_latest_point_not_after_now(db):
    with session_scope() as session:
        upsert_points(
            session,
            "5m",
            [_point(1, NOW - 300, 200, 200), _point(1, NOW + 300, 999, 999), _point(1, NOW - 3900, 100, 100)],
        )
    with session_scope() as session:
        result = TrendResolver(session, now_ts=NOW).resolve(1, "1h")
        assert result.current.timestamp == NOW - 300
        assert result.value == 100.0


def test_six_hour_trend_is_null_without_point_inside_tolerance(db):
    with session_scope() as session:
        upsert_points(session, "5m", [_point(1, NOW, 120, 100), _point(1, NOW - 21600 - 1500, 100, 100)])
    with session_scope() as session:
        result = TrendResolver(session, now_ts=NOW).resolve(1, "6h")
        assert result.value is None
        assert result.previous is None
        assert result.as_dict()["reason"] == "no point within tolerance of target"


def test_trend_is_null_when_previous_mid_is_zero(db):
    with session_scope() as session:
        upsert_points(session, "5m", [_point(1, NOW, 120, 100), _point(1, NOW - 300, 0, 0)])
    with session_scope() as session:
        assert TrendResolver(session, now_ts=NOW).resolve_trend(1, "5m") is None


def test_trend_is_null_without_any_data(db):
    with session_scope() as session:
        results = TrendResolver(session, now_ts=NOW).resolve_all(42)
    assert set(results) == set(TREND_WINDOWS)
    assert all(result.value is None for result in results.values())


def test_one_sided_points_use_available_side(db):
    with session_scope() as session:
        upsert_points(session, "5m", [_point(1, NOW, None, 150), _point(1, NOW - 300, 100, None)])
    with session_scope() as session:
        assert TrendResolver(session, now_ts=NOW).resolve_trend(1, "5m") == 50.0


def test_equal_distance_prefers_two_sided_previous(db):
    target = NOW - 21600
    with session_scope() as session:
        upsert_points(
            session,
            "5m",
            [
                _point(1, NOW, 110, 110),
                _point(1, target - 600, 50, None),
                _point(1, target + 600, 100, 100),
            ],
        )
    with session_scope() as session:
        result = TrendResolver(session, now_ts=NOW).resolve(1, "6h")
        assert result.previous.timestamp == target + 600
        assert result.value == 10.0


def test_closer_one_sided_previous_loses_to_two_sided(db):
    target = NOW - 21600
    with session_scope() as session:
        upsert_points(
            session,
            "5m",
            [
                _point(1, NOW, 110, 110),
                _point(1, target, None, 50),
                _point(1, target - 300, 100, 100),
            ],
        )
    with session_scope() as session:
        result = TrendResolver(session, now_ts=NOW).resolve(1, "6h")
        assert result.previous.timestamp == target - 300
        assert result.value == 10.0


def test_seven_day_window_reads_hourly_table(db):
    hour_now = NOW - NOW % 3600
    with session_scope() as session:
        upsert_points(session, "1h", [_point(1, hour_now, 90, 90), _point(1, hour_now - 7 * 86400 + 3 * 3600, 100, 100)])
        upsert_points(session, "5m", [_point(1, NOW, 1, 1)])
    with session_scope() as session:
        result = TrendResolver(session, now_ts=NOW).resolve(1, "7d")
        assert result.window.source == "1h"
        assert result.value == -10.0


def test_unknown_window_raises():
    with pytest.raises(ValueError):
        get_window("2w")
