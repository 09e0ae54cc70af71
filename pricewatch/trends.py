from __future__ import annotations

from dataclasses import dataclass

from .config import get_granularity
from .series import mid_price, nearest, point_to_dict
from .timegrid import retention_seconds


@dataclass(frozen=True)
class TrendWindow:
    name: str
    period_seconds: int
    tolerance_seconds: int
    source: str


# One source granularity per window. Tolerance widens with the source grid.
TREND_WINDOWS: dict[str, TrendWindow] = {
    "5m": TrendWindow("5m", 300, 120, "5m"),
    "1h": TrendWindow("1h", 3600, 300, "5m"),
    "6h": TrendWindow("6h", 21600, 1200, "5m"),
    "24h": TrendWindow("24h", 86400, 3600, "1h"),
    "7d": TrendWindow("7d", 7 * 86400, 6 * 3600, "1h"),
    "1m": TrendWindow("1m", 30 * 86400, 86400, "6h"),
    "3m": TrendWindow("3m", 90 * 86400, 7 * 86400, "24h"),
    "1y": TrendWindow("1y", 365 * 86400, 7 * 86400, "24h"),
}


def get_window(name: str) -> TrendWindow:
    window = TREND_WINDOWS.get(str(name or "").strip().lower())
    if window is None:
        allowed = ", ".join(TREND_WINDOWS.keys())
        raise ValueError(f"Unsupported window: {name}. Expected one of: {allowed}")
    return window


def percent_change(current_mid: float | None, previous_mid: float | None) -> float | None:
    if current_mid is None or previous_mid is None or previous_mid == 0:
        return None
    return round(100.0 * (current_mid - previous_mid) / previous_mid, 2)


@dataclass
class TrendResult:
    window: TrendWindow
    value: float | None
    current: object | None = None
    previous: object | None = None
    target_ts: int | None = None

    @property
    def formula(self) -> str | None:
        current_mid = mid_price(self.current)
        previous_mid = mid_price(self.previous)
        if self.value is None or current_mid is None or previous_mid is None:
            return None
        return f"100 * ({current_mid:g} - {previous_mid:g}) / {previous_mid:g} = {self.value:.2f}%"

    def as_dict(self) -> dict:
        reason = None
        if self.current is None:
            reason = "no current point"
        elif self.previous is None:
            reason = "no point within tolerance of target"
        elif self.value is None:
            reason = "previous mid is zero"
        return {
            "window": self.window.name,
            "source": self.window.source,
            "period_seconds": self.window.period_seconds,
            "tolerance_seconds": self.window.tolerance_seconds,
            "target_ts": self.target_ts,
            "trend": self.value,
            "current": point_to_dict(self.current),
            "previous": point_to_dict(self.previous),
            "previous_offset_seconds": (
                int(self.previous.timestamp) - int(self.target_ts)
                if self.previous is not None and self.target_ts is not None
                else None
            ),
            "formula": self.formula,
            "reason": reason,
        }


class TrendResolver:
    def __init__(self, session, *, now_ts: int, windows: dict[str, TrendWindow] | None = None) -> None:
        self.session = session
        self.now_ts = int(now_ts)
        self.windows = TREND_WINDOWS if windows is None else windows

    def resolve(self, item_id: int, window: str | TrendWindow) -> TrendResult:
        trend_window = window if isinstance(window, TrendWindow) else get_window(window)
        source = get_granularity(trend_window.source)

        current = nearest(
            self.session,
            item_id,
            source.name,
            self.now_ts,
            retention_seconds(source.retention_hours),
            self.now_ts,
        )
        if current is None:
            return TrendResult(window=trend_window, value=None)

        target_ts = int(current.timestamp) - trend_window.period_seconds
        previous = nearest(
            self.session,
            item_id,
            source.name,
            target_ts,
            trend_window.tolerance_seconds,
            int(current.timestamp),
        )
        value = percent_change(mid_price(current), mid_price(previous))
        return TrendResult(window=trend_window, value=value, current=current, previous=previous, target_ts=target_ts)

    def resolve_trend(self, item_id: int, window: str) -> float | None:
        return self.resolve(item_id, window).value

    def resolve_all(self, item_id: int) -> dict[str, TrendResult]:
        return {name: self.resolve(item_id, trend_window) for name, trend_window in self.windows.items()}
