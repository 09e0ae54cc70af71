from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

import requests

logger = logging.getLogger(__name__)

BASE_URL = "https://prices.runescape.wiki/api/v1/osrs"
DEFAULT_USER_AGENT = "pricewatch - GE price ingestion (contact: set WIKI_USER_AGENT)"
TIMESERIES_ENDPOINTS = {"5m", "1h", "6h", "24h"}


class WikiPricesError(RuntimeError):
    pass


class WikiPricesRejected(WikiPricesError):
    """4xx response other than 429; retrying will not help."""


@dataclass
class IntervalSnapshot:
    timestamp: int
    data: dict[int, dict]


def _parse_item_map(raw) -> dict[int, dict]:
    if not isinstance(raw, dict):
        raise WikiPricesError("Malformed payload: 'data' is not an object")
    parsed: dict[int, dict] = {}
    for key, value in raw.items():
        try:
            item_id = int(key)
        except (TypeError, ValueError):
            continue
        if isinstance(value, dict):
            parsed[item_id] = value
    return parsed


class WikiPricesClient:
    def __init__(
        self,
        user_agent: str | None = None,
        *,
        base_url: str = BASE_URL,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        min_request_interval_seconds: float = 0.1,
    ) -> None:
        self.user_agent = (user_agent or "").strip() or DEFAULT_USER_AGENT
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = max(float(timeout_seconds), 1.0)
        self.max_retries = max(int(max_retries), 1)
        self.backoff_base_seconds = max(float(backoff_base_seconds), 0.1)
        self.min_request_interval_seconds = max(float(min_request_interval_seconds), 0.0)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": self.user_agent, "Accept": "application/json"})
        self._throttle_lock = threading.Lock()
        self._last_request_ts = 0.0

    def _throttle(self) -> None:
        with self._throttle_lock:
            wait = self._last_request_ts + self.min_request_interval_seconds - time.monotonic()
            if wait > 0:
                time.sleep(wait)
            self._last_request_ts = time.monotonic()

    def _request_json(self, path: str, params: dict | None = None):
        url = f"{self.base_url}/{path.lstrip('/')}"
        last_err: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                self._throttle()
                response = self.session.get(url, params=params or None, timeout=self.timeout_seconds)
                if response.status_code != 200:
                    message = f"Wiki prices HTTP {response.status_code} for /{path}"
                    if response.status_code >= 500 or response.status_code == 429:
                        raise WikiPricesError(message)
                    raise WikiPricesRejected(message)
                return response.json()
            except WikiPricesRejected:
                raise
            except (requests.RequestException, ValueError, WikiPricesError) as exc:
                last_err = exc
                if attempt >= self.max_retries:
                    break
                sleep_seconds = self.backoff_base_seconds * (2 ** (attempt - 1))
                logger.warning("wiki prices request /%s attempt %s failed: %s", path, attempt, exc)
                time.sleep(min(sleep_seconds, 12))

        raise WikiPricesError(str(last_err) if last_err else "Unknown wiki prices error")

    def fetch_latest(self) -> dict[int, dict]:
        payload = self._request_json("latest")
        if not isinstance(payload, dict):
            raise WikiPricesError("Malformed /latest payload")
        return _parse_item_map(payload.get("data"))

    def fetch_interval(self, granularity: str, timestamp: int | None = None) -> IntervalSnapshot:
        """Averaged snapshot for one interval; ``timestamp`` is the interval start."""
        if granularity not in TIMESERIES_ENDPOINTS:
            raise ValueError(f"Unsupported granularity: {granularity}")
        params = {"timestamp": int(timestamp)} if timestamp is not None else None
        payload = self._request_json(granularity, params)
        if not isinstance(payload, dict):
            raise WikiPricesError(f"Malformed /{granularity} payload")

        data = _parse_item_map(payload.get("data"))
        snapshot_ts = payload.get("timestamp", timestamp)
        if snapshot_ts is None:
            raise WikiPricesError(f"/{granularity} payload carries no timestamp")
        return IntervalSnapshot(timestamp=int(snapshot_ts), data=data)

    def fetch_mapping(self) -> list[dict]:
        payload = self._request_json("mapping")
        if not isinstance(payload, list):
            raise WikiPricesError("Malformed /mapping payload")
        return [row for row in payload if isinstance(row, dict)]
