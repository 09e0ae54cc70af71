import os

# No background scheduler or network during tests.
os.environ.setdefault("SCHEDULER_ENABLED", "0")
os.environ.setdefault("BACKFILL_ON_STARTUP", "0")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest

from pricewatch.db import init_db
from pricewatch.wiki_prices import IntervalSnapshot, WikiPricesError


class _FakeWikiClient:
    def __init__(self):
        self.latest = {}
        self.current = {}
        self.history = {}
        self.mapping = []
        self.fail = set()
        self.calls = []

    def fetch_latest(self):
        self.calls.append(("latest", None))
        return dict(self.latest)

    def fetch_interval(self, granularity, timestamp=None):
        self.calls.append((granularity, timestamp))
        if timestamp is None:
            ts, data = self.current[granularity]
            return IntervalSnapshot(timestamp=ts, data=dict(data))
        if (granularity, timestamp) in self.fail:
            raise WikiPricesError("Wiki prices HTTP 503")
        return IntervalSnapshot(timestamp=timestamp, data=dict(self.history.get((granularity, timestamp), {})))

    def fetch_mapping(self):
        self.calls.append(("mapping", None))
        return list(self.mapping)


@pytest.fixture
def db(tmp_path):
    init_db(f"sqlite:///{tmp_path / 'pricewatch.db'}", reset=True)
    yield


@pytest.fixture
def fake_client():
    return _FakeWikiClient()
