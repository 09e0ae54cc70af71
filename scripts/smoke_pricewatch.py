from __future__ import annotations

import os
import sys
from pathlib import Path

# Smoke context: no background scheduler, live upstream calls only.
os.environ.setdefault("SCHEDULER_ENABLED", "0")
os.environ.setdefault("DATABASE_URL", "sqlite:///pricewatch_smoke.db")

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app import app, pipeline  # noqa: E402


def main() -> None:
    latest = pipeline.poll_latest()
    assert latest["items_seen"] > 0, "upstream /latest returned no items"

    poll = pipeline.poll_granularity("5m")
    assert poll["items"] > 0, "upstream /5m returned no items"

    projected = pipeline.refresh_canonical()
    assert projected > 0, "canonical refresh projected nothing"

    with app.test_client() as client:
        status = client.get("/api/status")
        assert status.status_code == 200, status.data
        items = client.get("/api/items?sort=volume_5m&limit=5")
        assert items.status_code == 200, items.data
        payload = items.get_json()
        assert payload["items"], "no canonical items served"
        first_id = payload["items"][0]["item_id"]
        details = client.get(f"/api/items/{first_id}/trend-details")
        assert details.status_code == 200, details.data

    print(f"smoke ok: latest={latest['items_seen']} 5m_ts={poll['timestamp']} projected={projected}")


if __name__ == "__main__":
    main()
