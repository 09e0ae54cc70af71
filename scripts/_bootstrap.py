from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from dotenv import load_dotenv  # noqa: E402

load_dotenv()

from pricewatch.config import env_int  # noqa: E402
from pricewatch.db import init_db  # noqa: E402
from pricewatch.pipeline import Pipeline  # noqa: E402
from pricewatch.wiki_prices import WikiPricesClient  # noqa: E402


def build_pipeline() -> Pipeline:
    logging.basicConfig(
        level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    init_db()
    client = WikiPricesClient(
        os.getenv("WIKI_USER_AGENT"),
        max_retries=max(1, env_int("WIKI_MAX_RETRIES", 3)),
        min_request_interval_seconds=max(0, env_int("WIKI_MIN_REQUEST_INTERVAL_MS", 100)) / 1000.0,
    )
    return Pipeline(
        client,
        backfill_delay_seconds=max(0, env_int("BACKFILL_DELAY_MS", 150)) / 1000.0,
        canonical_batch_size=max(1, env_int("CANONICAL_BATCH_SIZE", 500)),
    )
