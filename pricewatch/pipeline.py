from __future__ import annotations

import logging
import time

from .backfill import BackfillEngine
from .canonical import refresh_dirty
from .cleanup import cleanup_all
from .config import GRANULARITIES
from .db import count_dirty, session_scope
from .ingest import poll_granularity, poll_latest, refresh_item_mapping
from .wiki_prices import WikiPricesError

logger = logging.getLogger(__name__)


class Pipeline:
    """Binds the upstream client to the scheduler's jobs; each job owns its session."""

    def __init__(
        self,
        client,
        *,
        backfill_delay_seconds: float = 0.15,
        canonical_batch_size: int = 500,
        clock=time.time,
        sleep=time.sleep,
    ) -> None:
        self.client = client
        self.canonical_batch_size = max(int(canonical_batch_size), 1)
        self._clock = clock
        self.backfill_engine = BackfillEngine(
            client,
            delay_seconds=backfill_delay_seconds,
            clock=clock,
            sleep=sleep,
        )

    def _now(self) -> int:
        return int(self._clock())

    def poll_latest(self) -> dict:
        with session_scope() as session:
            return poll_latest(session, self.client, now_ts=self._now())

    def poll_granularity(self, granularity: str) -> dict:
        with session_scope() as session:
            result = poll_granularity(session, self.client, granularity, now_ts=self._now())
        if granularity == "24h":
            self.refresh_mapping()
        return result

    def refresh_mapping(self) -> int:
        try:
            with session_scope() as session:
                return refresh_item_mapping(session, self.client)
        except WikiPricesError as exc:
            logger.warning("item mapping refresh failed: %s", exc)
            return 0

    def backfill(self, granularity: str) -> dict:
        return self.backfill_engine.backfill(granularity).as_dict()

    def cold_start_backfill(self) -> dict[str, dict]:
        self.refresh_mapping()
        results = self.backfill_engine.backfill_all(GRANULARITIES.keys())
        return {name: result.as_dict() for name, result in results.items()}

    def cleanup(self) -> dict:
        with session_scope() as session:
            return cleanup_all(session, now_ts=self._now())

    def refresh_canonical(self) -> int:
        return refresh_dirty(batch_size=self.canonical_batch_size, clock=self._clock)

    def dirty_count(self) -> int:
        with session_scope() as session:
            return count_dirty(session)
