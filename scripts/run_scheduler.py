from __future__ import annotations

import os

from _bootstrap import build_pipeline

from pricewatch.config import env_bool, env_int
from pricewatch.scheduler import AdaptiveScheduler


def main() -> None:
    scheduler = AdaptiveScheduler(
        pipeline=build_pipeline(),
        grace_seconds=env_int("SCHEDULER_GRACE_SECONDS", 2),
        backfill_on_startup=env_bool("BACKFILL_ON_STARTUP", True),
    )
    print(f"Starting pricewatch scheduler (db={os.getenv('DATABASE_URL') or 'sqlite:///pricewatch.db'})")
    scheduler.run_forever()


if __name__ == "__main__":
    main()
