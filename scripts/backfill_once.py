from __future__ import annotations

import argparse

from _bootstrap import build_pipeline

from pricewatch.config import GRANULARITIES, get_granularity


def main() -> None:
    parser = argparse.ArgumentParser(description="Fill missing price points once and exit.")
    parser.add_argument("granularities", nargs="*", help="5m, 1h, 6h, 24h (default: all)")
    args = parser.parse_args()

    names = [get_granularity(name).name for name in args.granularities] or list(GRANULARITIES.keys())
    pipeline = build_pipeline()
    pipeline.refresh_mapping()
    for name in names:
        result = pipeline.backfill(name)
        print(
            f"{name}: expected={result['expected']} missing={result['missing']} "
            f"fetched={result['fetched']} failed={result['failed']}"
        )


if __name__ == "__main__":
    main()
