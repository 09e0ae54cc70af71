from __future__ import annotations

import time

from _bootstrap import build_pipeline

from pricewatch.db import get_item_ids, mark_items_dirty, session_scope


def main() -> None:
    pipeline = build_pipeline()
    with session_scope() as session:
        marked = mark_items_dirty(session, get_item_ids(session), now_ts=int(time.time()))
    print(f"marked {marked} items dirty; queue depth now {pipeline.dirty_count()}")


if __name__ == "__main__":
    main()
