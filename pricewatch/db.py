from __future__ import annotations

import logging
import os
from contextlib import contextmanager

from sqlalchemy import Float, Index, Integer, Text, create_engine, delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, scoped_session, sessionmaker

BATCH_SIZE = 200

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class PricePointMixin:
    # timestamp is the END of the interval (upstream start + interval)
    item_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timestamp: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    avg_high: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_low: Mapped[float | None] = mapped_column(Float, nullable=True)
    high_volume: Mapped[int | None] = mapped_column(Integer, nullable=True)
    low_volume: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Price5m(PricePointMixin, Base):
    __tablename__ = "price_5m"


class Price1h(PricePointMixin, Base):
    __tablename__ = "price_1h"


class Price6h(PricePointMixin, Base):
    __tablename__ = "price_6h"


class Price24h(PricePointMixin, Base):
    __tablename__ = "price_24h"


PRICE_MODELS = {
    "5m": Price5m,
    "1h": Price1h,
    "6h": Price6h,
    "24h": Price24h,
}


class PriceInstant(Base):
    __tablename__ = "price_instants"

    item_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    high: Mapped[int | None] = mapped_column(Integer, nullable=True)
    high_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    low: Mapped[int | None] = mapped_column(Integer, nullable=True)
    low_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_ts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)


class Item(Base):
    __tablename__ = "items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    members: Mapped[int | None] = mapped_column(Integer, nullable=True)
    limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    icon: Mapped[str | None] = mapped_column(Text, nullable=True)
    value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    highalch: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lowalch: Mapped[int | None] = mapped_column(Integer, nullable=True)


class DirtyItem(Base):
    __tablename__ = "dirty_items"

    item_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    touched_ts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class CanonicalItem(Base):
    __tablename__ = "canonical_items"
    __table_args__ = (
        Index("idx_canonical_items_margin", "margin"),
        Index("idx_canonical_items_volume_24h", "volume_24h"),
    )

    item_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    members: Mapped[int | None] = mapped_column(Integer, nullable=True)
    limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    icon: Mapped[str | None] = mapped_column(Text, nullable=True)

    high: Mapped[int | None] = mapped_column(Integer, nullable=True)
    low: Mapped[int | None] = mapped_column(Integer, nullable=True)
    high_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    low_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tax: Mapped[int | None] = mapped_column(Integer, nullable=True)
    margin: Mapped[int | None] = mapped_column(Integer, nullable=True)
    roi_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    spread_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_profit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_investment: Mapped[int | None] = mapped_column(Integer, nullable=True)

    price_5m_high: Mapped[float | None] = mapped_column(Float, nullable=True)
    price_5m_low: Mapped[float | None] = mapped_column(Float, nullable=True)
    price_1h_high: Mapped[float | None] = mapped_column(Float, nullable=True)
    price_1h_low: Mapped[float | None] = mapped_column(Float, nullable=True)

    volume_5m: Mapped[int | None] = mapped_column(Integer, nullable=True)
    volume_1h: Mapped[int | None] = mapped_column(Integer, nullable=True)
    volume_6h: Mapped[int | None] = mapped_column(Integer, nullable=True)
    volume_24h: Mapped[int | None] = mapped_column(Integer, nullable=True)
    volume_7d: Mapped[int | None] = mapped_column(Integer, nullable=True)
    volume_1m: Mapped[int | None] = mapped_column(Integer, nullable=True)
    volume_3m: Mapped[int | None] = mapped_column(Integer, nullable=True)
    volume_1y: Mapped[int | None] = mapped_column(Integer, nullable=True)

    turnover_5m: Mapped[float | None] = mapped_column(Float, nullable=True)
    turnover_1h: Mapped[float | None] = mapped_column(Float, nullable=True)
    turnover_6h: Mapped[float | None] = mapped_column(Float, nullable=True)
    turnover_24h: Mapped[float | None] = mapped_column(Float, nullable=True)
    turnover_7d: Mapped[float | None] = mapped_column(Float, nullable=True)
    turnover_1m: Mapped[float | None] = mapped_column(Float, nullable=True)
    turnover_3m: Mapped[float | None] = mapped_column(Float, nullable=True)
    turnover_1y: Mapped[float | None] = mapped_column(Float, nullable=True)

    trend_5m: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_1h: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_6h: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_24h: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_7d: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_1m: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_3m: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_1y: Mapped[float | None] = mapped_column(Float, nullable=True)

    buy_sell_rate_5m: Mapped[float | None] = mapped_column(Float, nullable=True)
    buy_sell_rate_1h: Mapped[float | None] = mapped_column(Float, nullable=True)
    buy_sell_rate_6h: Mapped[float | None] = mapped_column(Float, nullable=True)
    buy_sell_rate_24h: Mapped[float | None] = mapped_column(Float, nullable=True)
    buy_sell_rate_7d: Mapped[float | None] = mapped_column(Float, nullable=True)
    buy_sell_rate_1m: Mapped[float | None] = mapped_column(Float, nullable=True)
    buy_sell_rate_3m: Mapped[float | None] = mapped_column(Float, nullable=True)
    buy_sell_rate_1y: Mapped[float | None] = mapped_column(Float, nullable=True)

    timestamp_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


_ENGINE = None
SessionLocal = None


def get_default_db_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite:///pricewatch.db")


def init_db(db_url: str | None = None, *, reset: bool = False) -> None:
    global _ENGINE, SessionLocal
    if _ENGINE is not None:
        if not reset:
            return
        SessionLocal.remove()
        _ENGINE.dispose()

    _ENGINE = create_engine(
        db_url or get_default_db_url(),
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    SessionLocal = scoped_session(
        sessionmaker(bind=_ENGINE, autoflush=False, autocommit=False, expire_on_commit=False)
    )

    Base.metadata.create_all(bind=_ENGINE)


def get_session():
    if SessionLocal is None:
        init_db()
    return SessionLocal()


@contextmanager
def session_scope():
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _to_int(value) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def upsert_items(session, rows: list[dict]) -> int:
    payload = []
    for row in rows:
        item_id = _to_int(row.get("id"))
        if item_id is None:
            continue
        payload.append(
            {
                "id": item_id,
                "name": row.get("name"),
                "members": 1 if row.get("members") else 0,
                "limit": _to_int(row.get("limit")),
                "icon": row.get("icon"),
                "value": _to_int(row.get("value")),
                "highalch": _to_int(row.get("highalch")),
                "lowalch": _to_int(row.get("lowalch")),
            }
        )
    if not payload:
        return 0

    insert_stmt = sqlite_insert(Item)
    upsert_stmt = insert_stmt.on_conflict_do_update(
        index_elements=[Item.id],
        set_={
            "name": insert_stmt.excluded.name,
            "members": insert_stmt.excluded.members,
            "limit": insert_stmt.excluded.limit,
            "icon": insert_stmt.excluded.icon,
            "value": insert_stmt.excluded.value,
            "highalch": insert_stmt.excluded.highalch,
            "lowalch": insert_stmt.excluded.lowalch,
        },
    )
    for i in range(0, len(payload), BATCH_SIZE):
        session.execute(upsert_stmt, payload[i:i + BATCH_SIZE])
    return len(payload)


def ensure_items(session, item_ids) -> None:
    """Register stub rows for ids first seen in a price snapshot."""
    payload = [{"id": int(item_id)} for item_id in sorted({int(i) for i in item_ids})]
    if not payload:
        return
    stmt = sqlite_insert(Item).on_conflict_do_nothing(index_elements=[Item.id])
    for i in range(0, len(payload), BATCH_SIZE):
        session.execute(stmt, payload[i:i + BATCH_SIZE])


def get_item_ids(session) -> list[int]:
    return [int(item_id) for item_id in session.execute(select(Item.id).order_by(Item.id)).scalars()]


def mark_items_dirty(session, item_ids, *, now_ts: int) -> int:
    payload = [{"item_id": int(item_id), "touched_ts": int(now_ts)} for item_id in sorted({int(i) for i in item_ids})]
    if not payload:
        return 0

    insert_stmt = sqlite_insert(DirtyItem)
    upsert_stmt = insert_stmt.on_conflict_do_update(
        index_elements=[DirtyItem.item_id],
        # a re-touch always moves touched_ts forward, even within one second
        set_={"touched_ts": func.max(DirtyItem.touched_ts + 1, insert_stmt.excluded.touched_ts)},
    )
    for i in range(0, len(payload), BATCH_SIZE):
        session.execute(upsert_stmt, payload[i:i + BATCH_SIZE])
    return len(payload)


def count_dirty(session) -> int:
    return int(session.execute(select(func.count()).select_from(DirtyItem)).scalar_one())


def fetch_dirty_batch(session, *, limit: int) -> list[tuple[int, int]]:
    rows = session.execute(
        select(DirtyItem.item_id, DirtyItem.touched_ts).order_by(DirtyItem.touched_ts, DirtyItem.item_id).limit(max(int(limit), 1))
    ).all()
    return [(int(item_id), int(touched_ts)) for item_id, touched_ts in rows]


def clear_dirty(session, item_id: int, *, touched_ts: int) -> bool:
    # A newer touch during projection keeps the item queued.
    result = session.execute(
        delete(DirtyItem)
        .where(DirtyItem.item_id == int(item_id))
        .where(DirtyItem.touched_ts == int(touched_ts))
    )
    return bool(result.rowcount)


CANONICAL_UPDATE_COLUMNS = [
    column.name for column in CanonicalItem.__table__.columns if column.name != "item_id"
]


def upsert_canonical_items(session, rows: list[dict]) -> int:
    if not rows:
        return 0
    insert_stmt = sqlite_insert(CanonicalItem)
    upsert_stmt = insert_stmt.on_conflict_do_update(
        index_elements=[CanonicalItem.item_id],
        set_={name: insert_stmt.excluded[name] for name in CANONICAL_UPDATE_COLUMNS},
    )
    for i in range(0, len(rows), BATCH_SIZE):
        session.execute(upsert_stmt, rows[i:i + BATCH_SIZE])
    return len(rows)


def get_counts(session) -> dict:
    counts = {}
    for name, model in PRICE_MODELS.items():
        counts[model.__tablename__] = session.execute(select(func.count()).select_from(model)).scalar_one()
    counts["price_instants"] = session.execute(select(func.count()).select_from(PriceInstant)).scalar_one()
    counts["items"] = session.execute(select(func.count()).select_from(Item)).scalar_one()
    counts["dirty_items"] = count_dirty(session)
    counts["canonical_items"] = session.execute(select(func.count()).select_from(CanonicalItem)).scalar_one()
    return counts
