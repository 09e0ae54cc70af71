from __future__ import annotations

import os
from dataclasses import dataclass


class ConfigurationError(ValueError):
    pass


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Cadence:
    """Wall-clock boundary expressed in UTC epoch seconds.

    A cadence with period 300 and offset 30 matches every ``minute % 5 == 0,
    second == 30``. UTC has no DST, so epoch arithmetic equals wall-clock
    arithmetic.
    """

    period_seconds: int
    offset_seconds: int = 0

    def boundary(self, now_ts: int) -> int:
        now_ts = int(now_ts)
        return now_ts - ((now_ts - self.offset_seconds) % self.period_seconds)


@dataclass(frozen=True)
class Granularity:
    name: str
    table: str
    interval_seconds: int
    retention_hours: float
    poll_cadence: Cadence
    backfill_cadence: Cadence


GRANULARITIES: dict[str, Granularity] = {
    "5m": Granularity(
        name="5m",
        table="price_5m",
        interval_seconds=300,
        retention_hours=24 + 5 / 60,
        poll_cadence=Cadence(300, 30),
        backfill_cadence=Cadence(300, 120),
    ),
    "1h": Granularity(
        name="1h",
        table="price_1h",
        interval_seconds=3600,
        retention_hours=169,
        poll_cadence=Cadence(3600, 30),
        backfill_cadence=Cadence(3600, 120),
    ),
    "6h": Granularity(
        name="6h",
        table="price_6h",
        interval_seconds=21600,
        retention_hours=726,
        poll_cadence=Cadence(21600, 30),
        backfill_cadence=Cadence(21600, 120),
    ),
    "24h": Granularity(
        name="24h",
        table="price_24h",
        interval_seconds=86400,
        retention_hours=8784,
        # 02:00:30 and 02:02:00 UTC
        poll_cadence=Cadence(86400, 7230),
        backfill_cadence=Cadence(86400, 7320),
    ),
}

LIVE_POLL_CADENCE = Cadence(15, 0)
CLEANUP_CADENCE = Cadence(600, 60)
INSTANT_STALE_SECONDS = 14 * 86400


def get_granularity(name: str) -> Granularity:
    key = str(name or "").strip().lower()
    granularity = GRANULARITIES.get(key)
    if granularity is None:
        allowed = ", ".join(GRANULARITIES.keys())
        raise ConfigurationError(f"Unknown granularity {name!r}. Expected one of: {allowed}")
    return granularity


def _validate_cadence(label: str, cadence: Cadence) -> None:
    if cadence.period_seconds <= 0:
        raise ConfigurationError(f"{label}: cadence period must be positive")
    if not 0 <= cadence.offset_seconds < cadence.period_seconds:
        raise ConfigurationError(f"{label}: cadence offset must fall inside its period")


def validate_granularities(
    granularities: dict[str, Granularity] | None = None,
    *,
    grace_seconds: int = 2,
) -> None:
    registry = GRANULARITIES if granularities is None else granularities
    if not registry:
        raise ConfigurationError("No granularities configured")

    cadences = [("live poll", LIVE_POLL_CADENCE), ("cleanup", CLEANUP_CADENCE)]
    for name, granularity in registry.items():
        if granularity.interval_seconds <= 0:
            raise ConfigurationError(f"{name}: interval must be positive")
        retention = round(float(granularity.retention_hours) * 3600)
        if retention < granularity.interval_seconds:
            raise ConfigurationError(
                f"{name}: retention {granularity.retention_hours}h is shorter than one interval"
            )
        cadences.append((f"{name} poll", granularity.poll_cadence))
        cadences.append((f"{name} backfill", granularity.backfill_cadence))

    for label, cadence in cadences:
        _validate_cadence(label, cadence)

    shortest = min(cadence.period_seconds for _, cadence in cadences)
    if grace_seconds < 0 or grace_seconds >= shortest:
        raise ConfigurationError(
            f"Scheduler grace {grace_seconds}s must be non-negative and shorter than {shortest}s"
        )
