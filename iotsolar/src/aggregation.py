"""
Aggregation of telemetry records into hourly and daily rollups.

Records are bucketed by UTC hour (hourly summaries) or UTC day (daily
totals) using their timestamps. Rollups are pure functions of the record
set, so recomputing them is idempotent and may overwrite earlier results.

Rounding per bucket: energy and power 3 decimals, temperature and
irradiance 1 decimal.

CHANGELOG:
- 2026-10-19: Add peak power and mean temperature/irradiance to daily totals
- 2026-10-19: Add digest statistics over a set of daily digests
- 2026-10-19: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING

from iotsolar.src.models import DailyDigest, HourlySummary, TelemetryRecord

if TYPE_CHECKING:
    from iotsolar.src.store import TelemetryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DailyTotals:
    """Daily rollup used for digest building and day statistics.

    An empty day has every field zero.

    Attributes:
        rows: Number of records in the day.
        energy_kwh: Sum of interval energy, 3 decimals.
        max_power_kw: Peak AC power, 3 decimals.
        avg_temp_c: Mean ambient temperature, 1 decimal.
        avg_irr_wm2: Mean plane-of-array irradiance, 1 decimal.
    """

    rows: int
    energy_kwh: float
    max_power_kw: float = 0.0
    avg_temp_c: float = 0.0
    avg_irr_wm2: float = 0.0


@dataclass(frozen=True)
class DigestStatistics:
    """Totals over a set of daily digests for one site."""

    total_energy_kwh: float
    total_avoided_tco2e: float
    digest_count: int
    last_digest_day: date | None


def hour_bucket(ts: datetime) -> datetime:
    """Truncate a timestamp to the start of its UTC hour."""
    return ts.astimezone(UTC).replace(minute=0, second=0, microsecond=0)


def day_bucket(ts: datetime) -> date:
    """Return the UTC calendar day of a timestamp."""
    return ts.astimezone(UTC).date()


def group_by_hour(
    records: Iterable[TelemetryRecord],
) -> dict[datetime, list[TelemetryRecord]]:
    """Group records by UTC hour, hours in ascending order."""
    groups: dict[datetime, list[TelemetryRecord]] = defaultdict(list)
    for record in records:
        groups[hour_bucket(record.ts)].append(record)
    return dict(sorted(groups.items()))


def group_by_day(
    records: Iterable[TelemetryRecord],
) -> dict[date, list[TelemetryRecord]]:
    """Group records by UTC day, days in ascending order."""
    groups: dict[date, list[TelemetryRecord]] = defaultdict(list)
    for record in records:
        groups[day_bucket(record.ts)].append(record)
    return dict(sorted(groups.items()))


def summarize_hours(
    site_id: str, records: Iterable[TelemetryRecord]
) -> list[HourlySummary]:
    """Compute one HourlySummary per UTC hour present in *records*."""
    summaries: list[HourlySummary] = []
    for hour, bucket in group_by_hour(records).items():
        count = len(bucket)
        summaries.append(
            HourlySummary(
                site_id=site_id,
                hour_utc=hour,
                energy_kwh=round(sum(r.ac_energy_kwh for r in bucket), 3),
                max_power_kw=round(max(r.ac_power_kw for r in bucket), 3),
                avg_temp_c=round(sum(r.temp_c for r in bucket) / count, 1),
                avg_irr_wm2=round(sum(r.poa_irr_wm2 for r in bucket) / count, 1),
                rows=count,
            )
        )
    return summaries


def daily_totals(records: list[TelemetryRecord]) -> DailyTotals:
    """Return the daily rollup of a day's records."""
    count = len(records)
    if not count:
        return DailyTotals(rows=0, energy_kwh=0.0)
    return DailyTotals(
        rows=count,
        energy_kwh=round(sum(r.ac_energy_kwh for r in records), 3),
        max_power_kw=round(max(r.ac_power_kw for r in records), 3),
        avg_temp_c=round(sum(r.temp_c for r in records) / count, 1),
        avg_irr_wm2=round(sum(r.poa_irr_wm2 for r in records) / count, 1),
    )


def digest_statistics(digests: Iterable[DailyDigest]) -> DigestStatistics:
    """Summarize a set of daily digests (energy, avoided CO2e, latest day)."""
    items = list(digests)
    return DigestStatistics(
        total_energy_kwh=round(sum(d.energy_kwh for d in items), 3),
        total_avoided_tco2e=round(sum(d.avoided_tco2e for d in items), 3),
        digest_count=len(items),
        last_digest_day=max((d.day_utc for d in items), default=None),
    )


async def aggregate_day(
    store: TelemetryStore,
    site_id: str,
    day: date,
) -> list[HourlySummary]:
    """Recompute and persist the hourly summaries of one site-day.

    Args:
        store: Open telemetry store.
        site_id: Site identifier.
        day: UTC day to aggregate.

    Returns:
        The hourly summaries written, oldest first. Empty when the day has
        no telemetry.
    """
    records = await store.fetch_day(site_id, day)
    summaries = summarize_hours(site_id, records)
    await store.upsert_hourly(summaries)
    logger.info(
        "Aggregated %d hourly summaries for site=%s day=%s",
        len(summaries),
        site_id,
        day,
    )
    return summaries


async def day_statistics(
    store: TelemetryStore,
    site_id: str,
    day: date,
) -> DailyTotals:
    """Return the daily rollup of one stored site-day (zeros when empty)."""
    return daily_totals(await store.fetch_day(site_id, day))
