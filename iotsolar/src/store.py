"""
Async SQLite store for telemetry rows, hourly summaries and daily digests.

Every write is an idempotent upsert keyed by its natural key:

- telemetry: (site_id, ts_utc)
- hourly_summary: (site_id, hour_utc)
- daily_digest: (site_id, day_utc)

Re-running generation for a day therefore overwrites rows with identical
content. Digest upserts keep the anchor columns while the Merkle root is
unchanged and clear them when it changes; they are written only by
attach_anchor() after a successful attestation.

Timestamps are stored as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` text, which sorts
chronologically. Supports the async context manager protocol.

CHANGELOG:
- 2026-10-19: Clear anchor columns when a digest upsert changes the root
- 2026-10-19: Preserve anchor columns on digest upsert
- 2026-10-19: Initial creation (STORY-009)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from pathlib import Path

import aiosqlite

from iotsolar.src.models import (
    AnchorResult,
    DailyDigest,
    HourlySummary,
    TelemetryRecord,
    TelemetryStatus,
)
from iotsolar.src.telemetry import day_bounds, format_utc

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS telemetry (
    site_id TEXT NOT NULL,
    ts_utc TEXT NOT NULL,
    poa_irr_wm2 REAL NOT NULL,
    temp_c REAL NOT NULL,
    wind_mps REAL NOT NULL,
    ac_power_kw REAL NOT NULL,
    ac_energy_kwh REAL NOT NULL,
    status TEXT NOT NULL,
    row_hash TEXT NOT NULL,
    PRIMARY KEY (site_id, ts_utc)
);
CREATE TABLE IF NOT EXISTS hourly_summary (
    site_id TEXT NOT NULL,
    hour_utc TEXT NOT NULL,
    energy_kwh REAL NOT NULL,
    max_power_kw REAL NOT NULL,
    avg_temp_c REAL NOT NULL,
    avg_irr_wm2 REAL NOT NULL,
    row_count INTEGER NOT NULL,
    PRIMARY KEY (site_id, hour_utc)
);
CREATE TABLE IF NOT EXISTS daily_digest (
    site_id TEXT NOT NULL,
    day_utc TEXT NOT NULL,
    row_count INTEGER NOT NULL,
    energy_kwh REAL NOT NULL,
    avoided_tco2e REAL NOT NULL,
    merkle_root TEXT NOT NULL,
    anchor_adapter_tx_id TEXT,
    anchor_tx_hash TEXT,
    anchor_block_number INTEGER,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (site_id, day_utc)
);
"""

_UPSERT_TELEMETRY_SQL = """\
INSERT INTO telemetry (
    site_id, ts_utc, poa_irr_wm2, temp_c, wind_mps,
    ac_power_kw, ac_energy_kwh, status, row_hash
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (site_id, ts_utc) DO UPDATE SET
    poa_irr_wm2 = excluded.poa_irr_wm2,
    temp_c = excluded.temp_c,
    wind_mps = excluded.wind_mps,
    ac_power_kw = excluded.ac_power_kw,
    ac_energy_kwh = excluded.ac_energy_kwh,
    status = excluded.status,
    row_hash = excluded.row_hash;
"""

_TELEMETRY_COLUMNS = (
    "site_id, ts_utc, poa_irr_wm2, temp_c, wind_mps, "
    "ac_power_kw, ac_energy_kwh, status, row_hash"
)

_FETCH_RANGE_SQL = f"""\
SELECT {_TELEMETRY_COLUMNS}
FROM telemetry
WHERE site_id = ? AND ts_utc >= ? AND ts_utc < ?
ORDER BY ts_utc ASC;
"""

_COUNT_RANGE_SQL = """\
SELECT COUNT(*) FROM telemetry
WHERE site_id = ? AND ts_utc >= ? AND ts_utc < ?;
"""

_DELETE_RANGE_SQL = """\
DELETE FROM telemetry
WHERE site_id = ? AND ts_utc >= ? AND ts_utc < ?;
"""

_LATEST_SQL = f"""\
SELECT {_TELEMETRY_COLUMNS}
FROM telemetry
WHERE site_id = ?
ORDER BY ts_utc DESC
LIMIT ?;
"""

_UPSERT_HOURLY_SQL = """\
INSERT INTO hourly_summary (
    site_id, hour_utc, energy_kwh, max_power_kw, avg_temp_c, avg_irr_wm2, row_count
) VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (site_id, hour_utc) DO UPDATE SET
    energy_kwh = excluded.energy_kwh,
    max_power_kw = excluded.max_power_kw,
    avg_temp_c = excluded.avg_temp_c,
    avg_irr_wm2 = excluded.avg_irr_wm2,
    row_count = excluded.row_count;
"""

_FETCH_HOURLY_SQL = """\
SELECT site_id, hour_utc, energy_kwh, max_power_kw, avg_temp_c, avg_irr_wm2, row_count
FROM hourly_summary
WHERE site_id = ? AND hour_utc >= ? AND hour_utc < ?
ORDER BY hour_utc ASC;
"""

_UPSERT_DIGEST_SQL = """\
INSERT INTO daily_digest (
    site_id, day_utc, row_count, energy_kwh, avoided_tco2e, merkle_root
) VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT (site_id, day_utc) DO UPDATE SET
    row_count = excluded.row_count,
    energy_kwh = excluded.energy_kwh,
    avoided_tco2e = excluded.avoided_tco2e,
    merkle_root = excluded.merkle_root,
    anchor_adapter_tx_id = CASE WHEN daily_digest.merkle_root = excluded.merkle_root
        THEN daily_digest.anchor_adapter_tx_id END,
    anchor_tx_hash = CASE WHEN daily_digest.merkle_root = excluded.merkle_root
        THEN daily_digest.anchor_tx_hash END,
    anchor_block_number = CASE WHEN daily_digest.merkle_root = excluded.merkle_root
        THEN daily_digest.anchor_block_number END;
"""

_DIGEST_COLUMNS = (
    "site_id, day_utc, row_count, energy_kwh, avoided_tco2e, merkle_root, "
    "anchor_adapter_tx_id, anchor_tx_hash, anchor_block_number"
)

_GET_DIGEST_SQL = f"""\
SELECT {_DIGEST_COLUMNS}
FROM daily_digest
WHERE site_id = ? AND day_utc = ?;
"""

_LIST_DIGESTS_SQL = f"""\
SELECT {_DIGEST_COLUMNS}
FROM daily_digest
WHERE site_id = ? AND day_utc >= ? AND day_utc <= ?
ORDER BY day_utc DESC;
"""

_ATTACH_ANCHOR_SQL = """\
UPDATE daily_digest
SET anchor_adapter_tx_id = ?, anchor_tx_hash = ?, anchor_block_number = ?
WHERE site_id = ? AND day_utc = ?;
"""


def _parse_utc(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(UTC)


def _row_to_record(row: tuple) -> TelemetryRecord:
    return TelemetryRecord(
        site_id=row[0],
        ts=_parse_utc(row[1]),
        poa_irr_wm2=row[2],
        temp_c=row[3],
        wind_mps=row[4],
        ac_power_kw=row[5],
        ac_energy_kwh=row[6],
        status=TelemetryStatus(row[7]),
        row_hash=row[8],
    )


def _row_to_digest(row: tuple) -> DailyDigest:
    return DailyDigest(
        site_id=row[0],
        day_utc=date.fromisoformat(row[1]),
        rows=row[2],
        energy_kwh=row[3],
        avoided_tco2e=row[4],
        merkle_root=row[5],
        anchor_adapter_tx_id=row[6],
        anchor_tx_hash=row[7],
        anchor_block_number=row[8],
    )


class TelemetryStore:
    """Async SQLite persistence for the simulation pipeline.

    Args:
        path: Filesystem path for the SQLite database file, or ``:memory:``.

    Usage::

        async with TelemetryStore("/data/sim.db") as store:
            await store.upsert_telemetry(records)
            rows = await store.fetch_day("PRJ001", date(2026, 10, 18))
    """

    def __init__(self, path: str | Path) -> None:
        self._path = str(path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the connection, enable WAL and create the schema."""
        self._db = await aiosqlite.connect(self._path)
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> TelemetryStore:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def _conn(self) -> aiosqlite.Connection:
        assert self._db is not None, "Store not opened. Call open() or use async with."
        return self._db

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    async def upsert_telemetry(self, records: list[TelemetryRecord]) -> int:
        """Insert or replace telemetry rows keyed by (site_id, ts).

        Returns:
            Number of records written.
        """
        if not records:
            return 0
        db = self._conn()
        await db.executemany(
            _UPSERT_TELEMETRY_SQL,
            [
                (
                    r.site_id,
                    format_utc(r.ts),
                    r.poa_irr_wm2,
                    r.temp_c,
                    r.wind_mps,
                    r.ac_power_kw,
                    r.ac_energy_kwh,
                    r.status.value,
                    r.row_hash,
                )
                for r in records
            ],
        )
        await db.commit()
        return len(records)

    async def fetch_day(self, site_id: str, day: date) -> list[TelemetryRecord]:
        """Return all records of a UTC day ordered by timestamp."""
        start, end = day_bounds(day)
        cursor = await self._conn().execute(
            _FETCH_RANGE_SQL, (site_id, format_utc(start), format_utc(end))
        )
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def count_day(self, site_id: str, day: date) -> int:
        """Return the number of records stored for a UTC day."""
        start, end = day_bounds(day)
        cursor = await self._conn().execute(
            _COUNT_RANGE_SQL, (site_id, format_utc(start), format_utc(end))
        )
        row = await cursor.fetchone()
        return row[0]

    async def delete_day(self, site_id: str, day: date) -> int:
        """Delete all records of a UTC day; returns the number removed."""
        start, end = day_bounds(day)
        db = self._conn()
        cursor = await db.execute(
            _DELETE_RANGE_SQL, (site_id, format_utc(start), format_utc(end))
        )
        await db.commit()
        return cursor.rowcount

    async def latest_telemetry(
        self, site_id: str, limit: int = 100
    ) -> list[TelemetryRecord]:
        """Return up to *limit* most recent records, newest first."""
        if limit < 1:
            return []
        cursor = await self._conn().execute(_LATEST_SQL, (site_id, limit))
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    # ------------------------------------------------------------------
    # Hourly summaries
    # ------------------------------------------------------------------

    async def upsert_hourly(self, summaries: list[HourlySummary]) -> None:
        """Insert or replace hourly summaries keyed by (site_id, hour)."""
        if not summaries:
            return
        db = self._conn()
        await db.executemany(
            _UPSERT_HOURLY_SQL,
            [
                (
                    s.site_id,
                    format_utc(s.hour_utc),
                    s.energy_kwh,
                    s.max_power_kw,
                    s.avg_temp_c,
                    s.avg_irr_wm2,
                    s.rows,
                )
                for s in summaries
            ],
        )
        await db.commit()

    async def fetch_hourly(
        self, site_id: str, start: datetime, end: datetime
    ) -> list[HourlySummary]:
        """Return hourly summaries with hour in [start, end), oldest first."""
        cursor = await self._conn().execute(
            _FETCH_HOURLY_SQL, (site_id, format_utc(start), format_utc(end))
        )
        rows = await cursor.fetchall()
        return [
            HourlySummary(
                site_id=row[0],
                hour_utc=_parse_utc(row[1]),
                energy_kwh=row[2],
                max_power_kw=row[3],
                avg_temp_c=row[4],
                avg_irr_wm2=row[5],
                rows=row[6],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Daily digests
    # ------------------------------------------------------------------

    async def upsert_digest(self, digest: DailyDigest) -> DailyDigest:
        """Insert or update a digest.

        An attached anchor reference is kept only when the Merkle root is
        unchanged; a new root leaves the digest unanchored.

        Returns:
            The stored digest, including anchor fields already on record.
        """
        db = self._conn()
        await db.execute(
            _UPSERT_DIGEST_SQL,
            (
                digest.site_id,
                digest.day_utc.isoformat(),
                digest.rows,
                digest.energy_kwh,
                digest.avoided_tco2e,
                digest.merkle_root,
            ),
        )
        await db.commit()
        stored = await self.get_digest(digest.site_id, digest.day_utc)
        assert stored is not None
        return stored

    async def get_digest(self, site_id: str, day: date) -> DailyDigest | None:
        """Return the digest of a site-day, or None."""
        cursor = await self._conn().execute(
            _GET_DIGEST_SQL, (site_id, day.isoformat())
        )
        row = await cursor.fetchone()
        return _row_to_digest(row) if row is not None else None

    async def list_digests(
        self, site_id: str, start: date, end: date
    ) -> list[DailyDigest]:
        """Return digests with day in [start, end], newest first."""
        cursor = await self._conn().execute(
            _LIST_DIGESTS_SQL, (site_id, start.isoformat(), end.isoformat())
        )
        rows = await cursor.fetchall()
        return [_row_to_digest(row) for row in rows]

    async def attach_anchor(
        self, site_id: str, day: date, result: AnchorResult
    ) -> bool:
        """Record a successful anchor result on the stored digest.

        Failed results are ignored.

        Returns:
            True when a digest row was updated.
        """
        if not result.success:
            return False
        db = self._conn()
        cursor = await db.execute(
            _ATTACH_ANCHOR_SQL,
            (
                result.adapter_tx_id,
                result.tx_hash,
                result.block_number,
                site_id,
                day.isoformat(),
            ),
        )
        await db.commit()
        return cursor.rowcount > 0

    async def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        cursor = await self._conn().execute("SELECT 1;")
        row = await cursor.fetchone()
        return row is not None and row[0] == 1
