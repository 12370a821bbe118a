"""
Merkle digest builder and exportable daily digest artifacts.

The Merkle root of a site-day is built from its row hashes:

- no hashes: DataAbsentError (a day without telemetry has no digest),
- one hash: the root is that hash unchanged,
- otherwise the hashes are sorted lexicographically, then adjacent pairs are
  combined as sha256(left + right), duplicating the last entry of an odd
  level, until one hash remains.

Sorting the leaves makes the root independent of retrieval order at the cost
of not encoding chronological leaf positions in the tree.

Artifacts carry everything needed to re-verify a day without the database:
a JSON digest document and a CSV of the rows with their hashes.

CHANGELOG:
- 2026-10-19: Recompute row hashes from stored values during verification
- 2026-10-19: Add integrity verification against stored digests
- 2026-10-19: Initial creation (STORY-011)

TODO:
- None
"""

from __future__ import annotations

import csv
import hashlib
import io
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from iotsolar.src.aggregation import daily_totals
from iotsolar.src.config import SiteConfig, to_tco2e
from iotsolar.src.errors import DataAbsentError
from iotsolar.src.models import DailyDigest, TelemetryRecord
from iotsolar.src.telemetry import format_utc, hash_telemetry_row

if TYPE_CHECKING:
    from iotsolar.src.store import TelemetryStore

logger = logging.getLogger(__name__)

HASH_ALGO = "sha256"
DIGEST_VERSION = "1.0.0"

CSV_HEADERS = (
    "timestamp_utc",
    "ac_power_kw",
    "ac_energy_kwh",
    "poa_irradiance_wm2",
    "temperature_c",
    "wind_speed_mps",
    "status",
    "row_hash",
)


def sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def with_0x(value: str) -> str:
    return value if value.startswith("0x") else f"0x{value}"


def strip_0x(value: str) -> str:
    return value[2:] if value.startswith("0x") else value


def build_merkle_root(hashes: Iterable[str]) -> str:
    """Reduce a set of hex row hashes to a single Merkle root (hex, no 0x).

    Raises:
        DataAbsentError: If *hashes* is empty.
    """
    level = sorted(hashes)
    if not level:
        raise DataAbsentError("Cannot build a Merkle root from zero hashes")
    if len(level) == 1:
        return level[0]

    while len(level) > 1:
        if len(level) % 2 == 1:
            level.append(level[-1])
        level = [sha256_hex(level[i] + level[i + 1]) for i in range(0, len(level), 2)]
    return level[0]


class DigestDocument(BaseModel):
    """JSON digest document for one site-day."""

    model_config = ConfigDict(populate_by_name=True)

    site_id: str = Field(alias="siteId")
    day: date
    rows: int
    energy_kwh: float = Field(alias="energyKWh")
    avoided_tco2e: float = Field(alias="avoidedTCO2e")
    merkle_root: str = Field(alias="merkleRoot")
    hash_algo: str = Field(default=HASH_ALGO, alias="hashAlgo")
    interval: str
    factor_kg_per_kwh: float = Field(alias="factorKgPerKWh")
    version: str = DIGEST_VERSION


@dataclass(frozen=True)
class DigestArtifact:
    """Exportable digest of one site-day.

    Attributes:
        digest: The DailyDigest to persist.
        document: The JSON digest document.
        json: Pretty-printed JSON of *document*.
        csv: CSV export of the day's rows.
        merkle_root: The ``0x``-prefixed Merkle root.
    """

    digest: DailyDigest
    document: DigestDocument
    json: str
    csv: str
    merkle_root: str


def render_csv(records: Iterable[TelemetryRecord]) -> str:
    """Render records as CSV with fixed decimals matching the row hash inputs."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for r in records:
        writer.writerow(
            [
                format_utc(r.ts),
                f"{r.ac_power_kw:.3f}",
                f"{r.ac_energy_kwh:.3f}",
                f"{r.poa_irr_wm2:.1f}",
                f"{r.temp_c:.1f}",
                f"{r.wind_mps:.1f}",
                r.status.value,
                r.row_hash,
            ]
        )
    return buffer.getvalue()


def build_digest(
    site: SiteConfig,
    day: date,
    records: list[TelemetryRecord],
    interval_minutes: int,
) -> DigestArtifact:
    """Build the digest and export artifacts for one site-day.

    Raises:
        DataAbsentError: If *records* is empty.
    """
    if not records:
        raise DataAbsentError(
            f"No telemetry data found for site {site.site_id} on {day.isoformat()}"
        )

    totals = daily_totals(records)
    merkle_root = with_0x(build_merkle_root(r.row_hash for r in records))
    avoided = round(to_tco2e(totals.energy_kwh, site.baseline_kg_per_kwh), 3)

    document = DigestDocument(
        site_id=site.site_id,
        day=day,
        rows=totals.rows,
        energy_kwh=totals.energy_kwh,
        avoided_tco2e=avoided,
        merkle_root=merkle_root,
        interval=f"{interval_minutes}m",
        factor_kg_per_kwh=site.baseline_kg_per_kwh,
    )
    digest = DailyDigest(
        site_id=site.site_id,
        day_utc=day,
        rows=totals.rows,
        energy_kwh=totals.energy_kwh,
        avoided_tco2e=avoided,
        merkle_root=merkle_root,
    )
    ordered = sorted(records, key=lambda r: r.ts)
    return DigestArtifact(
        digest=digest,
        document=document,
        json=document.model_dump_json(by_alias=True, indent=2),
        csv=render_csv(ordered),
        merkle_root=merkle_root,
    )


async def generate_digest(
    store: TelemetryStore,
    site: SiteConfig,
    day: date,
    interval_minutes: int,
) -> DigestArtifact:
    """Build the digest of a stored site-day and upsert it.

    Anchor fields already attached to a stored digest are kept.

    Raises:
        DataAbsentError: If no telemetry is stored for the day.
    """
    records = await store.fetch_day(site.site_id, day)
    artifact = build_digest(site, day, records, interval_minutes)
    stored = await store.upsert_digest(artifact.digest)
    logger.info(
        "Digest for site=%s day=%s: rows=%d energy=%.3f kWh avoided=%.3f tCO2e root=%s",
        site.site_id,
        day,
        stored.rows,
        stored.energy_kwh,
        stored.avoided_tco2e,
        stored.merkle_root,
    )
    return DigestArtifact(
        digest=stored,
        document=artifact.document,
        json=artifact.json,
        csv=artifact.csv,
        merkle_root=artifact.merkle_root,
    )


def verify_merkle_root(hashes: Iterable[str], expected_root: str) -> bool:
    """Return True when *hashes* reduce to *expected_root* (0x optional)."""
    try:
        root = build_merkle_root(hashes)
    except DataAbsentError:
        return False
    return root == strip_0x(expected_root)


async def verify_digest_integrity(
    store: TelemetryStore,
    site_id: str,
    day: date,
) -> bool:
    """Recompute a stored digest's Merkle root from stored rows.

    Each row hash is recomputed from the row's stored values, so an edited
    value is detected even when its ``row_hash`` column was left untouched.

    Returns:
        False when the digest is missing, the row count differs, a row's
        values no longer match its hash or the recomputed root differs from
        the stored one; True otherwise.
    """
    digest = await store.get_digest(site_id, day)
    if digest is None:
        logger.warning("No digest stored for site=%s day=%s", site_id, day)
        return False

    records = await store.fetch_day(site_id, day)
    if len(records) != digest.rows:
        logger.warning(
            "Integrity mismatch for site=%s day=%s: %d rows stored, digest has %d",
            site_id,
            day,
            len(records),
            digest.rows,
        )
        return False

    hashes = []
    for record in records:
        row_hash = hash_telemetry_row(
            record.site_id,
            format_utc(record.ts),
            record.ac_energy_kwh,
            record.ac_power_kw,
            record.poa_irr_wm2,
            record.temp_c,
            record.status,
        )
        if row_hash != record.row_hash:
            logger.warning(
                "Integrity mismatch for site=%s day=%s: "
                "row at %s does not match its hash",
                site_id,
                day,
                format_utc(record.ts),
            )
            return False
        hashes.append(row_hash)

    if not verify_merkle_root(hashes, digest.merkle_root):
        logger.warning(
            "Integrity mismatch for site=%s day=%s: Merkle root differs from %s",
            site_id,
            day,
            digest.merkle_root,
        )
        return False
    return True
