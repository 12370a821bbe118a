"""
Pydantic models for simulated telemetry, rollups, digests and anchor outcomes.

TelemetryRecord is the canonical per-interval row; it is immutable once
built and identified by (site_id, ts). HourlySummary and DailyDigest are
derived from records and may be recomputed at any time. AnchorResult and
AnchorStatus are transient outcomes of calls to the attestation service.

CHANGELOG:
- 2026-10-19: Add anchor block number to DailyDigest
- 2026-10-19: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class TelemetryStatus(str, Enum):
    """Operating status of a site for one interval."""

    OK = "OK"
    OUTAGE = "OUTAGE"
    CURTAILED = "CURTAILED"


class TelemetryRecord(BaseModel):
    """A single simulated telemetry row for one site and interval.

    Attributes:
        site_id: Site identifier.
        ts: Interval start timestamp (UTC).
        poa_irr_wm2: Plane-of-array irradiance in W/m2.
        temp_c: Ambient temperature in degrees Celsius.
        wind_mps: Wind speed in m/s.
        ac_power_kw: AC output power in kW, never above AC capacity.
        ac_energy_kwh: Energy over the interval in kWh.
        status: Operating status for the interval.
        row_hash: SHA-256 content hash of the canonical row (hex).
    """

    model_config = ConfigDict(frozen=True)

    site_id: str
    ts: datetime
    poa_irr_wm2: float = Field(ge=0)
    temp_c: float = Field(ge=-10, le=50)
    wind_mps: float = Field(ge=0)
    ac_power_kw: float = Field(ge=0)
    ac_energy_kwh: float = Field(ge=0)
    status: TelemetryStatus
    row_hash: str = Field(min_length=64, max_length=64)


class HourlySummary(BaseModel):
    """Per site-hour rollup of telemetry records.

    Attributes:
        site_id: Site identifier.
        hour_utc: Start of the UTC hour.
        energy_kwh: Sum of interval energy.
        max_power_kw: Maximum AC power.
        avg_temp_c: Mean ambient temperature.
        avg_irr_wm2: Mean plane-of-array irradiance.
        rows: Number of records in the hour.
    """

    site_id: str
    hour_utc: datetime
    energy_kwh: float
    max_power_kw: float
    avg_temp_c: float
    avg_irr_wm2: float
    rows: int


class DailyDigest(BaseModel):
    """Per site-day digest with Merkle root and optional anchor reference.

    The anchor fields stay empty until a successful attestation result is
    attached. Regenerating the digest keeps them while the Merkle root is
    unchanged and clears them when the root changes.
    """

    site_id: str
    day_utc: date
    rows: int
    energy_kwh: float
    avoided_tco2e: float
    merkle_root: str
    anchor_adapter_tx_id: str | None = None
    anchor_tx_hash: str | None = None
    anchor_block_number: int | None = None

    @property
    def is_anchored(self) -> bool:
        return bool(self.anchor_tx_hash)


class AnchorResult(BaseModel):
    """Outcome of anchoring one digest root.

    Attributes:
        success: True when the service accepted the anchor request.
        adapter_tx_id: Adapter-side transaction identifier.
        tx_hash: Registry transaction hash.
        block_number: Block reference of the transaction.
        error: Error detail on failure.
        attempts: Number of attempts made (1 for a single call).
    """

    success: bool
    adapter_tx_id: str = ""
    tx_hash: str = ""
    block_number: int = 0
    error: str | None = None
    attempts: int = 1

    @classmethod
    def failure(cls, error: str, attempts: int = 1) -> AnchorResult:
        return cls(success=False, error=error, attempts=attempts)


class AnchorStatus(BaseModel):
    """Health probe result for the attestation service."""

    ok: bool
    error: str | None = None
