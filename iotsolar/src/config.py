"""
Simulator configuration: process settings and per-site plant configuration.

SimSettings uses Pydantic BaseSettings for environment / .env loading.
SiteConfig and OutageWindow are frozen Pydantic models validated once at the
boundary (site JSON files) and passed by value into the physics model.
Validation failures at this layer surface as ConfigurationError.

CHANGELOG:
- 2026-10-19: Default a site's baseline factor from its country
- 2026-10-19: Add per-country emission factor table
- 2026-10-19: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date
from pathlib import Path

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings

from iotsolar.src.errors import ConfigurationError

logger = logging.getLogger(__name__)

DAY_CODES: tuple[str, ...] = ("SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT")
"""Weekday codes indexed like a Sunday-first week."""

ALL_DAYS = "ALL"

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

# Grid emission factors in kg CO2e per kWh.
EMISSION_FACTORS: dict[str, float] = {
    "IN": 0.708,
    "US": 0.386,
    "EU": 0.255,
    "CN": 0.581,
    "AU": 0.760,
    "BR": 0.120,
    "CA": 0.130,
    "DE": 0.400,
    "FR": 0.050,
    "GB": 0.200,
    "JP": 0.500,
    "KR": 0.450,
    "MX": 0.450,
    "RU": 0.350,
    "ZA": 0.900,
}

DEFAULT_EMISSION_FACTOR = 0.82


def get_emission_factor(country: str) -> float:
    """Return the grid emission factor for a country code.

    Unknown countries fall back to DEFAULT_EMISSION_FACTOR.
    """
    return EMISSION_FACTORS.get(country.upper(), DEFAULT_EMISSION_FACTOR)


def to_tco2e(energy_kwh: float, factor_kg_per_kwh: float) -> float:
    """Convert energy in kWh to avoided tonnes of CO2e."""
    return (energy_kwh * factor_kg_per_kwh) / 1000


def parse_time_of_day(value: str) -> float:
    """Parse ``HH:MM`` into fractional hours.

    Raises:
        ValueError: If the string is malformed or out of range.
    """
    match = _TIME_RE.match(value.strip())
    if match is None:
        raise ValueError(f"time must be HH:MM (got: '{value}')")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 24 or minutes > 59 or (hours == 24 and minutes != 0):
        raise ValueError(f"time out of range (got: '{value}')")
    return hours + minutes / 60


# ---------------------------------------------------------------------------
# Site configuration
# ---------------------------------------------------------------------------


class OutageWindow(BaseModel):
    """Scheduled outage window within a single UTC day.

    Attributes:
        start: Window start as ``HH:MM`` (UTC).
        end: Window end as ``HH:MM`` (UTC), not before start.
        days: ``ALL`` or a comma-separated list of day codes (``MON,WED``).
    """

    model_config = ConfigDict(frozen=True)

    start: str
    end: str
    days: str = ALL_DAYS

    @field_validator("start", "end")
    @classmethod
    def time_must_be_hh_mm(cls, v: str) -> str:
        """Validate the HH:MM format."""
        parse_time_of_day(v)
        return v.strip()

    @field_validator("days")
    @classmethod
    def days_must_be_known_codes(cls, v: str) -> str:
        """Validate the day pattern: the wildcard or known day codes."""
        pattern = v.strip().upper()
        if pattern == ALL_DAYS:
            return pattern
        codes = [code.strip() for code in pattern.split(",") if code.strip()]
        if not codes:
            raise ValueError("days must be ALL or a list of day codes")
        unknown = [code for code in codes if code not in DAY_CODES]
        if unknown:
            raise ValueError(f"unknown day codes: {unknown}")
        return ",".join(codes)

    @model_validator(mode="after")
    def _start_not_after_end(self) -> OutageWindow:
        """Overnight windows are not modeled."""
        if parse_time_of_day(self.start) > parse_time_of_day(self.end):
            raise ValueError(
                f"outage window start {self.start} is after end {self.end}"
            )
        return self

    @property
    def start_hour(self) -> float:
        return parse_time_of_day(self.start)

    @property
    def end_hour(self) -> float:
        return parse_time_of_day(self.end)

    def applies_on(self, day_code: str) -> bool:
        """Return True when the window is active on the given weekday code."""
        return self.days == ALL_DAYS or day_code in self.days.split(",")


class SiteConfig(BaseModel):
    """Validated configuration of one grid-connected PV plant.

    Accepts the camelCase keys of the site JSON files as aliases as well as
    the snake_case field names.

    Attributes:
        site_id: Unique site identifier.
        name: Human-readable plant name.
        country: ISO country code, used for emission factor defaults.
        timezone: IANA timezone name (informational; the model runs in UTC).
        lat: Latitude in degrees, north positive.
        lon: Longitude in degrees, east positive.
        capacity_dc_kw: Nameplate DC capacity.
        capacity_ac_kw: Inverter AC capacity; AC output is clipped here.
        tilt_deg: Array tilt from horizontal.
        azimuth_deg: Array azimuth, clockwise from north (180 = south).
        modules: Number of PV modules.
        inverter_eff: Inverter efficiency in (0, 1].
        degradation_pct_per_year: Yearly module degradation in percent.
        baseline_kg_per_kwh: Grid emission factor for avoided CO2e; defaults
            to the country's factor (see get_emission_factor) when omitted.
        outage_windows: Scheduled outage windows.
        curtailment_pct: Per-interval curtailment probability in [0, 1].
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    site_id: str = Field(alias="siteId", min_length=1)
    name: str = ""
    country: str = ""
    timezone: str = "UTC"
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    capacity_dc_kw: float = Field(alias="capacityDcKW", gt=0)
    capacity_ac_kw: float = Field(alias="capacityAcKW", gt=0)
    tilt_deg: float = Field(alias="tiltDeg", ge=0, le=90)
    azimuth_deg: float = Field(alias="azimuthDeg", ge=0, lt=360)
    modules: int = Field(gt=0)
    inverter_eff: float = Field(alias="inverterEff", gt=0, le=1)
    degradation_pct_per_year: float = Field(
        default=0.5, alias="degradationPctPerYear", ge=0
    )
    baseline_kg_per_kwh: float = Field(alias="baselineKgPerKwh", ge=0)
    outage_windows: tuple[OutageWindow, ...] = Field(
        default=(), alias="outageWindows"
    )
    curtailment_pct: float = Field(default=0.0, alias="curtailmentPct", ge=0, le=1)

    @model_validator(mode="before")
    @classmethod
    def _default_baseline_from_country(cls, data: object) -> object:
        """Fill a missing baseline factor from the country's grid factor."""
        if not isinstance(data, dict):
            return data
        if "baselineKgPerKwh" in data or "baseline_kg_per_kwh" in data:
            return data
        country = data.get("country") or ""
        return {**data, "baselineKgPerKwh": get_emission_factor(str(country))}


def load_site_config(data: dict) -> SiteConfig:
    """Validate a raw site mapping into a SiteConfig.

    Raises:
        ConfigurationError: If the mapping does not describe a valid site.
    """
    try:
        return SiteConfig.model_validate(data)
    except ValidationError as exc:
        site = data.get("siteId") or data.get("site_id") or "<unknown>"
        raise ConfigurationError(f"Invalid site configuration for {site}: {exc}") from exc


def load_sites(sites_dir: str | Path, site_ids: list[str]) -> list[SiteConfig]:
    """Load and validate ``<site_id>.json`` for every configured site.

    Raises:
        ConfigurationError: If a file is missing, unreadable or invalid, or
            if its siteId does not match the file name.
    """
    base = Path(sites_dir)
    sites: list[SiteConfig] = []
    for site_id in site_ids:
        path = base / f"{site_id}.json"
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Site config not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Site config is not valid JSON: {path}") from exc
        site = load_site_config(raw)
        if site.site_id != site_id:
            raise ConfigurationError(
                f"Site config {path} declares siteId '{site.site_id}'"
            )
        logger.info("Loaded site config %s (%s)", site.site_id, site.name)
        sites.append(site)
    return sites


# ---------------------------------------------------------------------------
# Process settings
# ---------------------------------------------------------------------------


class SimSettings(BaseSettings):
    """Simulator process configuration loaded from environment variables.

    Attributes:
        sim_seed: Global simulation seed.
        default_interval_minutes: Telemetry interval; must divide a day.
        anchor_enabled: Whether digests are submitted for attestation.
        adapter_api_url: Base URL of the attestation adapter.
        adapter_api_key: API key sent as ``x-app-key`` (optional).
        adapter_shared_secret: HMAC key for ``x-app-sig`` (optional).
        adapter_timeout_s: HTTP timeout for adapter calls.
        site_ids: Comma-separated site identifiers to process.
        sites_dir: Directory containing ``<site_id>.json`` files.
        db_path: SQLite database file for telemetry and digests.
        health_path: Health JSON file path.
        run_day: UTC day to process; empty means yesterday.
        log_level: Root log level.
    """

    sim_seed: int = 42
    default_interval_minutes: int = 5
    anchor_enabled: bool = True
    adapter_api_url: str = "http://localhost:4100"
    adapter_api_key: str = ""
    adapter_shared_secret: str = ""
    adapter_timeout_s: float = 30.0
    site_ids: str = "PRJ001,PRJ002"
    sites_dir: str = "sites"
    db_path: str = "/data/sim.db"
    health_path: str = "/data/health.json"
    run_day: date | None = None
    log_level: str = "INFO"

    @field_validator("run_day", mode="before")
    @classmethod
    def empty_run_day_is_none(cls, v: object) -> object:
        """Treat an empty RUN_DAY as unset."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("default_interval_minutes")
    @classmethod
    def interval_must_divide_day(cls, v: int) -> int:
        """Validate the interval is 1..60 minutes and divides a day evenly."""
        if v < 1 or v > 60 or 1440 % v != 0:
            raise ValueError(
                "DEFAULT_INTERVAL_MINUTES must be between 1 and 60 and divide 1440"
            )
        return v

    @field_validator("adapter_api_url")
    @classmethod
    def adapter_url_must_be_http(cls, v: str) -> str:
        """Validate the adapter URL scheme and strip a trailing slash."""
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError(
                f"ADAPTER_API_URL must use http:// or https:// (got: '{v[:20]}...')"
            )
        return v.rstrip("/")

    @field_validator("adapter_timeout_s")
    @classmethod
    def timeout_must_be_positive(cls, v: float) -> float:
        """Validate the adapter timeout is positive."""
        if v <= 0:
            raise ValueError("ADAPTER_TIMEOUT_S must be > 0")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        """Validate the log level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"LOG_LEVEL must be a standard level name (got: '{v}')")
        return level

    @property
    def site_id_list(self) -> list[str]:
        """Configured site identifiers, whitespace stripped, empties dropped."""
        return [s.strip() for s in self.site_ids.split(",") if s.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


def load_settings() -> SimSettings:
    """Load SimSettings, mapping validation failures to ConfigurationError."""
    try:
        return SimSettings()
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings: {exc}") from exc
