"""
Shared test fixtures for simulator tests.

Provides environment isolation for SimSettings and a small set of site
configurations. All simulator env vars are cleaned before each test.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from iotsolar.src.config import SiteConfig

# All SimSettings environment variable names, used for cleanup.
_ALL_SIM_ENV_VARS = (
    "SIM_SEED",
    "DEFAULT_INTERVAL_MINUTES",
    "ANCHOR_ENABLED",
    "ADAPTER_API_URL",
    "ADAPTER_API_KEY",
    "ADAPTER_SHARED_SECRET",
    "ADAPTER_TIMEOUT_S",
    "SITE_IDS",
    "SITES_DIR",
    "DB_PATH",
    "HEALTH_PATH",
    "RUN_DAY",
    "LOG_LEVEL",
)

SITE_DATA: dict[str, object] = {
    "siteId": "PRJ001",
    "name": "Test Rooftop",
    "country": "IN",
    "timezone": "Asia/Kolkata",
    "lat": 26.9124,
    "lon": 75.7873,
    "capacityDcKW": 1000,
    "capacityAcKW": 900,
    "tiltDeg": 25,
    "azimuthDeg": 180,
    "modules": 2500,
    "inverterEff": 0.97,
    "degradationPctPerYear": 0.5,
    "baselineKgPerKwh": 0.708,
    "outageWindows": [],
    "curtailmentPct": 0.0,
}


@pytest.fixture(autouse=True)
def _clean_sim_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all simulator env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_SIM_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def site_data() -> dict[str, object]:
    """Return a fresh copy of the raw camelCase site mapping."""
    return json.loads(json.dumps(SITE_DATA))


@pytest.fixture()
def site(site_data: dict[str, object]) -> SiteConfig:
    """A northern-hemisphere site with no outages and no curtailment."""
    return SiteConfig.model_validate(site_data)


@pytest.fixture()
def sites_dir(tmp_path: Path, site_data: dict[str, object]) -> Path:
    """Directory holding PRJ001.json and PRJ002.json."""
    directory = tmp_path / "sites"
    directory.mkdir()
    second = dict(site_data, siteId="PRJ002", lat=23.0225, lon=72.5714)
    (directory / "PRJ001.json").write_text(json.dumps(site_data))
    (directory / "PRJ002.json").write_text(json.dumps(second))
    return directory
