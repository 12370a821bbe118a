"""
Solar geometry and weather model for a single PV site.

Computes plane-of-array irradiance from solar position and a clear-sky
approximation, then applies a stochastic cloud multiplier. Ambient
temperature and wind speed follow seasonal and daily sinusoids with random
noise. All randomness comes from the SeededRandom passed in by the caller;
the draw order per timestamp is:

1. cloud factor (only when the sun is above the horizon),
2. temperature noise (Gaussian),
3. wind noise (uniform).

The hour angle and the daily temperature and wind cycles use local solar
time, i.e. UTC hours shifted by longitude / 15, so solar noon falls at the
site's own noon rather than at 12:00 UTC. A model driven by raw UTC hours
produces different values for any site away from the prime meridian;
solar_hours() is the single place this shift is applied.

CHANGELOG:
- 2026-10-19: Measure solar azimuth from north to match the array azimuth
- 2026-10-19: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from iotsolar.src.config import SiteConfig
from iotsolar.src.rng import SeededRandom

SOLAR_CONSTANT_WM2 = 1367.0
ECCENTRICITY = 0.033
TRANSMITTANCE_BASE = 0.7
TRANSMITTANCE_EXP = 0.678


def clamp(value: float, lo: float, hi: float) -> float:
    return min(max(value, lo), hi)


def day_of_year(ts: datetime) -> int:
    """Return the 1-based UTC day of year."""
    return ts.timetuple().tm_yday


def utc_hours(ts: datetime) -> float:
    """Return the fractional UTC hour of day."""
    return ts.hour + ts.minute / 60 + ts.second / 3600


@dataclass(frozen=True)
class SolarPosition:
    """Sun position in radians.

    Attributes:
        elevation: Angle above the horizon.
        azimuth: Angle clockwise from north.
        day: Day of year used for the computation.
    """

    elevation: float
    azimuth: float
    day: int


class SolarGeometryModel:
    """Irradiance, temperature and wind model for one site.

    Args:
        site: Validated site configuration.
        rng: Random source shared with the rest of the site's timestep
            pipeline; its call order is part of the determinism contract.
    """

    def __init__(self, site: SiteConfig, rng: SeededRandom) -> None:
        self.site = site
        self.rng = rng

    def solar_hours(self, ts: datetime) -> float:
        """Return local apparent solar time in hours (longitude corrected)."""
        return (utc_hours(ts) + self.site.lon / 15.0) % 24.0

    def solar_position(self, ts: datetime) -> SolarPosition:
        """Compute solar elevation and azimuth for a UTC timestamp."""
        day = day_of_year(ts)
        lat = math.radians(self.site.lat)
        declination = math.radians(23.45) * math.sin(
            math.radians(360.0 / 365.0 * (284 + day))
        )
        hour_angle = math.radians((self.solar_hours(ts) - 12.0) * 15.0)

        sin_elev = math.sin(lat) * math.sin(declination) + math.cos(lat) * math.cos(
            declination
        ) * math.cos(hour_angle)
        elevation = math.asin(clamp(sin_elev, -1.0, 1.0))

        # atan2 form gives azimuth from south, positive towards west
        azimuth_south = math.atan2(
            math.sin(hour_angle),
            math.cos(hour_angle) * math.sin(lat)
            - math.tan(declination) * math.cos(lat),
        )
        azimuth = (azimuth_south + math.pi) % (2 * math.pi)
        return SolarPosition(elevation=elevation, azimuth=azimuth, day=day)

    def calculate_irradiance(self, ts: datetime) -> float:
        """Return plane-of-array irradiance in W/m2, rounded to 1 decimal.

        Exactly 0 when the sun is at or below the horizon, in which case no
        random draw is made.
        """
        pos = self.solar_position(ts)
        if pos.elevation <= 0:
            return 0.0

        tilt = math.radians(self.site.tilt_deg)
        array_azimuth = math.radians(self.site.azimuth_deg)
        sin_elev = math.sin(pos.elevation)

        cos_incidence = sin_elev * math.cos(tilt) + math.cos(pos.elevation) * math.sin(
            tilt
        ) * math.cos(pos.azimuth - array_azimuth)

        extraterrestrial = SOLAR_CONSTANT_WM2 * (
            1 + ECCENTRICITY * math.cos(2 * math.pi * pos.day / 365)
        )
        air_mass = 1 / sin_elev
        transmittance = TRANSMITTANCE_BASE ** (air_mass**TRANSMITTANCE_EXP)
        dni = extraterrestrial * transmittance

        diffuse_fraction = 0.1 + 0.3 * math.exp(-dni / 200)
        diffuse = dni * diffuse_fraction

        poa = dni * max(0.0, cos_incidence) + diffuse * (1 + math.cos(tilt)) / 2
        poa *= self._cloud_variation(ts, pos.day)

        return round(max(0.0, poa), 1)

    def _cloud_variation(self, ts: datetime, day: int) -> float:
        t = self.solar_hours(ts)
        seasonal = 0.8 + 0.4 * math.sin(2 * math.pi * day / 365)
        daily = 0.7 + 0.6 * math.sin(math.pi * (t - 6) / 12)
        random_factor = self.rng.range(0.3, 1.2)
        return clamp(seasonal * daily * random_factor, 0.1, 1.0)

    def calculate_temperature(self, ts: datetime) -> float:
        """Return ambient temperature in Celsius, clamped to [-10, 50]."""
        day = day_of_year(ts)
        t = self.solar_hours(ts)
        hemisphere = 1.0 if self.site.lat >= 0 else -1.0

        base = 25 - (abs(self.site.lat) - 30) * 0.5
        seasonal = hemisphere * 10 * math.sin(2 * math.pi * (day - 80) / 365)
        daily = 8 * math.sin(math.pi * (t - 6) / 12)
        noise = self.rng.normal(0, 2)

        return round(clamp(base + seasonal + daily + noise, -10, 50), 1)

    def calculate_wind_speed(self, ts: datetime) -> float:
        """Return wind speed in m/s, floored at 0."""
        t = self.solar_hours(ts)
        daily = 2 + 3 * math.sin(math.pi * (t - 6) / 12)
        noise = self.rng.range(0, 5)
        return round(max(0.0, daily + noise), 1)
