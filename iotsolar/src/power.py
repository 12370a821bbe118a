"""
DC/AC power conversion for a simulated PV plant.

DC power scales with plane-of-array irradiance, total module area and a
fixed module efficiency, derated linearly above 25 C. AC power applies the
inverter efficiency and is clipped to the site's AC capacity, so the AC
output never exceeds the configured capacity however large the DC array.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

from iotsolar.src.config import SiteConfig

MODULE_AREA_M2 = 2.0
MODULE_EFFICIENCY = 0.20
TEMP_COEFFICIENT_PER_C = -0.004
REFERENCE_TEMP_C = 25.0


class PowerConversionModel:
    """Irradiance to power and energy conversion for one site.

    Args:
        site: Validated site configuration (module count, inverter
            efficiency and AC capacity are used).
    """

    def __init__(self, site: SiteConfig) -> None:
        self.site = site

    @property
    def array_area_m2(self) -> float:
        return self.site.modules * MODULE_AREA_M2

    def calculate_dc_power(self, poa_irr_wm2: float, temp_c: float) -> float:
        """Return DC power in kW, floored at 0 and rounded to 3 decimals."""
        derate = 1 + TEMP_COEFFICIENT_PER_C * (temp_c - REFERENCE_TEMP_C)
        dc_kw = poa_irr_wm2 * self.array_area_m2 * MODULE_EFFICIENCY * derate / 1000
        return round(max(0.0, dc_kw), 3)

    def calculate_ac_power(self, dc_power_kw: float) -> float:
        """Return AC power in kW after inverter losses, clipped to capacity."""
        ac_kw = round(dc_power_kw * self.site.inverter_eff, 3)
        return min(max(0.0, ac_kw), self.site.capacity_ac_kw)

    @staticmethod
    def calculate_energy(ac_power_kw: float, interval_minutes: float) -> float:
        """Return interval energy in kWh, rounded to 3 decimals.

        Raises:
            ValueError: If *interval_minutes* is negative.
        """
        if interval_minutes < 0:
            raise ValueError(f"interval_minutes must be >= 0 (got {interval_minutes})")
        return round(ac_power_kw * (interval_minutes / 60), 3)
