"""
Outage and curtailment policy for simulated telemetry.

Precedence per timestamp is outage > curtailment > normal generation.
Outages are scheduled windows (UTC time of day plus weekday pattern) and
are checked first; the curtailment draw is taken from the random source only
when no outage applies, so an outage never consumes a draw. Curtailment is a
single independent draw per interval; there are no multi-interval episodes.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-007)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime

from iotsolar.src.config import DAY_CODES, SiteConfig
from iotsolar.src.models import TelemetryStatus
from iotsolar.src.rng import SeededRandom
from iotsolar.src.solar import utc_hours


def day_code(ts: datetime) -> str:
    """Return the weekday code (SUN..SAT) of a UTC timestamp."""
    # isoweekday: Monday=1 .. Sunday=7
    return DAY_CODES[ts.isoweekday() % 7]


class OutageCurtailmentPolicy:
    """Decides the operating status of a site for each interval.

    Args:
        site: Validated site configuration.
        rng: The site's random source, shared with the weather model.
    """

    def __init__(self, site: SiteConfig, rng: SeededRandom) -> None:
        self.site = site
        self.rng = rng

    def check_outage(self, ts: datetime) -> bool:
        """Return True when *ts* falls inside a scheduled outage window."""
        hour = utc_hours(ts)
        code = day_code(ts)
        return any(
            window.start_hour <= hour <= window.end_hour and window.applies_on(code)
            for window in self.site.outage_windows
        )

    def check_curtailment(self) -> bool:
        """Draw once and return True when the interval is curtailed."""
        return self.rng.next() < self.site.curtailment_pct

    def status_for(self, ts: datetime) -> TelemetryStatus:
        """Return the status for *ts*, consuming at most one random draw."""
        if self.check_outage(ts):
            return TelemetryStatus.OUTAGE
        if self.check_curtailment():
            return TelemetryStatus.CURTAILED
        return TelemetryStatus.OK
