"""
Health reporting for the simulator.

HealthWriter writes a JSON health file at a configurable path with three
fields:
- last_run_ts: ISO timestamp of the most recent completed batch.
- last_anchor_ts: ISO timestamp of the most recent successful anchor.
- failed_sites: Site ids that failed in the most recent batch.

The file is rewritten on every state change so Docker HEALTHCHECK or
monitoring can inspect it.

check_health() probes the store and the attestation adapter and returns an
overall status of ``healthy`` (both up), ``degraded`` (database up, adapter
down or anchoring disabled) or ``unhealthy`` (database down).

CHANGELOG:
- 2026-10-19: Add check_health probe for store and adapter
- 2026-10-19: Initial creation (STORY-014)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from iotsolar.src.anchor import AnchorCoordinator
    from iotsolar.src.store import TelemetryStore

logger = logging.getLogger(__name__)


class HealthWriter:
    """Writes simulator health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_run_ts: str | None = None
        self._last_anchor_ts: str | None = None
        self._failed_sites: list[str] = []

    def record_run(self) -> None:
        """Record a completed batch run and write health file."""
        self._last_run_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def record_anchor(self) -> None:
        """Record a successful anchor and write health file."""
        self._last_anchor_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def set_failed_sites(self, site_ids: list[str]) -> None:
        """Replace the failed site list and write health file.

        Args:
            site_ids: Sites that failed in the latest batch.
        """
        self._failed_sites = sorted(site_ids)
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "last_run_ts": self._last_run_ts,
            "last_anchor_ts": self._last_anchor_ts,
            "failed_sites": self._failed_sites,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data))


async def check_health(
    store: TelemetryStore,
    coordinator: AnchorCoordinator,
) -> dict[str, str]:
    """Probe the database and the attestation adapter.

    Returns:
        Dict with ``status``, ``database`` (``up``/``down``) and ``anchor``
        (``up``/``down``/``disabled``).
    """
    try:
        database_up = await store.ping()
    except Exception:
        logger.warning("Database health check failed", exc_info=True)
        database_up = False

    if not coordinator.enabled:
        anchor = "disabled"
    else:
        anchor = "up" if (await coordinator.status()).ok else "down"

    if not database_up:
        status = "unhealthy"
    elif anchor == "up":
        status = "healthy"
    else:
        status = "degraded"

    return {
        "status": status,
        "database": "up" if database_up else "down",
        "anchor": anchor,
    }
