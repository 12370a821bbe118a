"""
Simulator entrypoint: one daily batch of telemetry, digests and anchors.

Loads SimSettings and the configured site files, opens the TelemetryStore
and runs the site-day pipeline for every site concurrently. The processed
day is RUN_DAY when set, otherwise yesterday in UTC.

Structured JSON logging is used for all events. SIGTERM/SIGINT set a shared
asyncio.Event that interrupts anchor backoff waits so the run exits promptly.
A HealthWriter records last_run_ts, last_anchor_ts and failed_sites after
the batch.

Exit codes: 0 when every site succeeded, 1 when any site failed, 2 on a
configuration error.

CHANGELOG:
- 2026-10-19: Lift site_id/day log context into JSON log entries
- 2026-10-19: Mask adapter secrets in the startup config summary
- 2026-10-19: Initial creation (STORY-015)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING

from iotsolar.src.anchor import AnchorCoordinator
from iotsolar.src.config import load_settings, load_sites
from iotsolar.src.errors import ConfigurationError
from iotsolar.src.health import HealthWriter
from iotsolar.src.pipeline import PipelineContext, SiteDayReport, run_batch
from iotsolar.src.store import TelemetryStore

if TYPE_CHECKING:
    from iotsolar.src.config import SimSettings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------

_CONTEXT_FIELDS = ("site_id", "day")


class JsonFormatter(logging.Formatter):
    """JSON log formatter with optional site-day context.

    ``site_id`` and ``day`` passed through ``extra=`` become top-level keys,
    so per-site events can be filtered without parsing the message.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = str(value)
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Install JsonFormatter on a stderr handler of the root logger.

    Args:
        level: Root log level name.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _masked_token(value: str | None) -> str:
    """Fingerprint an adapter credential as ``len=N sha256=<10 hex>``."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: SimSettings) -> None:
    """Log a config summary at startup, excluding secrets.

    The adapter API key and shared secret are logged only as fingerprints.

    Args:
        settings: A SimSettings instance (or any object with the same attrs).
    """
    logger.info(
        "Simulator starting with config: "
        "sim_seed=%s, interval_minutes=%s, site_ids=%s, sites_dir=%s, "
        "db_path=%s, health_path=%s, run_day=%s, anchor_enabled=%s, "
        "adapter_api_url=%s, adapter_timeout_s=%s, "
        "adapter_api_key_masked=%s, adapter_shared_secret_masked=%s",
        settings.sim_seed,
        settings.default_interval_minutes,
        settings.site_ids,
        settings.sites_dir,
        settings.db_path,
        settings.health_path,
        settings.run_day,
        settings.anchor_enabled,
        settings.adapter_api_url,
        settings.adapter_timeout_s,
        _masked_token(settings.adapter_api_key),
        _masked_token(settings.adapter_shared_secret),
    )


def resolve_run_day(run_day: date | None, now: datetime | None = None) -> date:
    """Return *run_day*, or yesterday in UTC when it is unset."""
    if run_day is not None:
        return run_day
    now = now or datetime.now(tz=UTC)
    return (now.astimezone(UTC) - timedelta(days=1)).date()


def build_coordinator(settings: SimSettings) -> AnchorCoordinator:
    """Build the AnchorCoordinator described by *settings*."""
    return AnchorCoordinator(
        settings.adapter_api_url,
        api_key=settings.adapter_api_key,
        shared_secret=settings.adapter_shared_secret,
        enabled=settings.anchor_enabled,
        timeout_s=settings.adapter_timeout_s,
    )


def record_batch_health(health: HealthWriter, reports: list[SiteDayReport]) -> None:
    """Update the health file from a batch's reports."""
    if any(r.anchor is not None and r.anchor.success for r in reports):
        health.record_anchor()
    health.set_failed_sites([r.site_id for r in reports if not r.ok])
    health.record_run()


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> int:
    """Async entrypoint: load config, run the daily batch, write health.

    Sets up SIGTERM/SIGINT handlers to cancel pending anchor retries.

    Returns:
        Process exit code.
    """
    try:
        settings = load_settings()
    except ConfigurationError:
        configure_logging()
        logger.error("Invalid configuration", exc_info=True)
        return 2

    configure_logging(settings.log_level)
    log_config_summary(settings)

    try:
        sites = load_sites(settings.sites_dir, settings.site_id_list)
    except ConfigurationError:
        logger.error("Failed to load site configuration", exc_info=True)
        return 2

    cancel_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(cancel_event),
        )

    day = resolve_run_day(settings.run_day)
    health = HealthWriter(settings.health_path)

    async with TelemetryStore(settings.db_path) as store:
        ctx = PipelineContext(
            seed=settings.sim_seed,
            interval_minutes=settings.default_interval_minutes,
            store=store,
            coordinator=build_coordinator(settings),
            anchor_enabled=settings.anchor_enabled,
            cancel_event=cancel_event,
        )
        reports = await run_batch(ctx, sites, day)

    try:
        record_batch_health(health, reports)
    except OSError:
        logger.warning("Failed to write health file", exc_info=True)

    for report in reports:
        if report.ok:
            logger.info(
                "site=%s day=%s rows=%d anchored=%s",
                report.site_id,
                report.day,
                report.rows,
                report.anchored,
                extra={"site_id": report.site_id, "day": report.day},
            )
    return 0 if all(r.ok for r in reports) else 1


def _handle_signal(cancel_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the cancel event.

    Args:
        cancel_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, cancelling pending anchor retries")
    cancel_event.set()


def main() -> None:
    """Synchronous entrypoint for the simulator."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
