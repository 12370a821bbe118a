"""
Site-day pipeline: generate, persist, aggregate, digest and anchor.

All collaborators are passed explicitly through a PipelineContext; there is
no process-wide state. One site-day is processed as:

1. Generate the day's telemetry (skipped when rows already exist, unless
   ``force`` is set, in which case the day is deleted and regenerated).
2. Upsert the rows and recompute the hourly summaries.
3. Build and upsert the daily digest (anchor columns survive only an
   unchanged Merkle root).
4. If anchoring is enabled and the digest is not yet anchored, submit the
   Merkle root with retry and attach a successful result.

Anchoring failures never roll back telemetry or digests. Batch and backfill
runs isolate failures per site (or per day) so one bad site does not stop
the rest.

CHANGELOG:
- 2026-10-19: Add backfill and anchor_pending for operator re-runs
- 2026-10-19: Initial creation (STORY-013)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta

from iotsolar.src.aggregation import aggregate_day
from iotsolar.src.anchor import AnchorCoordinator
from iotsolar.src.config import SiteConfig
from iotsolar.src.digest import generate_digest
from iotsolar.src.errors import DataAbsentError
from iotsolar.src.models import AnchorResult, DailyDigest
from iotsolar.src.store import TelemetryStore
from iotsolar.src.telemetry import generate_day

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """Explicit collaborators and parameters for a pipeline run.

    Attributes:
        seed: Global simulation seed.
        interval_minutes: Telemetry interval.
        store: Open TelemetryStore.
        coordinator: AnchorCoordinator used for attestation.
        anchor_enabled: Whether digests are anchored after generation.
        cancel_event: Set on shutdown; interrupts anchor backoff waits.
    """

    seed: int
    interval_minutes: int
    store: TelemetryStore
    coordinator: AnchorCoordinator
    anchor_enabled: bool = True
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class SiteDayReport:
    """Outcome of processing one site-day."""

    site_id: str
    day: date
    rows: int = 0
    generated: bool = False
    digest: DailyDigest | None = None
    anchor: AnchorResult | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def anchored(self) -> bool:
        return self.digest is not None and self.digest.is_anchored


async def process_site_day(
    ctx: PipelineContext,
    site: SiteConfig,
    day: date,
    force: bool = False,
) -> SiteDayReport:
    """Run the full pipeline for one site-day.

    Args:
        ctx: Pipeline context.
        site: Site configuration.
        day: UTC day to process.
        force: Delete and regenerate existing telemetry for the day.

    Returns:
        A SiteDayReport. Anchor failures are reported in ``anchor`` without
        setting ``error``.

    Raises:
        DataAbsentError: If the day ends up with no telemetry.
    """
    store = ctx.store
    report = SiteDayReport(site_id=site.site_id, day=day)

    existing = await store.count_day(site.site_id, day)
    if existing and force:
        removed = await store.delete_day(site.site_id, day)
        logger.info(
            "Deleted %d existing rows for site=%s day=%s", removed, site.site_id, day
        )
        existing = 0

    if existing:
        logger.info(
            "Telemetry already present for site=%s day=%s (%d rows), skipping generation",
            site.site_id,
            day,
            existing,
        )
    else:
        records = generate_day(site, day, ctx.seed, ctx.interval_minutes)
        await store.upsert_telemetry(records)
        report.generated = True
        logger.info(
            "Generated %d telemetry rows for site=%s day=%s",
            len(records),
            site.site_id,
            day,
        )

    await aggregate_day(store, site.site_id, day)
    artifact = await generate_digest(store, site, day, ctx.interval_minutes)
    report.rows = artifact.digest.rows
    report.digest = artifact.digest

    if not ctx.anchor_enabled:
        logger.debug(
            "Anchoring disabled, digest for site=%s day=%s left unanchored",
            site.site_id,
            day,
        )
        return report
    if artifact.digest.is_anchored:
        logger.info(
            "Digest for site=%s day=%s already anchored (tx=%s)",
            site.site_id,
            day,
            artifact.digest.anchor_tx_hash,
        )
        return report

    report.anchor, report.digest = await _anchor_digest(ctx, artifact.digest)
    return report


async def _anchor_digest(
    ctx: PipelineContext, digest: DailyDigest
) -> tuple[AnchorResult, DailyDigest]:
    """Anchor a stored digest and attach a successful result."""
    result = await ctx.coordinator.anchor_with_retry(
        digest.site_id,
        digest.day_utc,
        digest.merkle_root,
        cancel_event=ctx.cancel_event,
    )
    if not result.success:
        logger.warning(
            "Digest for site=%s day=%s not anchored: %s",
            digest.site_id,
            digest.day_utc,
            result.error,
        )
        return result, digest

    await ctx.store.attach_anchor(digest.site_id, digest.day_utc, result)
    logger.info(
        "Anchored digest for site=%s day=%s tx=%s block=%d",
        digest.site_id,
        digest.day_utc,
        result.tx_hash,
        result.block_number,
    )
    stored = await ctx.store.get_digest(digest.site_id, digest.day_utc)
    return result, stored if stored is not None else digest


async def _process_isolated(
    ctx: PipelineContext, site: SiteConfig, day: date, force: bool
) -> SiteDayReport:
    """Run process_site_day, converting any failure into an error report."""
    try:
        return await process_site_day(ctx, site, day, force=force)
    except Exception as exc:
        logger.error(
            "Pipeline failed for site=%s day=%s",
            site.site_id,
            day,
            exc_info=True,
            extra={"site_id": site.site_id, "day": day},
        )
        return SiteDayReport(site_id=site.site_id, day=day, error=str(exc))


async def run_batch(
    ctx: PipelineContext,
    sites: list[SiteConfig],
    day: date,
    force: bool = False,
) -> list[SiteDayReport]:
    """Process one day for every site concurrently.

    Each site has its own random source, so the concurrent runs do not
    interfere. A failing site is reported and does not affect the others.

    Returns:
        One report per site, in the order of *sites*.
    """
    logger.info("Running batch for %d sites on %s", len(sites), day)
    reports = await asyncio.gather(
        *(_process_isolated(ctx, site, day, force) for site in sites)
    )
    failed = [r.site_id for r in reports if not r.ok]
    logger.info(
        "Batch for %s complete: %d ok, %d failed",
        day,
        len(reports) - len(failed),
        len(failed),
    )
    return list(reports)


async def backfill(
    ctx: PipelineContext,
    site: SiteConfig,
    start: date,
    end: date,
    force: bool = False,
) -> list[SiteDayReport]:
    """Process every day in [start, end] for one site, oldest first.

    Stops early when the cancel event is set.

    Raises:
        ValueError: If *start* is after *end*.
    """
    if start > end:
        raise ValueError(f"Backfill start {start} is after end {end}")

    reports: list[SiteDayReport] = []
    day = start
    while day <= end:
        if ctx.cancel_event.is_set():
            logger.info("Backfill for site=%s cancelled before %s", site.site_id, day)
            break
        reports.append(await _process_isolated(ctx, site, day, force))
        day += timedelta(days=1)
    return reports


async def anchor_pending(
    ctx: PipelineContext,
    site_id: str,
    day: date,
    force: bool = False,
) -> AnchorResult:
    """Anchor the existing digest of a site-day.

    Args:
        ctx: Pipeline context.
        site_id: Site identifier.
        day: UTC day of the digest.
        force: Re-anchor even when an anchor reference is already stored.

    Returns:
        The anchor result. An already anchored digest returns a success
        result built from the stored reference without contacting the
        adapter.

    Raises:
        DataAbsentError: If no digest is stored for the site-day.
    """
    digest = await ctx.store.get_digest(site_id, day)
    if digest is None:
        raise DataAbsentError(f"No digest found for site {site_id} on {day.isoformat()}")

    if digest.is_anchored and not force:
        logger.info("Digest for site=%s day=%s already anchored", site_id, day)
        return AnchorResult(
            success=True,
            adapter_tx_id=digest.anchor_adapter_tx_id or "",
            tx_hash=digest.anchor_tx_hash or "",
            block_number=digest.anchor_block_number or 0,
            attempts=0,
        )

    result, _ = await _anchor_digest(ctx, digest)
    return result
