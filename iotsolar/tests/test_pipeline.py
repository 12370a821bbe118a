"""
Unit tests for the site-day pipeline.

Tests verify:
- process_site_day generates, aggregates, digests and anchors a day.
- Existing telemetry is reused unless force is set.
- Anchoring is skipped when disabled or already anchored.
- A regenerated digest with a new root is anchored again.
- Anchor failure keeps telemetry and digest intact.
- run_batch isolates per-site failures.
- backfill walks days in order and honours the cancel event.
- anchor_pending anchors an existing digest.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-013)

TODO:
- None
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from iotsolar.src.config import SiteConfig
from iotsolar.src.errors import DataAbsentError
from iotsolar.src.models import AnchorResult
from iotsolar.src.pipeline import (
    PipelineContext,
    anchor_pending,
    backfill,
    process_site_day,
    run_batch,
)
from iotsolar.src.store import TelemetryStore
from iotsolar.src.telemetry import day_bounds, generate_day

_DAY = date(2026, 10, 18)
_TX = "0x" + "cd" * 32


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _anchor_ok(tx: str = _TX) -> AnchorResult:
    return AnchorResult(success=True, adapter_tx_id="adp-1", tx_hash=tx, block_number=9)


def _coordinator(result: AnchorResult | None = None) -> MagicMock:
    """Return a mock AnchorCoordinator whose retry call returns *result*."""
    coordinator = MagicMock()
    coordinator.anchor_with_retry = AsyncMock(return_value=result or _anchor_ok())
    return coordinator


def _ctx(
    store: TelemetryStore,
    coordinator: MagicMock | None = None,
    anchor_enabled: bool = True,
) -> PipelineContext:
    return PipelineContext(
        seed=42,
        interval_minutes=60,
        store=store,
        coordinator=coordinator or _coordinator(),
        anchor_enabled=anchor_enabled,
    )


# ---------------------------------------------------------------------------
# process_site_day
# ---------------------------------------------------------------------------


class TestProcessSiteDay:
    @pytest.mark.asyncio
    async def test_full_run(self, tmp_path: Path, site: SiteConfig) -> None:
        async with TelemetryStore(tmp_path / "sim.db") as store:
            ctx = _ctx(store)
            report = await process_site_day(ctx, site, _DAY)
            stored = await store.get_digest("PRJ001", _DAY)
            hourly = await store.fetch_hourly("PRJ001", *day_bounds(_DAY))

        assert report.ok
        assert report.generated is True
        assert report.rows == 24
        assert report.anchor is not None and report.anchor.success
        assert report.anchored
        assert len(hourly) == 24
        assert stored is not None
        assert stored.anchor_tx_hash == _TX
        assert report.digest == stored

        ctx.coordinator.anchor_with_retry.assert_awaited_once()
        call = ctx.coordinator.anchor_with_retry.call_args
        assert call.args == ("PRJ001", _DAY, stored.merkle_root)
        assert call.kwargs["cancel_event"] is ctx.cancel_event

    @pytest.mark.asyncio
    async def test_existing_rows_reused(self, tmp_path: Path, site: SiteConfig) -> None:
        async with TelemetryStore(tmp_path / "sim.db") as store:
            ctx = _ctx(store, anchor_enabled=False)
            first = await process_site_day(ctx, site, _DAY)
            with patch("iotsolar.src.pipeline.generate_day") as mock_generate:
                second = await process_site_day(ctx, site, _DAY)
                mock_generate.assert_not_called()

        assert first.generated is True
        assert second.generated is False
        assert second.digest is not None and first.digest is not None
        assert second.digest.merkle_root == first.digest.merkle_root

    @pytest.mark.asyncio
    async def test_force_regenerates(self, tmp_path: Path, site: SiteConfig) -> None:
        async with TelemetryStore(tmp_path / "sim.db") as store:
            ctx = _ctx(store, anchor_enabled=False)
            first = await process_site_day(ctx, site, _DAY)
            second = await process_site_day(ctx, site, _DAY, force=True)
            count = await store.count_day("PRJ001", _DAY)

        assert second.generated is True
        assert count == 24
        assert first.digest is not None and second.digest is not None
        # Same seed, site and day: identical digest root
        assert second.digest.merkle_root == first.digest.merkle_root

    @pytest.mark.asyncio
    async def test_anchoring_disabled(self, tmp_path: Path, site: SiteConfig) -> None:
        async with TelemetryStore(tmp_path / "sim.db") as store:
            ctx = _ctx(store, anchor_enabled=False)
            report = await process_site_day(ctx, site, _DAY)

        assert report.ok
        assert report.anchor is None
        assert not report.anchored
        ctx.coordinator.anchor_with_retry.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_anchored_not_resubmitted(
        self, tmp_path: Path, site: SiteConfig
    ) -> None:
        async with TelemetryStore(tmp_path / "sim.db") as store:
            ctx = _ctx(store)
            await process_site_day(ctx, site, _DAY)
            report = await process_site_day(ctx, site, _DAY)

        assert report.anchor is None
        assert report.anchored
        ctx.coordinator.anchor_with_retry.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_force_with_new_root_reanchors(
        self, tmp_path: Path, site: SiteConfig
    ) -> None:
        new_tx = "0x" + "ef" * 32
        coordinator = _coordinator()
        coordinator.anchor_with_retry.side_effect = [_anchor_ok(), _anchor_ok(new_tx)]
        async with TelemetryStore(tmp_path / "sim.db") as store:
            ctx = _ctx(store, coordinator=coordinator)
            first = await process_site_day(ctx, site, _DAY)
            half_hourly = replace(ctx, interval_minutes=30)
            second = await process_site_day(half_hourly, site, _DAY, force=True)
            stored = await store.get_digest("PRJ001", _DAY)

        assert first.digest is not None and second.digest is not None
        assert second.rows == 48
        assert second.digest.merkle_root != first.digest.merkle_root
        assert second.anchor is not None and second.anchor.tx_hash == new_tx
        assert stored is not None
        assert stored.merkle_root == second.digest.merkle_root
        assert stored.anchor_tx_hash == new_tx
        assert coordinator.anchor_with_retry.await_count == 2
        assert coordinator.anchor_with_retry.call_args.args[2] == stored.merkle_root

    @pytest.mark.asyncio
    async def test_anchor_failure_keeps_data(
        self, tmp_path: Path, site: SiteConfig
    ) -> None:
        failed = AnchorResult.failure("Failed after 3 attempts: down", attempts=3)
        async with TelemetryStore(tmp_path / "sim.db") as store:
            ctx = _ctx(store, coordinator=_coordinator(failed))
            report = await process_site_day(ctx, site, _DAY)
            stored = await store.get_digest("PRJ001", _DAY)
            count = await store.count_day("PRJ001", _DAY)

        assert report.ok
        assert report.anchor == failed
        assert not report.anchored
        assert stored is not None and not stored.is_anchored
        assert count == 24


# ---------------------------------------------------------------------------
# run_batch
# ---------------------------------------------------------------------------


class TestRunBatch:
    @pytest.mark.asyncio
    async def test_all_sites(self, tmp_path: Path, site: SiteConfig) -> None:
        other = site.model_copy(update={"site_id": "PRJ002", "lat": 23.0})
        async with TelemetryStore(tmp_path / "sim.db") as store:
            ctx = _ctx(store)
            reports = await run_batch(ctx, [site, other], _DAY)

        assert [r.site_id for r in reports] == ["PRJ001", "PRJ002"]
        assert all(r.ok and r.anchored for r in reports)
        assert reports[0].digest is not None and reports[1].digest is not None
        assert reports[0].digest.merkle_root != reports[1].digest.merkle_root

    @pytest.mark.asyncio
    async def test_failing_site_isolated(self, tmp_path: Path, site: SiteConfig) -> None:
        other = site.model_copy(update={"site_id": "PRJ002"})

        def _generate(site_cfg: SiteConfig, *args: object) -> list:
            if site_cfg.site_id == "PRJ002":
                raise RuntimeError("simulated generator failure")
            return generate_day(site_cfg, *args)

        async with TelemetryStore(tmp_path / "sim.db") as store:
            ctx = _ctx(store)
            with patch("iotsolar.src.pipeline.generate_day", side_effect=_generate):
                reports = await run_batch(ctx, [site, other], _DAY)
            other_count = await store.count_day("PRJ002", _DAY)

        assert reports[0].ok
        assert reports[0].anchored
        assert not reports[1].ok
        assert reports[1].error == "simulated generator failure"
        assert other_count == 0

    @pytest.mark.asyncio
    async def test_empty_site_list(self, tmp_path: Path) -> None:
        async with TelemetryStore(tmp_path / "sim.db") as store:
            assert await run_batch(_ctx(store), [], _DAY) == []


# ---------------------------------------------------------------------------
# backfill
# ---------------------------------------------------------------------------


class TestBackfill:
    @pytest.mark.asyncio
    async def test_days_in_order(self, tmp_path: Path, site: SiteConfig) -> None:
        start = _DAY - timedelta(days=2)
        async with TelemetryStore(tmp_path / "sim.db") as store:
            ctx = _ctx(store, anchor_enabled=False)
            reports = await backfill(ctx, site, start, _DAY)
            digests = await store.list_digests("PRJ001", start, _DAY)

        assert [r.day for r in reports] == [start, start + timedelta(days=1), _DAY]
        assert all(r.ok for r in reports)
        assert len(digests) == 3
        assert len({d.merkle_root for d in digests}) == 3

    @pytest.mark.asyncio
    async def test_single_day_matches_batch(
        self, tmp_path: Path, site: SiteConfig
    ) -> None:
        start = _DAY - timedelta(days=3)
        async with TelemetryStore(tmp_path / "a.db") as store:
            ranged = await backfill(_ctx(store, anchor_enabled=False), site, start, _DAY)
        async with TelemetryStore(tmp_path / "b.db") as store:
            single = await process_site_day(
                _ctx(store, anchor_enabled=False), site, _DAY
            )

        assert ranged[-1].digest is not None and single.digest is not None
        assert ranged[-1].digest.merkle_root == single.digest.merkle_root

    @pytest.mark.asyncio
    async def test_start_after_end(self, tmp_path: Path, site: SiteConfig) -> None:
        async with TelemetryStore(tmp_path / "sim.db") as store:
            with pytest.raises(ValueError, match="after end"):
                await backfill(_ctx(store), site, _DAY, _DAY - timedelta(days=1))

    @pytest.mark.asyncio
    async def test_cancel_stops_backfill(self, tmp_path: Path, site: SiteConfig) -> None:
        async with TelemetryStore(tmp_path / "sim.db") as store:
            ctx = _ctx(store, anchor_enabled=False)
            ctx.cancel_event.set()
            reports = await backfill(ctx, site, _DAY - timedelta(days=5), _DAY)

        assert reports == []

    @pytest.mark.asyncio
    async def test_day_failure_isolated(self, tmp_path: Path, site: SiteConfig) -> None:
        bad_day = _DAY - timedelta(days=1)

        def _generate(site_cfg: SiteConfig, day: date, *args: object) -> list:
            if day == bad_day:
                raise RuntimeError("bad day")
            return generate_day(site_cfg, day, *args)

        async with TelemetryStore(tmp_path / "sim.db") as store:
            ctx = _ctx(store, anchor_enabled=False)
            with patch("iotsolar.src.pipeline.generate_day", side_effect=_generate):
                reports = await backfill(ctx, site, _DAY - timedelta(days=2), _DAY)

        assert [r.ok for r in reports] == [True, False, True]


# ---------------------------------------------------------------------------
# anchor_pending
# ---------------------------------------------------------------------------


class TestAnchorPending:
    @pytest.mark.asyncio
    async def test_anchors_existing_digest(
        self, tmp_path: Path, site: SiteConfig
    ) -> None:
        async with TelemetryStore(tmp_path / "sim.db") as store:
            await process_site_day(_ctx(store, anchor_enabled=False), site, _DAY)
            ctx = _ctx(store)
            result = await anchor_pending(ctx, "PRJ001", _DAY)
            stored = await store.get_digest("PRJ001", _DAY)

        assert result.success
        assert stored is not None and stored.anchor_tx_hash == _TX

    @pytest.mark.asyncio
    async def test_already_anchored(self, tmp_path: Path, site: SiteConfig) -> None:
        async with TelemetryStore(tmp_path / "sim.db") as store:
            ctx = _ctx(store)
            await process_site_day(ctx, site, _DAY)
            ctx.coordinator.anchor_with_retry.reset_mock()
            result = await anchor_pending(ctx, "PRJ001", _DAY)

        assert result.success
        assert result.attempts == 0
        assert result.tx_hash == _TX
        ctx.coordinator.anchor_with_retry.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_force_reanchors(self, tmp_path: Path, site: SiteConfig) -> None:
        new_tx = "0x" + "ef" * 32
        async with TelemetryStore(tmp_path / "sim.db") as store:
            ctx = _ctx(store)
            await process_site_day(ctx, site, _DAY)
            ctx.coordinator.anchor_with_retry = AsyncMock(return_value=_anchor_ok(new_tx))
            result = await anchor_pending(ctx, "PRJ001", _DAY, force=True)
            stored = await store.get_digest("PRJ001", _DAY)

        assert result.tx_hash == new_tx
        assert stored is not None and stored.anchor_tx_hash == new_tx

    @pytest.mark.asyncio
    async def test_missing_digest(self, tmp_path: Path) -> None:
        async with TelemetryStore(tmp_path / "sim.db") as store:
            with pytest.raises(DataAbsentError, match="PRJ001"):
                await anchor_pending(_ctx(store), "PRJ001", _DAY)
