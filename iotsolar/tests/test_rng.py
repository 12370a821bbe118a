"""
Unit tests for the seeded random source.

Tests verify:
- Same seed yields the same sequence; different seeds diverge.
- The stream advances (consecutive values differ).
- range/int/boolean/choice stay within bounds.
- normal() caches its second Box-Muller value.
- derive_seed is stable per (seed, site, day) and distinct across them.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations

import statistics
from datetime import date

import pytest
from iotsolar.src.rng import SeededRandom, derive_seed


class TestDeterminism:
    """Identical seeds and call order give identical values."""

    def test_same_seed_same_sequence(self) -> None:
        a = SeededRandom(42)
        b = SeededRandom(42)
        assert [a.next() for _ in range(100)] == [b.next() for _ in range(100)]

    def test_mixed_calls_reproduce(self) -> None:
        def draw(rng: SeededRandom) -> list[float]:
            return [
                rng.range(0.3, 1.2),
                rng.normal(0, 2),
                rng.range(0, 5),
                rng.next(),
                rng.normal(0, 2),
                float(rng.int(1, 6)),
            ]

        assert draw(SeededRandom(7)) == draw(SeededRandom(7))

    def test_different_seeds_diverge(self) -> None:
        a = [SeededRandom(1).next() for _ in range(5)]
        b = [SeededRandom(2).next() for _ in range(5)]
        assert a != b

    def test_stream_advances(self) -> None:
        rng = SeededRandom(42)
        values = [rng.next() for _ in range(50)]
        assert len(set(values)) == 50


class TestBounds:
    """Derived draws respect their documented ranges."""

    def test_next_in_unit_interval(self) -> None:
        rng = SeededRandom(3)
        for _ in range(1000):
            value = rng.next()
            assert 0.0 <= value < 1.0

    def test_range(self) -> None:
        rng = SeededRandom(4)
        for _ in range(1000):
            assert 0.3 <= rng.range(0.3, 1.2) < 1.2

    def test_int_inclusive(self) -> None:
        rng = SeededRandom(5)
        values = {rng.int(1, 3) for _ in range(500)}
        assert values == {1, 2, 3}

    def test_boolean_extremes(self) -> None:
        rng = SeededRandom(6)
        assert not any(rng.boolean(0.0) for _ in range(100))
        assert all(rng.boolean(1.0) for _ in range(100))

    def test_choice(self) -> None:
        rng = SeededRandom(8)
        items = ["a", "b", "c"]
        for _ in range(100):
            assert rng.choice(items) in items

    def test_choice_empty_raises(self) -> None:
        with pytest.raises(IndexError):
            SeededRandom(8).choice([])


class TestNormal:
    """Box-Muller gaussian draws."""

    def test_spare_value_consumes_no_draws(self) -> None:
        a = SeededRandom(9)
        b = SeededRandom(9)
        a.normal()
        a.normal()
        # Two normals consume exactly two uniforms
        b.next()
        b.next()
        assert a.next() == b.next()

    def test_moments(self) -> None:
        rng = SeededRandom(10)
        values = [rng.normal(5, 2) for _ in range(5000)]
        assert statistics.fmean(values) == pytest.approx(5, abs=0.15)
        assert statistics.stdev(values) == pytest.approx(2, abs=0.15)


class TestDeriveSeed:
    def test_stable(self) -> None:
        day = date(2026, 10, 18)
        assert derive_seed(42, "PRJ001", day) == derive_seed(42, "PRJ001", day)

    def test_distinct_per_site_day_and_seed(self) -> None:
        day = date(2026, 10, 18)
        seeds = {
            derive_seed(42, "PRJ001", day),
            derive_seed(42, "PRJ002", day),
            derive_seed(42, "PRJ001", date(2026, 10, 19)),
            derive_seed(43, "PRJ001", day),
        }
        assert len(seeds) == 4
