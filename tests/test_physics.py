"""Tests for delay planning, content processing and line noise."""

import random

import pytest

from chronolink.eras import ERA_PROFILES, Era
from chronolink.physics import NOISE_GLYPH, DelayPlanner, ProcessedContent, corrupt, process_content

from conftest import forced_profiles

SAMPLES = ["hello", "", "Mixed Case 123!", "ünïcødé ok", "already UPPER"]


class TestDelayPlanner:
    """Delay bounds, drop draws and determinism."""

    @pytest.mark.parametrize("era", list(Era))
    def test_delay_within_bounds(self, era):
        planner = DelayPlanner(rng=random.Random(7))
        profile = ERA_PROFILES[era]
        for _ in range(500):
            plan = planner.plan(era)
            assert profile.base_latency_ms <= plan.delay_ms <= profile.base_latency_ms + profile.jitter_ms
            assert isinstance(plan.delay_ms, int)

    def test_seeded_plans_repeat(self):
        first = DelayPlanner(rng=random.Random(42))
        second = DelayPlanner(rng=random.Random(42))
        assert [first.plan(Era.DIALUP) for _ in range(50)] == [second.plan(Era.DIALUP) for _ in range(50)]

    def test_delay_formula(self):
        """delay = base + floor(first draw * jitter); drop = second draw < p."""
        draws = random.Random(3)
        expected_jitter, expected_drop_draw = draws.random(), draws.random()
        plan = DelayPlanner(rng=random.Random(3)).plan(Era.DIALUP)
        assert plan.delay_ms == 800 + int(expected_jitter * 1200)
        assert plan.should_drop == (expected_drop_draw < 0.15)

    def test_forced_drop(self, rng):
        planner = DelayPlanner(profiles=forced_profiles(1.0), rng=rng)
        assert all(planner.plan(Era.DIALUP).should_drop for _ in range(100))

    def test_forced_no_drop(self, rng):
        planner = DelayPlanner(profiles=forced_profiles(0.0), rng=rng)
        assert not any(planner.plan(Era.DIALUP).should_drop for _ in range(100))

    def test_modern_never_drops(self, rng):
        planner = DelayPlanner(rng=rng)
        assert not any(planner.plan(Era.MODERN).should_drop for _ in range(1000))

    def test_dialup_drop_rate_roughly_matches(self):
        planner = DelayPlanner(rng=random.Random(1990))
        drops = sum(planner.plan(Era.DIALUP).should_drop for _ in range(10000))
        assert 1200 < drops < 1800

    def test_unknown_era_uses_modern_timing(self, rng):
        plan = DelayPlanner(rng=rng).plan("steam-radio")
        assert 20 <= plan.delay_ms <= 30
        assert plan.should_drop is False


class TestProcessContent:
    """Era-specific cosmetic transforms."""

    @pytest.mark.parametrize("text", SAMPLES)
    def test_telegraph_uppercases(self, text):
        assert process_content(text, Era.TELEGRAPH) == ProcessedContent(text.upper(), False)

    @pytest.mark.parametrize("text", SAMPLES)
    def test_dialup_passthrough(self, text):
        assert process_content(text, "1990") == ProcessedContent(text, False)

    @pytest.mark.parametrize("text", SAMPLES)
    def test_modern_is_secured(self, text):
        result = process_content(text, "2025")
        assert result.content == text
        assert result.secured is True

    @pytest.mark.parametrize("era", [Era.SWITCHBOARD, Era.SMS, "unknown", None])
    def test_other_eras_passthrough_unsecured(self, era):
        assert process_content("Hi there", era) == ProcessedContent("Hi there", False)


class TestCorrupt:
    """Line noise filter."""

    @pytest.mark.parametrize("text", SAMPLES)
    def test_zero_severity_is_identity(self, text):
        assert corrupt(text, 0) == text

    def test_full_severity_replaces_everything(self):
        assert corrupt("hello", 1.0) == NOISE_GLYPH * 5

    def test_length_preserved_and_only_glyph_inserted(self):
        text = "the quick brown fox"
        noisy = corrupt(text, 0.5, random.Random(11))
        assert len(noisy) == len(text)
        assert all(n == t or n == NOISE_GLYPH for n, t in zip(noisy, text))

    def test_seeded_output_repeats(self):
        text = "what hath god wrought"
        assert corrupt(text, 0.4, random.Random(5)) == corrupt(text, 0.4, random.Random(5))

    @pytest.mark.parametrize("severity", [-0.1, 1.01])
    def test_out_of_range_severity(self, severity):
        with pytest.raises(ValueError):
            corrupt("abc", severity)
