"""Tests for tier progress calculation and smoothing."""

import asyncio

import pytest

from competency_eval.models.level import CompetencyStat
from competency_eval.services.content import load_tier_requirements
from competency_eval.services.level_evaluator import MultiFactorLevelEvaluator
from competency_eval.services.profiles import ProfileService
from competency_eval.services.progress_calculator import (
    COMPONENT_WEIGHTS,
    ProgressCalculator,
    competencies_component,
    consistency_component,
    coverage_component,
    mastery_component,
    smooth_progress,
)
from conftest import FailingLevelStore, MemoryLevelStore

REQUIREMENTS = load_tier_requirements()


def _stats(*rows):
    return {
        f"{mood}_{tense}": CompetencyStat(mood=mood, tense=tense, attempts=attempts, correct=correct)
        for mood, tense, attempts, correct in rows
    }


def seed_strong_a2(store, user_id="u1"):
    store.seed_stat(user_id, "indicative", "pres", 80, 76)
    store.seed_stat(user_id, "indicative", "pretIndef", 80, 72)
    store.seed_stat(user_id, "indicative", "impf", 80, 72)
    store.seed_stat(user_id, "imperative", "impAff", 80, 68)


class CountingStore(MemoryLevelStore):
    def __init__(self):
        super().__init__()
        self.reads = {"load_profile": 0, "get_competency_stats": 0}

    async def load_profile(self, user_id):
        self.reads["load_profile"] += 1
        return await super().load_profile(user_id)

    async def get_competency_stats(self, user_id):
        self.reads["get_competency_stats"] += 1
        return await super().get_competency_stats(user_id)


def _calculator(store):
    profiles = ProfileService(store, store)
    evaluator = MultiFactorLevelEvaluator(store, REQUIREMENTS, analytics=store)
    return ProgressCalculator(store, profiles, evaluator, REQUIREMENTS), profiles, evaluator


class TestSmoothing:

    def test_weights_sum_to_one(self):
        assert sum(COMPONENT_WEIGHTS.values()) == pytest.approx(1.0)

    def test_blends_toward_fresh_value(self):
        assert smooth_progress(70, 90) == pytest.approx(73)

    def test_first_calculation_is_unsmoothed(self):
        assert smooth_progress(None, 90) == 90

    def test_drop_is_bounded(self):
        assert smooth_progress(70, 0) == pytest.approx(65)

    def test_clamped(self):
        assert smooth_progress(None, 120) == 100
        assert smooth_progress(100, 140) == 100


class TestComponents:

    def test_competency_fully_met(self):
        stats = _stats(("indicative", "pres", 60, 48))
        component = competencies_component(stats, REQUIREMENTS["A1"])
        assert component.score == pytest.approx(100)
        assert component.details["indicative_pres"]["completed"] is True

    def test_partial_credit_below_min_attempts(self):
        stats = _stats(("indicative", "pres", 15, 12))
        assert competencies_component(stats, REQUIREMENTS["A1"]).score == pytest.approx(30)

    def test_terminal_tier_counts_as_complete(self):
        assert competencies_component({}, REQUIREMENTS["C2"]).score == 100
        assert coverage_component({}, REQUIREMENTS["C2"]).score == 100

    def test_coverage_with_one_practiced_competency(self):
        stats = _stats(("indicative", "pres", 3, 1))
        assert coverage_component(stats, REQUIREMENTS["A2"]).score == pytest.approx(21.5)

    def test_mastery_with_level_bonus(self):
        stats = _stats(("indicative", "pres", 20, 17))
        assert mastery_component(stats, REQUIREMENTS["A2"]).score == pytest.approx(90)

    def test_mastery_ignores_thin_data(self):
        stats = _stats(("indicative", "pres", 5, 5))
        assert mastery_component(stats, REQUIREMENTS["A2"]).score == 0

    def test_consistency_defaults_without_evaluation(self):
        assert consistency_component(None).score == 50


class TestProgressCalculator:

    def test_first_calculation_is_stored(self):
        store = MemoryLevelStore()
        seed_strong_a2(store)
        calculator, profiles, _ = _calculator(store)

        async def scenario():
            report = await calculator.calculate("u1")
            return report, await profiles.get_profile("u1")

        report, profile = asyncio.run(scenario())
        assert report.tier == "A2"
        assert report.overall_percent == pytest.approx(86.4)
        assert report.raw_percent == report.overall_percent
        assert report.missing_competencies == []
        assert report.completed_competencies == 4
        assert profile.tier_progress_percent == pytest.approx(86.4)

    def test_later_drops_are_bounded(self):
        store = MemoryLevelStore()
        seed_strong_a2(store)
        calculator, _, evaluator = _calculator(store)

        async def scenario():
            first = await calculator.calculate("u1")
            store.stats["u1"] = {}
            calculator.clear_cache()
            evaluator.clear_cache()
            return first, await calculator.calculate("u1")

        first, second = asyncio.run(scenario())
        assert second.raw_percent == 0
        assert second.overall_percent == pytest.approx(first.overall_percent - 5)

    def test_other_tiers_are_not_stored(self):
        store = MemoryLevelStore()
        seed_strong_a2(store)
        calculator, profiles, _ = _calculator(store)

        async def scenario():
            report = await calculator.calculate("u1", "B1")
            return report, await profiles.get_profile("u1")

        report, profile = asyncio.run(scenario())
        assert report.tier == "B1"
        assert profile.tier_progress_percent == 0
        assert profile.progress_updated_at is None

    def test_results_are_cached(self):
        store = MemoryLevelStore()
        calculator, *_ = _calculator(store)

        async def scenario():
            return await calculator.calculate("u1"), await calculator.calculate("u1")

        first, second = asyncio.run(scenario())
        assert second is first

    def test_cached_tier_is_served_without_reads(self):
        store = CountingStore()
        calculator, *_ = _calculator(store)

        async def scenario():
            first = await calculator.calculate("u1", "A2")
            before = dict(store.reads)
            second = await calculator.calculate("u1", "A2")
            return first, second, before

        first, second, before = asyncio.run(scenario())
        assert second is first
        assert store.reads == before

    def test_cached_current_tier_only_resolves_the_tier(self):
        store = CountingStore()
        calculator, *_ = _calculator(store)

        async def scenario():
            first = await calculator.calculate("u1")
            before = dict(store.reads)
            second = await calculator.calculate("u1")
            return first, second, before

        first, second, before = asyncio.run(scenario())
        assert second is first
        assert store.reads["load_profile"] == before["load_profile"] + 1
        assert store.reads["get_competency_stats"] == before["get_competency_stats"]

    def test_upstream_failure_returns_default(self):
        calculator, *_ = _calculator(FailingLevelStore())
        report = asyncio.run(calculator.calculate("u1"))
        assert report.fallback is True
        assert report.tier == "A2"
        assert report.overall_percent == 0

    def test_milestones(self):
        store = MemoryLevelStore()
        store.seed_stat("u1", "indicative", "pres", 10, 4)
        calculator, *_ = _calculator(store)
        report = asyncio.run(calculator.calculate("u1"))
        assert 0 < len(report.next_milestones) <= 3
        assert [m.type for m in report.next_milestones] == ["competency", "overall", "accuracy"]
        assert report.next_milestones[1].target == (report.overall_percent // 10) * 10 + 10

    def test_ready_for_next_tier(self):
        store = MemoryLevelStore()
        seed_strong_a2(store)
        calculator, *_ = _calculator(store)
        readiness = asyncio.run(calculator.is_ready_for_next_tier("u1"))
        assert readiness["ready"] is True
        assert readiness["recommendation"] == "level_up"

    def test_not_ready_without_data(self):
        calculator, *_ = _calculator(MemoryLevelStore())
        readiness = asyncio.run(calculator.is_ready_for_next_tier("u1"))
        assert readiness["ready"] is False
        assert readiness["missing_competencies"] == 4
