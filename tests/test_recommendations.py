"""Tests for recommendation generation, scoring and cooldown."""

import asyncio

import pytest

from competency_eval.models.level import Eligibility, Recommendation, UserLevelProfile
from competency_eval.services.content import load_tier_requirements
from competency_eval.services.level_evaluator import MultiFactorLevelEvaluator, default_report
from competency_eval.services.profiles import ProfileService
from competency_eval.services.progress_calculator import ProgressCalculator
from competency_eval.services.progression import ProgressionRequirementEngine
from competency_eval.services.recommendations import (
    RecommendationEngine,
    level_change_recommendations,
    score_recommendation,
)
from conftest import FailingLevelStore, MemoryLevelStore

REQUIREMENTS = load_tier_requirements()
DAY = 24 * 60 * 60


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _rec(rec_id, category="practice_optimization", priority="medium", impact="medium", actionable=True):
    rec = Recommendation(id=rec_id, category=category, priority=priority, title=rec_id,
                         estimated_impact=impact, actionable=actionable)
    rec.score = score_recommendation(rec)
    return rec


def _engine(store=None, clock=None):
    store = store if store is not None else MemoryLevelStore()
    profiles = ProfileService(store, store)
    evaluator = MultiFactorLevelEvaluator(store, REQUIREMENTS, analytics=store)
    progress = ProgressCalculator(store, profiles, evaluator, REQUIREMENTS)
    progression = ProgressionRequirementEngine(profiles, REQUIREMENTS, progress=progress)
    return RecommendationEngine(profiles, evaluator, progress, progression, clock=clock or FakeClock())


def _evaluation(declared, effective, confidence):
    return default_report("u1", declared).model_copy(update={
        "effective_tier": effective, "confidence": confidence, "fallback": False,
    })


class TestScoring:

    def test_level_change_scores_highest(self):
        rec = _rec("x", category="level_change", priority="high", impact="high")
        assert rec.score == pytest.approx(7.2)

    def test_non_actionable_gets_no_bonus(self):
        rec = _rec("x", category="motivational", priority="low", impact="motivational", actionable=False)
        assert rec.score == pytest.approx(0.4 * 1 * 0.8)


class TestLevelChange:

    def test_level_up_needs_high_confidence(self):
        profile = UserLevelProfile(user_id="u1", current_tier="B1")
        assert [r.id for r in level_change_recommendations(profile, _evaluation("B1", "B2", 0.9))] == ["level-up-B2"]
        assert level_change_recommendations(profile, _evaluation("B1", "B2", 0.8)) == []

    def test_level_down(self):
        profile = UserLevelProfile(user_id="u1", current_tier="B1")
        assert [r.id for r in level_change_recommendations(profile, _evaluation("B1", "A2", 0.5))] == ["level-down-A2"]
        assert level_change_recommendations(profile, _evaluation("B1", "A2", 0.45)) == []

    def test_promotion_ready_respects_manual_override(self):
        eligibility = Eligibility(eligible=True, reason="requirements_met", current_tier="A1",
                                  next_tier="A2", confidence=0.9)
        evaluation = _evaluation("A1", "A1", 0.7)
        free = UserLevelProfile(user_id="u1", current_tier="A1")
        pinned = UserLevelProfile(user_id="u1", current_tier="A1", manual_override=True)
        assert [r.id for r in level_change_recommendations(free, evaluation, eligibility)] == ["promotion-ready-A2"]
        assert level_change_recommendations(pinned, evaluation, eligibility) == []


class TestPrioritize:

    def _categories(self, count=10):
        return {"practice_optimization": [_rec(f"rec-{i}") for i in range(count)]}

    def test_sorted_unique_and_limited(self):
        engine = _engine()
        categories = {
            "practice_optimization": [_rec("a"), _rec("a"), _rec("low", priority="low", impact="low")],
            "level_change": [_rec("top", category="level_change", priority="high", impact="high")],
        }
        selected = engine.prioritize("u1", categories)
        assert [r.id for r in selected] == ["top", "a", "low"]

    def test_never_more_than_eight(self):
        engine = _engine()
        assert len(engine.prioritize("u1", self._categories(12), {"limit": 20})) == 8

    def test_limit_option(self):
        assert len(_engine().prioritize("u1", self._categories(), {"limit": 3})) == 3

    def test_actionable_only(self):
        categories = {"motivational": [_rec("cheer", category="motivational", actionable=False), _rec("do")]}
        selected = _engine().prioritize("u1", categories, {"actionable_only": True})
        assert [r.id for r in selected] == ["do"]

    def test_cooldown_only_records_returned_items(self):
        clock = FakeClock()
        engine = _engine(clock=clock)
        first = engine.prioritize("u1", self._categories())
        second = engine.prioritize("u1", self._categories())
        assert len(first) == 8
        assert {r.id for r in second} == {"rec-8", "rec-9"}
        assert engine.prioritize("u1", self._categories()) == []

    def test_cooldown_expires(self):
        clock = FakeClock()
        engine = _engine(clock=clock)
        engine.prioritize("u1", self._categories(3))
        clock.now += DAY - 1
        assert engine.prioritize("u1", self._categories(3)) == []
        clock.now += 1
        assert len(engine.prioritize("u1", self._categories(3))) == 3

    def test_cooldown_is_per_user(self):
        engine = _engine()
        engine.prioritize("u1", self._categories(3))
        assert len(engine.prioritize("u2", self._categories(3))) == 3

    def test_clear_history(self):
        engine = _engine()
        engine.prioritize("u1", self._categories(3))
        engine.clear_history("u1")
        assert len(engine.prioritize("u1", self._categories(3))) == 3


class TestGenerate:

    def test_new_learner(self):
        result = asyncio.run(_engine().generate("u1"))
        ids = [r.id for r in result.prioritized]
        assert 0 < len(ids) <= 8
        assert len(ids) == len(set(ids))
        assert "level-down-A1" in ids
        assert result.summary.total_recommendations == sum(len(r) for r in result.categories.values())
        assert result.fallback is False

    def test_sorted_by_score(self):
        result = asyncio.run(_engine().generate("u1"))
        scores = [r.score for r in result.prioritized]
        assert scores == sorted(scores, reverse=True)

    def test_category_filter(self):
        result = asyncio.run(_engine().generate("u1", {"categories": ["practice_optimization"]}))
        assert list(result.categories) == ["practice_optimization"]
        assert {r.category for r in result.prioritized} == {"practice_optimization"}

    def test_results_are_cached(self):
        engine = _engine()

        async def scenario():
            return await engine.generate("u1"), await engine.generate("u1")

        first, second = asyncio.run(scenario())
        assert second is first

    def test_high_priority(self):
        recs = asyncio.run(_engine().high_priority("u1"))
        assert recs
        assert all(r.priority == "high" for r in recs)

    def test_upstream_failure(self):
        result = asyncio.run(_engine(store=FailingLevelStore()).generate("u1"))
        assert result.fallback is True
        assert [r.id for r in result.prioritized] == ["default-practice"]
