"""Categorized, prioritized study recommendations.

Combines the learner's profile with the multi-factor evaluation, the
progress report and (when available) the hard promotion eligibility. Each
category has its own generation rule; the merged list is scored, sorted,
de-duplicated, filtered against a per-user "already shown" cooldown and
truncated.
"""

import logging
import time
from typing import Callable, Dict, List, Optional

from cachetools import TTLCache

from competency_eval.errors import UpstreamUnavailableError
from competency_eval.models.level import (
    Eligibility,
    EvaluationReport,
    ProgressReport,
    Recommendation,
    RecommendationSet,
    RecommendationSummary,
    UserLevelProfile,
)
from competency_eval.services.cache import options_key, ttl_cache
from competency_eval.services.tiers import compare_tiers

logger = logging.getLogger(__name__)

CATEGORY_WEIGHTS = {
    "level_change": 1.0,
    "competency_gaps": 0.8,
    "practice_optimization": 0.6,
    "motivational": 0.4,
    "maintenance": 0.3,
}
PRIORITY_MULTIPLIERS = {"high": 3, "medium": 2, "low": 1}
IMPACT_MULTIPLIERS = {"high": 2, "medium": 1.5, "low": 1, "motivational": 0.8}
ACTIONABLE_BONUS = 1.2

LEVEL_UP_CONFIDENCE = 0.85
LEVEL_DOWN_CONFIDENCE = 0.50
CONSISTENCY_TARGET = 0.75
FLUENCY_TARGET = 0.7
COVERAGE_TARGET = 0.8
MASTERY_TARGET = 0.8

MAX_MISSING = 3
MAX_WEAK = 2
MAX_RECOMMENDATIONS = 8


def score_recommendation(rec: Recommendation) -> float:
    score = CATEGORY_WEIGHTS.get(rec.category, 0.5)
    score *= PRIORITY_MULTIPLIERS.get(rec.priority, 1)
    score *= IMPACT_MULTIPLIERS.get(rec.estimated_impact, 1)
    if rec.actionable:
        score *= ACTIONABLE_BONUS
    return score


def supporting_evidence(evaluation: EvaluationReport, direction: str) -> List[str]:
    factors = evaluation.factors
    evidence = []
    if direction == "up":
        if factors.accuracy.score > 0.8:
            evidence.append(f"High accuracy: {factors.accuracy.score:.0%}")
        if factors.consistency.score > 0.7:
            evidence.append("Consistent performance")
        if factors.coverage.score > 0.7:
            evidence.append("Good competency coverage")
    else:
        if factors.accuracy.score < 0.6:
            evidence.append(f"Low accuracy: {factors.accuracy.score:.0%}")
        if factors.consistency.score < 0.5:
            evidence.append("Inconsistent performance")
    return evidence


def level_change_recommendations(profile: UserLevelProfile, evaluation: EvaluationReport,
                                 eligibility: Optional[Eligibility] = None) -> List[Recommendation]:
    recs = []
    current = profile.current_tier
    effective = evaluation.effective_tier
    direction = compare_tiers(effective, current)

    if direction > 0 and evaluation.confidence >= LEVEL_UP_CONFIDENCE:
        recs.append(Recommendation(
            id=f"level-up-{effective}",
            category="level_change",
            type="level_up",
            priority="high",
            title=f"Consider moving to {effective}",
            description=f"Your performance shows you are ready for {effective}",
            actions=[
                f"Review the competencies of {effective}",
                "Do targeted practice to confirm the change",
                f"Update your level to {effective}",
            ],
            estimated_impact="high",
            data={
                "current_tier": current,
                "recommended_tier": effective,
                "confidence": evaluation.confidence,
                "supporting_evidence": supporting_evidence(evaluation, "up"),
            },
        ))

    if direction < 0 and evaluation.confidence >= LEVEL_DOWN_CONFIDENCE:
        recs.append(Recommendation(
            id=f"level-down-{effective}",
            category="level_change",
            type="level_down",
            priority="medium",
            title=f"Consider adjusting to {effective}",
            description=f"Your current performance fits {effective} better",
            actions=[
                f"Review the fundamentals of {effective}",
                "Strengthen the basic competencies",
                "Practice intensively",
            ],
            estimated_impact="medium",
            data={
                "current_tier": current,
                "recommended_tier": effective,
                "confidence": evaluation.confidence,
                "supporting_evidence": supporting_evidence(evaluation, "down"),
            },
        ))

    if eligibility is not None and eligibility.eligible and not profile.manual_override:
        recs.append(Recommendation(
            id=f"promotion-ready-{eligibility.next_tier}",
            category="level_change",
            type="promotion_ready",
            priority="high",
            title=f"You meet every requirement for {eligibility.next_tier}",
            description="All required competencies, overall accuracy and practice volume are in place",
            actions=[f"Move up to {eligibility.next_tier}"],
            estimated_impact="high",
            data={"next_tier": eligibility.next_tier, "confidence": eligibility.confidence},
        ))

    return recs


def competency_gap_recommendations(progress: ProgressReport) -> List[Recommendation]:
    recs = []
    for index, missing in enumerate(progress.missing_competencies[:MAX_MISSING]):
        recs.append(Recommendation(
            id=f"missing-competency-{missing.mood}-{missing.tense}",
            category="competency_gaps",
            type="competency_gap",
            priority="high" if index == 0 else "medium",
            title=f"Practice {missing.mood} {missing.tense}",
            description="This competency is essential for your current level",
            actions=[
                f"Study {missing.mood} {missing.tense}",
                "Do targeted exercises",
                f"Practice until you reach {missing.required_accuracy:.0%} accuracy",
            ],
            estimated_impact="high",
            data=missing.model_dump(),
        ))

    for area in progress.weakest_areas[:MAX_WEAK]:
        if not area.needs_work:
            continue
        recs.append(Recommendation(
            id=f"weak-area-{area.mood}-{area.tense}",
            category="competency_gaps",
            type="improvement",
            priority="medium",
            title=f"Improve {area.mood} {area.tense}",
            description="Your accuracy in this area can improve",
            actions=["Review common mistakes", "Extra practice", "Speed drills"],
            estimated_impact="medium",
            data={
                "mood": area.mood,
                "tense": area.tense,
                "current_accuracy": area.accuracy,
                "attempts": area.attempts,
                "target_accuracy": MASTERY_TARGET,
            },
        ))
    return recs


def practice_optimization_recommendations(evaluation: EvaluationReport) -> List[Recommendation]:
    factors = evaluation.factors
    recs = []

    if factors.consistency.score < CONSISTENCY_TARGET:
        recs.append(Recommendation(
            id="improve-consistency",
            category="practice_optimization",
            type="practice_optimization",
            priority="medium",
            title="Make your practice more consistent",
            description="Your results vary a lot between sessions",
            actions=["Practice daily in short sessions", "Set a practice routine", "Review before each session"],
            estimated_impact="medium",
            data={"current": factors.consistency.score, "target": CONSISTENCY_TARGET},
        ))

    if factors.response_time.score < FLUENCY_TARGET:
        details = factors.response_time.details if isinstance(factors.response_time.details, dict) else {}
        recs.append(Recommendation(
            id="improve-fluency",
            category="practice_optimization",
            type="practice_optimization",
            priority="low",
            title="Improve fluency and speed",
            description="You can answer faster",
            actions=["Speed drills", "Review common patterns", "Automation practice"],
            estimated_impact="low",
            data={"current_ms": details.get("actual_ms"), "target_ms": details.get("expected_ms")},
        ))

    if factors.coverage.score < COVERAGE_TARGET:
        recs.append(Recommendation(
            id="increase-coverage",
            category="practice_optimization",
            type="practice_optimization",
            priority="medium",
            title="Vary your practice",
            description="Explore more competencies of your level",
            actions=["Try different exercise types", "Practice new competencies", "Mix tenses"],
            estimated_impact="medium",
            data={"current": factors.coverage.score, "target": COVERAGE_TARGET},
        ))

    return recs


def motivational_recommendations(progress: ProgressReport) -> List[Recommendation]:
    recs = []
    if progress.strongest_areas:
        strongest = progress.strongest_areas[0]
        recs.append(Recommendation(
            id="celebrate-strength",
            category="motivational",
            type="motivational",
            priority="low",
            title=f"Excellent command of {strongest.mood} {strongest.tense}!",
            description=f"You have {strongest.accuracy:.0%} accuracy",
            actionable=False,
            estimated_impact="motivational",
            data={"area": strongest.model_dump(), "achievement": "mastery"},
        ))

    if progress.next_milestones:
        milestone = progress.next_milestones[0]
        recs.append(Recommendation(
            id="next-milestone",
            category="motivational",
            type="motivational",
            priority="low",
            title="Next goal",
            description=milestone.title,
            actions=["Review your progress", "Plan your practice sessions", "Stay consistent"],
            estimated_impact="motivational",
            data={"milestone": milestone.model_dump()},
        ))
    return recs


def maintenance_recommendations(progress: ProgressReport) -> List[Recommendation]:
    if not progress.strongest_areas:
        return []
    return [Recommendation(
        id="maintain-strengths",
        category="maintenance",
        type="maintenance",
        priority="low",
        title="Keep your strengths sharp",
        description="Keep practicing your strongest areas",
        actions=["Review mastered competencies periodically", "Maintenance practice", "Explore advanced variations"],
        estimated_impact="low",
        data={"areas": [a.model_dump() for a in progress.strongest_areas[:3]]},
    )]


def summarize(categories: Dict[str, List[Recommendation]]) -> RecommendationSummary:
    everything = [rec for recs in categories.values() for rec in recs]
    return RecommendationSummary(
        total_recommendations=len(everything),
        high_priority=sum(1 for r in everything if r.priority == "high"),
        medium_priority=sum(1 for r in everything if r.priority == "medium"),
        low_priority=sum(1 for r in everything if r.priority == "low"),
    )


def default_recommendations(user_id: str) -> RecommendationSet:
    keep_practicing = Recommendation(
        id="default-practice",
        category="practice_optimization",
        type="practice_optimization",
        priority="medium",
        title="Keep practicing",
        description="Keep a regular practice routine",
        actions=["Practice daily", "Review mistakes", "Stay consistent"],
        estimated_impact="medium",
    )
    keep_practicing.score = score_recommendation(keep_practicing)
    categories = {name: [] for name in CATEGORY_WEIGHTS}
    categories["practice_optimization"] = [keep_practicing]
    return RecommendationSet(
        user_id=user_id,
        categories=categories,
        summary=summarize(categories),
        prioritized=[keep_practicing],
        fallback=True,
    )


class RecommendationEngine:
    def __init__(
        self,
        profiles,
        evaluator,
        progress,
        progression=None,
        cache: Optional[TTLCache] = None,
        cooldown_seconds: float = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.profiles = profiles
        self.evaluator = evaluator
        self.progress = progress
        self.progression = progression
        self.cache = cache if cache is not None else ttl_cache(10 * 60)
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        # (user_id, recommendation id) -> last time it was returned
        self._last_shown: Dict[tuple, float] = {}

    async def generate(self, user_id: str, options: Optional[dict] = None) -> RecommendationSet:
        """Recommendation set for a learner.

        Options: `categories` (list of category names to keep),
        `actionable_only` (bool) and `limit` (at most 8).
        """
        options = options or {}
        key = (user_id, options_key(options))
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            profile = await self.profiles.get_profile(user_id, with_history=False)
        except UpstreamUnavailableError as exc:
            logger.warning("Recommendations for %s fell back to defaults: %s", user_id, exc)
            return default_recommendations(user_id)

        evaluation = await self.evaluator.evaluate(user_id, profile.current_tier)
        progress = await self.progress.calculate(user_id, profile.current_tier)
        eligibility = self.progression.eligibility_for(profile) if self.progression is not None else None

        categories = {
            "level_change": level_change_recommendations(profile, evaluation, eligibility),
            "competency_gaps": competency_gap_recommendations(progress),
            "practice_optimization": practice_optimization_recommendations(evaluation),
            "motivational": motivational_recommendations(progress),
            "maintenance": maintenance_recommendations(progress),
        }
        for recs in categories.values():
            for rec in recs:
                rec.score = score_recommendation(rec)

        wanted = options.get("categories")
        if wanted:
            categories = {name: recs for name, recs in categories.items() if name in wanted}

        result = RecommendationSet(
            user_id=user_id,
            categories=categories,
            summary=summarize(categories),
            prioritized=self.prioritize(user_id, categories, options),
        )
        self.cache[key] = result
        return result

    def prioritize(self, user_id: str, categories: Dict[str, List[Recommendation]],
                   options: Optional[dict] = None) -> List[Recommendation]:
        options = options or {}
        limit = min(int(options.get("limit") or MAX_RECOMMENDATIONS), MAX_RECOMMENDATIONS)

        ranked = sorted(
            (rec for recs in categories.values() for rec in recs),
            key=lambda r: r.score,
            reverse=True,
        )

        now = self.clock()
        seen = set()
        selected = []
        for rec in ranked:
            if rec.id in seen:
                continue
            seen.add(rec.id)
            if options.get("actionable_only") and not rec.actionable:
                continue
            last = self._last_shown.get((user_id, rec.id))
            if last is not None and now - last < self.cooldown_seconds:
                continue
            selected.append(rec)
            if len(selected) >= limit:
                break

        for rec in selected:
            self._last_shown[(user_id, rec.id)] = now
        return selected

    async def high_priority(self, user_id: str) -> List[Recommendation]:
        result = await self.generate(user_id)
        return [r for r in result.prioritized if r.priority == "high"]

    async def actionable(self, user_id: str) -> List[Recommendation]:
        result = await self.generate(user_id)
        return [r for r in result.prioritized if r.actionable]

    def clear_cache(self) -> None:
        self.cache.clear()

    def clear_history(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._last_shown.clear()
            return
        for key in [k for k in self._last_shown if k[0] == user_id]:
            del self._last_shown[key]
