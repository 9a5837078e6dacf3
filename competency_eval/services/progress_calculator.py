"""Progress through the current tier (0-100).

Four weighted components, then temporal smoothing against the value last
stored on the profile for the same tier so that one bad session cannot
crash the displayed progress.
"""

import logging
import math
from typing import Dict, Optional

from cachetools import TTLCache

from competency_eval.errors import UpstreamUnavailableError
from competency_eval.models.level import (
    AreaSummary,
    CompetencyStat,
    EvaluationReport,
    Milestone,
    MissingCompetency,
    ProgressComponent,
    ProgressComponents,
    ProgressReport,
    TierRequirements,
)
from competency_eval.services.cache import ttl_cache
from competency_eval.services.tiers import validate_tier

logger = logging.getLogger(__name__)

COMPONENT_WEIGHTS = {
    "competencies": 0.40,
    "mastery": 0.30,
    "coverage": 0.20,
    "consistency": 0.10,
}

SMOOTHING_FACTOR = 0.15
MAX_DAILY_DROP = 5

# Competencies component
MAX_ATTEMPT_BONUS = 2.0
PARTIAL_CREDIT_CAP = 60
COMPLETED_SCORE = 75

# Mastery component
MASTERY_MIN_ATTEMPTS = 5
MASTERY_WEIGHT_ATTEMPTS = 20
MASTERY_MAX_WEIGHT = 2.0
MASTERY_LEVEL_BONUS = 5

# Coverage component
COVERAGE_RATIO_POINTS = 70
DIVERSITY_POINTS_EACH = 2
DIVERSITY_CAP = 30

DEFAULT_CONSISTENCY = 50

# Detail extraction
STRONG_MIN_ATTEMPTS = 10
STRONG_MIN_ACCURACY = 0.85
WEAK_MIN_ATTEMPTS = 5
NEEDS_WORK_ACCURACY = 0.7
WEAK_TARGET_ACCURACY = 0.8
TOP_AREAS = 3
MAX_MILESTONES = 3

READY_THRESHOLD = 85


def competencies_component(stats: Dict[str, CompetencyStat], requirements: TierRequirements) -> ProgressComponent:
    required = requirements.required_competencies
    if not required:
        return ProgressComponent(score=100.0, details="No specific competencies for this tier")

    total = 0.0
    details = {}
    for req in required:
        stat = stats.get(req.key.id)
        attempts = stat.attempts if stat else 0
        accuracy = stat.accuracy if stat else 0.0
        accuracy_ratio = accuracy / req.min_accuracy if req.min_accuracy > 0 else 1.0

        if attempts >= req.min_attempts and attempts > 0:
            attempt_bonus = min(attempts / req.min_attempts, MAX_ATTEMPT_BONUS) if req.min_attempts else 1.0
            score = min(accuracy_ratio * attempt_bonus, 1.0) * 100
        elif attempts > 0:
            score = min(attempts / req.min_attempts * accuracy_ratio * PARTIAL_CREDIT_CAP, PARTIAL_CREDIT_CAP)
        else:
            score = 0.0

        details[req.key.id] = {
            "score": score,
            "completed": score >= COMPLETED_SCORE,
            "accuracy": accuracy,
            "attempts": attempts,
        }
        total += score

    return ProgressComponent(score=total / len(required), details=details)


def mastery_component(stats: Dict[str, CompetencyStat], requirements: TierRequirements) -> ProgressComponent:
    weighted_sum = 0.0
    total_weight = 0.0
    entries = 0
    for stat in stats.values():
        if stat.attempts > MASTERY_MIN_ATTEMPTS:
            weight = min(stat.attempts / MASTERY_WEIGHT_ATTEMPTS, MASTERY_MAX_WEIGHT)
            weighted_sum += stat.accuracy * weight
            total_weight += weight
            entries += 1

    if entries == 0:
        return ProgressComponent(score=0.0, details="Not enough practice data")

    weighted_average = weighted_sum / total_weight * 100

    level_bonus = 0
    for req in requirements.required_competencies:
        stat = stats.get(req.key.id)
        if stat and stat.attempts > 0 and stat.accuracy >= req.min_accuracy:
            level_bonus += MASTERY_LEVEL_BONUS

    return ProgressComponent(
        score=min(weighted_average + level_bonus, 100.0),
        details={"weighted_average": weighted_average, "level_bonus": level_bonus, "entries": entries},
    )


def coverage_component(stats: Dict[str, CompetencyStat], requirements: TierRequirements) -> ProgressComponent:
    required_count = len(requirements.required_competencies)
    if required_count == 0:
        return ProgressComponent(score=100.0, details="No specific requirements")

    practiced = [s for s in stats.values() if s.attempts > 0]
    ratio = min(len(practiced) / required_count, 1.0)
    moods = {s.mood for s in practiced}
    tenses = {s.tense for s in practiced}
    diversity = min((len(moods) + len(tenses)) * DIVERSITY_POINTS_EACH, DIVERSITY_CAP)

    return ProgressComponent(
        score=min(ratio * COVERAGE_RATIO_POINTS + diversity, 100.0),
        details={
            "practiced": len(practiced),
            "required": required_count,
            "moods": len(moods),
            "tenses": len(tenses),
            "diversity_bonus": diversity,
        },
    )


def consistency_component(evaluation: Optional[EvaluationReport]) -> ProgressComponent:
    if evaluation is None or evaluation.fallback:
        return ProgressComponent(score=float(DEFAULT_CONSISTENCY), details="Consistency data not available")
    factor = evaluation.factors.consistency
    return ProgressComponent(score=factor.score * 100, details=factor.details)


def overall_progress(components: ProgressComponents) -> float:
    return sum(getattr(components, name).score * weight for name, weight in COMPONENT_WEIGHTS.items())


def smooth_progress(previous: Optional[float], fresh: float) -> float:
    """Blend toward the fresh value and never drop more than MAX_DAILY_DROP below `previous`.

    `previous` is None on the first calculation for a user and tier.
    """
    if previous is None:
        return max(0.0, min(100.0, fresh))
    smoothed = previous * (1 - SMOOTHING_FACTOR) + fresh * SMOOTHING_FACTOR
    smoothed = max(smoothed, previous - MAX_DAILY_DROP)
    return max(0.0, min(100.0, smoothed))


def missing_competencies(stats: Dict[str, CompetencyStat], requirements: TierRequirements) -> list[MissingCompetency]:
    missing = []
    for req in requirements.required_competencies:
        stat = stats.get(req.key.id)
        if stat is None or stat.accuracy < req.min_accuracy or stat.attempts < req.min_attempts:
            missing.append(MissingCompetency(
                mood=req.mood,
                tense=req.tense,
                required_accuracy=req.min_accuracy,
                required_attempts=req.min_attempts,
                current_accuracy=stat.accuracy if stat else 0.0,
                current_attempts=stat.attempts if stat else 0,
            ))
    return missing


def _area(key: str, stat: CompetencyStat) -> AreaSummary:
    return AreaSummary(
        key=key,
        mood=stat.mood,
        tense=stat.tense,
        accuracy=stat.accuracy,
        attempts=stat.attempts,
        needs_work=stat.accuracy < NEEDS_WORK_ACCURACY,
    )


def strongest_areas(stats: Dict[str, CompetencyStat]) -> list[AreaSummary]:
    strong = [
        (key, s) for key, s in stats.items()
        if s.attempts >= STRONG_MIN_ATTEMPTS and s.accuracy >= STRONG_MIN_ACCURACY
    ]
    strong.sort(key=lambda item: item[1].accuracy * item[1].attempts, reverse=True)
    return [_area(key, s) for key, s in strong[:TOP_AREAS]]


def weakest_areas(stats: Dict[str, CompetencyStat]) -> list[AreaSummary]:
    weak = [(key, s) for key, s in stats.items() if s.attempts >= WEAK_MIN_ATTEMPTS]
    weak.sort(key=lambda item: item[1].accuracy)
    return [_area(key, s) for key, s in weak[:TOP_AREAS]]


def next_milestones(overall: float, missing: list[MissingCompetency],
                    weakest: list[AreaSummary]) -> list[Milestone]:
    milestones = []

    if missing:
        first = missing[0]
        milestones.append(Milestone(
            type="competency",
            title=f"Reach {first.required_accuracy:.0%} accuracy in {first.mood} {first.tense} "
                  f"over {first.required_attempts} attempts",
            progress=first.current_accuracy * 100,
            target=first.required_accuracy * 100,
        ))

    if overall < 100:
        target = min(math.floor(overall / 10) * 10 + 10, 100)
        milestones.append(Milestone(
            type="overall",
            title=f"Reach {target}% overall progress",
            progress=overall,
            target=target,
        ))

    if weakest and weakest[0].accuracy < WEAK_TARGET_ACCURACY:
        area = weakest[0]
        milestones.append(Milestone(
            type="accuracy",
            title=f"Raise {area.mood} {area.tense} to 80% accuracy",
            progress=area.accuracy * 100,
            target=WEAK_TARGET_ACCURACY * 100,
        ))

    return milestones[:MAX_MILESTONES]


class ProgressCalculator:
    def __init__(self, store, profiles, evaluator, requirements: Dict[str, TierRequirements],
                 cache: Optional[TTLCache] = None):
        self.store = store
        self.profiles = profiles
        self.evaluator = evaluator
        self.requirements = requirements
        self.cache = cache if cache is not None else ttl_cache(2 * 60)

    async def calculate(self, user_id: str, tier: Optional[str] = None) -> ProgressReport:
        """Progress report for `tier` (defaults to the learner's current tier).

        Stores the smoothed value back on the profile when `tier` is the
        learner's current tier.
        """
        if tier is not None:
            cached = self.cache.get((user_id, validate_tier(tier)))
            if cached is not None:
                return cached

        try:
            if tier is None:
                tier = await self.profiles.current_tier(user_id)
                cached = self.cache.get((user_id, tier))
                if cached is not None:
                    return cached
            profile = await self.profiles.get_profile(user_id, with_history=False)
        except UpstreamUnavailableError as exc:
            logger.warning("Progress for %s fell back to defaults: %s", user_id, exc)
            return self.default_report(user_id, tier or self.profiles.default_tier, 0.0)

        key = (user_id, tier)
        same_tier = profile.current_tier == tier
        previous = profile.tier_progress_percent if same_tier and profile.progress_updated_at else None

        try:
            stats = profile.competency_stats
            evaluation = await self.evaluator.evaluate(user_id, tier)
            report = self.calculate_from(user_id, tier, stats, evaluation, previous)
            if same_tier:
                await self.profiles.update_progress(user_id, tier, report.overall_percent)
        except UpstreamUnavailableError as exc:
            logger.warning("Progress for %s fell back to defaults: %s", user_id, exc)
            return self.default_report(user_id, tier, profile.tier_progress_percent if same_tier else 0.0)

        self.cache[key] = report
        return report

    def calculate_from(self, user_id: str, tier: str, stats: Dict[str, CompetencyStat],
                       evaluation: Optional[EvaluationReport], previous: Optional[float]) -> ProgressReport:
        requirements = self.requirements[validate_tier(tier)]

        components = ProgressComponents(
            competencies=competencies_component(stats, requirements),
            mastery=mastery_component(stats, requirements),
            coverage=coverage_component(stats, requirements),
            consistency=consistency_component(evaluation),
        )
        raw = overall_progress(components)
        overall = smooth_progress(previous, raw)
        if previous is not None:
            logger.debug("Progress for %s at %s: raw %.1f, smoothed %.1f (was %.1f)",
                         user_id, tier, raw, overall, previous)

        missing = missing_competencies(stats, requirements)
        weakest = weakest_areas(stats)
        completed = 0
        if isinstance(components.competencies.details, dict):
            completed = sum(1 for d in components.competencies.details.values() if d["completed"])

        return ProgressReport(
            user_id=user_id,
            tier=tier,
            overall_percent=overall,
            raw_percent=raw,
            components=components,
            total_competencies=len(requirements.required_competencies),
            completed_competencies=completed,
            missing_competencies=missing,
            strongest_areas=strongest_areas(stats),
            weakest_areas=weakest,
            next_milestones=next_milestones(overall, missing, weakest),
        )

    def default_report(self, user_id: str, tier: str, previous: float) -> ProgressReport:
        neutral = ProgressComponent(score=50.0, details="Not enough data")
        return ProgressReport(
            user_id=user_id,
            tier=tier,
            overall_percent=previous,
            raw_percent=previous,
            components=ProgressComponents(
                competencies=neutral, mastery=neutral, coverage=neutral, consistency=neutral,
            ),
            fallback=True,
        )

    async def is_ready_for_next_tier(self, user_id: str) -> dict:
        report = await self.calculate(user_id)
        ready = report.overall_percent >= READY_THRESHOLD and not report.missing_competencies
        return {
            "ready": ready,
            "progress": report.overall_percent,
            "missing_competencies": len(report.missing_competencies),
            "recommendation": "level_up" if ready else "continue_practice",
        }

    async def get_next_milestone(self, user_id: str) -> Optional[Milestone]:
        report = await self.calculate(user_id)
        return report.next_milestones[0] if report.next_milestones else None

    def clear_cache(self) -> None:
        self.cache.clear()
