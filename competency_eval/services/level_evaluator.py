"""Multi-factor (soft) level evaluator.

Scores recent performance against the declared tier's requirements on five
normalized factors and derives an effective tier from their weighted sum.
Missing data never raises: an unscored factor is 0 (or its documented
default) and a failed upstream read yields a low-confidence default report.
"""

import logging
import statistics
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from cachetools import TTLCache

from competency_eval.errors import UpstreamUnavailableError
from competency_eval.models.level import (
    Analytics,
    CompetencyStat,
    EvaluationFactors,
    EvaluationReport,
    FactorScore,
    Recommendation,
    TierChangeCheck,
    TierRequirements,
)
from competency_eval.services.cache import ttl_cache
from competency_eval.services.sources import AnalyticsSource, CompetencyStore, NullAnalyticsSource
from competency_eval.services.tiers import clamp_shift, validate_tier

logger = logging.getLogger(__name__)

FACTOR_WEIGHTS = {
    "accuracy": 0.35,
    "consistency": 0.25,
    "response_time": 0.15,
    "coverage": 0.15,
    "confidence": 0.10,
}

LEVEL_UP_THRESHOLD = 0.85
LEVEL_DOWN_THRESHOLD = 0.60

RECENT_WINDOW_DAYS = 7
MIN_RECENT_POINTS = 3

# Expected mean response time per tier, in ms
EXPECTED_RESPONSE_MS = {
    "A1": 8000,
    "A2": 6000,
    "B1": 5000,
    "B2": 4000,
    "C1": 3500,
    "C2": 3000,
}
RESPONSE_TIME_FLOOR_MS = 1000

# A competency is "covered" at half its minimum attempts, never more than this
COVERAGE_ATTEMPT_CAP = 10

DEFAULT_SYSTEM_CONFIDENCE = 0.5
DEFAULT_FACTOR_SCORE = 0.5

# Stability: breadth counts fully above this many practiced competencies
STABILITY_BREADTH = 5


def _parse_date(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def weighted_score(factors: EvaluationFactors) -> float:
    return sum(getattr(factors, name).score * weight for name, weight in FACTOR_WEIGHTS.items())


def data_confidence(factors: EvaluationFactors) -> float:
    """Weighted data availability: a scored factor counts fully, an unscored one half."""
    total = 0.0
    for name, weight in FACTOR_WEIGHTS.items():
        total += weight * (1.0 if getattr(factors, name).score > 0 else 0.5)
    return total / sum(FACTOR_WEIGHTS.values())


def effective_tier(declared_tier: str, score: float) -> str:
    if score >= LEVEL_UP_THRESHOLD:
        return clamp_shift(declared_tier, 1)
    if score < LEVEL_DOWN_THRESHOLD:
        return clamp_shift(declared_tier, -1)
    return declared_tier


def evaluate_accuracy(stats: Dict[str, CompetencyStat], requirements: TierRequirements) -> FactorScore:
    """min(accuracy / required, 1) per required competency, weighted by min attempts.

    A competency below its minimum attempts still carries its weight but scores 0.
    """
    weighted = 0.0
    total_weight = 0
    details = {}

    for req in requirements.required_competencies:
        stat = stats.get(req.key.id)
        attempts = stat.attempts if stat else 0
        accuracy = stat.accuracy if stat else 0.0
        meets_attempts = attempts >= req.min_attempts
        ratio = min(accuracy / req.min_accuracy, 1.0) if req.min_accuracy > 0 else 1.0
        score = ratio if meets_attempts else 0.0

        weighted += score * req.min_attempts
        total_weight += req.min_attempts
        details[req.key.id] = {
            "accuracy": accuracy,
            "required": req.min_accuracy,
            "attempts": attempts,
            "meets": meets_attempts and accuracy >= req.min_accuracy,
            "score": score,
        }

    if total_weight == 0:
        return FactorScore(score=0.0, details="No required competencies for this tier")
    return FactorScore(score=weighted / total_weight, details=details)


def evaluate_consistency(analytics: Analytics, now: datetime) -> FactorScore:
    if not analytics.timeline:
        return FactorScore(score=0.0, details="Not enough data to evaluate consistency")

    cutoff = now - timedelta(days=RECENT_WINDOW_DAYS)
    recent = []
    for point in analytics.timeline:
        stamp = _parse_date(point.date)
        if stamp is not None and stamp > cutoff:
            recent.append(point.accuracy or 0.0)

    if len(recent) < MIN_RECENT_POINTS:
        return FactorScore(score=0.0, details="Not enough recent sessions")

    mean = statistics.fmean(recent)
    std_dev = statistics.pstdev(recent)
    score = max(0.0, 1 - std_dev / mean) if mean > 0 else 0.0
    return FactorScore(
        score=score,
        details={"mean": mean, "std_dev": std_dev, "data_points": len(recent), "window_days": RECENT_WINDOW_DAYS},
    )


def evaluate_response_time(analytics: Analytics, tier: str) -> FactorScore:
    actual = analytics.average_response_time_ms
    if not actual:
        return FactorScore(score=0.0, details="No response time data")

    expected = EXPECTED_RESPONSE_MS[tier]
    return FactorScore(
        score=min(expected / max(actual, RESPONSE_TIME_FLOOR_MS), 1.0),
        details={
            "actual_ms": actual,
            "expected_ms": expected,
            "performance": "good" if actual <= expected else "needs_improvement",
        },
    )


def evaluate_coverage(stats: Dict[str, CompetencyStat], requirements: TierRequirements) -> FactorScore:
    required = requirements.required_competencies
    if not required:
        return FactorScore(score=0.0, details="No required competencies for this tier")

    covered = 0
    per_competency = {}
    for req in required:
        stat = stats.get(req.key.id)
        attempts = stat.attempts if stat else 0
        has_coverage = attempts > 0 and attempts >= min(req.min_attempts / 2, COVERAGE_ATTEMPT_CAP)
        covered += int(has_coverage)
        per_competency[req.key.id] = {"covered": has_coverage, "attempts": attempts, "required": req.min_attempts}

    return FactorScore(
        score=covered / len(required),
        details={"covered": covered, "total": len(required), "coverage": per_competency},
    )


def evaluate_system_confidence(analytics: Analytics) -> FactorScore:
    if analytics.confidence is None:
        return FactorScore(score=DEFAULT_SYSTEM_CONFIDENCE, details="No confidence signal")
    return FactorScore(
        score=max(0.0, min(1.0, analytics.confidence / 100)),
        details={"system_confidence": analytics.confidence},
    )


def calculate_stability(consistency: FactorScore, stats: Dict[str, CompetencyStat]) -> float:
    breadth = 1.0 if len(stats) > STABILITY_BREADTH else 0.5
    return (consistency.score + breadth) / 2


def local_recommendations(factors: EvaluationFactors) -> list[Recommendation]:
    recs = []

    if factors.accuracy.score < 0.7:
        failing = []
        if isinstance(factors.accuracy.details, dict):
            failing = [key for key, d in factors.accuracy.details.items() if not d["meets"]]
        recs.append(Recommendation(
            id="evaluation-accuracy",
            category="evaluation",
            type="accuracy",
            priority="high",
            title="Focus on the core competencies of your level",
            actions=[f"Practice {key.replace('_', ' ')}" for key in failing],
        ))

    if factors.coverage.score < 0.6:
        recs.append(Recommendation(
            id="evaluation-coverage",
            category="evaluation",
            type="coverage",
            priority="medium",
            title="Broaden your practice to more competencies of this level",
            actions=["Explore new tenses", "Vary the exercise types"],
        ))

    if factors.consistency.score < 0.6:
        recs.append(Recommendation(
            id="evaluation-consistency",
            category="evaluation",
            type="consistency",
            priority="medium",
            title="Keep your performance steady between sessions",
            actions=["Practice regularly", "Review frequent mistakes"],
        ))

    if factors.response_time.score < 0.7:
        recs.append(Recommendation(
            id="evaluation-fluency",
            category="evaluation",
            type="fluency",
            priority="low",
            title="Build fluency by practicing more often",
            actions=["Speed drills", "Pattern review"],
        ))

    return recs


def default_report(user_id: str, declared_tier: str) -> EvaluationReport:
    """Low-confidence report used when the store or analytics cannot be read."""
    neutral = FactorScore(score=DEFAULT_FACTOR_SCORE, details="Not enough data")
    return EvaluationReport(
        user_id=user_id,
        declared_tier=declared_tier,
        effective_tier=declared_tier,
        weighted_score=DEFAULT_FACTOR_SCORE,
        confidence=0.5,
        stability=0.5,
        factors=EvaluationFactors(
            accuracy=neutral,
            consistency=neutral,
            response_time=neutral,
            coverage=neutral,
            confidence=neutral,
        ),
        recommendations=[
            Recommendation(
                id="evaluation-more-data",
                category="evaluation",
                type="data",
                priority="high",
                title="Practice more to get an accurate assessment of your level",
                actions=["Complete more exercises", "Vary your practice"],
            )
        ],
        fallback=True,
    )


class MultiFactorLevelEvaluator:
    def __init__(
        self,
        store: CompetencyStore,
        requirements: Dict[str, TierRequirements],
        analytics: Optional[AnalyticsSource] = None,
        cache: Optional[TTLCache] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.requirements = requirements
        self.analytics = analytics or NullAnalyticsSource()
        self.cache = cache if cache is not None else ttl_cache(5 * 60)
        self.now = now

    async def evaluate(self, user_id: str, declared_tier: str) -> EvaluationReport:
        validate_tier(declared_tier)

        key = (user_id, declared_tier)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            stats = await self.store.get_competency_stats(user_id)
            analytics = await self.analytics.get_analytics(user_id)
        except UpstreamUnavailableError as exc:
            logger.warning("Evaluation of %s fell back to defaults: %s", user_id, exc)
            return default_report(user_id, declared_tier)

        report = self.evaluate_data(user_id, declared_tier, stats, analytics)
        self.cache[key] = report
        return report

    def evaluate_data(self, user_id: str, declared_tier: str, stats: Dict[str, CompetencyStat],
                      analytics: Analytics) -> EvaluationReport:
        """Score already-loaded data. No I/O, no caching."""
        requirements = self.requirements[validate_tier(declared_tier)]

        factors = EvaluationFactors(
            accuracy=evaluate_accuracy(stats, requirements),
            consistency=evaluate_consistency(analytics, self.now()),
            response_time=evaluate_response_time(analytics, declared_tier),
            coverage=evaluate_coverage(stats, requirements),
            confidence=evaluate_system_confidence(analytics),
        )
        score = weighted_score(factors)
        effective = effective_tier(declared_tier, score)

        if effective != declared_tier:
            logger.debug("%s evaluated at %s (declared %s, score %.3f)", user_id, effective, declared_tier, score)

        return EvaluationReport(
            user_id=user_id,
            declared_tier=declared_tier,
            effective_tier=effective,
            weighted_score=score,
            confidence=data_confidence(factors),
            stability=calculate_stability(factors.consistency, stats),
            factors=factors,
            recommendations=local_recommendations(factors),
        )

    async def should_change_tier(self, user_id: str, current_tier: str) -> TierChangeCheck:
        report = await self.evaluate(user_id, current_tier)
        changed = report.effective_tier != current_tier
        return TierChangeCheck(
            should_change=changed,
            confidence=report.confidence,
            current_tier=current_tier,
            recommended_tier=report.effective_tier,
            reason="performance_based" if changed else "level_appropriate",
        )

    def clear_cache(self) -> None:
        self.cache.clear()

