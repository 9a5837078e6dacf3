"""Rule-based progression: hard tier requirements and automatic promotion.

Independent of the multi-factor evaluator. Eligibility is checked against
the requirements of the tier ABOVE the learner's current one; a promotion
is only applied automatically when every requirement holds, confidence is
high enough and the learner has not pinned their tier manually.
"""

import logging
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from competency_eval.errors import UpstreamUnavailableError
from competency_eval.models.level import (
    CompetencyCheck,
    CompetencyStat,
    Eligibility,
    LevelSuggestion,
    MissingRequirement,
    PromotionNotification,
    PromotionResult,
    ProgressionStatus,
    RequirementEvaluation,
    TierRequirements,
    UserLevelProfile,
)
from competency_eval.services.tiers import LOWEST_TIER, next_tier

logger = logging.getLogger(__name__)

AUTO_PROMOTION_CONFIDENCE = 0.85
SUGGEST_PROMOTION_CONFIDENCE = 0.8
DEMOTION_ACCURACY = 0.5

# Confidence reference points
REFERENCE_ATTEMPTS = 300
BASELINE_ACCURACY = 0.80
ACCURACY_FLOOR = 0.8
MARGIN_FLOOR = 0.7
MAX_COMPETENCY_MARGIN = 0.3
ATTEMPT_MARGIN_WEIGHT = 0.1

NOTIFICATION_LOG_SIZE = 10


def evaluate_requirements(stats: Dict[str, CompetencyStat], requirements: TierRequirements) -> RequirementEvaluation:
    """Check `stats` against one tier's hard requirements.

    Totals cover the attempts on the required competencies. A tier that lists
    no competencies (C2) is judged on everything practiced.
    """
    results = []
    total_attempts = 0
    total_correct = 0

    for req in requirements.required_competencies:
        stat = stats.get(req.key.id)
        attempts = stat.attempts if stat else 0
        accuracy = stat.accuracy if stat else 0.0
        total_attempts += attempts
        total_correct += stat.correct if stat else 0
        results.append(CompetencyCheck(
            mood=req.mood,
            tense=req.tense,
            required=req,
            attempts=attempts,
            accuracy=accuracy,
            meets=attempts >= req.min_attempts and attempts > 0 and accuracy >= req.min_accuracy,
        ))

    if not requirements.required_competencies:
        total_attempts = sum(s.attempts for s in stats.values())
        total_correct = sum(s.correct for s in stats.values())

    overall_accuracy = total_correct / total_attempts if total_attempts else 0.0
    meets_accuracy = overall_accuracy >= requirements.required_overall_accuracy
    meets_attempts = total_attempts >= requirements.min_total_attempts
    meets_competencies = all(r.meets for r in results)

    missing = []
    if not meets_accuracy:
        missing.append(MissingRequirement(
            type="overall_accuracy",
            message=f"You need {requirements.required_overall_accuracy:.0%} overall accuracy",
        ))
    if not meets_attempts:
        missing.append(MissingRequirement(
            type="min_attempts",
            message=f"You need at least {requirements.min_total_attempts} total attempts",
        ))
    for r in results:
        if not r.meets:
            missing.append(MissingRequirement(
                type="competency",
                mood=r.mood,
                tense=r.tense,
                message=f"{r.mood} {r.tense}: {r.required.min_accuracy:.0%} accuracy, "
                        f"at least {r.required.min_attempts} attempts",
            ))

    return RequirementEvaluation(
        competency_results=results,
        total_attempts=total_attempts,
        overall_accuracy=overall_accuracy,
        meets_overall_accuracy=meets_accuracy,
        meets_min_attempts=meets_attempts,
        meets_all_competencies=meets_competencies,
        meets_requirements=meets_accuracy and meets_attempts and meets_competencies,
        missing_requirements=missing,
    )


def requirement_confidence(evaluation: RequirementEvaluation) -> float:
    """0 unless every requirement is met; otherwise the mean of three margin factors, in [0, 1]."""
    if not evaluation.meets_requirements:
        return 0.0

    attempts_factor = min(evaluation.total_attempts / REFERENCE_ATTEMPTS, 1.0)
    accuracy_factor = ACCURACY_FLOOR + max(0.0, evaluation.overall_accuracy - BASELINE_ACCURACY)

    margins = []
    for r in evaluation.competency_results:
        if r.attempts == 0:
            margins.append(0.0)
            continue
        accuracy_margin = r.accuracy - r.required.min_accuracy
        attempts_margin = (r.attempts - r.required.min_attempts) / r.required.min_attempts if r.required.min_attempts else 0.0
        margins.append(min(accuracy_margin + attempts_margin * ATTEMPT_MARGIN_WEIGHT, MAX_COMPETENCY_MARGIN))
    average_margin = sum(margins) / len(margins) if margins else 0.0
    margin_factor = MARGIN_FLOOR + average_margin

    confidence = (attempts_factor + accuracy_factor + margin_factor) / 3
    return max(0.0, min(1.0, confidence))


def overall_accuracy(stats: Dict[str, CompetencyStat]) -> float:
    attempts = sum(s.attempts for s in stats.values())
    correct = sum(s.correct for s in stats.values())
    return correct / attempts if attempts else 0.0


class ProgressionRequirementEngine:
    def __init__(
        self,
        profiles,
        requirements: Dict[str, TierRequirements],
        progress=None,
        on_promote: Optional[Callable[[], None]] = None,
    ):
        self.profiles = profiles
        self.requirements = requirements
        self.progress = progress
        self.on_promote = on_promote
        self.notifications = defaultdict(lambda: deque(maxlen=NOTIFICATION_LOG_SIZE))

    def eligibility_for(self, profile: UserLevelProfile) -> Eligibility:
        current = profile.current_tier
        target = next_tier(current)
        if target is None:
            return Eligibility(eligible=False, reason="max_level_reached", current_tier=current)

        evaluation = evaluate_requirements(profile.competency_stats, self.requirements[target])
        return Eligibility(
            eligible=evaluation.meets_requirements,
            reason="requirements_met" if evaluation.meets_requirements else "requirements_not_met",
            current_tier=current,
            next_tier=target,
            evaluation=evaluation,
            confidence=requirement_confidence(evaluation),
        )

    async def evaluate_eligibility(self, user_id: str) -> Eligibility:
        profile = await self.profiles.get_profile(user_id, with_history=False)
        return self.eligibility_for(profile)

    async def attempt_automatic_promotion(self, user_id: str) -> PromotionResult:
        try:
            profile = await self.profiles.get_profile(user_id, with_history=False)
        except UpstreamUnavailableError as exc:
            logger.warning("Promotion check for %s skipped: %s", user_id, exc)
            return PromotionResult(promoted=False, reason="data_unavailable")

        eligibility = self.eligibility_for(profile)

        if profile.manual_override:
            return PromotionResult(promoted=False, reason="manual_override", eligibility=eligibility)
        if not eligibility.eligible:
            return PromotionResult(promoted=False, reason=eligibility.reason, eligibility=eligibility)
        if eligibility.confidence < AUTO_PROMOTION_CONFIDENCE:
            return PromotionResult(
                promoted=False, reason="low_confidence",
                confidence=eligibility.confidence, eligibility=eligibility,
            )

        await self.profiles.set_level(user_id, eligibility.next_tier, reason="automatic_promotion")
        self.notifications[user_id].append(PromotionNotification(
            from_tier=eligibility.current_tier,
            to_tier=eligibility.next_tier,
            confidence=eligibility.confidence,
            timestamp=datetime.now(timezone.utc).isoformat(),
        ))
        logger.info(
            "Promoted %s from %s to %s (confidence %.2f)",
            user_id, eligibility.current_tier, eligibility.next_tier, eligibility.confidence,
        )
        if self.on_promote is not None:
            self.on_promote()

        return PromotionResult(
            promoted=True,
            reason="requirements_met",
            from_tier=eligibility.current_tier,
            to_tier=eligibility.next_tier,
            confidence=eligibility.confidence,
            eligibility=eligibility,
        )

    def suggestion_for(self, profile: UserLevelProfile, eligibility: Eligibility) -> LevelSuggestion:
        """Advisory only; never applied automatically."""
        if eligibility.eligible and eligibility.confidence > SUGGEST_PROMOTION_CONFIDENCE:
            return LevelSuggestion(
                suggestion="promote",
                confidence=eligibility.confidence,
                message="Consider moving up to the next level",
            )

        stats = profile.competency_stats
        accuracy = overall_accuracy(stats)
        practiced = any(s.attempts > 0 for s in stats.values())
        if practiced and accuracy < DEMOTION_ACCURACY and profile.current_tier != LOWEST_TIER:
            return LevelSuggestion(
                suggestion="demote",
                confidence=1 - accuracy,
                message="Consider practicing at a more basic level",
            )

        return LevelSuggestion(
            suggestion="maintain",
            confidence=max(0.6, accuracy),
            message="Keep going at your current level",
        )

    async def suggest_level_adjustment(self, user_id: str) -> LevelSuggestion:
        profile = await self.profiles.get_profile(user_id, with_history=False)
        return self.suggestion_for(profile, self.eligibility_for(profile))

    def recent_notifications(self, user_id: str) -> list[PromotionNotification]:
        """Newest first."""
        return list(reversed(self.notifications.get(user_id, ())))

    def clear_notifications(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self.notifications.clear()
        else:
            self.notifications.pop(user_id, None)

    async def get_progression_status(self, user_id: str) -> ProgressionStatus:
        profile = await self.profiles.get_profile(user_id, with_history=False)
        eligibility = self.eligibility_for(profile)
        if self.progress is not None:
            percent = (await self.progress.calculate(user_id)).overall_percent
        else:
            percent = profile.tier_progress_percent
        return ProgressionStatus(
            eligibility=eligibility,
            suggestion=self.suggestion_for(profile, eligibility),
            progress_percent=percent,
            notifications=self.recent_notifications(user_id),
        )

    async def check_user_progression(self, user_id: str) -> PromotionResult:
        """Refresh the stored progress, then try an automatic promotion."""
        if self.progress is not None:
            await self.progress.calculate(user_id)
        return await self.attempt_automatic_promotion(user_id)
