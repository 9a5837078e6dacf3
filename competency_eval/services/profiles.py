"""User level profiles: lazy creation, tier transitions and attempt recording.

Every mutation of a learner's tier goes through set_level() so that the
manual-override flag, the progress reset and the append-only history stay
consistent. Every graded attempt (practice or placement) goes through
record_attempt().
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from competency_eval.models.level import LevelDisplayInfo, LevelTransition, UserLevelProfile
from competency_eval.services.sources import CompetencyStore, ProfileRepository
from competency_eval.services.tiers import HIGHEST_TIER, CEFR_ORDER, next_tier, validate_tier

logger = logging.getLogger(__name__)

LEVEL_CHANGE_REASONS = ("manual", "automatic_promotion", "sync", "reset")

# Profile-level promotion readiness (display only; the requirement engine decides)
READY_PROGRESS_THRESHOLD = 85
READY_COMPETENCY_THRESHOLD = 0.80


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def overall_competency(profile: UserLevelProfile) -> float:
    """Unweighted mean accuracy across practiced competencies."""
    stats = [s for s in profile.competency_stats.values() if s.attempts > 0]
    if not stats:
        return 0.0
    return sum(s.accuracy for s in stats) / len(stats)


def is_ready_for_promotion(profile: UserLevelProfile) -> bool:
    if profile.manual_override:
        return False
    return (
        profile.tier_progress_percent >= READY_PROGRESS_THRESHOLD
        and overall_competency(profile) >= READY_COMPETENCY_THRESHOLD
    )


def can_access_tier(profile: UserLevelProfile, target_tier: str) -> bool:
    """Learners can always practice their own tier and anything below it."""
    return CEFR_ORDER[validate_tier(target_tier)] <= CEFR_ORDER[profile.current_tier]


def should_show_advanced_warning(profile: UserLevelProfile, target_tier: str) -> bool:
    """True when the target is more than one tier above the current one."""
    return CEFR_ORDER[validate_tier(target_tier)] > CEFR_ORDER[profile.current_tier] + 1


def display_info(profile: UserLevelProfile) -> LevelDisplayInfo:
    return LevelDisplayInfo(
        current=profile.current_tier,
        progress=profile.tier_progress_percent,
        next=next_tier(profile.current_tier),
        is_max_level=profile.current_tier == HIGHEST_TIER,
        ready_for_promotion=is_ready_for_promotion(profile),
        overall_competency=round(overall_competency(profile) * 100),
    )


class ProfileService:
    """Owns reads and writes of UserLevelProfile for one application context."""

    def __init__(self, repository: ProfileRepository, store: CompetencyStore, default_tier: str = "A2"):
        self.repository = repository
        self.store = store
        self.default_tier = validate_tier(default_tier)

    async def _load_or_create(self, user_id: str) -> UserLevelProfile:
        profile = await self.repository.load_profile(user_id)
        if profile is None:
            now = _now_iso()
            profile = UserLevelProfile(
                user_id=user_id,
                current_tier=self.default_tier,
                created_at=now,
                updated_at=now,
            )
            await self.repository.save_profile(profile)
            logger.info("Created level profile for %s at %s", user_id, self.default_tier)
        return profile

    async def get_profile(self, user_id: str, with_history: bool = True) -> UserLevelProfile:
        """Load (or lazily create) a profile with its competency stats attached."""
        profile = await self._load_or_create(user_id)
        profile.competency_stats = await self.store.get_competency_stats(user_id)
        if with_history:
            profile.history = await self.repository.get_history(user_id)
        return profile

    async def record_attempt(
        self,
        user_id: str,
        mood: str,
        tense: str,
        correct: bool,
        response_time_ms: float = 0.0,
        session_id: Optional[str] = None,
        source: str = "practice",
    ) -> None:
        await self._load_or_create(user_id)
        await self.store.record_attempt(
            user_id, mood, tense, correct,
            response_time_ms=response_time_ms, session_id=session_id, source=source,
        )

    async def record_attempts(self, user_id: str, attempts: List[Dict[str, Any]], source: str = "practice") -> int:
        """Fold a batch of attempts into the stats. Either all of them land or none do."""
        await self._load_or_create(user_id)
        return await self.store.record_attempts(user_id, attempts, source=source)

    async def current_tier(self, user_id: str) -> str:
        """The learner's tier, without loading stats or history."""
        profile = await self._load_or_create(user_id)
        return profile.current_tier

    async def set_level(self, user_id: str, tier: str, reason: str = "manual") -> UserLevelProfile:
        """Move a learner to `tier`.

        Only reason="manual" sets the manual override; every other reason
        clears it. Progress restarts at 0 for the new tier and a history
        entry is appended when the tier actually changes.
        """
        validate_tier(tier)
        if reason not in LEVEL_CHANGE_REASONS:
            raise ValueError(f"Invalid level change reason: {reason!r}")

        profile = await self._load_or_create(user_id)
        old_tier = profile.current_tier

        profile.current_tier = tier
        profile.tier_progress_percent = 0.0
        profile.progress_updated_at = None
        profile.manual_override = reason == "manual"
        await self.repository.save_profile(profile)

        if old_tier != tier:
            await self.repository.append_history(
                user_id,
                LevelTransition(from_tier=old_tier, to_tier=tier, reason=reason, progress=0.0, timestamp=_now_iso()),
            )
            logger.info("User %s tier changed from %s to %s (%s)", user_id, old_tier, tier, reason)

        return await self.get_profile(user_id)

    async def update_progress(self, user_id: str, tier: str, percent: float) -> bool:
        """Mirror a calculated progress value into the profile.

        Ignored (returns False) when `tier` is no longer the learner's tier.
        """
        profile = await self._load_or_create(user_id)
        if profile.current_tier != tier:
            return False
        profile.tier_progress_percent = max(0.0, min(100.0, percent))
        profile.progress_updated_at = _now_iso()
        await self.repository.save_profile(profile)
        return True

    async def save_placement_baseline(self, user_id: str, baseline) -> None:
        profile = await self._load_or_create(user_id)
        profile.placement_baseline = baseline
        await self.repository.save_profile(profile)

    async def reset_profile(self, user_id: str) -> UserLevelProfile:
        """Back to the default tier with no stats, no override and no baseline."""
        profile = await self._load_or_create(user_id)
        old_tier = profile.current_tier

        await self.store.clear_competency_data(user_id)
        profile.current_tier = self.default_tier
        profile.tier_progress_percent = 0.0
        profile.progress_updated_at = None
        profile.manual_override = False
        profile.placement_baseline = None
        await self.repository.save_profile(profile)
        await self.repository.append_history(
            user_id,
            LevelTransition(from_tier=old_tier, to_tier=self.default_tier, reason="reset", timestamp=_now_iso()),
        )
        logger.info("User %s profile reset to %s", user_id, self.default_tier)
        return await self.get_profile(user_id)
