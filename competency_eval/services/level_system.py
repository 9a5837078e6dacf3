"""Composition root for the level subsystem.

One LevelSystem per application (or per test) owns the store, every engine
and every cache. Nothing here is a module-level singleton, so tests build
isolated instances. All write paths go through this object and clear the
advisory caches afterwards.
"""

import logging
import random
from typing import Dict, List, Optional

from competency_eval.config import settings
from competency_eval.models.level import (
    LevelDisplayInfo,
    TierRequirements,
    UserLevelProfile,
)
from competency_eval.models.placement import PlacementQuestion
from competency_eval.services.cache import ttl_cache
from competency_eval.services.content import load_question_bank, load_tier_requirements
from competency_eval.services.level_evaluator import MultiFactorLevelEvaluator
from competency_eval.services.placement import PlacementService
from competency_eval.services.profiles import ProfileService, display_info
from competency_eval.services.progress_calculator import ProgressCalculator
from competency_eval.services.progression import ProgressionRequirementEngine
from competency_eval.services.recommendations import RecommendationEngine
from competency_eval.services.sources import AnalyticsSource, NullAnalyticsSource

logger = logging.getLogger(__name__)


class LevelSystem:
    def __init__(
        self,
        store,
        analytics: Optional[AnalyticsSource] = None,
        requirements: Optional[Dict[str, TierRequirements]] = None,
        question_bank: Optional[Dict[str, List[PlacementQuestion]]] = None,
        default_tier: Optional[str] = None,
        rng: Optional[random.Random] = None,
        recommendation_clock=None,
    ):
        self.store = store
        self.analytics = analytics or NullAnalyticsSource()
        self.requirements = requirements or load_tier_requirements()
        self.question_bank = question_bank or load_question_bank()

        self.profiles = ProfileService(store, store, default_tier=default_tier or settings.default_tier)
        max_entries = settings.cache_max_entries
        self.evaluator = MultiFactorLevelEvaluator(
            store,
            self.requirements,
            analytics=self.analytics,
            cache=ttl_cache(settings.evaluator_cache_ttl_seconds, maxsize=max_entries),
        )
        self.progress = ProgressCalculator(
            store,
            self.profiles,
            self.evaluator,
            self.requirements,
            cache=ttl_cache(settings.progress_cache_ttl_seconds, maxsize=max_entries),
        )
        self.progression = ProgressionRequirementEngine(
            self.profiles,
            self.requirements,
            progress=self.progress,
            on_promote=self.clear_caches,
        )
        recommendation_kwargs = {}
        if recommendation_clock is not None:
            recommendation_kwargs["clock"] = recommendation_clock
        self.recommendations = RecommendationEngine(
            self.profiles,
            self.evaluator,
            self.progress,
            progression=self.progression,
            cache=ttl_cache(settings.recommendation_cache_ttl_seconds, maxsize=max_entries),
            cooldown_seconds=settings.recommendation_cooldown_seconds,
            **recommendation_kwargs,
        )
        self.placement = PlacementService(
            self.profiles,
            self.question_bank,
            on_write=self.clear_caches,
            rng=rng,
        )

    def clear_caches(self) -> None:
        self.evaluator.clear_cache()
        self.progress.clear_cache()
        self.recommendations.clear_cache()

    # Write paths

    async def record_attempt(self, user_id: str, mood: str, tense: str, correct: bool,
                             response_time_ms: float = 0.0, session_id: Optional[str] = None) -> None:
        await self.profiles.record_attempt(
            user_id, mood, tense, correct, response_time_ms=response_time_ms, session_id=session_id,
        )
        self.clear_caches()

    async def record_confidence(self, user_id: str, score: float) -> None:
        await self.store.record_confidence(user_id, score)
        self.clear_caches()

    async def set_level(self, user_id: str, tier: str, reason: str = "manual") -> UserLevelProfile:
        profile = await self.profiles.set_level(user_id, tier, reason=reason)
        self.clear_caches()
        return profile

    async def reset_profile(self, user_id: str) -> UserLevelProfile:
        self.placement.abort(user_id)
        profile = await self.profiles.reset_profile(user_id)
        self.recommendations.clear_history(user_id)
        self.progression.clear_notifications(user_id)
        self.clear_caches()
        return profile

    # Reads

    async def get_profile(self, user_id: str) -> UserLevelProfile:
        return await self.profiles.get_profile(user_id)

    async def get_display_info(self, user_id: str) -> LevelDisplayInfo:
        return display_info(await self.profiles.get_profile(user_id, with_history=False))
