"""Level endpoints: attempts, tier changes, evaluation, progress and progression."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from competency_eval.models.level import (
    AttemptRecord,
    ConfidenceSignal,
    Eligibility,
    EvaluationReport,
    LevelDisplayInfo,
    LevelSuggestion,
    LevelTransition,
    LevelUpdate,
    ProgressionStatus,
    ProgressReport,
    PromotionResult,
    TierChangeCheck,
    TierRequirements,
    UserLevelProfile,
)
from competency_eval.routes.deps import get_level_system
from competency_eval.services.profiles import can_access_tier, should_show_advanced_warning
from competency_eval.services.tiers import validate_tier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/levels", tags=["levels"])


@router.get("/requirements/{tier}", response_model=TierRequirements)
async def get_requirements(tier: str, system=Depends(get_level_system)):
    return system.requirements[validate_tier(tier)]


@router.get("/{user_id}", response_model=UserLevelProfile)
async def get_profile(user_id: str, system=Depends(get_level_system)):
    return await system.get_profile(user_id)


@router.get("/{user_id}/display", response_model=LevelDisplayInfo)
async def get_display_info(user_id: str, system=Depends(get_level_system)):
    return await system.get_display_info(user_id)


@router.get("/{user_id}/history", response_model=list[LevelTransition])
async def get_history(user_id: str, limit: int = 50, system=Depends(get_level_system)):
    """Tier transitions, newest first."""
    return await system.store.get_history(user_id, limit)


@router.get("/{user_id}/access/{tier}")
async def check_access(user_id: str, tier: str, system=Depends(get_level_system)):
    profile = await system.profiles.get_profile(user_id, with_history=False)
    return {
        "tier": tier,
        "can_access": can_access_tier(profile, tier),
        "show_advanced_warning": should_show_advanced_warning(profile, tier),
    }


@router.post("/{user_id}/attempts", status_code=201)
async def record_attempt(user_id: str, attempt: AttemptRecord, system=Depends(get_level_system)):
    await system.record_attempt(
        user_id,
        attempt.mood,
        attempt.tense,
        attempt.correct,
        response_time_ms=attempt.response_time_ms,
        session_id=attempt.session_id,
    )
    return {"status": "recorded"}


@router.post("/{user_id}/confidence", status_code=201)
async def record_confidence(user_id: str, signal: ConfidenceSignal, system=Depends(get_level_system)):
    await system.record_confidence(user_id, signal.score)
    return {"status": "recorded"}


@router.put("/{user_id}/tier", response_model=UserLevelProfile)
async def set_tier(user_id: str, update: LevelUpdate, system=Depends(get_level_system)):
    try:
        return await system.set_level(user_id, update.tier, reason=update.reason)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{user_id}/reset", response_model=UserLevelProfile)
async def reset_profile(user_id: str, system=Depends(get_level_system)):
    logger.info("Resetting level profile for %s", user_id)
    return await system.reset_profile(user_id)


@router.get("/{user_id}/evaluation", response_model=EvaluationReport)
async def get_evaluation(user_id: str, tier: Optional[str] = None, system=Depends(get_level_system)):
    """Multi-factor evaluation against `tier` (defaults to the learner's current tier)."""
    if tier is None:
        tier = (await system.profiles.get_profile(user_id, with_history=False)).current_tier
    return await system.evaluator.evaluate(user_id, tier)


@router.get("/{user_id}/tier-check", response_model=TierChangeCheck)
async def get_tier_check(user_id: str, system=Depends(get_level_system)):
    profile = await system.profiles.get_profile(user_id, with_history=False)
    return await system.evaluator.should_change_tier(user_id, profile.current_tier)


@router.get("/{user_id}/progress", response_model=ProgressReport)
async def get_progress(user_id: str, tier: Optional[str] = None, system=Depends(get_level_system)):
    return await system.progress.calculate(user_id, tier)


@router.get("/{user_id}/readiness")
async def get_readiness(user_id: str, system=Depends(get_level_system)):
    readiness = await system.progress.is_ready_for_next_tier(user_id)
    milestone = await system.progress.get_next_milestone(user_id)
    readiness["next_milestone"] = milestone.model_dump() if milestone else None
    return readiness


@router.get("/{user_id}/eligibility", response_model=Eligibility)
async def get_eligibility(user_id: str, system=Depends(get_level_system)):
    return await system.progression.evaluate_eligibility(user_id)


@router.get("/{user_id}/suggestion", response_model=LevelSuggestion)
async def get_suggestion(user_id: str, system=Depends(get_level_system)):
    return await system.progression.suggest_level_adjustment(user_id)


@router.post("/{user_id}/promote", response_model=PromotionResult)
async def check_promotion(user_id: str, system=Depends(get_level_system)):
    """Refresh progress and apply an automatic promotion if every requirement holds."""
    return await system.progression.check_user_progression(user_id)


@router.get("/{user_id}/status", response_model=ProgressionStatus)
async def get_status(user_id: str, system=Depends(get_level_system)):
    return await system.progression.get_progression_status(user_id)
