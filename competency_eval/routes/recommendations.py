from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from competency_eval.models.level import Recommendation, RecommendationSet
from competency_eval.routes.deps import get_level_system

router = APIRouter(prefix="/api/recommendations", tags=["recommendations"])


@router.get("/{user_id}", response_model=RecommendationSet)
async def get_recommendations(
    user_id: str,
    category: Optional[List[str]] = Query(None),
    actionable_only: bool = False,
    limit: int = Query(8, ge=1, le=8),
    system=Depends(get_level_system),
):
    options = {}
    if category:
        options["categories"] = sorted(category)
    if actionable_only:
        options["actionable_only"] = True
    if limit != 8:
        options["limit"] = limit
    return await system.recommendations.generate(user_id, options)


@router.get("/{user_id}/high-priority", response_model=list[Recommendation])
async def get_high_priority(user_id: str, system=Depends(get_level_system)):
    return await system.recommendations.high_priority(user_id)


@router.get("/{user_id}/actionable", response_model=list[Recommendation])
async def get_actionable(user_id: str, system=Depends(get_level_system)):
    return await system.recommendations.actionable(user_id)


@router.delete("/{user_id}/history")
async def clear_history(user_id: str, system=Depends(get_level_system)):
    """Forget which recommendations were already shown to this learner."""
    system.recommendations.clear_history(user_id)
    system.recommendations.clear_cache()
    return {"status": "cleared"}
