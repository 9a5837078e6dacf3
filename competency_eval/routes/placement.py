"""Placement test endpoints: start, answer, apply, abort, status."""

from fastapi import APIRouter, Depends

from competency_eval.models.placement import AnswerSubmission, PlacementStep, QuestionView
from competency_eval.routes.deps import get_level_system

router = APIRouter(prefix="/api/placement", tags=["placement"])


@router.post("/{user_id}/start", response_model=QuestionView)
async def start_placement(user_id: str, system=Depends(get_level_system)):
    """Start (or restart) the placement test and return the first question."""
    return system.placement.start(user_id)


@router.post("/{user_id}/answer", response_model=PlacementStep)
async def submit_answer(user_id: str, submission: AnswerSubmission, system=Depends(get_level_system)):
    return await system.placement.submit_answer(
        user_id,
        submission.question_id,
        submission.choice,
        response_time_ms=submission.response_time_ms,
    )


@router.post("/{user_id}/apply", response_model=PlacementStep)
async def apply_placement(user_id: str, system=Depends(get_level_system)):
    """Retry writing a finished placement whose result did not reach the profile."""
    return await system.placement.apply_pending(user_id)


@router.post("/{user_id}/abort")
async def abort_placement(user_id: str, system=Depends(get_level_system)):
    system.placement.abort(user_id)
    return {"status": "aborted"}


@router.get("/{user_id}/status")
async def placement_status(user_id: str, system=Depends(get_level_system)):
    return system.placement.status(user_id)
