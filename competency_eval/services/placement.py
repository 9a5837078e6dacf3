"""Adaptive placement assessment.

The test starts at the lowest placement tier and climbs:

- fast-track: the first 3 answers in a tier all correct -> next tier at once
- exhaustion: 5 answers in a tier without another rule firing -> next tier
- failure: 3 consecutive wrong answers anywhere, or at the lowest tier
  2+ wrong out of 3+ asked -> the test ends
- reaching the end of the highest placement tier ends the test
- 20 questions in total ends the test regardless

The final tier is the highest tier the learner cleared (see
calculate_final_tier). On completion PlacementService folds every answer
into the learner's competency stats as one batch and stores a baseline
snapshot on the profile. A completion whose write failed stays pending and
is retried through apply_pending.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from competency_eval.errors import ContentError, SessionStateError
from competency_eval.models.level import PlacementBaseline, competency_id
from competency_eval.models.placement import (
    AnswerFeedback,
    CurrentEstimate,
    PlacementQuestion,
    PlacementResult,
    PlacementStep,
    QuestionView,
)

logger = logging.getLogger(__name__)

PLACEMENT_TIERS = ("A1", "A2", "B1", "B2", "C1")

QUESTIONS_PER_TIER = 5
FAST_TRACK_STREAK = 3
MAX_CONSECUTIVE_FAILURES = 3
MAX_TOTAL_QUESTIONS = 20

# Lowest-tier early exit: at least this many asked with this many wrong
EARLY_EXIT_MIN_ASKED = 3
EARLY_EXIT_MIN_INCORRECT = 2

# Final tier scan
QUALIFYING_ACCURACY = 0.70
MIN_QUALIFYING_QUESTIONS = 2


@dataclass
class PlacementSession:
    tier_sequence: Sequence[str]
    tier_index: int = 0
    questions_used_ids: set = field(default_factory=set)
    consecutive_failures: int = 0
    in_tier_results: List[PlacementResult] = field(default_factory=list)
    results_log: List[PlacementResult] = field(default_factory=list)
    active: bool = True
    pending: Optional[PlacementQuestion] = None
    pending_since: float = 0.0
    end_reason: Optional[str] = None

    @property
    def current_tier(self) -> str:
        return self.tier_sequence[self.tier_index]

    @property
    def at_top_tier(self) -> bool:
        return self.tier_index >= len(self.tier_sequence) - 1


def calculate_final_tier(
    results_log: Iterable[PlacementResult],
    tier_sequence: Sequence[str] = PLACEMENT_TIERS,
    tier_pointer: Optional[int] = None,
) -> str:
    """Determine the placement tier from a results log.

    Tiers are scanned from highest to lowest. A tier qualifies with at least
    2 answers and >= 70% accuracy there. A tier with fewer than 2 answers
    qualifies only at 100% accuracy and only if the session pointer
    (`tier_pointer`, index into `tier_sequence`) had already moved past it.
    Nothing qualifying means the lowest tier.
    """
    by_tier: Dict[str, List[PlacementResult]] = {}
    for result in results_log:
        by_tier.setdefault(result.tier, []).append(result)

    for index in range(len(tier_sequence) - 1, -1, -1):
        tier = tier_sequence[index]
        answered = by_tier.get(tier)
        if not answered:
            continue
        accuracy = sum(1 for r in answered if r.correct) / len(answered)
        if len(answered) >= MIN_QUALIFYING_QUESTIONS and accuracy >= QUALIFYING_ACCURACY:
            return tier
        if (
            len(answered) < MIN_QUALIFYING_QUESTIONS
            and accuracy == 1.0
            and tier_pointer is not None
            and tier_pointer > index
        ):
            return tier

    return tier_sequence[0]


def build_baseline(results_log: Sequence[PlacementResult], determined_tier: str) -> PlacementBaseline:
    per_competency: Dict[str, List[bool]] = {}
    for result in results_log:
        per_competency.setdefault(competency_id(result.mood, result.tense), []).append(result.correct)

    total = len(results_log)
    correct = sum(1 for r in results_log if r.correct)
    return PlacementBaseline(
        determined_tier=determined_tier,
        per_competency_accuracy={k: sum(v) / len(v) for k, v in per_competency.items()},
        overall_accuracy=correct / total if total else 0.0,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


class AdaptivePlacementAssessment:
    """One learner's placement test. Strictly sequential: one pending question at a time."""

    def __init__(
        self,
        question_bank: Dict[str, List[PlacementQuestion]],
        tier_sequence: Sequence[str] = PLACEMENT_TIERS,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        for tier in tier_sequence:
            if not question_bank.get(tier):
                raise ContentError(f"No placement questions for tier {tier}")
        self.question_bank = question_bank
        self.tier_sequence = tuple(tier_sequence)
        self.rng = rng or random.Random()
        self.clock = clock
        self.session: Optional[PlacementSession] = None

    @property
    def is_active(self) -> bool:
        return self.session is not None and self.session.active

    def start(self) -> QuestionView:
        """Begin a new session at the lowest tier, aborting any active one."""
        if self.is_active:
            logger.info("Placement restarted; aborting session at %s", self.session.current_tier)
            self.abort()

        self.session = PlacementSession(tier_sequence=self.tier_sequence)
        logger.info("Starting placement at %s", self.session.current_tier)
        return self._draw_next()

    def abort(self) -> None:
        if self.session is not None:
            self.session.active = False
            self.session.pending = None
            self.session.end_reason = "aborted"
        self.session = None

    def progress_percent(self) -> float:
        if self.session is None:
            return 0.0
        return len(self.session.results_log) / MAX_TOTAL_QUESTIONS * 100

    def current_estimate(self) -> Optional[CurrentEstimate]:
        if self.session is None:
            return None
        return CurrentEstimate(
            tier=self.session.current_tier,
            confidence=50 + len(self.session.in_tier_results) * 10,
        )

    def submit_answer(self, question_id: str, choice: str, response_time_ms: Optional[float] = None) -> PlacementStep:
        session = self.session
        if session is None or not session.active:
            raise SessionStateError("No active placement session")
        question = session.pending
        if question is None or question.id != question_id:
            raise SessionStateError(f"Question {question_id!r} is not the pending question")

        is_correct = choice == question.correct
        if response_time_ms is None:
            response_time_ms = (self.clock() - session.pending_since) * 1000

        result = PlacementResult(
            question_id=question.id,
            chosen_option=choice,
            correct=is_correct,
            tier=question.tier,
            response_time_ms=response_time_ms,
            mood=question.mood,
            tense=question.tense,
        )
        session.pending = None
        session.results_log.append(result)
        session.in_tier_results.append(result)
        session.consecutive_failures = 0 if is_correct else session.consecutive_failures + 1

        feedback = AnswerFeedback(correct=is_correct, correct_option=question.correct, explanation=question.explanation)

        action = self._decide(session)
        logger.debug(
            "Placement answer %s at %s: %s -> %s",
            question.id, session.current_tier, "correct" if is_correct else "wrong", action,
        )

        if action == "finish":
            return self._complete(feedback)
        if action == "advance":
            self._advance(session)
        if len(session.results_log) >= MAX_TOTAL_QUESTIONS:
            session.end_reason = "question_cap"
            return self._complete(feedback)

        next_question = self._draw_next()
        if next_question is None:
            return self._complete(feedback)

        return PlacementStep(
            completed=False,
            feedback=feedback,
            next_question=next_question,
            progress_percent=self.progress_percent(),
            current_estimate=self.current_estimate(),
            total_questions=len(session.results_log),
            correct_answers=sum(1 for r in session.results_log if r.correct),
        )

    def _decide(self, session: PlacementSession) -> str:
        asked = len(session.in_tier_results)
        incorrect = sum(1 for r in session.in_tier_results if not r.correct)

        if session.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            session.end_reason = "consecutive_failures"
            return "finish"
        if session.tier_index == 0 and asked >= EARLY_EXIT_MIN_ASKED and incorrect >= EARLY_EXIT_MIN_INCORRECT:
            session.end_reason = "lowest_tier_failure"
            return "finish"
        if asked == FAST_TRACK_STREAK and incorrect == 0:
            if session.at_top_tier:
                session.end_reason = "top_tier_cleared"
                return "finish"
            return "advance"
        if asked >= QUESTIONS_PER_TIER:
            if session.at_top_tier:
                session.end_reason = "top_tier_completed"
                return "finish"
            return "advance"
        return "continue"

    def _advance(self, session: PlacementSession) -> None:
        session.tier_index += 1
        session.in_tier_results = []
        logger.debug("Placement advanced to %s", session.current_tier)

    def _draw_next(self) -> Optional[QuestionView]:
        """Pick an unused question at the current tier, climbing past exhausted pools."""
        session = self.session
        while True:
            pool = self.question_bank.get(session.current_tier, [])
            available = [q for q in pool if q.id not in session.questions_used_ids]
            if available:
                break
            if session.at_top_tier:
                session.end_reason = "pool_exhausted"
                return None
            self._advance(session)

        question = self.rng.choice(available)
        session.questions_used_ids.add(question.id)
        session.pending = question
        session.pending_since = self.clock()
        return QuestionView(
            id=question.id,
            tier=question.tier,
            prompt=question.prompt,
            options=list(question.options),
            question_number=len(session.results_log) + 1,
        )

    def _complete(self, feedback: Optional[AnswerFeedback] = None) -> PlacementStep:
        session = self.session
        session.active = False
        session.pending = None
        determined = calculate_final_tier(session.results_log, self.tier_sequence, session.tier_index)
        logger.info(
            "Placement completed (%s) after %d questions: %s",
            session.end_reason, len(session.results_log), determined,
        )
        return PlacementStep(
            completed=True,
            feedback=feedback,
            progress_percent=100.0,
            determined_tier=determined,
            total_questions=len(session.results_log),
            correct_answers=sum(1 for r in session.results_log if r.correct),
            results_log=list(session.results_log),
            baseline=build_baseline(session.results_log, determined),
        )


@dataclass
class PendingFold:
    """A finished assessment whose results have not fully reached the profile."""
    step: PlacementStep
    attempts_recorded: bool = False


class PlacementService:
    """Per-user placement sessions plus the hand-off of results to the profile."""

    def __init__(self, profiles, question_bank, on_write: Optional[Callable[[], None]] = None,
                 rng: Optional[random.Random] = None):
        self.profiles = profiles
        self.question_bank = question_bank
        self.on_write = on_write
        self.rng = rng
        self._assessments: Dict[str, AdaptivePlacementAssessment] = {}
        self._unapplied: Dict[str, PendingFold] = {}

    def _assessment(self, user_id: str) -> AdaptivePlacementAssessment:
        assessment = self._assessments.get(user_id)
        if assessment is None:
            assessment = AdaptivePlacementAssessment(self.question_bank, rng=self.rng)
            self._assessments[user_id] = assessment
        return assessment

    def is_active(self, user_id: str) -> bool:
        assessment = self._assessments.get(user_id)
        return assessment is not None and assessment.is_active

    def has_pending(self, user_id: str) -> bool:
        return user_id in self._unapplied

    def status(self, user_id: str) -> dict:
        if not self.is_active(user_id):
            pending = self._unapplied.get(user_id)
            if pending is None:
                return {"active": False}
            return {
                "active": False,
                "pending_apply": True,
                "determined_tier": pending.step.determined_tier,
            }
        assessment = self._assessments[user_id]
        return {
            "active": True,
            "progress_percent": assessment.progress_percent(),
            "current_estimate": assessment.current_estimate().model_dump(),
        }

    def _discard_pending(self, user_id: str) -> None:
        if self._unapplied.pop(user_id, None) is not None:
            logger.warning("Discarding unapplied placement result for %s", user_id)

    def start(self, user_id: str) -> QuestionView:
        self._discard_pending(user_id)
        return self._assessment(user_id).start()

    def abort(self, user_id: str) -> None:
        self._discard_pending(user_id)
        assessment = self._assessments.pop(user_id, None)
        if assessment is not None:
            assessment.abort()

    async def submit_answer(self, user_id: str, question_id: str, choice: str,
                            response_time_ms: Optional[float] = None) -> PlacementStep:
        assessment = self._assessments.get(user_id)
        if assessment is None or not assessment.is_active:
            raise SessionStateError(f"No active placement session for {user_id}")

        step = assessment.submit_answer(question_id, choice, response_time_ms)
        if step.completed:
            self._assessments.pop(user_id, None)
            self._unapplied[user_id] = PendingFold(step=step)
            await self.apply_pending(user_id)
        return step

    async def apply_pending(self, user_id: str) -> PlacementStep:
        """Fold a finished assessment into the profile.

        Safe to call again after a store failure. The attempt batch is written
        in one transaction and never twice. The baseline save and the tier sync
        are idempotent. The result stays pending until every write succeeded.
        """
        pending = self._unapplied.get(user_id)
        if pending is None:
            raise SessionStateError(f"No unapplied placement result for {user_id}")

        step = pending.step
        try:
            if not pending.attempts_recorded:
                await self.profiles.record_attempts(
                    user_id,
                    [
                        {
                            "mood": result.mood,
                            "tense": result.tense,
                            "correct": result.correct,
                            "response_time_ms": result.response_time_ms,
                        }
                        for result in step.results_log
                    ],
                    source="placement",
                )
                pending.attempts_recorded = True
            await self.profiles.save_placement_baseline(user_id, step.baseline)
            await self.profiles.set_level(user_id, step.determined_tier, reason="sync")
        finally:
            # Stats may have changed even when a later write failed
            if pending.attempts_recorded and self.on_write is not None:
                self.on_write()

        self._unapplied.pop(user_id, None)
        logger.info("Placement for %s applied at %s", user_id, step.determined_tier)
        return step
