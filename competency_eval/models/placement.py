from pydantic import BaseModel
from typing import Optional

from competency_eval.models.level import PlacementBaseline


class PlacementQuestion(BaseModel):
    id: str
    tier: str
    prompt: str
    options: list[str]
    correct: str
    explanation: str = ""
    mood: str
    tense: str
    rule: Optional[str] = None


class QuestionView(BaseModel):
    """What the learner sees: the question without its answer."""
    id: str
    tier: str
    prompt: str
    options: list[str]
    question_number: int


class PlacementResult(BaseModel):
    question_id: str
    chosen_option: str
    correct: bool
    tier: str
    response_time_ms: float
    mood: str
    tense: str


class CurrentEstimate(BaseModel):
    tier: str
    confidence: int


class AnswerFeedback(BaseModel):
    correct: bool
    correct_option: str
    explanation: str = ""


class PlacementStep(BaseModel):
    completed: bool
    feedback: Optional[AnswerFeedback] = None
    next_question: Optional[QuestionView] = None
    progress_percent: float = 0.0
    current_estimate: Optional[CurrentEstimate] = None
    determined_tier: Optional[str] = None
    total_questions: int = 0
    correct_answers: int = 0
    results_log: list[PlacementResult] = []
    baseline: Optional[PlacementBaseline] = None


class AnswerSubmission(BaseModel):
    question_id: str
    choice: str
    response_time_ms: Optional[float] = None
