from pydantic import BaseModel, Field
from typing import Any, NamedTuple, Optional
from datetime import datetime, timezone


class CompetencyKey(NamedTuple):
    mood: str
    tense: str

    @property
    def id(self) -> str:
        return competency_id(self.mood, self.tense)


def competency_id(mood: str, tense: str) -> str:
    """Map key used for competency dictionaries ("subjunctive_subjPres")."""
    return f"{mood}_{tense}"


class CompetencyStat(BaseModel):
    mood: str
    tense: str
    attempts: int = 0
    correct: int = 0
    avg_response_time_ms: float = 0.0
    last_practiced_at: Optional[str] = None

    @property
    def accuracy(self) -> float:
        return self.correct / self.attempts if self.attempts else 0.0


class CompetencyRequirement(BaseModel):
    mood: str
    tense: str
    min_accuracy: float
    min_attempts: int

    @property
    def key(self) -> CompetencyKey:
        return CompetencyKey(self.mood, self.tense)


class TierRequirements(BaseModel):
    tier: str
    name: str = ""
    description: str = ""
    required_competencies: list[CompetencyRequirement] = []
    required_overall_accuracy: float
    min_total_attempts: int


class TimelinePoint(BaseModel):
    date: str
    accuracy: float


class Analytics(BaseModel):
    timeline: list[TimelinePoint] = []
    average_response_time_ms: Optional[float] = None
    # 0-100 as supplied by the external confidence system
    confidence: Optional[float] = None


class LevelTransition(BaseModel):
    from_tier: str
    to_tier: str
    reason: str
    progress: float = 0.0
    timestamp: str


class PlacementBaseline(BaseModel):
    determined_tier: str
    per_competency_accuracy: dict[str, float] = {}
    overall_accuracy: float = 0.0
    timestamp: str


class UserLevelProfile(BaseModel):
    user_id: str
    current_tier: str
    tier_progress_percent: float = 0.0
    # Set when the progress calculator last stored a value for current_tier
    progress_updated_at: Optional[str] = None
    competency_stats: dict[str, CompetencyStat] = {}
    manual_override: bool = False
    placement_baseline: Optional[PlacementBaseline] = None
    history: list[LevelTransition] = []
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class FactorScore(BaseModel):
    score: float
    details: Any = None


class EvaluationFactors(BaseModel):
    accuracy: FactorScore
    consistency: FactorScore
    response_time: FactorScore
    coverage: FactorScore
    confidence: FactorScore


class Recommendation(BaseModel):
    id: str
    category: str
    type: str = ""
    priority: str = "medium"
    title: str
    description: str = ""
    actionable: bool = True
    actions: list[str] = []
    estimated_impact: str = "medium"
    data: dict[str, Any] = {}
    score: float = 0.0


class EvaluationReport(BaseModel):
    user_id: str
    declared_tier: str
    effective_tier: str
    weighted_score: float
    confidence: float
    stability: float
    factors: EvaluationFactors
    recommendations: list[Recommendation] = []
    fallback: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ProgressComponent(BaseModel):
    score: float
    details: Any = None


class ProgressComponents(BaseModel):
    competencies: ProgressComponent
    mastery: ProgressComponent
    coverage: ProgressComponent
    consistency: ProgressComponent


class MissingCompetency(BaseModel):
    mood: str
    tense: str
    required_accuracy: float
    required_attempts: int
    current_accuracy: float = 0.0
    current_attempts: int = 0


class AreaSummary(BaseModel):
    key: str
    mood: str
    tense: str
    accuracy: float
    attempts: int
    needs_work: bool = False


class Milestone(BaseModel):
    type: str
    title: str
    progress: float
    target: float


class ProgressReport(BaseModel):
    user_id: str
    tier: str
    overall_percent: float
    raw_percent: float
    components: ProgressComponents
    total_competencies: int = 0
    completed_competencies: int = 0
    missing_competencies: list[MissingCompetency] = []
    strongest_areas: list[AreaSummary] = []
    weakest_areas: list[AreaSummary] = []
    next_milestones: list[Milestone] = []
    fallback: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RecommendationSummary(BaseModel):
    total_recommendations: int = 0
    high_priority: int = 0
    medium_priority: int = 0
    low_priority: int = 0


class RecommendationSet(BaseModel):
    user_id: str
    categories: dict[str, list[Recommendation]] = {}
    summary: RecommendationSummary = RecommendationSummary()
    prioritized: list[Recommendation] = []
    fallback: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CompetencyCheck(BaseModel):
    mood: str
    tense: str
    required: CompetencyRequirement
    attempts: int = 0
    accuracy: float = 0.0
    meets: bool = False


class MissingRequirement(BaseModel):
    type: str
    message: str
    mood: Optional[str] = None
    tense: Optional[str] = None


class RequirementEvaluation(BaseModel):
    competency_results: list[CompetencyCheck] = []
    total_attempts: int = 0
    overall_accuracy: float = 0.0
    meets_overall_accuracy: bool = False
    meets_min_attempts: bool = False
    meets_all_competencies: bool = False
    meets_requirements: bool = False
    missing_requirements: list[MissingRequirement] = []


class Eligibility(BaseModel):
    eligible: bool
    reason: str
    current_tier: str
    next_tier: Optional[str] = None
    evaluation: Optional[RequirementEvaluation] = None
    confidence: float = 0.0


class PromotionResult(BaseModel):
    promoted: bool
    reason: str
    from_tier: Optional[str] = None
    to_tier: Optional[str] = None
    confidence: float = 0.0
    eligibility: Optional[Eligibility] = None


class LevelSuggestion(BaseModel):
    suggestion: str
    confidence: float
    message: str


class PromotionNotification(BaseModel):
    type: str = "level_promotion"
    from_tier: str
    to_tier: str
    confidence: float
    timestamp: str


class ProgressionStatus(BaseModel):
    eligibility: Eligibility
    suggestion: LevelSuggestion
    progress_percent: float
    notifications: list[PromotionNotification] = []


class TierChangeCheck(BaseModel):
    should_change: bool
    confidence: float
    current_tier: str
    recommended_tier: str
    reason: str


class LevelDisplayInfo(BaseModel):
    current: str
    progress: float
    next: Optional[str] = None
    is_max_level: bool = False
    ready_for_promotion: bool = False
    overall_competency: int = 0


class AttemptRecord(BaseModel):
    mood: str
    tense: str
    correct: bool
    response_time_ms: float = 0.0
    session_id: Optional[str] = None


class LevelUpdate(BaseModel):
    tier: str
    reason: str = "manual"


class ConfidenceSignal(BaseModel):
    score: float = Field(ge=0, le=100)
