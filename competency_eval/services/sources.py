"""Capability interfaces the engines depend on.

The engines never look collaborators up dynamically: a store and an
optional analytics source are injected at construction time. When no
analytics collaborator is available, NullAnalyticsSource stands in and
every analytics-driven factor falls back to its documented default.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from competency_eval.models.level import Analytics, CompetencyStat, LevelTransition, UserLevelProfile


class CompetencyStore(Protocol):
    async def get_competency_stats(self, user_id: str) -> Dict[str, CompetencyStat]: ...

    async def record_attempt(self, user_id: str, mood: str, tense: str, correct: bool,
                             response_time_ms: float = 0.0, session_id: Optional[str] = None,
                             source: str = "practice", at: Optional[datetime] = None) -> int: ...

    async def record_attempts(self, user_id: str, attempts: List[Dict[str, Any]],
                              source: str = "practice", session_id: Optional[str] = None) -> int: ...

    async def clear_competency_data(self, user_id: str) -> None: ...


class ProfileRepository(Protocol):
    async def load_profile(self, user_id: str) -> Optional[UserLevelProfile]: ...

    async def save_profile(self, profile: UserLevelProfile) -> None: ...

    async def append_history(self, user_id: str, entry: LevelTransition) -> int: ...

    async def get_history(self, user_id: str, limit: int = 50) -> List[LevelTransition]: ...


class AnalyticsSource(Protocol):
    async def get_analytics(self, user_id: str) -> Analytics: ...


class NullAnalyticsSource:
    """Analytics collaborator that knows nothing."""

    async def get_analytics(self, user_id: str) -> Analytics:
        return Analytics()
