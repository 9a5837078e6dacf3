"""Shared helpers for the level subsystem tests.

Async code is driven with asyncio.run() inside ordinary test functions.
"""

import sys
from collections import defaultdict
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import aiosqlite

from competency_eval.db.database import apply_schema
from competency_eval.errors import UpstreamUnavailableError
from competency_eval.models.level import Analytics, CompetencyStat, competency_id


async def make_db() -> aiosqlite.Connection:
    """In-memory database with the full level schema."""
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    await apply_schema(db)
    return db


class MemoryLevelStore:
    """Dict-backed store implementing the same capabilities as SqliteLevelStore."""

    def __init__(self):
        self.profiles = {}
        self.history = defaultdict(list)
        self.stats = defaultdict(dict)
        self.analytics = {}

    def seed_stat(self, user_id, mood, tense, attempts, correct, avg_response_time_ms=0.0):
        self.stats[user_id][competency_id(mood, tense)] = CompetencyStat(
            mood=mood,
            tense=tense,
            attempts=attempts,
            correct=correct,
            avg_response_time_ms=avg_response_time_ms,
        )

    async def get_competency_stats(self, user_id):
        return {k: s.model_copy() for k, s in self.stats[user_id].items()}

    async def record_attempt(self, user_id, mood, tense, correct, response_time_ms=0.0,
                             session_id=None, source="practice", at=None):
        key = competency_id(mood, tense)
        stat = self.stats[user_id].get(key) or CompetencyStat(mood=mood, tense=tense)
        total_ms = stat.avg_response_time_ms * stat.attempts + response_time_ms
        stat.attempts += 1
        stat.correct += int(bool(correct))
        stat.avg_response_time_ms = total_ms / stat.attempts
        self.stats[user_id][key] = stat
        return stat.attempts

    async def record_attempts(self, user_id, attempts, source="practice", session_id=None):
        staged = {k: s.model_copy() for k, s in self.stats[user_id].items()}
        for attempt in attempts:
            key = competency_id(attempt["mood"], attempt["tense"])
            stat = staged.get(key) or CompetencyStat(mood=attempt["mood"], tense=attempt["tense"])
            total_ms = stat.avg_response_time_ms * stat.attempts + (attempt.get("response_time_ms") or 0.0)
            stat.attempts += 1
            stat.correct += int(bool(attempt["correct"]))
            stat.avg_response_time_ms = total_ms / stat.attempts
            staged[key] = stat
        self.stats[user_id] = staged
        return len(attempts)

    async def clear_competency_data(self, user_id):
        self.stats.pop(user_id, None)

    async def get_analytics(self, user_id):
        return self.analytics.get(user_id, Analytics())

    async def record_confidence(self, user_id, score, at=None):
        current = self.analytics.get(user_id, Analytics())
        self.analytics[user_id] = current.model_copy(update={"confidence": score})
        return 1

    async def load_profile(self, user_id):
        profile = self.profiles.get(user_id)
        return profile.model_copy(deep=True) if profile else None

    async def save_profile(self, profile):
        stored = profile.model_copy(deep=True)
        stored.competency_stats = {}
        stored.history = []
        self.profiles[profile.user_id] = stored

    async def append_history(self, user_id, entry):
        self.history[user_id].insert(0, entry)
        return len(self.history[user_id])

    async def get_history(self, user_id, limit=50):
        return list(self.history[user_id][:limit])


class FailingLevelStore(MemoryLevelStore):
    """Every read and write fails as if the database were unreachable."""

    async def _fail(self, *args, **kwargs):
        raise UpstreamUnavailableError("store offline")

    get_competency_stats = _fail
    record_attempt = _fail
    record_attempts = _fail
    clear_competency_data = _fail
    get_analytics = _fail
    load_profile = _fail
    save_profile = _fail
    append_history = _fail
    get_history = _fail
