"""
level_store.py - Database helper queries for the level subsystem

Provides insert/fetch functions for:
- level_profiles
- level_history
- competency_stats / practice_attempts
- confidence_signals

and SqliteLevelStore, which exposes them through the capability protocols
the engines depend on, retrying transient SQLite errors.
"""

import functools
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

import aiosqlite
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from competency_eval.config import settings
from competency_eval.errors import UpstreamUnavailableError
from competency_eval.models.level import (
    Analytics,
    CompetencyStat,
    LevelTransition,
    PlacementBaseline,
    TimelinePoint,
    UserLevelProfile,
    competency_id,
)

logger = logging.getLogger(__name__)

TIMELINE_WINDOW_DAYS = 30


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> str:
    return (value or _now()).isoformat()


# ══════════════════════════════════════════════════════════════════════════════
# PROFILES
# ══════════════════════════════════════════════════════════════════════════════

async def fetch_profile_row(db: aiosqlite.Connection, user_id: str) -> Optional[Dict[str, Any]]:
    cursor = await db.execute("SELECT * FROM level_profiles WHERE user_id = ?", (user_id,))
    row = await cursor.fetchone()
    return dict(row) if row else None


async def upsert_profile(db: aiosqlite.Connection, profile: UserLevelProfile) -> None:
    """Insert or update the scalar part of a profile (stats and history live elsewhere)."""
    now = _iso(None)
    baseline = profile.placement_baseline.model_dump_json() if profile.placement_baseline else None
    await db.execute(
        """INSERT INTO level_profiles
           (user_id, current_tier, tier_progress_percent, progress_updated_at,
            manual_override, placement_baseline_json, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(user_id) DO UPDATE SET
             current_tier = excluded.current_tier,
             tier_progress_percent = excluded.tier_progress_percent,
             progress_updated_at = excluded.progress_updated_at,
             manual_override = excluded.manual_override,
             placement_baseline_json = excluded.placement_baseline_json,
             updated_at = excluded.updated_at""",
        (
            profile.user_id,
            profile.current_tier,
            profile.tier_progress_percent,
            profile.progress_updated_at,
            int(profile.manual_override),
            baseline,
            profile.created_at or now,
            now,
        ),
    )
    await db.commit()


async def insert_history(db: aiosqlite.Connection, user_id: str, entry: LevelTransition) -> int:
    """Append a tier transition. Returns the new history row ID."""
    cursor = await db.execute(
        """INSERT INTO level_history (user_id, from_tier, to_tier, reason, progress, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (user_id, entry.from_tier, entry.to_tier, entry.reason, entry.progress, entry.timestamp),
    )
    await db.commit()
    return cursor.lastrowid


async def fetch_history(db: aiosqlite.Connection, user_id: str, limit: int = 50) -> List[LevelTransition]:
    """Tier transitions for a user, newest first."""
    cursor = await db.execute(
        """SELECT from_tier, to_tier, reason, progress, created_at
           FROM level_history WHERE user_id = ?
           ORDER BY created_at DESC, id DESC LIMIT ?""",
        (user_id, limit),
    )
    rows = await cursor.fetchall()
    return [
        LevelTransition(
            from_tier=r["from_tier"],
            to_tier=r["to_tier"],
            reason=r["reason"],
            progress=r["progress"],
            timestamp=r["created_at"],
        )
        for r in rows
    ]


# ══════════════════════════════════════════════════════════════════════════════
# COMPETENCY STATS
# ══════════════════════════════════════════════════════════════════════════════

async def fetch_competency_stats(db: aiosqlite.Connection, user_id: str) -> Dict[str, CompetencyStat]:
    cursor = await db.execute(
        """SELECT mood, tense, attempts, correct, total_response_ms, last_practiced_at
           FROM competency_stats WHERE user_id = ?""",
        (user_id,),
    )
    stats = {}
    for row in await cursor.fetchall():
        attempts = row["attempts"] or 0
        stats[competency_id(row["mood"], row["tense"])] = CompetencyStat(
            mood=row["mood"],
            tense=row["tense"],
            attempts=attempts,
            correct=row["correct"] or 0,
            avg_response_time_ms=(row["total_response_ms"] / attempts) if attempts else 0.0,
            last_practiced_at=row["last_practiced_at"],
        )
    return stats


async def _execute_attempt(
    db: aiosqlite.Connection,
    user_id: str,
    mood: str,
    tense: str,
    correct: bool,
    response_time_ms: float,
    session_id: Optional[str],
    source: str,
    stamp: str,
) -> int:
    cursor = await db.execute(
        """INSERT INTO practice_attempts
           (user_id, mood, tense, is_correct, response_time_ms, session_id, source, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (user_id, mood, tense, int(bool(correct)), response_time_ms, session_id, source, stamp),
    )
    await db.execute(
        """INSERT INTO competency_stats
           (user_id, mood, tense, attempts, correct, total_response_ms, last_practiced_at)
           VALUES (?, ?, ?, 1, ?, ?, ?)
           ON CONFLICT(user_id, mood, tense) DO UPDATE SET
             attempts = attempts + 1,
             correct = correct + excluded.correct,
             total_response_ms = total_response_ms + excluded.total_response_ms,
             last_practiced_at = excluded.last_practiced_at""",
        (user_id, mood, tense, int(bool(correct)), response_time_ms, stamp),
    )
    return cursor.lastrowid


async def insert_attempt(
    db: aiosqlite.Connection,
    user_id: str,
    mood: str,
    tense: str,
    correct: bool,
    response_time_ms: float = 0.0,
    session_id: Optional[str] = None,
    source: str = "practice",
    at: Optional[datetime] = None,
) -> int:
    """Record one graded attempt and fold it into the competency accumulators."""
    row_id = await _execute_attempt(
        db, user_id, mood, tense, correct, response_time_ms, session_id, source, _iso(at)
    )
    await db.commit()
    return row_id


async def insert_attempts(
    db: aiosqlite.Connection,
    user_id: str,
    attempts: List[Dict[str, Any]],
    source: str = "practice",
    session_id: Optional[str] = None,
) -> int:
    """Record a batch of attempts in a single transaction. Returns the count written.

    Each attempt is a dict with mood, tense, correct and optionally
    response_time_ms.
    """
    stamp = _iso(None)
    for attempt in attempts:
        await _execute_attempt(
            db, user_id, attempt["mood"], attempt["tense"], attempt["correct"],
            attempt.get("response_time_ms") or 0.0, session_id, source, stamp,
        )
    await db.commit()
    return len(attempts)


async def delete_competency_data(db: aiosqlite.Connection, user_id: str) -> None:
    await db.execute("DELETE FROM competency_stats WHERE user_id = ?", (user_id,))
    await db.execute("DELETE FROM practice_attempts WHERE user_id = ?", (user_id,))
    await db.commit()


# ══════════════════════════════════════════════════════════════════════════════
# ANALYTICS
# ══════════════════════════════════════════════════════════════════════════════

async def insert_confidence_signal(
    db: aiosqlite.Connection, user_id: str, score: float, at: Optional[datetime] = None
) -> int:
    cursor = await db.execute(
        "INSERT INTO confidence_signals (user_id, score, recorded_at) VALUES (?, ?, ?)",
        (user_id, score, _iso(at)),
    )
    await db.commit()
    return cursor.lastrowid


async def fetch_analytics(db: aiosqlite.Connection, user_id: str, now: Optional[datetime] = None) -> Analytics:
    """Per-session accuracy timeline, mean response time and latest confidence signal.

    Attempts without a session id are grouped per calendar day.
    """
    cutoff = ((now or _now()) - timedelta(days=TIMELINE_WINDOW_DAYS)).isoformat()

    cursor = await db.execute(
        """SELECT MIN(created_at) AS started_at, AVG(is_correct) AS accuracy
           FROM practice_attempts
           WHERE user_id = ? AND created_at >= ?
           GROUP BY COALESCE(session_id, substr(created_at, 1, 10))
           ORDER BY started_at""",
        (user_id, cutoff),
    )
    timeline = [
        TimelinePoint(date=row["started_at"], accuracy=row["accuracy"] or 0.0)
        for row in await cursor.fetchall()
    ]

    cursor = await db.execute(
        """SELECT AVG(response_time_ms) AS avg_ms FROM practice_attempts
           WHERE user_id = ? AND created_at >= ? AND response_time_ms > 0""",
        (user_id, cutoff),
    )
    row = await cursor.fetchone()
    avg_ms = row["avg_ms"] if row else None

    cursor = await db.execute(
        """SELECT score FROM confidence_signals WHERE user_id = ?
           ORDER BY recorded_at DESC, id DESC LIMIT 1""",
        (user_id,),
    )
    row = await cursor.fetchone()

    return Analytics(
        timeline=timeline,
        average_response_time_ms=avg_ms,
        confidence=row["score"] if row else None,
    )


# ══════════════════════════════════════════════════════════════════════════════
# STORE
# ══════════════════════════════════════════════════════════════════════════════

def _upstream(func):
    """Retry transient SQLite errors, then surface any failure as UpstreamUnavailableError."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential(multiplier=self.retry_wait, max=2),
                retry=retry_if_exception_type(aiosqlite.OperationalError),
                before_sleep=lambda retry_state: logger.warning(
                    "%s failed (attempt %d), retrying: %s",
                    func.__name__,
                    retry_state.attempt_number,
                    retry_state.outcome.exception(),
                ),
                reraise=True,
            ):
                with attempt:
                    try:
                        return await func(self, *args, **kwargs)
                    except aiosqlite.Error:
                        await self._rollback()
                        raise
        except (aiosqlite.Error, ValueError) as exc:
            raise UpstreamUnavailableError(f"{func.__name__} failed: {exc}") from exc

    return wrapper


class SqliteLevelStore:
    """CompetencyStore, ProfileRepository and AnalyticsSource over one aiosqlite connection."""

    def __init__(self, db: aiosqlite.Connection, retry_attempts: int = None, retry_wait: float = None):
        self.db = db
        self.retry_attempts = retry_attempts or settings.store_retry_attempts
        self.retry_wait = settings.store_retry_wait_seconds if retry_wait is None else retry_wait

    async def _rollback(self) -> None:
        """Discard a half-applied transaction so a retry starts from a clean slate."""
        try:
            await self.db.rollback()
        except (aiosqlite.Error, ValueError) as exc:
            logger.warning("rollback failed: %s", exc)

    # CompetencyStore

    @_upstream
    async def get_competency_stats(self, user_id: str) -> Dict[str, CompetencyStat]:
        return await fetch_competency_stats(self.db, user_id)

    @_upstream
    async def record_attempt(self, user_id: str, mood: str, tense: str, correct: bool,
                             response_time_ms: float = 0.0, session_id: Optional[str] = None,
                             source: str = "practice", at: Optional[datetime] = None) -> int:
        return await insert_attempt(
            self.db, user_id, mood, tense, correct,
            response_time_ms=response_time_ms, session_id=session_id, source=source, at=at,
        )

    @_upstream
    async def record_attempts(self, user_id: str, attempts: List[Dict[str, Any]],
                              source: str = "practice", session_id: Optional[str] = None) -> int:
        return await insert_attempts(self.db, user_id, attempts, source=source, session_id=session_id)

    @_upstream
    async def clear_competency_data(self, user_id: str) -> None:
        await delete_competency_data(self.db, user_id)

    # AnalyticsSource

    @_upstream
    async def get_analytics(self, user_id: str) -> Analytics:
        return await fetch_analytics(self.db, user_id)

    @_upstream
    async def record_confidence(self, user_id: str, score: float, at: Optional[datetime] = None) -> int:
        return await insert_confidence_signal(self.db, user_id, score, at=at)

    # ProfileRepository

    @_upstream
    async def load_profile(self, user_id: str) -> Optional[UserLevelProfile]:
        row = await fetch_profile_row(self.db, user_id)
        if row is None:
            return None
        baseline = row["placement_baseline_json"]
        return UserLevelProfile(
            user_id=row["user_id"],
            current_tier=row["current_tier"],
            tier_progress_percent=row["tier_progress_percent"] or 0.0,
            progress_updated_at=row["progress_updated_at"],
            manual_override=bool(row["manual_override"]),
            placement_baseline=PlacementBaseline(**json.loads(baseline)) if baseline else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @_upstream
    async def save_profile(self, profile: UserLevelProfile) -> None:
        await upsert_profile(self.db, profile)

    @_upstream
    async def append_history(self, user_id: str, entry: LevelTransition) -> int:
        return await insert_history(self.db, user_id, entry)

    @_upstream
    async def get_history(self, user_id: str, limit: int = 50) -> List[LevelTransition]:
        return await fetch_history(self.db, user_id, limit)
