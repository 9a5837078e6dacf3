"""Tests for the aiosqlite-backed level store (in-memory database)."""

import asyncio
from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest

from competency_eval.db.level_store import SqliteLevelStore
from competency_eval.errors import UpstreamUnavailableError
from competency_eval.models.level import LevelTransition, PlacementBaseline, UserLevelProfile
from conftest import make_db


class LockedConnection:
    """Real connection that reports "database is locked" for chosen statements."""

    def __init__(self, db, statement, fail_at=1, times=1):
        self._db = db
        self.statement = statement
        self.fail_at = fail_at
        self.times = times
        self.seen = 0

    def __getattr__(self, name):
        return getattr(self._db, name)

    async def execute(self, sql, parameters=None):
        if self.statement in sql:
            self.seen += 1
            if self.seen >= self.fail_at and self.times:
                self.times -= 1
                raise aiosqlite.OperationalError("database is locked")
        return await self._db.execute(sql, parameters)


async def count_rows(db, table, user_id="u1"):
    cursor = await db.execute(f"SELECT COUNT(*) FROM {table} WHERE user_id = ?", (user_id,))
    row = await cursor.fetchone()
    return row[0]


def run_with_store(scenario):
    async def _run():
        db = await make_db()
        try:
            return await scenario(SqliteLevelStore(db, retry_attempts=2, retry_wait=0))
        finally:
            await db.close()

    return asyncio.run(_run())


def _profile(user_id="u1", tier="A2", **fields):
    return UserLevelProfile(user_id=user_id, current_tier=tier, **fields)


class TestCompetencyStats:

    def test_attempts_accumulate(self):
        async def scenario(store):
            await store.record_attempt("u1", "indicative", "pres", True, response_time_ms=3000)
            await store.record_attempt("u1", "indicative", "pres", False, response_time_ms=5000)
            await store.record_attempt("u1", "subjunctive", "subjPres", True)
            return await store.get_competency_stats("u1")

        stats = run_with_store(scenario)
        pres = stats["indicative_pres"]
        assert pres.attempts == 2
        assert pres.correct == 1
        assert pres.accuracy == 0.5
        assert pres.avg_response_time_ms == 4000
        assert stats["subjunctive_subjPres"].attempts == 1

    def test_stats_are_per_user(self):
        async def scenario(store):
            await store.record_attempt("u1", "indicative", "pres", True)
            return await store.get_competency_stats("u2")

        assert run_with_store(scenario) == {}

    def test_clear_competency_data(self):
        async def scenario(store):
            await store.record_attempt("u1", "indicative", "pres", True)
            await store.clear_competency_data("u1")
            stats = await store.get_competency_stats("u1")
            analytics = await store.get_analytics("u1")
            return stats, analytics

        stats, analytics = run_with_store(scenario)
        assert stats == {}
        assert analytics.timeline == []


    def test_batch_lands_in_one_go(self):
        async def scenario(store):
            written = await store.record_attempts("u1", [
                {"mood": "indicative", "tense": "pres", "correct": True, "response_time_ms": 1000},
                {"mood": "indicative", "tense": "pres", "correct": False, "response_time_ms": 3000},
                {"mood": "subjunctive", "tense": "subjPres", "correct": True},
            ], source="placement")
            return written, await store.get_competency_stats("u1")

        written, stats = run_with_store(scenario)
        assert written == 3
        assert stats["indicative_pres"].attempts == 2
        assert stats["indicative_pres"].avg_response_time_ms == 2000
        assert stats["subjunctive_subjPres"].correct == 1


class TestProfiles:

    def test_missing_profile(self):
        async def scenario(store):
            return await store.load_profile("nobody")

        assert run_with_store(scenario) is None

    def test_profile_roundtrip_with_baseline(self):
        baseline = PlacementBaseline(
            determined_tier="B1",
            per_competency_accuracy={"indicative_pres": 1.0},
            overall_accuracy=0.8,
            timestamp="2026-01-01T00:00:00+00:00",
        )

        async def scenario(store):
            await store.save_profile(_profile(
                tier="B1", manual_override=True, tier_progress_percent=42.5, placement_baseline=baseline,
            ))
            return await store.load_profile("u1")

        loaded = run_with_store(scenario)
        assert loaded.current_tier == "B1"
        assert loaded.manual_override is True
        assert loaded.tier_progress_percent == 42.5
        assert loaded.placement_baseline.determined_tier == "B1"
        assert loaded.placement_baseline.per_competency_accuracy == {"indicative_pres": 1.0}

    def test_save_updates_in_place(self):
        async def scenario(store):
            await store.save_profile(_profile())
            await store.save_profile(_profile(tier="C1"))
            return await store.load_profile("u1")

        assert run_with_store(scenario).current_tier == "C1"

    def test_history_newest_first(self):
        async def scenario(store):
            await store.save_profile(_profile())
            await store.append_history("u1", LevelTransition(
                from_tier="A2", to_tier="B1", reason="manual", timestamp="2026-01-01T00:00:00+00:00"))
            await store.append_history("u1", LevelTransition(
                from_tier="B1", to_tier="B2", reason="automatic_promotion", timestamp="2026-02-01T00:00:00+00:00"))
            return await store.get_history("u1")

        history = run_with_store(scenario)
        assert [h.to_tier for h in history] == ["B2", "B1"]
        assert history[0].reason == "automatic_promotion"


class TestAnalytics:

    def test_timeline_groups_by_session(self):
        now = datetime.now(timezone.utc)

        async def scenario(store):
            await store.record_attempt("u1", "indicative", "pres", True, session_id="s1",
                                       at=now - timedelta(hours=3))
            await store.record_attempt("u1", "indicative", "pres", False, session_id="s1",
                                       at=now - timedelta(hours=3) + timedelta(minutes=1))
            await store.record_attempt("u1", "indicative", "pres", True, session_id="s2",
                                       at=now - timedelta(hours=1))
            return await store.get_analytics("u1")

        analytics = run_with_store(scenario)
        assert [p.accuracy for p in analytics.timeline] == [0.5, 1.0]

    def test_old_attempts_are_outside_the_window(self):
        async def scenario(store):
            await store.record_attempt("u1", "indicative", "pres", True, session_id="old",
                                       at=datetime.now(timezone.utc) - timedelta(days=45))
            return await store.get_analytics("u1")

        assert run_with_store(scenario).timeline == []

    def test_average_response_time_ignores_untimed_attempts(self):
        async def scenario(store):
            await store.record_attempt("u1", "indicative", "pres", True, response_time_ms=2000)
            await store.record_attempt("u1", "indicative", "pres", True, response_time_ms=4000)
            await store.record_attempt("u1", "indicative", "pres", True)
            return await store.get_analytics("u1")

        assert run_with_store(scenario).average_response_time_ms == 3000

    def test_latest_confidence_signal(self):
        async def scenario(store):
            empty = await store.get_analytics("u1")
            await store.record_confidence("u1", 40, at=datetime.now(timezone.utc) - timedelta(hours=1))
            await store.record_confidence("u1", 75)
            return empty, await store.get_analytics("u1")

        empty, analytics = run_with_store(scenario)
        assert empty.confidence is None
        assert empty.average_response_time_ms is None
        assert analytics.confidence == 75


class TestUpstreamFailures:

    def test_closed_connection_raises_upstream_error(self):
        async def scenario():
            db = await make_db()
            store = SqliteLevelStore(db, retry_attempts=2, retry_wait=0)
            await db.close()
            with pytest.raises(UpstreamUnavailableError):
                await store.get_competency_stats("u1")

        asyncio.run(scenario())

    def test_retried_write_is_applied_once(self):
        async def scenario():
            db = await make_db()
            try:
                store = SqliteLevelStore(LockedConnection(db, "INSERT INTO competency_stats"),
                                         retry_attempts=3, retry_wait=0)
                await store.record_attempt("u1", "indicative", "pres", True)
                stats = await store.get_competency_stats("u1")
                return await count_rows(db, "practice_attempts"), stats
            finally:
                await db.close()

        attempt_rows, stats = asyncio.run(scenario())
        assert attempt_rows == 1
        assert stats["indicative_pres"].attempts == 1

    def test_failed_batch_leaves_nothing_behind(self):
        async def scenario():
            db = await make_db()
            try:
                store = SqliteLevelStore(LockedConnection(db, "INSERT INTO competency_stats", fail_at=2, times=10),
                                         retry_attempts=2, retry_wait=0)
                with pytest.raises(UpstreamUnavailableError):
                    await store.record_attempts("u1", [
                        {"mood": "indicative", "tense": "pres", "correct": True},
                        {"mood": "indicative", "tense": "impf", "correct": True},
                    ])
                return await count_rows(db, "practice_attempts"), await count_rows(db, "competency_stats")
            finally:
                await db.close()

        assert asyncio.run(scenario()) == (0, 0)
