"""Point ledger tests: append-only entries and the cached aggregate."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ead.database import get_session
from ead.db.models import PointTransaction, UserPoints
from ead.gamification.exceptions import InvalidDeltaError, UnknownReasonCodeError, UserNotFoundError
from ead.gamification.ledger import append_points, history, ledger_sum, total_for
from ead.gamification.types import ReasonCode

T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


async def _points(db: AsyncSession, user_id: int) -> UserPoints | None:
    result = await db.execute(
        select(UserPoints).where(UserPoints.user_id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _tx_count(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(select(func.count(PointTransaction.id)).where(PointTransaction.user_id == user_id))
    return result.scalar_one()


class TestAppendPoints:
    @pytest.mark.asyncio
    async def test_first_award_creates_aggregate(self, db_session: AsyncSession, make_user):
        user = await make_user("alice")
        tx_id = await append_points(db_session, user.id, 10, ReasonCode.LESSON_COMPLETE, "Aula concluída", now=T0)
        await db_session.commit()

        assert tx_id is not None
        points = await _points(db_session, user.id)
        assert points is not None
        assert points.total_points == 10
        assert points.lessons_completed == 1
        assert points.organization_id == user.organization_id
        assert points.last_activity_at is not None

    @pytest.mark.asyncio
    async def test_total_equals_ledger_sum(self, db_session: AsyncSession, make_user):
        user = await make_user("alice")
        for pts, reason in [(10, "lesson_complete"), (25, "quiz_pass"), (100, "course_complete"), (-15, "admin_adjustment")]:
            await append_points(db_session, user.id, pts, reason, "x", now=T0)
        await db_session.commit()

        assert await total_for(db_session, user.id) == 120
        assert await ledger_sum(db_session, user.id) == 120

    @pytest.mark.asyncio
    async def test_negative_correction_keeps_counters(self, db_session: AsyncSession, make_user):
        user = await make_user("alice")
        await append_points(db_session, user.id, 100, ReasonCode.COURSE_COMPLETE, "Curso concluído", now=T0)
        await append_points(db_session, user.id, -30, ReasonCode.ADMIN_ADJUSTMENT, "Correção", now=T0)
        await db_session.commit()

        points = await _points(db_session, user.id)
        assert points.total_points == 70
        assert points.courses_completed == 1
        assert await _tx_count(db_session, user.id) == 2

    @pytest.mark.asyncio
    async def test_total_may_go_negative(self, db_session: AsyncSession, make_user):
        user = await make_user("alice")
        await append_points(db_session, user.id, -40, ReasonCode.ADMIN_ADJUSTMENT, "Penalidade", now=T0)
        await db_session.commit()
        assert await total_for(db_session, user.id) == -40

    @pytest.mark.asyncio
    async def test_zero_delta_rejected(self, db_session: AsyncSession, make_user):
        user = await make_user("alice")
        with pytest.raises(InvalidDeltaError):
            await append_points(db_session, user.id, 0, ReasonCode.LESSON_COMPLETE, "x")
        assert await _tx_count(db_session, user.id) == 0

    @pytest.mark.asyncio
    async def test_zero_delta_noop_when_allowed(self, db_session: AsyncSession, make_user, monkeypatch):
        monkeypatch.setenv("EAD_ALLOW_ZERO_POINT_AWARDS", "true")
        from ead.config import get_settings
        get_settings.cache_clear()

        user = await make_user("alice")
        assert await append_points(db_session, user.id, 0, ReasonCode.LESSON_COMPLETE, "x") is None
        assert await _tx_count(db_session, user.id) == 0
        assert await _points(db_session, user.id) is None

    @pytest.mark.asyncio
    async def test_unknown_reason_rejected(self, db_session: AsyncSession, make_user):
        user = await make_user("alice")
        with pytest.raises(UnknownReasonCodeError):
            await append_points(db_session, user.id, 10, "daily_login", "x")
        assert await _tx_count(db_session, user.id) == 0

    @pytest.mark.asyncio
    async def test_unknown_user_rejected(self, db_session: AsyncSession, database):
        with pytest.raises(UserNotFoundError):
            await append_points(db_session, 99999, 10, ReasonCode.LESSON_COMPLETE, "x")

    @pytest.mark.asyncio
    async def test_idempotency_key_applies_once(self, db_session: AsyncSession, make_user):
        user = await make_user("alice")
        first = await append_points(
            db_session, user.id, 10, ReasonCode.LESSON_COMPLETE, "x", idempotency_key="lesson_complete:l1:1",
        )
        second = await append_points(
            db_session, user.id, 10, ReasonCode.LESSON_COMPLETE, "x", idempotency_key="lesson_complete:l1:1",
        )
        await db_session.commit()

        assert first == second
        assert await total_for(db_session, user.id) == 10
        assert (await _points(db_session, user.id)).lessons_completed == 1

    @pytest.mark.asyncio
    async def test_metadata_stored(self, db_session: AsyncSession, make_user):
        user = await make_user("alice")
        tx_id = await append_points(
            db_session, user.id, 5, ReasonCode.FORUM_PARTICIPATION, "x", metadata={"source_id": "post-9"},
        )
        await db_session.commit()
        tx = await db_session.get(PointTransaction, tx_id)
        assert tx.details == {"source_id": "post-9"}


async def _append_in_own_session(user_id: int, points: int, key: str) -> None:
    async for session in get_session():
        await append_points(
            session, user_id, points, ReasonCode.ADMIN_ADJUSTMENT, "x", idempotency_key=key, now=T0,
        )
        await session.commit()


class TestConcurrentAppends:
    @pytest.mark.asyncio
    async def test_parallel_sessions_lose_no_update(self, db_session: AsyncSession, make_user):
        user_id = (await make_user("alice")).id

        await asyncio.gather(*(_append_in_own_session(user_id, 7, f"bulk:{i}") for i in range(10)))

        assert await total_for(db_session, user_id) == 70
        assert await ledger_sum(db_session, user_id) == 70
        assert await _tx_count(db_session, user_id) == 10

    @pytest.mark.asyncio
    async def test_parallel_replays_apply_once(self, db_session: AsyncSession, make_user):
        user_id = (await make_user("alice")).id

        await asyncio.gather(*(_append_in_own_session(user_id, 7, "same-key") for _ in range(5)))

        assert await total_for(db_session, user_id) == 7
        assert await _tx_count(db_session, user_id) == 1


class TestHistory:
    @pytest.mark.asyncio
    async def test_pages_newest_first(self, db_session: AsyncSession, make_user):
        user = await make_user("alice")
        for i in range(5):
            await append_points(
                db_session, user.id, i + 1, ReasonCode.ADMIN_ADJUSTMENT, f"entry {i}", now=T0 + timedelta(minutes=i),
            )
        await db_session.commit()

        page1, cursor = await history(db_session, user.id, limit=2)
        assert [t.points for t in page1] == [5, 4]
        assert cursor is not None

        page2, cursor = await history(db_session, user.id, limit=2, cursor=cursor)
        assert [t.points for t in page2] == [3, 2]

        page3, cursor = await history(db_session, user.id, limit=2, cursor=cursor)
        assert [t.points for t in page3] == [1]
        assert cursor is None

    @pytest.mark.asyncio
    async def test_same_timestamp_ordered_by_id(self, db_session: AsyncSession, make_user):
        user = await make_user("alice")
        for pts in (1, 2, 3):
            await append_points(db_session, user.id, pts, ReasonCode.ADMIN_ADJUSTMENT, "x", now=T0)
        await db_session.commit()

        page1, cursor = await history(db_session, user.id, limit=2)
        page2, _ = await history(db_session, user.id, limit=2, cursor=cursor)
        assert [t.points for t in page1 + page2] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_only_own_entries(self, db_session: AsyncSession, make_user):
        alice = await make_user("alice")
        bob = await make_user("bob")
        await append_points(db_session, alice.id, 10, ReasonCode.LESSON_COMPLETE, "x")
        await append_points(db_session, bob.id, 20, ReasonCode.LESSON_COMPLETE, "x")
        await db_session.commit()

        items, _ = await history(db_session, alice.id)
        assert [t.points for t in items] == [10]
