"""Reconciliation tests: the ledger wins over the cached aggregate."""

from __future__ import annotations

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ead.db.models import UserAchievement, UserPoints
from ead.gamification.ledger import append_points, ledger_sum, total_for
from ead.gamification.reconciliation import reconcile_all, reconcile_organization, reconcile_user
from ead.gamification.types import ReasonCode
from ead.workers.reconciliation import reconcile_points


async def _corrupt(db: AsyncSession, user_id: int, **values) -> None:
    await db.execute(
        update(UserPoints).where(UserPoints.user_id == user_id).values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


class TestReconcileUser:
    @pytest.mark.asyncio
    async def test_resets_total_to_ledger_sum(self, db_session: AsyncSession, make_user):
        user = await make_user("ana")
        await append_points(db_session, user.id, 100, ReasonCode.COURSE_COMPLETE, "x")
        await append_points(db_session, user.id, -10, ReasonCode.ADMIN_ADJUSTMENT, "x")
        await db_session.commit()
        await _corrupt(db_session, user.id, total_points=999)

        result = await reconcile_user(db_session, user.id)

        assert result.previous_total == 999
        assert result.ledger_total == 90
        assert result.drift == -909
        assert await total_for(db_session, user.id) == await ledger_sum(db_session, user.id) == 90

    @pytest.mark.asyncio
    async def test_replays_counters(self, db_session: AsyncSession, make_user):
        user = await make_user("ana")
        for i in range(3):
            await append_points(db_session, user.id, 10, ReasonCode.LESSON_COMPLETE, "x", idempotency_key=f"l{i}")
        await append_points(db_session, user.id, 25, ReasonCode.QUIZ_PASS, "x")
        await db_session.commit()
        await _corrupt(db_session, user.id, lessons_completed=0, quizzes_passed=7)

        await reconcile_user(db_session, user.id)

        points = (await db_session.execute(
            select(UserPoints).where(UserPoints.user_id == user.id).execution_options(populate_existing=True)
        )).scalar_one()
        assert points.lessons_completed == 3
        assert points.quizzes_passed == 1

    @pytest.mark.asyncio
    async def test_consistent_user_has_no_drift(self, db_session: AsyncSession, make_user):
        user = await make_user("ana")
        await append_points(db_session, user.id, 10, ReasonCode.LESSON_COMPLETE, "x")
        await db_session.commit()

        result = await reconcile_user(db_session, user.id)
        assert result.drift == 0
        assert result.rewards_credited == 0

    @pytest.mark.asyncio
    async def test_reconcile_is_idempotent(self, db_session: AsyncSession, catalog, make_user):
        user = await make_user("ana")
        db_session.add(UserAchievement(user_id=user.id, achievement_id=1, unlocked_at=user.created_at))
        await db_session.commit()

        first = await reconcile_user(db_session, user.id)
        second = await reconcile_user(db_session, user.id)

        assert first.rewards_credited == 1
        assert second.rewards_credited == 0
        assert await total_for(db_session, user.id) == 10


class TestReconcileMany:
    @pytest.mark.asyncio
    async def test_organization_scope(self, db_session: AsyncSession, other_org, make_user):
        mine = await make_user("ana")
        theirs = await make_user("zeca", organization=other_org)
        await append_points(db_session, mine.id, 10, ReasonCode.LESSON_COMPLETE, "x")
        await append_points(db_session, theirs.id, 10, ReasonCode.LESSON_COMPLETE, "x")
        await db_session.commit()

        results = await reconcile_organization(db_session, mine.organization_id)
        assert [r.user_id for r in results] == [mine.id]

    @pytest.mark.asyncio
    async def test_all_includes_unlock_only_users(self, db_session: AsyncSession, catalog, make_user):
        scored = await make_user("ana")
        unlocked_only = await make_user("bia")
        await append_points(db_session, scored.id, 10, ReasonCode.LESSON_COMPLETE, "x")
        db_session.add(UserAchievement(user_id=unlocked_only.id, achievement_id=2, unlocked_at=unlocked_only.created_at))
        await db_session.commit()

        results = await reconcile_all(db_session)

        assert {r.user_id for r in results} == {scored.id, unlocked_only.id}
        assert await total_for(db_session, unlocked_only.id) == 100

    @pytest.mark.asyncio
    async def test_worker_task_summary(self, db_session: AsyncSession, make_user):
        user = await make_user("ana")
        await append_points(db_session, user.id, 10, ReasonCode.LESSON_COMPLETE, "x")
        await db_session.commit()
        await _corrupt(db_session, user.id, total_points=0)

        summary = await reconcile_points({})

        assert summary == {"users": 1, "drifted": 1, "rewards_credited": 0}
        assert await total_for(db_session, user.id) == 10
