"""Organization leaderboard and user rank tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from ead.db.models import UserAchievement
from ead.gamification.leaderboard import get_leaderboard, get_user_rank
from ead.gamification.ledger import append_points
from ead.gamification.types import LeaderboardWindow, ReasonCode

NOW = datetime(2026, 3, 9, 12, 0, 0, tzinfo=timezone.utc)


async def _award(db: AsyncSession, user_id: int, points: int, at: datetime) -> None:
    await append_points(db, user_id, points, ReasonCode.ADMIN_ADJUSTMENT, "seed", now=at)


class TestAllTimeLeaderboard:
    @pytest.mark.asyncio
    async def test_ties_share_rank_earlier_activity_first(self, db_session: AsyncSession, org, make_user):
        a = await make_user("ana")
        b = await make_user("bia")
        c = await make_user("caio")
        await _award(db_session, a.id, 300, NOW - timedelta(hours=1))
        await _award(db_session, b.id, 300, NOW - timedelta(hours=2))
        await _award(db_session, c.id, 100, NOW)
        await db_session.commit()

        board = await get_leaderboard(db_session, org.id, now=NOW)

        # Bia reached 300 first, so she is listed ahead of Ana despite the higher id
        assert [(e.user_id, e.rank, e.total_points) for e in board] == [
            (b.id, 1, 300),
            (a.id, 1, 300),
            (c.id, 3, 100),
        ]
        assert board[0].display_name == "Bia"

    @pytest.mark.asyncio
    async def test_scoped_to_organization(self, db_session: AsyncSession, org, other_org, make_user):
        mine = await make_user("ana")
        theirs = await make_user("zeca", organization=other_org)
        await _award(db_session, mine.id, 10, NOW)
        await _award(db_session, theirs.id, 999, NOW)
        await db_session.commit()

        board = await get_leaderboard(db_session, org.id)
        assert [e.user_id for e in board] == [mine.id]

    @pytest.mark.asyncio
    async def test_inactive_users_hidden(self, db_session: AsyncSession, org, make_user):
        active = await make_user("ana")
        gone = await make_user("bia", is_active=False)
        await _award(db_session, active.id, 10, NOW)
        await _award(db_session, gone.id, 50, NOW)
        await db_session.commit()

        board = await get_leaderboard(db_session, org.id)
        assert [e.user_id for e in board] == [active.id]

    @pytest.mark.asyncio
    async def test_limit(self, db_session: AsyncSession, org, make_user):
        for i in range(5):
            user = await make_user(f"user{i}")
            await _award(db_session, user.id, 10 * (i + 1), NOW)
        await db_session.commit()

        board = await get_leaderboard(db_session, org.id, limit=3)
        assert [e.total_points for e in board] == [50, 40, 30]
        assert [e.rank for e in board] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_achievement_count(self, db_session: AsyncSession, org, catalog, make_user):
        user = await make_user("ana")
        await _award(db_session, user.id, 10, NOW)
        db_session.add(UserAchievement(user_id=user.id, achievement_id=1, unlocked_at=NOW))
        await db_session.commit()

        board = await get_leaderboard(db_session, org.id)
        assert board[0].achievement_count == 1

    @pytest.mark.asyncio
    async def test_empty_organization(self, db_session: AsyncSession, org):
        assert await get_leaderboard(db_session, org.id) == []


class TestWeeklyLeaderboard:
    @pytest.mark.asyncio
    async def test_counts_only_trailing_week(self, db_session: AsyncSession, org, make_user):
        veteran = await make_user("ana")
        newcomer = await make_user("bia")
        dormant = await make_user("caio")
        await _award(db_session, veteran.id, 500, NOW - timedelta(days=10))
        await _award(db_session, veteran.id, 20, NOW - timedelta(days=1))
        await _award(db_session, newcomer.id, 50, NOW - timedelta(hours=3))
        await _award(db_session, dormant.id, 900, NOW - timedelta(days=8))
        await db_session.commit()

        board = await get_leaderboard(db_session, org.id, window=LeaderboardWindow.WEEKLY, now=NOW)

        assert [(e.user_id, e.total_points, e.rank) for e in board] == [
            (newcomer.id, 50, 1),
            (veteran.id, 20, 2),
        ]

    @pytest.mark.asyncio
    async def test_net_negative_week_excluded(self, db_session: AsyncSession, org, make_user):
        user = await make_user("ana")
        await _award(db_session, user.id, 30, NOW - timedelta(days=2))
        await append_points(db_session, user.id, -50, ReasonCode.ADMIN_ADJUSTMENT, "fix", now=NOW - timedelta(days=1))
        await db_session.commit()

        assert await get_leaderboard(db_session, org.id, window="weekly", now=NOW) == []

    @pytest.mark.asyncio
    async def test_future_dated_entries_excluded(self, db_session: AsyncSession, org, make_user):
        skewed = await make_user("ana")
        current = await make_user("bia")
        await _award(db_session, skewed.id, 1000, NOW + timedelta(days=365))
        await _award(db_session, current.id, 10, NOW - timedelta(hours=1))
        await db_session.commit()

        board = await get_leaderboard(db_session, org.id, window=LeaderboardWindow.WEEKLY, now=NOW)

        assert [(e.user_id, e.total_points) for e in board] == [(current.id, 10)]


class TestUserRank:
    @pytest.mark.asyncio
    async def test_rank_counts_higher_scores(self, db_session: AsyncSession, make_user):
        a = await make_user("ana")
        b = await make_user("bia")
        c = await make_user("caio")
        await _award(db_session, a.id, 300, NOW)
        await _award(db_session, b.id, 300, NOW)
        await _award(db_session, c.id, 100, NOW)
        await db_session.commit()

        assert (await get_user_rank(db_session, a.id)).rank == 1
        assert (await get_user_rank(db_session, b.id)).rank == 1
        rank_c = await get_user_rank(db_session, c.id)
        assert rank_c.rank == 3
        assert rank_c.total_points == 100
        assert rank_c.total_users_in_organization == 3

    @pytest.mark.asyncio
    async def test_unscored_user(self, db_session: AsyncSession, make_user):
        user = await make_user("ana")
        await make_user("bia")

        rank = await get_user_rank(db_session, user.id)
        assert rank.rank == 0
        assert rank.total_points == 0
        assert rank.total_users_in_organization == 2
