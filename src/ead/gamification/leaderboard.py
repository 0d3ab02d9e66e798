"""Leaderboards computed at read time from user_points and the ledger.

There is no persisted ranking state: every call ranks the current
aggregates, so a leaderboard can never drift from the ledger.

Ranking: points DESC, then earlier last_activity_at first (steady activity
beats a late burst), then user_id ASC. Ties on points share a rank and the
next distinct score skips by the tie count (1, 1, 3).
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ead.config import get_settings
from ead.db.models import PointTransaction, User, UserAchievement, UserPoints
from ead.gamification.ledger import get_user
from ead.gamification.types import LeaderboardWindow


@dataclass
class LeaderboardEntry:
    user_id: int
    display_name: str
    organization_id: int | None
    total_points: int
    courses_completed: int = 0
    current_streak: int = 0
    achievement_count: int = 0
    last_activity_at: datetime | None = None
    rank: int = 0


@dataclass(frozen=True)
class UserRank:
    rank: int  # 0 when the user has no points yet
    total_points: int
    total_users_in_organization: int


def _activity_key(dt: datetime | None) -> float:
    if dt is None:
        return math.inf
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def rank_entries(entries: Iterable[LeaderboardEntry]) -> list[LeaderboardEntry]:
    """Sort entries and assign standard competition ranks in place."""
    ordered = sorted(
        entries,
        key=lambda e: (-e.total_points, _activity_key(e.last_activity_at), e.user_id),
    )
    rank = 0
    previous: int | None = None
    for idx, entry in enumerate(ordered):
        if entry.total_points != previous:
            rank = idx + 1
            previous = entry.total_points
        entry.rank = rank
    return ordered


def clamp_limit(limit: int | None) -> int:
    settings = get_settings()
    if limit is None:
        return settings.leaderboard_default_limit
    return max(1, min(limit, settings.leaderboard_max_limit))


async def _achievement_counts(db: AsyncSession, user_ids: list[int]) -> dict[int, int]:
    if not user_ids:
        return {}
    result = await db.execute(
        select(UserAchievement.user_id, func.count(UserAchievement.id))
        .where(UserAchievement.user_id.in_(user_ids))
        .group_by(UserAchievement.user_id)
    )
    return {row[0]: int(row[1]) for row in result}


async def _all_time(db: AsyncSession, organization_id: int, limit: int) -> list[LeaderboardEntry]:
    result = await db.execute(
        select(UserPoints)
        .join(User, User.id == UserPoints.user_id)
        .where(
            UserPoints.organization_id == organization_id,
            User.is_active.is_(True),
        )
        .order_by(
            UserPoints.total_points.desc(),
            UserPoints.last_activity_at.asc().nulls_last(),
            UserPoints.user_id.asc(),
        )
        .limit(limit)
    )
    rows = result.scalars().all()
    counts = await _achievement_counts(db, [r.user_id for r in rows])

    return [
        LeaderboardEntry(
            user_id=r.user_id,
            display_name=r.user.display_name,
            organization_id=r.organization_id,
            total_points=r.total_points,
            courses_completed=r.courses_completed,
            current_streak=r.current_streak,
            achievement_count=counts.get(r.user_id, 0),
            last_activity_at=r.last_activity_at,
        )
        for r in rows
    ]


async def _weekly(
    db: AsyncSession, organization_id: int, limit: int, now: datetime,
) -> list[LeaderboardEntry]:
    since = now - timedelta(days=get_settings().leaderboard_weekly_days)
    week_points = func.sum(PointTransaction.points)

    result = await db.execute(
        select(PointTransaction.user_id, week_points.label("week_points"))
        .join(User, User.id == PointTransaction.user_id)
        .where(
            User.organization_id == organization_id,
            User.is_active.is_(True),
            PointTransaction.created_at >= since,
            PointTransaction.created_at <= now,
        )
        .group_by(PointTransaction.user_id)
        .having(week_points > 0)
    )
    scores = {row.user_id: int(row.week_points) for row in result}
    if not scores:
        return []

    user_ids = list(scores)
    users = {
        u.id: u for u in (await db.execute(select(User).where(User.id.in_(user_ids)))).scalars()
    }
    aggregates = {
        p.user_id: p
        for p in (await db.execute(select(UserPoints).where(UserPoints.user_id.in_(user_ids)))).scalars()
    }
    counts = await _achievement_counts(db, user_ids)

    entries = []
    for uid, score in scores.items():
        agg = aggregates.get(uid)
        entries.append(LeaderboardEntry(
            user_id=uid,
            display_name=users[uid].display_name,
            organization_id=organization_id,
            total_points=score,
            courses_completed=agg.courses_completed if agg else 0,
            current_streak=agg.current_streak if agg else 0,
            achievement_count=counts.get(uid, 0),
            last_activity_at=agg.last_activity_at if agg else None,
        ))
    return rank_entries(entries)[:limit]


async def get_leaderboard(
    db: AsyncSession,
    organization_id: int,
    limit: int | None = None,
    window: LeaderboardWindow | str = LeaderboardWindow.ALL_TIME,
    now: datetime | None = None,
) -> list[LeaderboardEntry]:
    """Ranked standings for one organization. Read-only."""
    window = LeaderboardWindow(window)
    limit = clamp_limit(limit)
    if now is None:
        now = datetime.now(timezone.utc)

    if window is LeaderboardWindow.WEEKLY:
        return await _weekly(db, organization_id, limit, now)
    return rank_entries(await _all_time(db, organization_id, limit))


async def get_user_rank(db: AsyncSession, user_id: int) -> UserRank:
    """Position of one user on their organization's all-time leaderboard."""
    user = await get_user(db, user_id)

    total_users = (await db.execute(
        select(func.count(User.id)).where(
            User.organization_id == user.organization_id,
            User.is_active.is_(True),
        )
    )).scalar_one()

    total_points = (await db.execute(
        select(UserPoints.total_points).where(UserPoints.user_id == user_id)
    )).scalar_one_or_none()
    if total_points is None:
        return UserRank(rank=0, total_points=0, total_users_in_organization=total_users)

    ahead = (await db.execute(
        select(func.count(UserPoints.user_id))
        .join(User, User.id == UserPoints.user_id)
        .where(
            UserPoints.organization_id == user.organization_id,
            User.is_active.is_(True),
            UserPoints.total_points > total_points,
        )
    )).scalar_one()

    return UserRank(
        rank=ahead + 1,
        total_points=int(total_points),
        total_users_in_organization=total_users,
    )
