"""Daily study streaks keyed by calendar date."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ead.db.models import StudyStreak, UserPoints
from ead.db.upsert import insert_for
from ead.gamification.exceptions import OutOfOrderActivityError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreakUpdate:
    """Result of touch_streak()."""

    current_streak: int
    longest_streak: int
    last_study_date: date
    changed: bool
    continued: bool  # True only when yesterday's streak was extended


def activity_date(dt: datetime) -> date:
    """Calendar date (UTC) of an activity timestamp. Naive timestamps are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).date()


def calendar_gap(last: date, current: date) -> int:
    """Whole calendar days from last to current (negative if current is earlier)."""
    return (current - last).days


async def get_streak(db: AsyncSession, user_id: int) -> StudyStreak | None:
    """Fetch the streak row for a user, if any."""
    result = await db.execute(select(StudyStreak).where(StudyStreak.user_id == user_id))
    return result.scalar_one_or_none()


async def _lock_streak(db: AsyncSession, user_id: int, now: datetime) -> StudyStreak:
    """Ensure the streak row exists and load it under a row lock.

    FOR UPDATE serializes concurrent touches for the same user on PostgreSQL.
    """
    stmt = insert_for(db, StudyStreak).values(
        user_id=user_id,
        current_streak=0,
        longest_streak=0,
        last_study_date=None,
        updated_at=now,
    ).on_conflict_do_nothing(index_elements=["user_id"])
    await db.execute(stmt)

    result = await db.execute(
        select(StudyStreak)
        .where(StudyStreak.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def touch_streak(
    db: AsyncSession,
    user_id: int,
    on_date: date,
    now: datetime | None = None,
) -> StreakUpdate:
    """Record qualifying activity on a calendar day.

    Same day again is a no-op, the next day extends the streak, a longer gap
    restarts it at 1. A date before the stored last study date raises
    OutOfOrderActivityError; backfills belong to reconciliation, not here.

    Does not award points and does not commit.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    streak = await _lock_streak(db, user_id, now)
    continued = False

    if streak.last_study_date is None:
        streak.current_streak = 1
    else:
        gap = calendar_gap(streak.last_study_date, on_date)
        if gap < 0:
            raise OutOfOrderActivityError(
                f"Activity on {on_date.isoformat()} is before last study date "
                f"{streak.last_study_date.isoformat()} for user {user_id}"
            )
        if gap == 0:
            return StreakUpdate(
                current_streak=streak.current_streak,
                longest_streak=streak.longest_streak,
                last_study_date=streak.last_study_date,
                changed=False,
                continued=False,
            )
        if gap == 1:
            streak.current_streak += 1
            continued = True
        else:
            logger.info("Streak reset for user %s after %d-day gap", user_id, gap)
            streak.current_streak = 1

    streak.longest_streak = max(streak.longest_streak, streak.current_streak)
    streak.last_study_date = on_date
    streak.updated_at = now

    # Mirror onto the leaderboard aggregate when it exists
    await db.execute(
        update(UserPoints)
        .where(UserPoints.user_id == user_id)
        .values(
            current_streak=streak.current_streak,
            longest_streak=streak.longest_streak,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.flush()

    return StreakUpdate(
        current_streak=streak.current_streak,
        longest_streak=streak.longest_streak,
        last_study_date=on_date,
        changed=True,
        continued=continued,
    )
