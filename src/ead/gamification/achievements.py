"""Achievement evaluation and unlocking.

Each AchievementType has exactly one predicate in PREDICATES; the module
refuses to import if a type is missing one. Unlocks are permanent: a later
drop in streak or rank never revokes an achievement.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ead.db.models import Achievement, UserAchievement, UserPoints
from ead.db.upsert import insert_for
from ead.gamification.exceptions import AchievementCatalogEmptyError, GamificationError
from ead.gamification.leaderboard import get_user_rank
from ead.gamification.ledger import append_points, get_user
from ead.gamification.streaks import get_streak
from ead.gamification.types import AchievementType, ReasonCode

logger = logging.getLogger(__name__)

# (db, user_id) -> minutes of lesson video watched, owned by the lesson-progress side
WatchTimeProvider = Callable[[AsyncSession, int], Awaitable[int]]


@dataclass(frozen=True)
class AchievementDef:
    """Detached snapshot of an achievement row."""

    id: int
    name: str
    description: str
    icon: str
    type: str
    requirement: int
    points: int

    @classmethod
    def from_row(cls, row: Achievement) -> AchievementDef:
        return cls(
            id=row.id,
            name=row.name,
            description=row.description,
            icon=row.icon,
            type=row.type,
            requirement=row.requirement,
            points=row.points,
        )


@dataclass(frozen=True)
class AchievementStats:
    """Everything the predicates look at, gathered once per evaluation."""

    total_points: int = 0
    courses_completed: int = 0
    lessons_completed: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    watched_minutes: int = 0
    rank: int = 0  # 0 = not ranked


Predicate = Callable[[AchievementStats, int], bool]


def _course_complete(stats: AchievementStats, requirement: int) -> bool:
    return stats.courses_completed >= requirement


def _streak(stats: AchievementStats, requirement: int) -> bool:
    # longest_streak is monotonic, so a broken streak never delays an earned unlock
    return stats.longest_streak >= requirement


def _time_spent(stats: AchievementStats, requirement: int) -> bool:
    return stats.watched_minutes >= requirement


def _first_lesson(stats: AchievementStats, requirement: int) -> bool:
    return stats.lessons_completed >= requirement


def _top_student(stats: AchievementStats, requirement: int) -> bool:
    return stats.total_points > 0 and 0 < stats.rank <= requirement


PREDICATES: dict[AchievementType, Predicate] = {
    AchievementType.COURSE_COMPLETE: _course_complete,
    AchievementType.STREAK: _streak,
    AchievementType.TIME_SPENT: _time_spent,
    AchievementType.FIRST_LESSON: _first_lesson,
    AchievementType.TOP_STUDENT: _top_student,
}

_missing = set(AchievementType) - set(PREDICATES)
if _missing:
    raise RuntimeError(f"No predicate for achievement types: {sorted(_missing)}")


def is_satisfied(achievement: AchievementDef, stats: AchievementStats) -> bool:
    """Apply the type's predicate. Rows with an unknown type never unlock."""
    try:
        kind = AchievementType(achievement.type)
    except ValueError:
        logger.error("Achievement %s has unknown type %r", achievement.id, achievement.type)
        return False
    return PREDICATES[kind](stats, achievement.requirement)


def achievement_reward_key(achievement_id: int, user_id: int) -> str:
    """Idempotency key of the ledger entry crediting an achievement's reward."""
    return f"achievement:{achievement_id}:{user_id}"


async def list_catalog(db: AsyncSession) -> list[Achievement]:
    result = await db.execute(select(Achievement).order_by(Achievement.id))
    return list(result.scalars().all())


async def list_user_achievements(db: AsyncSession, user_id: int) -> list[UserAchievement]:
    result = await db.execute(
        select(UserAchievement)
        .where(UserAchievement.user_id == user_id)
        .order_by(UserAchievement.unlocked_at.desc())
    )
    return list(result.scalars().all())


async def collect_stats(
    db: AsyncSession,
    user_id: int,
    pending_types: set[AchievementType],
    watch_time: WatchTimeProvider | None = None,
) -> AchievementStats:
    """Build the stats snapshot. Rank and watch time are only fetched when a pending achievement needs them."""
    points = (await db.execute(
        select(UserPoints)
        .where(UserPoints.user_id == user_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    streak = await get_streak(db, user_id)

    watched = 0
    if AchievementType.TIME_SPENT in pending_types and watch_time is not None:
        watched = await watch_time(db, user_id)

    rank = 0
    if AchievementType.TOP_STUDENT in pending_types and points is not None and points.total_points > 0:
        rank = (await get_user_rank(db, user_id)).rank

    return AchievementStats(
        total_points=points.total_points if points else 0,
        courses_completed=points.courses_completed if points else 0,
        lessons_completed=points.lessons_completed if points else 0,
        current_streak=streak.current_streak if streak else 0,
        longest_streak=streak.longest_streak if streak else 0,
        watched_minutes=watched,
        rank=rank,
    )


async def _grant(db: AsyncSession, user_id: int, achievement: AchievementDef, now: datetime) -> bool:
    """Insert the unlock row. Returns False when it already existed."""
    stmt = (
        insert_for(db, UserAchievement)
        .values(user_id=user_id, achievement_id=achievement.id, unlocked_at=now)
        .on_conflict_do_nothing(index_elements=["user_id", "achievement_id"])
        .returning(UserAchievement.id)
    )
    return (await db.execute(stmt)).scalar_one_or_none() is not None


async def credit_reward(
    db: AsyncSession,
    user_id: int,
    achievement: AchievementDef,
    now: datetime | None = None,
) -> int | None:
    """Append the achievement's reward to the ledger (idempotent per user/achievement)."""
    if achievement.points == 0:
        return None
    return await append_points(
        db,
        user_id,
        achievement.points,
        ReasonCode.ACHIEVEMENT_UNLOCKED,
        f'Conquista desbloqueada: "{achievement.name}"',
        idempotency_key=achievement_reward_key(achievement.id, user_id),
        metadata={"achievement_id": achievement.id},
        now=now,
    )


async def evaluate_and_award(
    db: AsyncSession,
    user_id: int,
    *,
    watch_time: WatchTimeProvider | None = None,
    redis: object = None,
    now: datetime | None = None,
) -> list[AchievementDef]:
    """Unlock every achievement the user now qualifies for.

    Returns only the achievements unlocked by this call. Each unlock is
    committed before its reward is credited; a failed credit is rolled back
    and logged, and reconcile_user() credits it later.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    await get_user(db, user_id)

    catalog = [AchievementDef.from_row(a) for a in await list_catalog(db)]
    if not catalog:
        raise AchievementCatalogEmptyError("Achievement catalog is empty; call initialize_catalog() first")

    unlocked_ids = set((await db.execute(
        select(UserAchievement.achievement_id).where(UserAchievement.user_id == user_id)
    )).scalars().all())
    pending = [a for a in catalog if a.id not in unlocked_ids]
    if not pending:
        return []

    pending_types = set()
    for a in pending:
        try:
            pending_types.add(AchievementType(a.type))
        except ValueError:
            continue
    stats = await collect_stats(db, user_id, pending_types, watch_time)

    newly_unlocked: list[AchievementDef] = []
    for achievement in pending:
        if not is_satisfied(achievement, stats):
            continue
        if not await _grant(db, user_id, achievement, now):
            continue  # concurrent evaluation got there first
        await db.commit()
        newly_unlocked.append(achievement)
        logger.info("User %s unlocked achievement %s (%s)", user_id, achievement.id, achievement.name)

        try:
            await credit_reward(db, user_id, achievement, now)
            await db.commit()
        except (GamificationError, SQLAlchemyError):
            await db.rollback()
            logger.warning(
                "Reward credit failed for achievement %s, user %s; left for reconciliation",
                achievement.id, user_id, exc_info=True,
            )

        await _publish_unlock(redis, user_id, achievement)

    return newly_unlocked


async def _publish_unlock(redis: object, user_id: int, achievement: AchievementDef) -> None:
    """Announce an unlock on Redis pub/sub for live dashboards."""
    if redis is None:
        return
    try:
        await redis.publish(  # type: ignore[attr-defined]
            "pubsub:achievement_unlocked",
            json.dumps({
                "user_id": user_id,
                "achievement_id": achievement.id,
                "name": achievement.name,
                "icon": achievement.icon,
                "points": achievement.points,
            }),
        )
    except Exception:
        logger.warning("Failed to publish achievement_unlocked", exc_info=True)
