"""Turns learning-domain events into points, streaks and achievements."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import structlog
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ead.config import Settings, get_settings
from ead.gamification.achievements import AchievementDef, WatchTimeProvider, evaluate_and_award
from ead.gamification.exceptions import AchievementCatalogEmptyError, GamificationError
from ead.gamification.ledger import append_points, get_transaction_by_key
from ead.gamification.seed import initialize_catalog
from ead.gamification.streaks import StreakUpdate, activity_date, touch_streak
from ead.gamification.types import ActivityKind, ReasonCode

logger = structlog.get_logger()


class ActivityEvent(BaseModel):
    """A learning event reported by the course/lesson/quiz/forum side."""

    user_id: int
    kind: ActivityKind
    source_id: str = Field(min_length=1, max_length=128)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    description: str | None = None

    @field_validator("occurred_at")
    @classmethod
    def not_in_future(cls, v: datetime) -> datetime:
        """Reject timestamps beyond server time plus the configured skew (naive = UTC)."""
        aware = v if v.tzinfo is not None else v.replace(tzinfo=timezone.utc)
        limit = datetime.now(timezone.utc) + timedelta(seconds=get_settings().event_max_future_skew_seconds)
        if aware > limit:
            msg = f"occurred_at {aware.isoformat()} is in the future"
            raise ValueError(msg)
        return v

    def idempotency_key(self) -> str:
        return f"{self.kind.value}:{self.source_id}:{self.user_id}"


@dataclass
class ActivityOutcome:
    transaction_id: int | None
    points_awarded: int
    duplicate: bool = False
    streak: StreakUpdate | None = None
    streak_bonus: int = 0
    unlocked: list[AchievementDef] = field(default_factory=list)


DEFAULT_DESCRIPTIONS: dict[ActivityKind, str] = {
    ActivityKind.LESSON_COMPLETE: "Aula concluída",
    ActivityKind.COURSE_COMPLETE: "Curso concluído",
    ActivityKind.QUIZ_PASS: "Quiz aprovado",
    ActivityKind.CERTIFICATE_EARNED: "Certificado emitido",
    ActivityKind.FORUM_PARTICIPATION: "Participação no fórum",
    ActivityKind.HELPFUL_ANSWER: "Resposta útil no fórum",
}


class GamificationService:
    """Orchestrates ledger, streak and achievement updates for one session."""

    def __init__(
        self,
        db: AsyncSession,
        redis: object = None,
        settings: Settings | None = None,
        watch_time: WatchTimeProvider | None = None,
    ) -> None:
        self.db = db
        self.redis = redis
        self.settings = settings or get_settings()
        self.watch_time = watch_time

    async def record_activity(self, event: ActivityEvent) -> ActivityOutcome:
        """Award points for an event, extend the streak, then evaluate achievements.

        Replaying an event (same kind/source/user) is a no-op. Ledger and
        streak errors propagate after nothing has been committed.
        """
        key = event.idempotency_key()
        existing = await get_transaction_by_key(self.db, key)
        if existing is not None:
            return ActivityOutcome(transaction_id=existing.id, points_awarded=0, duplicate=True)

        reason = event.kind.reason
        points = self.settings.points_for(reason.value)
        now = event.occurred_at
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        tx_id = await append_points(
            self.db,
            event.user_id,
            points,
            reason,
            event.description or DEFAULT_DESCRIPTIONS[event.kind],
            idempotency_key=key,
            metadata={"source_id": event.source_id},
            now=now,
        )

        day = activity_date(now)
        streak = await touch_streak(self.db, event.user_id, day, now=now)

        bonus = 0
        if streak.continued and self.settings.points_streak_bonus > 0:
            bonus = self.settings.points_streak_bonus * streak.current_streak
            await append_points(
                self.db,
                event.user_id,
                bonus,
                ReasonCode.STREAK_BONUS,
                f"Bônus de streak: {streak.current_streak} dias consecutivos",
                idempotency_key=f"streak_bonus:{event.user_id}:{day.isoformat()}",
                now=now,
            )

        await self.db.commit()

        unlocked = await self.evaluate(event.user_id, now=now)

        logger.info(
            "activity_recorded",
            user_id=event.user_id,
            kind=event.kind.value,
            points=points,
            streak=streak.current_streak,
            streak_bonus=bonus,
            unlocked=[a.name for a in unlocked],
        )
        return ActivityOutcome(
            transaction_id=tx_id,
            points_awarded=points,
            streak=streak,
            streak_bonus=bonus,
            unlocked=unlocked,
        )

    async def record_activity_safely(self, event: ActivityEvent) -> ActivityOutcome | None:
        """record_activity() for callers whose own action must not fail because of gamification."""
        try:
            return await self.record_activity(event)
        except (GamificationError, SQLAlchemyError) as exc:
            await self.db.rollback()
            logger.warning(
                "gamification_failed",
                user_id=event.user_id,
                kind=event.kind.value,
                source_id=event.source_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    async def evaluate(self, user_id: int, now: datetime | None = None) -> list[AchievementDef]:
        """Evaluate achievements, seeding the catalog first if it is empty."""
        try:
            return await evaluate_and_award(
                self.db, user_id, watch_time=self.watch_time, redis=self.redis, now=now,
            )
        except AchievementCatalogEmptyError:
            logger.info("achievement_catalog_empty_seeding")
            await initialize_catalog(self.db)
            return await evaluate_and_award(
                self.db, user_id, watch_time=self.watch_time, redis=self.redis, now=now,
            )

    async def adjust_points(
        self,
        user_id: int,
        points: int,
        description: str,
        actor_id: int | None = None,
    ) -> int | None:
        """Manual correction by an admin. Negative deltas are allowed."""
        tx_id = await append_points(
            self.db,
            user_id,
            points,
            ReasonCode.ADMIN_ADJUSTMENT,
            description,
            metadata={"actor_id": actor_id} if actor_id is not None else None,
        )
        await self.db.commit()
        logger.info("points_adjusted", user_id=user_id, points=points, actor_id=actor_id, tx_id=tx_id)
        return tx_id
