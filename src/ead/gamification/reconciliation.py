"""Re-derive user aggregates from the ledger.

The ledger is the source of truth. Reconciliation credits achievement
rewards whose ledger entry never landed, then replays the ledger into the
cached total and activity counters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ead.db.models import PointTransaction, UserAchievement, UserPoints
from ead.gamification.achievements import AchievementDef, achievement_reward_key, credit_reward
from ead.gamification.ledger import COUNTER_COLUMNS, get_transaction_by_key, ledger_sum

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationResult:
    user_id: int
    rewards_credited: int
    previous_total: int
    ledger_total: int

    @property
    def drift(self) -> int:
        return self.ledger_total - self.previous_total


async def _credit_missing_rewards(db: AsyncSession, user_id: int, now: datetime) -> int:
    unlocks = (await db.execute(
        select(UserAchievement).where(UserAchievement.user_id == user_id)
    )).scalars().all()

    credited = 0
    for unlock in unlocks:
        achievement = AchievementDef.from_row(unlock.achievement)
        if achievement.points == 0:
            continue
        if await get_transaction_by_key(db, achievement_reward_key(achievement.id, user_id)) is not None:
            continue
        await credit_reward(db, user_id, achievement, now)
        credited += 1
        logger.info("Credited missing reward for achievement %s, user %s", achievement.id, user_id)
    return credited


async def _ledger_counters(db: AsyncSession, user_id: int) -> dict[str, int]:
    result = await db.execute(
        select(PointTransaction.reason, func.count(PointTransaction.id))
        .where(PointTransaction.user_id == user_id, PointTransaction.points > 0)
        .group_by(PointTransaction.reason)
    )
    per_reason = {row[0]: int(row[1]) for row in result}
    return {column: per_reason.get(reason.value, 0) for reason, column in COUNTER_COLUMNS.items()}


async def reconcile_user(db: AsyncSession, user_id: int, now: datetime | None = None) -> ReconciliationResult:
    """Reconcile one user and commit."""
    if now is None:
        now = datetime.now(timezone.utc)

    credited = await _credit_missing_rewards(db, user_id, now)

    cached = (await db.execute(
        select(UserPoints.total_points).where(UserPoints.user_id == user_id)
    )).scalar_one_or_none()
    total = await ledger_sum(db, user_id)

    if cached is None:
        await db.commit()
        return ReconciliationResult(user_id=user_id, rewards_credited=credited, previous_total=0, ledger_total=total)

    counters = await _ledger_counters(db, user_id)
    await db.execute(
        update(UserPoints)
        .where(UserPoints.user_id == user_id)
        .values(total_points=total, updated_at=now, **counters)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if cached != total:
        logger.warning("Corrected points drift for user %s: cached=%d ledger=%d", user_id, cached, total)

    return ReconciliationResult(
        user_id=user_id,
        rewards_credited=credited,
        previous_total=int(cached),
        ledger_total=total,
    )


async def reconcile_organization(db: AsyncSession, organization_id: int) -> list[ReconciliationResult]:
    user_ids = (await db.execute(
        select(UserPoints.user_id).where(UserPoints.organization_id == organization_id)
    )).scalars().all()
    return [await reconcile_user(db, uid) for uid in user_ids]


async def reconcile_all(db: AsyncSession) -> list[ReconciliationResult]:
    """Reconcile every user that has an aggregate row or an unlock."""
    with_points = set((await db.execute(select(UserPoints.user_id))).scalars().all())
    with_unlocks = set((await db.execute(select(UserAchievement.user_id).distinct())).scalars().all())
    results = [await reconcile_user(db, uid) for uid in sorted(with_points | with_unlocks)]
    drifted = sum(1 for r in results if r.drift or r.rewards_credited)
    logger.info("Reconciled %d users (%d corrected)", len(results), drifted)
    return results
