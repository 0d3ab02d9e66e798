"""Reconciliation arq worker: nightly replay of the ledger into user aggregates.

Import path for arq CLI: arq ead.workers.reconciliation.ReconciliationWorkerSettings
"""

from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession

from ead.config import get_settings
from ead.database import close_db, get_session, init_db
from ead.gamification.reconciliation import reconcile_all

logger = logging.getLogger(__name__)


async def reconciliation_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize the database engine on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url)
    logger.info("Reconciliation worker started")


async def reconciliation_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    await close_db()
    logger.info("Reconciliation worker shut down")


async def _get_db_session() -> AsyncSession:
    async for session in get_session():
        return session
    raise RuntimeError("Failed to get database session")


async def reconcile_points(ctx: dict) -> dict[str, int]:  # type: ignore[type-arg]
    """Scheduled arq task: credit missing rewards and correct cached totals."""
    db = await _get_db_session()
    try:
        results = await reconcile_all(db)
    finally:
        await db.close()

    summary = {
        "users": len(results),
        "drifted": sum(1 for r in results if r.drift),
        "rewards_credited": sum(r.rewards_credited for r in results),
    }
    logger.info(
        "Reconciliation complete: %d users, %d drifted, %d rewards credited",
        summary["users"], summary["drifted"], summary["rewards_credited"],
    )
    return summary


_settings = get_settings()


class ReconciliationWorkerSettings:
    """arq worker settings for the reconciliation job."""

    functions = [reconcile_points]
    cron_jobs = [
        cron(reconcile_points, hour=_settings.reconciliation_cron_hour, minute=0, run_at_startup=False),
    ]
    redis_settings = RedisSettings.from_dsn(_settings.arq_redis_url)
    on_startup = reconciliation_startup
    on_shutdown = reconciliation_shutdown
    max_jobs = 1
    job_timeout = 3600
