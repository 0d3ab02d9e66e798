"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ead.database import get_session
from ead.gamification.events import GamificationService
from ead.redis_client import get_redis as _get_redis


async def get_redis_dep() -> AsyncGenerator[object, None]:
    """Yield the Redis client (None when Redis is disabled)."""
    yield _get_redis()


async def get_gamification_service(
    db: AsyncSession = Depends(get_session),  # noqa: B008
    redis: object = Depends(get_redis_dep),  # noqa: B008
) -> GamificationService:
    """Per-request orchestrator sharing the request's session."""
    return GamificationService(db, redis)
