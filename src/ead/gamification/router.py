"""Gamification API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ead.auth.dependencies import STAFF_ROLES, can_manage, get_admin_user, get_current_user
from ead.database import get_session
from ead.db.models import Achievement, User, UserPoints
from ead.dependencies import get_gamification_service, get_redis_dep
from ead.gamification.achievements import evaluate_and_award, list_catalog, list_user_achievements
from ead.gamification.events import ActivityEvent, GamificationService
from ead.gamification.leaderboard import get_leaderboard, get_user_rank
from ead.gamification.ledger import get_user, history, total_for
from ead.gamification.schemas import (
    AchievementResponse,
    ActivityOutcomeResponse,
    AdjustPointsRequest,
    AdjustPointsResponse,
    AllAchievementsResponse,
    EvaluateResponse,
    LeaderboardEntryResponse,
    LeaderboardResponse,
    PointHistoryResponse,
    PointsResponse,
    PointTransactionResponse,
    StreakResponse,
    UserAchievementResponse,
    UserAchievementsResponse,
    UserRankResponse,
)
from ead.gamification.streaks import get_streak
from ead.gamification.types import LeaderboardWindow

router = APIRouter(prefix="/api/v1", tags=["Gamification"])


# ── Public endpoints ──


@router.get("/achievements", response_model=AllAchievementsResponse)
async def list_achievements(db: AsyncSession = Depends(get_session)):
    """Get the achievement catalog."""
    catalog = await list_catalog(db)
    return AllAchievementsResponse(
        achievements=[AchievementResponse.model_validate(a) for a in catalog],
    )


# ── Authenticated endpoints ──


@router.get("/users/me/achievements", response_model=UserAchievementsResponse)
async def get_my_achievements(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Get current user's unlocked achievements."""
    unlocked = await list_user_achievements(db, user.id)
    total_available = await db.execute(select(func.count()).select_from(Achievement))

    return UserAchievementsResponse(
        unlocked=[UserAchievementResponse.model_validate(ua) for ua in unlocked],
        total_available=total_available.scalar_one(),
        total_unlocked=len(unlocked),
    )


@router.post("/users/me/achievements/evaluate", response_model=EvaluateResponse)
async def evaluate_my_achievements(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Unlock any achievements the current user now qualifies for."""
    newly = await evaluate_and_award(db, user.id, redis=redis)
    return EvaluateResponse(newly_unlocked=[AchievementResponse.model_validate(a) for a in newly])


@router.get("/users/me/points", response_model=PointsResponse)
async def get_my_points(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Aggregate stats plus position in the organization."""
    result = await db.execute(select(UserPoints).where(UserPoints.user_id == user.id))
    points = result.scalar_one_or_none()
    rank = await get_user_rank(db, user.id)

    if points is None:
        return PointsResponse(total_points=0, rank=0, total_users=rank.total_users_in_organization)

    return PointsResponse(
        total_points=points.total_points,
        courses_completed=points.courses_completed,
        lessons_completed=points.lessons_completed,
        quizzes_passed=points.quizzes_passed,
        certificates_earned=points.certificates_earned,
        current_streak=points.current_streak,
        longest_streak=points.longest_streak,
        last_activity_at=points.last_activity_at,
        rank=rank.rank,
        total_users=rank.total_users_in_organization,
    )


@router.get("/users/me/points/history", response_model=PointHistoryResponse)
async def get_my_point_history(
    limit: int = Query(50, ge=1, le=100),
    cursor: str | None = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Ledger history, newest first (cursor-paginated)."""
    try:
        items, next_cursor = await history(db, user.id, limit=limit, cursor=cursor)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return PointHistoryResponse(
        transactions=[PointTransactionResponse.model_validate(t) for t in items],
        next_cursor=next_cursor,
    )


@router.get("/users/me/streak", response_model=StreakResponse)
async def get_my_streak(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Get current study streak."""
    streak = await get_streak(db, user.id)
    if streak is None:
        return StreakResponse()
    return StreakResponse(
        current_streak=streak.current_streak,
        longest_streak=streak.longest_streak,
        last_study_date=streak.last_study_date,
    )


@router.get("/users/me/rank", response_model=UserRankResponse)
async def get_my_rank(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Position on the organization's all-time leaderboard."""
    rank = await get_user_rank(db, user.id)
    return UserRankResponse(
        rank=rank.rank,
        total_points=rank.total_points,
        total_users_in_organization=rank.total_users_in_organization,
    )


@router.get("/organizations/{organization_id}/leaderboard", response_model=LeaderboardResponse)
async def get_organization_leaderboard(
    organization_id: int,
    window: LeaderboardWindow = Query(LeaderboardWindow.ALL_TIME),
    limit: int | None = Query(None, ge=1),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Ranked standings for an organization."""
    if not can_manage(user, organization_id):
        raise HTTPException(status_code=403, detail="Not a member of this organization")

    entries = await get_leaderboard(db, organization_id, limit=limit, window=window)
    return LeaderboardResponse(
        organization_id=organization_id,
        window=window,
        entries=[
            LeaderboardEntryResponse(
                rank=e.rank,
                user_id=e.user_id,
                display_name=e.display_name,
                total_points=e.total_points,
                courses_completed=e.courses_completed,
                current_streak=e.current_streak,
                achievement_count=e.achievement_count,
                is_current_user=e.user_id == user.id,
            )
            for e in entries
        ],
    )


# ── Event ingest and staff endpoints ──


@router.post("/events", response_model=ActivityOutcomeResponse)
async def ingest_event(
    event: ActivityEvent,
    actor: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    service: GamificationService = Depends(get_gamification_service),
):
    """Record a learning event. Students may only report their own activity."""
    if event.user_id != actor.id:
        if actor.role not in STAFF_ROLES:
            raise HTTPException(status_code=403, detail="Staff role required")
        target = await get_user(db, event.user_id)
        if not can_manage(actor, target.organization_id):
            raise HTTPException(status_code=403, detail="User belongs to another organization")

    outcome = await service.record_activity(event)
    return ActivityOutcomeResponse(
        transaction_id=outcome.transaction_id,
        points_awarded=outcome.points_awarded,
        duplicate=outcome.duplicate,
        current_streak=outcome.streak.current_streak if outcome.streak else None,
        streak_bonus=outcome.streak_bonus,
        unlocked=[AchievementResponse.model_validate(a) for a in outcome.unlocked],
    )


@router.post("/admin/points/adjust", response_model=AdjustPointsResponse)
async def adjust_points(
    body: AdjustPointsRequest,
    actor: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_session),
    service: GamificationService = Depends(get_gamification_service),
):
    """Manual point correction (negative deltas allowed)."""
    target = await get_user(db, body.user_id)
    if not can_manage(actor, target.organization_id):
        raise HTTPException(status_code=403, detail="User belongs to another organization")

    tx_id = await service.adjust_points(
        body.user_id, body.points, body.description, actor_id=actor.id,
    )
    return AdjustPointsResponse(transaction_id=tx_id, total_points=await total_for(db, body.user_id))
