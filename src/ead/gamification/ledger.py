"""Point ledger: append-only transactions plus the per-user aggregate.

Every award goes through append_points(), which writes the immutable
point_transactions row and bumps user_points with a single atomic UPDATE,
so concurrent appends for one user never lose increments.
"""

from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ead.config import get_settings
from ead.db.models import PointTransaction, StudyStreak, User, UserPoints
from ead.db.upsert import insert_for
from ead.gamification.exceptions import InvalidDeltaError, UnknownReasonCodeError, UserNotFoundError
from ead.gamification.types import ReasonCode

logger = logging.getLogger(__name__)

# Reason -> activity counter bumped on user_points
COUNTER_COLUMNS: dict[ReasonCode, str] = {
    ReasonCode.LESSON_COMPLETE: "lessons_completed",
    ReasonCode.COURSE_COMPLETE: "courses_completed",
    ReasonCode.QUIZ_PASS: "quizzes_passed",
    ReasonCode.CERTIFICATE_EARNED: "certificates_earned",
}

MAX_PAGE_SIZE = 100


def parse_reason(reason: str) -> ReasonCode:
    """Coerce a raw reason string, rejecting anything outside ReasonCode."""
    try:
        return ReasonCode(reason)
    except ValueError as e:
        raise UnknownReasonCodeError(f"Unknown reason code: {reason!r}") from e


def validate_delta(points: object, *, allow_zero: bool = False) -> int:
    """Return points as int or raise InvalidDeltaError."""
    if isinstance(points, bool) or not isinstance(points, int):
        raise InvalidDeltaError(f"Point delta must be an integer, got {points!r}")
    if points == 0 and not allow_zero:
        raise InvalidDeltaError("Point delta must be non-zero")
    return points


async def get_user(db: AsyncSession, user_id: int) -> User:
    """Fetch a user or raise UserNotFoundError."""
    user = await db.get(User, user_id)
    if user is None:
        raise UserNotFoundError(f"User {user_id} not found")
    return user


async def get_or_create_user_points(
    db: AsyncSession,
    user_id: int,
    organization_id: int | None,
    now: datetime | None = None,
) -> UserPoints:
    """Get or lazily create the aggregate row with zeroed counters.

    Creation is an INSERT ... ON CONFLICT DO NOTHING so two first awards
    racing for the same user both end up on the single row. A streak
    recorded before the first award is carried onto the new row.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    streak = (await db.execute(
        select(StudyStreak.current_streak, StudyStreak.longest_streak).where(StudyStreak.user_id == user_id)
    )).one_or_none()

    stmt = insert_for(db, UserPoints).values(
        user_id=user_id,
        organization_id=organization_id,
        total_points=0,
        courses_completed=0,
        lessons_completed=0,
        quizzes_passed=0,
        certificates_earned=0,
        current_streak=streak.current_streak if streak else 0,
        longest_streak=streak.longest_streak if streak else 0,
        updated_at=now,
    ).on_conflict_do_nothing(index_elements=["user_id"])
    await db.execute(stmt)

    result = await db.execute(
        select(UserPoints)
        .where(UserPoints.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def get_transaction_by_key(db: AsyncSession, idempotency_key: str) -> PointTransaction | None:
    """Look up a ledger entry by its idempotency key."""
    result = await db.execute(
        select(PointTransaction).where(PointTransaction.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def append_points(
    db: AsyncSession,
    user_id: int,
    points: int,
    reason: ReasonCode | str,
    description: str,
    *,
    organization_id: int | None = None,
    idempotency_key: str | None = None,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> int | None:
    """Append a ledger entry and apply it to the user's aggregate.

    Returns the transaction id. A repeated idempotency_key returns the id of
    the original entry without touching the aggregate again. A zero delta
    raises InvalidDeltaError unless allow_zero_point_awards is set, in which
    case nothing is written and None is returned.

    Does not commit; the caller owns the transaction.
    """
    reason = parse_reason(reason)
    settings = get_settings()
    points = validate_delta(points, allow_zero=settings.allow_zero_point_awards)
    if points == 0:
        logger.debug("Ignoring zero-point award for user %s (%s)", user_id, reason)
        return None

    if now is None:
        now = datetime.now(timezone.utc)

    if idempotency_key is not None:
        existing = await get_transaction_by_key(db, idempotency_key)
        if existing is not None:
            return existing.id

    user = await get_user(db, user_id)
    if organization_id is None:
        organization_id = user.organization_id

    stmt = (
        insert_for(db, PointTransaction)
        .values(
            user_id=user_id,
            points=points,
            reason=reason.value,
            description=description,
            details=metadata,
            idempotency_key=idempotency_key,
            created_at=now,
        )
        .on_conflict_do_nothing(index_elements=["idempotency_key"])
        .returning(PointTransaction.id)
    )
    tx_id = (await db.execute(stmt)).scalar_one_or_none()
    if tx_id is None:
        # Lost a race with a concurrent append carrying the same key
        existing = await get_transaction_by_key(db, idempotency_key)  # type: ignore[arg-type]
        return existing.id if existing else None

    await get_or_create_user_points(db, user_id, organization_id, now)

    values: dict[str, Any] = {
        "total_points": UserPoints.total_points + points,
        "last_activity_at": now,
        "updated_at": now,
    }
    counter = COUNTER_COLUMNS.get(reason)
    if counter is not None and points > 0:
        values[counter] = getattr(UserPoints, counter) + 1

    await db.execute(
        update(UserPoints)
        .where(UserPoints.user_id == user_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.flush()

    logger.info("Appended %+d points for user %s (%s, tx=%s)", points, user_id, reason.value, tx_id)
    return tx_id


async def total_for(db: AsyncSession, user_id: int) -> int:
    """Cached aggregate total: the hot read path."""
    result = await db.execute(
        select(UserPoints.total_points).where(UserPoints.user_id == user_id)
    )
    total = result.scalar_one_or_none()
    return int(total or 0)


async def ledger_sum(db: AsyncSession, user_id: int) -> int:
    """Recompute the total from the ledger. Reconciliation path only."""
    result = await db.execute(
        select(func.coalesce(func.sum(PointTransaction.points), 0)).where(PointTransaction.user_id == user_id)
    )
    return int(result.scalar_one())


# ---------------------------------------------------------------------------
# History (keyset pagination)
# ---------------------------------------------------------------------------


def encode_cursor(created_at: datetime, tx_id: int) -> str:
    """Encode a cursor from the last transaction of a page."""
    payload = {"t": created_at.isoformat(), "id": tx_id}
    return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()


def decode_cursor(cursor: str) -> tuple[datetime, int]:
    """Decode a history cursor.

    Raises:
        ValueError: If cursor is malformed.
    """
    try:
        data = json.loads(base64.urlsafe_b64decode(cursor.encode()))
        return datetime.fromisoformat(data["t"]), int(data["id"])
    except Exception as e:
        msg = f"Invalid cursor: {e}"
        raise ValueError(msg) from e


async def history(
    db: AsyncSession,
    user_id: int,
    limit: int = 50,
    cursor: str | None = None,
) -> tuple[list[PointTransaction], str | None]:
    """Fetch a page of a user's ledger, newest first.

    Returns (transactions, next_cursor). next_cursor is None on the last page.
    """
    limit = max(1, min(limit, MAX_PAGE_SIZE))

    query = (
        select(PointTransaction)
        .where(PointTransaction.user_id == user_id)
        .order_by(PointTransaction.created_at.desc(), PointTransaction.id.desc())
    )
    if cursor is not None:
        cursor_time, cursor_id = decode_cursor(cursor)
        query = query.where(
            or_(
                PointTransaction.created_at < cursor_time,
                and_(PointTransaction.created_at == cursor_time, PointTransaction.id < cursor_id),
            )
        )

    # Fetch one extra to detect has_more
    rows = list((await db.execute(query.limit(limit + 1))).scalars().all())
    items = rows[:limit]

    next_cursor = None
    if len(rows) > limit and items:
        last = items[-1]
        next_cursor = encode_cursor(last.created_at, last.id)

    return items, next_cursor
