"""FastAPI authentication dependencies."""

from __future__ import annotations

import jwt
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ead.auth.jwt import verify_token
from ead.database import get_session
from ead.db.models import User
from ead.gamification.types import Role

_bearer = HTTPBearer()

STAFF_ROLES = {Role.SUPERADMIN.value, Role.ADMIN.value, Role.PROFESSOR.value}


async def get_user_by_external_id(db: AsyncSession, external_id: str) -> User | None:
    """Fetch a user by identity-provider subject."""
    result = await db.execute(select(User).where(User.external_id == external_id))
    return result.scalar_one_or_none()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(_bearer),
    db: AsyncSession = Depends(get_session),
) -> User:
    """
    Verify the bearer token and return the User it belongs to.

    Raises 401 for bad tokens or unknown subjects, 403 for deactivated users.
    """
    try:
        payload = verify_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e

    user = await get_user_by_external_id(db, str(payload["sub"]))
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is deactivated")
    return user


def can_manage(actor: User, organization_id: int | None) -> bool:
    """True if actor may act on users of the given organization."""
    if actor.role == Role.SUPERADMIN.value:
        return True
    return actor.organization_id is not None and actor.organization_id == organization_id


async def get_admin_user(user: User = Depends(get_current_user)) -> User:
    """Admins and superadmins only."""
    if user.role not in {Role.SUPERADMIN.value, Role.ADMIN.value}:
        raise HTTPException(status_code=403, detail="Admin role required")
    return user
