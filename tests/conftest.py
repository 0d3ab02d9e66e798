"""Shared test fixtures.

Tests run against a throwaway SQLite file per test (aiosqlite), created from
the ORM metadata. The gamification code paths that differ by dialect
(ON CONFLICT, FOR UPDATE) go through ead.db.upsert and are no-ops or
equivalents on SQLite.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Awaitable, Callable, Iterator
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

os.environ.setdefault("EAD_REDIS_URL", "")
os.environ.setdefault("EAD_LOG_FORMAT", "console")
os.environ.setdefault("EAD_JWT_SECRET", "test-secret-with-enough-entropy-for-hs256")

from ead.auth.jwt import create_access_token  # noqa: E402
from ead.config import get_settings  # noqa: E402
from ead.database import close_db, get_engine, get_session, init_db  # noqa: E402
from ead.db.models import Base, Organization, User  # noqa: E402
from ead.gamification.seed import initialize_catalog  # noqa: E402

UserFactory = Callable[..., Awaitable[User]]


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    """Tests that monkeypatch EAD_* variables get a fresh Settings object."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[str, None]:
    """Initialize the global engine on a fresh SQLite file and create the schema."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'ead_test.db'}"
    await init_db(url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield url
    await close_db()


@pytest_asyncio.fixture
async def db_session(database: str) -> AsyncGenerator[AsyncSession, None]:
    """A direct database session for service calls and assertions."""
    async for session in get_session():
        yield session
        break


@pytest_asyncio.fixture
async def catalog(db_session: AsyncSession) -> int:
    """Seed the default achievement catalog."""
    return await initialize_catalog(db_session)


@pytest_asyncio.fixture
async def org(db_session: AsyncSession) -> Organization:
    organization = Organization(
        name="Escola Alfa", slug="escola-alfa", is_active=True, created_at=datetime.now(timezone.utc),
    )
    db_session.add(organization)
    await db_session.commit()
    return organization


@pytest_asyncio.fixture
async def other_org(db_session: AsyncSession) -> Organization:
    organization = Organization(
        name="Escola Beta", slug="escola-beta", is_active=True, created_at=datetime.now(timezone.utc),
    )
    db_session.add(organization)
    await db_session.commit()
    return organization


@pytest_asyncio.fixture
async def make_user(db_session: AsyncSession, org: Organization) -> UserFactory:
    """Factory: await make_user("alice", role="student", organization=org)."""

    async def _make(
        external_id: str,
        *,
        role: str = "student",
        organization: Organization | None = None,
        no_organization: bool = False,
        is_active: bool = True,
    ) -> User:
        organization_id = None if no_organization else (organization or org).id
        user = User(
            external_id=external_id,
            display_name=external_id.capitalize(),
            role=role,
            organization_id=organization_id,
            is_active=is_active,
            created_at=datetime.now(timezone.utc),
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    """Bearer header for a user, signed the way the identity provider signs."""

    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user.external_id)}"}

    return _headers


@pytest_asyncio.fixture
async def client(database: str) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the app; the engine comes from the database fixture."""
    from ead.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
