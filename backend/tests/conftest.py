"""Pytest configuration and fixtures for backend tests.

Database tests run against in-memory SQLite (aiosqlite) with a static pool,
so every session in a test sees the same connection.
"""

import os
from collections.abc import AsyncGenerator
from dataclasses import dataclass

import pytest
import pytest_asyncio
from fastapi import APIRouter, Depends, FastAPI
from httpx import ASGITransport, AsyncClient, Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.pop("AUTH_COOKIE_SECURE", None)
os.environ.pop("ADMIN_USERNAME", None)
os.environ.pop("ADMIN_PASSWORD", None)

TEST_JWT_SECRET = "t3st-Bearer-S1gning-Key/with+Enough_Entropy#2026-LTCMS"
TEST_CSRF_SECRET = "csrf-Test-Secret-0123456789-abcdefXYZ"
TEST_LOGIN_ATTEMPT_KEY = b"test-login-attempt-key"

TEST_ADMIN_USERNAME = "admin"
TEST_ADMIN_PASSWORD = "correct"
TEST_USER_USERNAME = "alice"
TEST_USER_PASSWORD = "alice-password-1"

# Cost 4 keeps seeded hashes fast to verify
TEST_BCRYPT_ROUNDS = 4


@dataclass
class LoggedIn:
    """Credentials returned by a successful login."""

    bearer: str
    csrf: str
    body: dict

    def cookie_header(self) -> str:
        return f"ltcms_session={self.bearer}; ltcms_csrf={self.csrf}"

    def mutation_headers(self) -> dict[str, str]:
        """Headers for a cookie-authenticated, CSRF-protected request."""
        return {"Cookie": self.cookie_header(), "x-csrf-token": self.csrf}


def parse_set_cookies(response: Response) -> dict[str, str]:
    """Map cookie name to the raw Set-Cookie header value."""
    cookies = {}
    for header in response.headers.get_list("set-cookie"):
        name = header.split("=", 1)[0]
        cookies[name] = header
    return cookies


def cookie_value(set_cookie: str) -> str:
    return set_cookie.split(";", 1)[0].split("=", 1)[1]


# --- Security ---


@pytest.fixture
def security_context():
    from ltcms.services.secrets import SecurityContext

    return SecurityContext(
        bearer_secret=TEST_JWT_SECRET.encode(),
        csrf_secret=TEST_CSRF_SECRET.encode(),
        cookies_secure=True,
        login_attempt_key=TEST_LOGIN_ATTEMPT_KEY,
    )


# --- Database Fixtures ---


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create an in-memory SQLite engine with all tables."""
    from ltcms.core.database import Base
    from ltcms.models import LoginAttempt, TokenBlacklist, User  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# --- Application ---


def _build_probe_router() -> APIRouter:
    """Routes standing in for the CMS resources behind the auth pipeline."""
    from ltcms.api.deps import (
        AuthenticatedRequest,
        CsrfCheckedRequest,
        get_authenticated_request,
        get_csrf_checked_request,
        require_admin,
    )

    router = APIRouter()

    @router.get("/api/tutorials")
    async def list_tutorials() -> dict:
        return {"tutorials": []}

    @router.post("/api/tutorials")
    async def create_tutorial(checked: CsrfCheckedRequest = Depends(require_admin)) -> dict:
        return {"created_by": checked.identity.subject}

    @router.get("/api/profile")
    async def read_profile(
        identity: AuthenticatedRequest = Depends(get_authenticated_request),
    ) -> dict:
        return {"username": identity.subject, "source": identity.source}

    @router.put("/api/profile")
    async def update_profile(
        checked: CsrfCheckedRequest = Depends(get_csrf_checked_request),
    ) -> dict:
        return {"username": checked.identity.subject}

    return router


@pytest.fixture
def app(security_context, session_factory) -> FastAPI:
    from ltcms.core.database import get_db
    from ltcms.main import create_app

    application = create_app(security_context=security_context)
    application.include_router(_build_probe_router())

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

    application.dependency_overrides[get_db] = override_get_db
    return application


@pytest_asyncio.fixture(scope="function")
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with database override."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# --- Test Factories ---


@pytest.fixture
def user_factory(session_factory):
    """Factory for creating users with a bcrypt password hash."""
    from ltcms.models.user import User
    from ltcms.services.passwords import hash_password

    async def _create_user(username: str, password: str, role: str = "user") -> User:
        async with session_factory() as session:
            user = User(
                username=username,
                password_hash=hash_password(password, rounds=TEST_BCRYPT_ROUNDS),
                role=role,
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    return _create_user


@pytest_asyncio.fixture
async def admin_user(user_factory):
    return await user_factory(TEST_ADMIN_USERNAME, TEST_ADMIN_PASSWORD, role="admin")


@pytest_asyncio.fixture
async def regular_user(user_factory):
    return await user_factory(TEST_USER_USERNAME, TEST_USER_PASSWORD, role="user")


async def login(client: AsyncClient, username: str, password: str) -> LoggedIn:
    response = await client.post(
        "/api/auth/login", json={"username": username, "password": password}
    )
    assert response.status_code == 200, response.text
    cookies = parse_set_cookies(response)
    return LoggedIn(
        bearer=response.json()["token"],
        csrf=cookie_value(cookies["ltcms_csrf"]),
        body=response.json(),
    )


@pytest_asyncio.fixture
async def admin_login(async_client, admin_user) -> LoggedIn:
    return await login(async_client, TEST_ADMIN_USERNAME, TEST_ADMIN_PASSWORD)


@pytest_asyncio.fixture
async def user_login(async_client, regular_user) -> LoggedIn:
    return await login(async_client, TEST_USER_USERNAME, TEST_USER_PASSWORD)
