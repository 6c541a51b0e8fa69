"""Tests for the authentication endpoints and the request pipeline."""

import time
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from ltcms.core.errors import StorageError
from ltcms.models.login_attempt import LoginAttempt
from ltcms.models.user import User
from ltcms.services.auth import AuthService
from ltcms.services.bearer import BEARER_TTL, BearerCredentialService
from ltcms.services.csrf import CsrfGuard
from ltcms.services.token_blacklist import (
    blacklist_token,
    cleanup_expired_blacklist_entries,
)
from tests.conftest import (
    TEST_ADMIN_PASSWORD,
    TEST_ADMIN_USERNAME,
    TEST_USER_USERNAME,
    login,
    parse_set_cookies,
)


class TestLogin:
    """Tests for POST /api/auth/login."""

    @pytest.mark.asyncio
    async def test_login_then_me_with_cookie(self, async_client, admin_user):
        """Login returns the token and both cookies; the cookie alone authenticates."""
        response = await async_client.post(
            "/api/auth/login",
            json={"username": TEST_ADMIN_USERNAME, "password": TEST_ADMIN_PASSWORD},
        )
        assert response.status_code == 200
        data = response.json()
        assert set(data) == {"token", "user"}
        assert data["user"] == {"username": "admin", "role": "admin"}

        set_cookies = parse_set_cookies(response)
        assert set(set_cookies) == {"ltcms_session", "ltcms_csrf"}
        assert set_cookies["ltcms_session"].startswith(f"ltcms_session={data['token']};")
        assert "HttpOnly" in set_cookies["ltcms_session"]
        assert "HttpOnly" not in set_cookies["ltcms_csrf"]

        me = await async_client.get(
            "/api/auth/me", headers={"Cookie": f"ltcms_session={data['token']}"}
        )
        assert me.status_code == 200
        assert me.json() == {"username": "admin", "role": "admin"}

    @pytest.mark.asyncio
    async def test_me_with_bearer_header(self, async_client, admin_login):
        response = await async_client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {admin_login.bearer}"}
        )
        assert response.status_code == 200
        assert response.json()["username"] == TEST_ADMIN_USERNAME

    @pytest.mark.asyncio
    async def test_wrong_password_is_delayed(self, async_client, admin_user):
        start = time.perf_counter()
        response = await async_client.post(
            "/api/auth/login",
            json={"username": TEST_ADMIN_USERNAME, "password": "not-correct"},
        )
        elapsed = time.perf_counter() - start

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid credentials"}
        assert elapsed >= 0.1
        assert "set-cookie" not in response.headers

    @pytest.mark.asyncio
    async def test_unknown_user_looks_like_wrong_password(self, async_client, admin_user):
        unknown = await async_client.post(
            "/api/auth/login", json={"username": "nobody", "password": "whatever"}
        )
        wrong = await async_client.post(
            "/api/auth/login",
            json={"username": TEST_ADMIN_USERNAME, "password": "whatever"},
        )
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    @pytest.mark.asyncio
    async def test_username_is_trimmed(self, async_client, admin_user):
        response = await async_client.post(
            "/api/auth/login",
            json={"username": f"  {TEST_ADMIN_USERNAME} ", "password": TEST_ADMIN_PASSWORD},
        )
        assert response.status_code == 200
        assert response.json()["user"]["username"] == TEST_ADMIN_USERNAME

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload,message",
        [
            ({"username": "", "password": "x"}, "Username is required"),
            ({"username": "   ", "password": "x"}, "Username is required"),
            ({"username": "admin", "password": ""}, "Password is required"),
            ({"username": "bad name", "password": "x"}, "Invalid username format"),
            ({"username": "a" * 51, "password": "x"}, "Username too long (max 50 characters)"),
            (
                {"username": "admin", "password": "p" * 129},
                "Password too long (max 128 characters)",
            ),
        ],
    )
    async def test_input_validation(self, async_client, payload, message):
        response = await async_client.post("/api/auth/login", json=payload)
        assert response.status_code == 400
        assert response.json() == {"error": message}

    @pytest.mark.asyncio
    async def test_successful_login_records_last_login(
        self, async_client, admin_user, session_factory
    ):
        await login(async_client, TEST_ADMIN_USERNAME, TEST_ADMIN_PASSWORD)
        async with session_factory() as session:
            user = (
                await session.execute(select(User).where(User.username == TEST_ADMIN_USERNAME))
            ).scalar_one()
            assert user.last_login_at is not None


class TestBruteForceProtection:
    """Tests for the per-username failure counter."""

    @pytest.mark.asyncio
    async def test_third_failure_blocks_even_correct_password(self, async_client, admin_user):
        for _ in range(3):
            response = await async_client.post(
                "/api/auth/login",
                json={"username": TEST_ADMIN_USERNAME, "password": "wrong-password"},
            )
            assert response.status_code == 401

        blocked = await async_client.post(
            "/api/auth/login",
            json={"username": TEST_ADMIN_USERNAME, "password": TEST_ADMIN_PASSWORD},
        )
        assert blocked.status_code == 429
        assert blocked.json()["error"].startswith("Too many failed attempts. Please wait ")

    @pytest.mark.asyncio
    async def test_block_applies_to_any_spelling(self, async_client, admin_user):
        for _ in range(3):
            await async_client.post(
                "/api/auth/login", json={"username": "ADMIN", "password": "wrong-password"}
            )
        blocked = await async_client.post(
            "/api/auth/login",
            json={"username": TEST_ADMIN_USERNAME, "password": TEST_ADMIN_PASSWORD},
        )
        assert blocked.status_code == 429

    @pytest.mark.asyncio
    async def test_success_clears_counter(self, async_client, admin_user, session_factory):
        for _ in range(2):
            await async_client.post(
                "/api/auth/login",
                json={"username": TEST_ADMIN_USERNAME, "password": "wrong-password"},
            )
        async with session_factory() as session:
            rows = (await session.execute(select(LoginAttempt))).scalars().all()
            assert [row.fail_count for row in rows] == [2]

        await login(async_client, TEST_ADMIN_USERNAME, TEST_ADMIN_PASSWORD)

        async with session_factory() as session:
            rows = (await session.execute(select(LoginAttempt))).scalars().all()
            assert rows == []

    @pytest.mark.asyncio
    async def test_counter_does_not_store_username(self, async_client, session_factory):
        await async_client.post(
            "/api/auth/login", json={"username": "someone", "password": "wrong-password"}
        )
        async with session_factory() as session:
            row = (await session.execute(select(LoginAttempt))).scalar_one()
            assert "someone" not in row.username_hash
            assert len(row.username_hash) == 64


class TestCsrfPipeline:
    """Tests for CSRF enforcement on state-changing routes."""

    @pytest.mark.asyncio
    async def test_matching_cookie_and_header_pass(self, async_client, admin_login):
        response = await async_client.post(
            "/api/tutorials", headers=admin_login.mutation_headers()
        )
        assert response.status_code == 200
        assert response.json() == {"created_by": TEST_ADMIN_USERNAME}

    @pytest.mark.asyncio
    async def test_one_character_difference_is_mismatch(self, async_client, admin_login):
        csrf = admin_login.csrf
        altered = csrf[:-1] + ("A" if csrf[-1] != "A" else "B")
        response = await async_client.post(
            "/api/tutorials",
            headers={"Cookie": admin_login.cookie_header(), "x-csrf-token": altered},
        )
        assert response.status_code == 403
        assert response.json() == {"error": "CSRF token mismatch"}

    @pytest.mark.asyncio
    async def test_token_for_other_account(
        self, async_client, security_context, user_factory
    ):
        await user_factory("bob", "bob-password-1")
        bob = await login(async_client, "bob", "bob-password-1")
        alice_token = CsrfGuard.from_context(security_context).issue("alice")

        response = await async_client.put(
            "/api/profile",
            headers={
                "Cookie": f"ltcms_session={bob.bearer}; ltcms_csrf={alice_token}",
                "x-csrf-token": alice_token,
            },
        )
        assert response.status_code == 403
        assert response.json() == {"error": "CSRF token not issued for this account"}

    @pytest.mark.asyncio
    async def test_missing_header(self, async_client, admin_login):
        response = await async_client.post(
            "/api/tutorials", headers={"Cookie": admin_login.cookie_header()}
        )
        assert response.status_code == 403
        assert response.json() == {"error": "Missing CSRF token"}

    @pytest.mark.asyncio
    async def test_bearer_header_clients_also_need_csrf(self, async_client, admin_login):
        response = await async_client.post(
            "/api/tutorials", headers={"Authorization": f"Bearer {admin_login.bearer}"}
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_safe_method_needs_no_csrf(self, async_client, user_login):
        response = await async_client.get(
            "/api/profile", headers={"Cookie": f"ltcms_session={user_login.bearer}"}
        )
        assert response.status_code == 200
        assert response.json() == {"username": TEST_USER_USERNAME, "source": "cookie"}

    @pytest.mark.asyncio
    async def test_unauthenticated_mutation_is_401_not_403(self, async_client):
        response = await async_client.put("/api/profile", headers={"x-csrf-token": "anything"})
        assert response.status_code == 401
        assert response.json() == {"error": "Missing authentication token"}


class TestRoleGate:
    @pytest.mark.asyncio
    async def test_user_cannot_perform_admin_mutation(self, async_client, user_login):
        response = await async_client.post("/api/tutorials", headers=user_login.mutation_headers())
        assert response.status_code == 403
        assert response.json() == {"error": "Insufficient permissions"}

    @pytest.mark.asyncio
    async def test_user_can_perform_own_mutation(self, async_client, user_login):
        response = await async_client.put("/api/profile", headers=user_login.mutation_headers())
        assert response.status_code == 200


class TestBearerFailures:
    @pytest.mark.asyncio
    async def test_missing_credential(self, async_client):
        response = await async_client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json() == {"error": "Missing authentication token"}
        assert response.headers["www-authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_expired_bearer(self, async_client, security_context, admin_user):
        issued = datetime.now(UTC) - BEARER_TTL - timedelta(seconds=3600)
        token = BearerCredentialService.from_context(security_context).issue(
            TEST_ADMIN_USERNAME, "admin", now=issued
        )
        response = await async_client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid or expired token"}

    @pytest.mark.asyncio
    async def test_garbage_bearer(self, async_client):
        response = await async_client.get(
            "/api/auth/me", headers={"Authorization": "Bearer not-a-token"}
        )
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid or expired token"}

    @pytest.mark.asyncio
    async def test_blacklist_storage_failure_fails_closed(self, async_client, admin_login):
        with patch(
            "ltcms.api.deps.is_token_blacklisted",
            AsyncMock(side_effect=StorageError("database is locked")),
        ):
            response = await async_client.get(
                "/api/auth/me", headers={"Authorization": f"Bearer {admin_login.bearer}"}
            )
        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}


class TestRevocationWindow:
    @pytest.mark.asyncio
    async def test_revoked_token_stays_revoked_after_sweep(
        self, async_client, security_context, session_factory, admin_user
    ):
        """A revoked token just past exp but inside the verification leeway stays rejected."""
        issued = datetime.now(UTC) - BEARER_TTL - timedelta(seconds=30)
        service = BearerCredentialService.from_context(security_context)
        token = service.issue(TEST_ADMIN_USERNAME, "admin", now=issued)
        headers = {"Authorization": f"Bearer {token}"}

        async with session_factory() as session:
            await blacklist_token(session, token, service.verify(token).exp)
            await session.commit()

        before = await async_client.get("/api/auth/me", headers=headers)
        assert before.status_code == 401
        assert before.json() == {"error": "Token has been revoked"}

        async with session_factory() as session:
            await cleanup_expired_blacklist_entries(session)
            await session.commit()

        after = await async_client.get("/api/auth/me", headers=headers)
        assert after.status_code == 401
        assert after.json() == {"error": "Token has been revoked"}


class TestUnissuableRole:
    @pytest.mark.asyncio
    async def test_unknown_stored_role_is_json_500(self, async_client):
        stray = User(username="editor1", password_hash="unused", role="editor")
        with patch.object(AuthService, "authenticate", AsyncMock(return_value=stray)):
            response = await async_client.post(
                "/api/auth/login", json={"username": "editor1", "password": "whatever"}
            )
        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
        assert "set-cookie" not in response.headers


class TestLogout:
    """Tests for POST /api/auth/logout."""

    @pytest.mark.asyncio
    async def test_logout_clears_cookies_and_revokes_token(self, async_client, admin_login):
        response = await async_client.post(
            "/api/auth/logout", headers=admin_login.mutation_headers()
        )
        assert response.status_code == 204

        set_cookies = parse_set_cookies(response)
        assert set(set_cookies) == {"ltcms_session", "ltcms_csrf"}
        for header in set_cookies.values():
            assert "Max-Age=0" in header
            assert "Thu, 01 Jan 1970 00:00:00 GMT" in header

        me = await async_client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {admin_login.bearer}"}
        )
        assert me.status_code == 401
        assert me.json() == {"error": "Token has been revoked"}

    @pytest.mark.asyncio
    async def test_logout_requires_csrf(self, async_client, admin_login):
        response = await async_client.post(
            "/api/auth/logout", headers={"Cookie": admin_login.cookie_header()}
        )
        assert response.status_code == 403

        me = await async_client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {admin_login.bearer}"}
        )
        assert me.status_code == 200

    @pytest.mark.asyncio
    async def test_logout_without_session(self, async_client):
        response = await async_client.post("/api/auth/logout")
        assert response.status_code == 401
