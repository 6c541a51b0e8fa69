"""Authentication service: login flow and admin bootstrap."""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ltcms.core.errors import FailureKind, LoginError, StorageError
from ltcms.models.user import User
from ltcms.services.bearer import ROLE_ADMIN, BearerCredentialService
from ltcms.services.csrf import CsrfGuard
from ltcms.services.login_attempts import (
    LoginAttemptRepository,
    as_utc,
    hash_login_identifier,
)
from ltcms.services.passwords import hash_password_async, verify_password_async
from ltcms.services.secrets import SecurityContext

logger = logging.getLogger(__name__)

# Every credential check sleeps this long after the hash comparison
LOGIN_DELAY_SECONDS = 0.1

USERNAME_MAX_LENGTH = 50
PASSWORD_MAX_LENGTH = 128
BOOTSTRAP_PASSWORD_MIN_LENGTH = 12

_USERNAME_RE = re.compile(r"[A-Za-z0-9._-]+")


class BootstrapError(Exception):
    """Configured admin account cannot be created."""

    pass


def validate_username(username: str) -> None:
    if not username:
        raise LoginError(
            FailureKind.INVALID_INPUT, "empty username", public_message="Username is required"
        )
    if len(username) > USERNAME_MAX_LENGTH:
        raise LoginError(
            FailureKind.INVALID_INPUT,
            "username too long",
            public_message=f"Username too long (max {USERNAME_MAX_LENGTH} characters)",
        )
    if not _USERNAME_RE.fullmatch(username):
        raise LoginError(
            FailureKind.INVALID_INPUT,
            "username has invalid characters",
            public_message="Invalid username format",
        )


def validate_password(password: str) -> None:
    if not password:
        raise LoginError(
            FailureKind.INVALID_INPUT, "empty password", public_message="Password is required"
        )
    if len(password) > PASSWORD_MAX_LENGTH:
        raise LoginError(
            FailureKind.INVALID_INPUT,
            "password too long",
            public_message=f"Password too long (max {PASSWORD_MAX_LENGTH} characters)",
        )


def _block_message(remaining: int) -> str:
    unit = "second" if remaining == 1 else "seconds"
    return f"Too many failed attempts. Please wait {remaining} {unit}."


@dataclass(frozen=True)
class LoginResult:
    """Authenticated user plus the credentials to hand back."""

    user: User
    bearer_token: str
    csrf_token: str


class AuthService:
    """Service for authentication operations."""

    def __init__(
        self,
        session: AsyncSession,
        context: SecurityContext,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session = session
        self.context = context
        self._sleep = sleep
        self.attempts = LoginAttemptRepository(session)

    async def get_user_by_username(self, username: str) -> User | None:
        """Get user by username."""
        try:
            result = await self.session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load user: {e}") from e

    async def authenticate(self, username: str, password: str) -> User:
        """Check credentials and update the brute-force counters.

        Unknown users and wrong passwords fail the same way: a bcrypt
        comparison always runs (against a fixed dummy hash when the user does
        not exist), followed by the fixed delay.

        Raises:
            LoginError: ``invalid_input``, ``blocked`` or ``invalid_credentials``.
            StorageError: the counters or the user table could not be read or
                the failure could not be recorded.
        """
        username = username.strip()
        validate_username(username)
        validate_password(password)

        attempt_key = hash_login_identifier(username, self.context.login_attempt_key)
        record = await self.attempts.get(attempt_key)

        now = datetime.now(UTC)
        if record is not None and record.blocked_until is not None:
            blocked_until = as_utc(record.blocked_until)
            if blocked_until > now:
                remaining = max(0, int((blocked_until - now).total_seconds()))
                await self._sleep(LOGIN_DELAY_SECONDS)
                raise LoginError(
                    FailureKind.BLOCKED,
                    f"login blocked for another {remaining}s",
                    public_message=_block_message(remaining),
                )

        user = await self.get_user_by_username(username)
        matched = await verify_password_async(password, user.password_hash if user else None)
        await self._sleep(LOGIN_DELAY_SECONDS)

        if user is None or not matched:
            # The counter write must complete even if the client disconnects
            await asyncio.shield(self._record_failure(attempt_key))
            reason = "unknown user" if user is None else "wrong password"
            raise LoginError(FailureKind.INVALID_CREDENTIALS, reason)

        if record is not None:
            try:
                await self.attempts.clear(attempt_key)
            except StorageError as e:
                logger.warning(f"Failed to clear login attempts after successful login: {e}")

        user.last_login_at = now
        return user

    async def _record_failure(self, attempt_key: str) -> None:
        try:
            await self.attempts.record_failure(attempt_key)
            await self.session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to commit login attempt: {e}") from e

    def create_session_tokens(self, user: User) -> tuple[str, str]:
        """Mint the bearer token and the matching CSRF token for ``user``."""
        bearer = BearerCredentialService.from_context(self.context).issue(user.username, user.role)
        csrf_token = CsrfGuard.from_context(self.context).issue(user.username)
        return bearer, csrf_token

    async def login(self, username: str, password: str) -> LoginResult:
        user = await self.authenticate(username, password)
        bearer, csrf_token = self.create_session_tokens(user)
        logger.info(f"User {user.username} logged in")
        return LoginResult(user=user, bearer_token=bearer, csrf_token=csrf_token)

    async def ensure_bootstrap_admin(self, username: str, password: str) -> User | None:
        """Create the configured admin account if it does not exist yet.

        Returns None when no account is configured. An existing account is
        left untouched, but a password that no longer matches it is logged.

        Raises:
            BootstrapError: the configured username or password is unusable.
        """
        username = username.strip()
        if not username or not password:
            logger.warning("ADMIN_USERNAME or ADMIN_PASSWORD empty; skipping admin bootstrap")
            return None

        try:
            validate_username(username)
        except LoginError as e:
            raise BootstrapError(f"ADMIN_USERNAME is not a valid username: {e.detail}") from e
        if len(password) < BOOTSTRAP_PASSWORD_MIN_LENGTH:
            raise BootstrapError(
                f"ADMIN_PASSWORD must be at least {BOOTSTRAP_PASSWORD_MIN_LENGTH} characters long"
            )
        if len(password) > PASSWORD_MAX_LENGTH:
            raise BootstrapError(
                f"ADMIN_PASSWORD must be at most {PASSWORD_MAX_LENGTH} characters long"
            )

        existing = await self.get_user_by_username(username)
        if existing is not None:
            if await verify_password_async(password, existing.password_hash):
                logger.info(f"Admin user {username} already exists")
            else:
                logger.warning(
                    f"Admin user {username} exists but ADMIN_PASSWORD does not match the "
                    "stored hash. The stored password was kept."
                )
            return existing

        user = User(
            username=username,
            password_hash=await hash_password_async(password),
            role=ROLE_ADMIN,
        )
        self.session.add(user)
        await self.session.commit()
        await self.session.refresh(user)

        logger.info(f"Created admin user: {username}")
        return user
