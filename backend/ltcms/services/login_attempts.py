"""Brute-force counters for the login endpoint."""

import hashlib
import hmac
import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import DateTime, case, delete, literal, null, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ltcms.core.errors import StorageError
from ltcms.models.login_attempt import LoginAttempt

logger = logging.getLogger(__name__)

SHORT_BLOCK_THRESHOLD = 3
LONG_BLOCK_THRESHOLD = 5
SHORT_BLOCK = timedelta(seconds=10)
LONG_BLOCK = timedelta(seconds=60)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def hash_login_identifier(username: str, key: bytes) -> str:
    """Keyed SHA-256 of the trimmed, lower-cased username."""
    normalized = username.strip().lower().encode("utf-8")
    return hmac.new(key, normalized, hashlib.sha256).hexdigest()


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class LoginAttemptRepository:
    """Reads and updates ``login_attempts`` rows.

    Database errors become ``StorageError`` so the login fails closed.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, username_hash: str) -> LoginAttempt | None:
        try:
            result = await self.session.execute(
                select(LoginAttempt).where(LoginAttempt.username_hash == username_hash)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load login attempts: {e}") from e

    async def record_failure(self, username_hash: str, now: datetime | None = None) -> None:
        """Count one failure and set the block window in a single statement.

        Concurrent failures for the same key serialize on the row, so the
        counter never loses an increment.
        """
        now = now or datetime.now(UTC)
        try:
            dialect = self.session.get_bind().dialect.name
            insert = _UPSERT_DIALECTS.get(dialect)
            if insert is None:
                raise StorageError(f"Unsupported database dialect for login attempts: {dialect}")

            next_count = LoginAttempt.fail_count + 1
            stmt = insert(LoginAttempt).values(
                username_hash=username_hash, fail_count=1, blocked_until=None
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[LoginAttempt.username_hash],
                set_={
                    "fail_count": next_count,
                    "blocked_until": case(
                        (
                            next_count >= LONG_BLOCK_THRESHOLD,
                            literal(now + LONG_BLOCK, DateTime(timezone=True)),
                        ),
                        (
                            next_count >= SHORT_BLOCK_THRESHOLD,
                            literal(now + SHORT_BLOCK, DateTime(timezone=True)),
                        ),
                        else_=null(),
                    ),
                },
            )
            await self.session.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to record login attempt: {e}") from e

    async def clear(self, username_hash: str) -> None:
        try:
            await self.session.execute(
                delete(LoginAttempt).where(LoginAttempt.username_hash == username_hash)
            )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to clear login attempts: {e}") from e
