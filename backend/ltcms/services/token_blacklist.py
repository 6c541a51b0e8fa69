"""Database-backed revocation list for bearer tokens."""

import hashlib
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ltcms.core.errors import StorageError
from ltcms.models.token_blacklist import TokenBlacklist
from ltcms.services.bearer import LEEWAY_SECONDS

logger = logging.getLogger(__name__)


def token_fingerprint(token: str) -> str:
    """SHA-256 hex digest used as the blacklist key."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


async def blacklist_token(db: AsyncSession, token: str, exp: int) -> None:
    """Revoke ``token`` until verification would reject it on its own.

    ``exp`` is the token expiry in Unix seconds. The entry outlives it by the
    verification leeway, so the cleanup sweep cannot resurrect the token.
    """
    entry = TokenBlacklist(
        token_hash=token_fingerprint(token),
        expires_at=datetime.fromtimestamp(exp, tz=UTC) + timedelta(seconds=LEEWAY_SECONDS),
    )
    try:
        await db.merge(entry)
        await db.flush()
    except SQLAlchemyError as e:
        raise StorageError(f"Failed to blacklist token: {e}") from e


async def is_token_blacklisted(db: AsyncSession, token: str) -> bool:
    """Check if a token has been revoked.

    Raises StorageError on database failure; the caller must not treat that
    as "not revoked".
    """
    try:
        result = await db.execute(
            select(TokenBlacklist.token_hash).where(
                TokenBlacklist.token_hash == token_fingerprint(token)
            )
        )
        return result.scalar_one_or_none() is not None
    except SQLAlchemyError as e:
        raise StorageError(f"Failed to check token blacklist: {e}") from e


async def cleanup_expired_blacklist_entries(db: AsyncSession, now: datetime | None = None) -> int:
    """Remove expired entries from the token blacklist. Returns count removed."""
    now = now or datetime.now(tz=UTC)
    result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
        delete(TokenBlacklist).where(TokenBlacklist.expires_at < now)
    )
    return result.rowcount
