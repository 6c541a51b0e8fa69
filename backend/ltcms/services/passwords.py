"""Password hashing with bcrypt."""

import asyncio
import logging
from functools import lru_cache

import bcrypt

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 12
# bcrypt only looks at the first 72 bytes; newer releases raise instead of truncating
BCRYPT_MAX_PASSWORD_BYTES = 72


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES]


def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt(rounds=rounds)).decode("ascii")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against a bcrypt hash.

    An unreadable stored hash counts as a mismatch and is logged.
    """
    try:
        return bcrypt.checkpw(_password_bytes(password), password_hash.encode("utf-8"))
    except ValueError as e:
        logger.error(f"Password verification error: {e}")
        return False


@lru_cache(maxsize=1)
def dummy_password_hash() -> str:
    """Fixed hash verified against when the username does not exist.

    Uses the same cost as real hashes so a miss burns the same CPU time as a
    wrong password.
    """
    return hash_password("dummy")


async def hash_password_async(password: str) -> str:
    loop = asyncio.get_running_loop()
    # Run in executor to avoid blocking the event loop
    return await loop.run_in_executor(None, hash_password, password)


async def verify_password_async(password: str, password_hash: str | None) -> bool:
    """Verify ``password``, falling back to the dummy hash when there is no user.

    The bcrypt comparison runs in both cases. A missing hash never matches.
    """
    target = password_hash if password_hash is not None else dummy_password_hash()
    loop = asyncio.get_running_loop()
    matched = await loop.run_in_executor(None, verify_password, password, target)
    return matched and password_hash is not None
