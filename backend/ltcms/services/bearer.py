"""Bearer credential service: HS256 JWTs carrying username and role."""

import binascii
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt
from jwt.utils import base64url_decode, base64url_encode

from ltcms.core.errors import FailureKind, TokenError
from ltcms.services.secrets import SecurityContext

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
BEARER_TTL = timedelta(hours=24)
LEEWAY_SECONDS = 60
MAX_TOKEN_LENGTH = 4096

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = frozenset({ROLE_ADMIN, ROLE_USER})

_SEGMENT_RE = re.compile(r"[A-Za-z0-9_-]+")


@dataclass(frozen=True)
class BearerClaims:
    """Decoded token claims."""

    sub: str
    role: str
    exp: int

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def _is_canonical(token: str) -> bool:
    """True if the token is three base64url segments in their only valid spelling.

    Base64 decoders ignore the unused low bits of the final character, so
    several spellings decode to the same bytes. Only the one produced by
    encoding is accepted.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return False
    for part in parts:
        if not _SEGMENT_RE.fullmatch(part):
            return False
        try:
            decoded = base64url_decode(part)
        except (binascii.Error, ValueError):
            return False
        if base64url_encode(decoded).decode("ascii") != part:
            return False
    return True


class BearerCredentialService:
    """Issues and verifies bearer tokens."""

    def __init__(
        self,
        secret: bytes,
        *,
        ttl: timedelta = BEARER_TTL,
        leeway: int = LEEWAY_SECONDS,
    ):
        self._secret = secret
        self._ttl = ttl
        self._leeway = leeway

    @classmethod
    def from_context(cls, context: SecurityContext) -> "BearerCredentialService":
        return cls(context.bearer_secret)

    def issue(self, username: str, role: str, *, now: datetime | None = None) -> str:
        """Create a token for ``username`` that expires 24 hours after ``now``."""
        if not username:
            raise TokenError(
                FailureKind.UNISSUABLE_CLAIMS, "Cannot issue a token without a subject"
            )
        if role not in ROLES:
            raise TokenError(
                FailureKind.UNISSUABLE_CLAIMS, f"Cannot issue a token for role {role!r}"
            )

        issued_at = now or datetime.now(UTC)
        try:
            exp = int((issued_at + self._ttl).timestamp())
        except (OverflowError, ValueError, OSError) as e:
            raise TokenError(
                FailureKind.CLOCK_ARITHMETIC,
                "Failed to calculate token expiration. System time may be misconfigured.",
            ) from e

        payload = {"sub": username, "role": role, "exp": exp}
        token = jwt.encode(payload, self._secret, algorithm=ALGORITHM)
        # PyJWT 2.x returns str; older type stubs may declare bytes
        return str(token)

    def verify(self, token: str) -> BearerClaims:
        """Verify signature and expiry (with leeway) and return the claims.

        Raises:
            TokenError: kind ``malformed``, ``bad_signature`` or ``expired``.
        """
        if not token or len(token) > MAX_TOKEN_LENGTH or not _is_canonical(token):
            raise TokenError(FailureKind.MALFORMED, "Token is not a canonical compact JWS")

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                leeway=self._leeway,
                options={"require": ["exp", "sub", "role"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenError(FailureKind.EXPIRED, "Token has expired") from e
        except jwt.InvalidSignatureError as e:
            raise TokenError(FailureKind.BAD_SIGNATURE, "Token signature mismatch") from e
        except jwt.PyJWTError as e:
            raise TokenError(FailureKind.MALFORMED, f"Invalid token: {e}") from e

        sub = payload.get("sub")
        role = payload.get("role")
        exp = payload.get("exp")
        if not isinstance(sub, str) or not sub:
            raise TokenError(FailureKind.MALFORMED, "Token subject is empty")
        if role not in ROLES:
            raise TokenError(FailureKind.MALFORMED, f"Token role not recognised: {role!r}")
        if not isinstance(exp, int) or isinstance(exp, bool):
            raise TokenError(FailureKind.MALFORMED, "Token expiry is not an integer")

        horizon = datetime.now(UTC) + self._ttl + timedelta(seconds=self._leeway)
        if exp > horizon.timestamp():
            raise TokenError(FailureKind.MALFORMED, "Token expiry exceeds the maximum lifetime")

        return BearerClaims(sub=sub, role=role, exp=exp)
