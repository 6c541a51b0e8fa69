"""CSRF protection with signed, per-user double-submit tokens.

Token format::

    v1|<username base64url>|<expiry epoch seconds>|<uuid4 nonce>|<signature base64url>

The signature is HMAC-SHA256 over the first four fields joined by ``|``.
Base64url is unpadded. Tokens live for six hours and only validate for the
account they were issued to.

A state-changing request passes the guard when the ``x-csrf-token`` header
and the ``ltcms_csrf`` cookie carry the same value and that value validates
for the authenticated subject. Cross-site pages can make the browser send the
cookie but cannot read it to set the header.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import re
import uuid
from datetime import UTC, datetime, timedelta

from ltcms.core.errors import CsrfError, FailureKind
from ltcms.services.secrets import SecurityContext

logger = logging.getLogger(__name__)

CSRF_VERSION = "v1"
CSRF_HEADER_NAME = "x-csrf-token"
CSRF_TOKEN_TTL = timedelta(hours=6)
MIN_NONCE_LENGTH = 16
MAX_CSRF_TOKEN_LENGTH = 1024

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})

_B64URL_RE = re.compile(r"[A-Za-z0-9_-]*")
_EXPIRY_RE = re.compile(r"[0-9]{1,12}")


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(segment: str) -> bytes:
    """Decode unpadded base64url, rejecting characters outside the alphabet."""
    if not _B64URL_RE.fullmatch(segment):
        raise ValueError("invalid base64url characters")
    try:
        return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except binascii.Error as e:
        raise ValueError(str(e)) from e


class CsrfGuard:
    """Issues, validates and enforces CSRF tokens."""

    def __init__(self, secret: bytes, *, ttl: timedelta = CSRF_TOKEN_TTL):
        self._secret = secret
        self._ttl = ttl

    @classmethod
    def from_context(cls, context: SecurityContext) -> "CsrfGuard":
        return cls(context.csrf_secret)

    def _sign(self, versioned_payload: str) -> bytes:
        return hmac.new(self._secret, versioned_payload.encode("utf-8"), hashlib.sha256).digest()

    def issue(self, username: str, *, now: datetime | None = None) -> str:
        """Create a token bound to ``username``.

        Raises:
            CsrfError: kind ``empty_subject`` for a blank username, or
                ``clock_arithmetic`` if the expiry cannot be computed.
        """
        if not username or not username.strip():
            raise CsrfError(FailureKind.EMPTY_SUBJECT, "Username required for CSRF token")

        issued_at = now or datetime.now(UTC)
        try:
            expiry = int((issued_at + self._ttl).timestamp())
        except (OverflowError, ValueError, OSError) as e:
            raise CsrfError(FailureKind.CLOCK_ARITHMETIC, "Failed to compute CSRF expiry") from e

        nonce = str(uuid.uuid4())
        username_b64 = b64url_encode(username.encode("utf-8"))
        versioned_payload = f"{CSRF_VERSION}|{username_b64}|{expiry}|{nonce}"
        signature = b64url_encode(self._sign(versioned_payload))
        return f"{versioned_payload}|{signature}"

    def validate(self, token: str, expected_username: str, *, now: datetime | None = None) -> None:
        """Validate ``token`` for ``expected_username``.

        Checks run in a fixed order: shape, version, subject, expiry, nonce
        length, then the signature in constant time.

        Raises:
            CsrfError: kind ``malformed``, ``unsupported_version``,
                ``wrong_subject``, ``expired``, ``short_nonce`` or
                ``bad_signature``.
        """
        if len(token) > MAX_CSRF_TOKEN_LENGTH:
            raise CsrfError(FailureKind.MALFORMED, "CSRF token too long")

        parts = token.split("|")
        if len(parts) != 5:
            raise CsrfError(FailureKind.MALFORMED, "Malformed CSRF token")
        version, username_b64, expiry_str, nonce, signature = parts

        if version != CSRF_VERSION:
            raise CsrfError(FailureKind.UNSUPPORTED_VERSION, "Unsupported CSRF token version")

        try:
            username = b64url_decode(username_b64).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise CsrfError(FailureKind.MALFORMED, "Malformed CSRF username segment") from e

        if username != expected_username:
            raise CsrfError(FailureKind.WRONG_SUBJECT, "CSRF token not issued for this account")

        if not _EXPIRY_RE.fullmatch(expiry_str):
            raise CsrfError(FailureKind.MALFORMED, "Invalid CSRF expiry")
        expiry = int(expiry_str)
        current = now or datetime.now(UTC)
        if expiry < int(current.timestamp()):
            raise CsrfError(FailureKind.EXPIRED, "CSRF token expired")

        if len(nonce) < MIN_NONCE_LENGTH:
            raise CsrfError(FailureKind.SHORT_NONCE, "CSRF nonce too short")

        expected_signature = self._sign(f"{version}|{username_b64}|{expiry}|{nonce}")
        try:
            provided_signature = b64url_decode(signature)
        except ValueError as e:
            raise CsrfError(FailureKind.BAD_SIGNATURE, "Invalid CSRF signature") from e

        if not hmac.compare_digest(expected_signature, provided_signature):
            raise CsrfError(FailureKind.BAD_SIGNATURE, "CSRF signature mismatch")

    def check(
        self,
        method: str,
        *,
        subject: str | None,
        header_token: str | None,
        cookie_token: str | None,
        now: datetime | None = None,
    ) -> None:
        """Apply the double-submit protocol to one request.

        Safe methods pass untouched. Everything else needs an authenticated
        subject, both token copies, byte-equal copies, and a token that
        validates for that subject.
        """
        if method.upper() in SAFE_METHODS:
            return

        if not subject:
            raise CsrfError(FailureKind.MISSING_CONTEXT, "Missing authentication context")

        if not header_token:
            raise CsrfError(FailureKind.CSRF_MISSING, "Missing CSRF token header")
        if not cookie_token:
            raise CsrfError(FailureKind.CSRF_MISSING, "Missing CSRF cookie")

        if not hmac.compare_digest(header_token.encode("utf-8"), cookie_token.encode("utf-8")):
            raise CsrfError(FailureKind.CSRF_MISMATCH, "CSRF header does not match cookie")

        self.validate(header_token, subject, now=now)
