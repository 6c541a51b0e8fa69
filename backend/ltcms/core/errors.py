"""Authentication error taxonomy.

Two separate types: ``AuthError`` subclasses carry a fine-grained
``FailureKind`` that is logged, and ``ClientError`` is the coarse value that
reaches the client. ``to_client_error`` is the only bridge between them and
only goes one way.
"""

from dataclasses import dataclass
from enum import Enum

from fastapi import status


class FailureKind(str, Enum):
    """Internal failure reasons. Logged, never sent to clients verbatim."""

    MISSING_CREDENTIAL = "missing_credential"
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    REVOKED = "revoked"
    CLOCK_ARITHMETIC = "clock_arithmetic"
    UNISSUABLE_CLAIMS = "unissuable_claims"
    MISSING_CONTEXT = "missing_context"
    CSRF_MISSING = "csrf_missing"
    CSRF_MISMATCH = "csrf_mismatch"
    UNSUPPORTED_VERSION = "unsupported_version"
    WRONG_SUBJECT = "wrong_subject"
    SHORT_NONCE = "short_nonce"
    EMPTY_SUBJECT = "empty_subject"
    INSUFFICIENT_ROLE = "insufficient_role"
    INVALID_INPUT = "invalid_input"
    INVALID_CREDENTIALS = "invalid_credentials"
    BLOCKED = "blocked"
    STORAGE = "storage"


class AuthError(Exception):
    """Base authentication error.

    ``detail`` is for logs. ``public_message`` is only honoured for kinds
    whose text cannot leak account state (input validation, block timer).
    """

    def __init__(self, kind: FailureKind, detail: str = "", *, public_message: str | None = None):
        super().__init__(detail or kind.value)
        self.kind = kind
        self.detail = detail or kind.value
        self.public_message = public_message


class TokenError(AuthError):
    """Bearer credential could not be issued, found or verified."""

    pass


class CsrfError(AuthError):
    """CSRF token could not be issued or failed the guard."""

    pass


class LoginError(AuthError):
    """Login request rejected."""

    pass


class AccessDeniedError(AuthError):
    """Authenticated identity lacks the required role."""

    pass


class StorageError(AuthError):
    """Database failure on a security-relevant read or write. Fails closed."""

    def __init__(self, detail: str = ""):
        super().__init__(FailureKind.STORAGE, detail)


class ClientErrorKind(str, Enum):
    """Error kinds observable by clients."""

    UNAUTHENTICATED = "unauthenticated"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    BAD_REQUEST = "bad_request"
    TOO_MANY_REQUESTS = "too_many_requests"
    INTERNAL = "internal"


_STATUS_CODES = {
    ClientErrorKind.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ClientErrorKind.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ClientErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ClientErrorKind.BAD_REQUEST: status.HTTP_400_BAD_REQUEST,
    ClientErrorKind.TOO_MANY_REQUESTS: status.HTTP_429_TOO_MANY_REQUESTS,
    ClientErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

# User-visible messages
MSG_MISSING_TOKEN = "Missing authentication token"
MSG_INVALID_TOKEN = "Invalid or expired token"
MSG_REVOKED = "Token has been revoked"
MSG_MISSING_CONTEXT = "Missing authentication context"
MSG_MISSING_CSRF = "Missing CSRF token"
MSG_CSRF_MISMATCH = "CSRF token mismatch"
MSG_CSRF_WRONG_SUBJECT = "CSRF token not issued for this account"
MSG_CSRF_INVALID = "Invalid CSRF token"
MSG_INVALID_CREDENTIALS = "Invalid credentials"
MSG_INSUFFICIENT_ROLE = "Insufficient permissions"
MSG_BAD_REQUEST = "Invalid request"
MSG_TOO_MANY_ATTEMPTS = "Too many failed attempts"
MSG_INTERNAL = "Internal server error"


@dataclass(frozen=True)
class ClientError:
    """Coarse error surfaced to the client."""

    kind: ClientErrorKind
    message: str

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self.kind]

    def to_body(self) -> dict[str, str]:
        return {"error": self.message}


def _token_error(kind: FailureKind) -> ClientError:
    if kind == FailureKind.MISSING_CREDENTIAL:
        return ClientError(ClientErrorKind.UNAUTHENTICATED, MSG_MISSING_TOKEN)
    if kind == FailureKind.REVOKED:
        return ClientError(ClientErrorKind.UNAUTHORIZED, MSG_REVOKED)
    if kind in (FailureKind.CLOCK_ARITHMETIC, FailureKind.UNISSUABLE_CLAIMS):
        return ClientError(ClientErrorKind.INTERNAL, MSG_INTERNAL)
    # malformed, bad_signature and expired are indistinguishable from outside
    return ClientError(ClientErrorKind.UNAUTHORIZED, MSG_INVALID_TOKEN)


def _csrf_error(kind: FailureKind) -> ClientError:
    if kind == FailureKind.MISSING_CONTEXT:
        return ClientError(ClientErrorKind.UNAUTHORIZED, MSG_MISSING_CONTEXT)
    if kind == FailureKind.CSRF_MISSING:
        return ClientError(ClientErrorKind.FORBIDDEN, MSG_MISSING_CSRF)
    if kind == FailureKind.CSRF_MISMATCH:
        return ClientError(ClientErrorKind.FORBIDDEN, MSG_CSRF_MISMATCH)
    if kind == FailureKind.WRONG_SUBJECT:
        return ClientError(ClientErrorKind.FORBIDDEN, MSG_CSRF_WRONG_SUBJECT)
    if kind == FailureKind.EMPTY_SUBJECT:
        return ClientError(ClientErrorKind.INTERNAL, MSG_INTERNAL)
    return ClientError(ClientErrorKind.FORBIDDEN, MSG_CSRF_INVALID)


def _login_error(exc: AuthError) -> ClientError:
    if exc.kind == FailureKind.INVALID_INPUT:
        return ClientError(ClientErrorKind.BAD_REQUEST, exc.public_message or MSG_BAD_REQUEST)
    if exc.kind == FailureKind.BLOCKED:
        return ClientError(
            ClientErrorKind.TOO_MANY_REQUESTS, exc.public_message or MSG_TOO_MANY_ATTEMPTS
        )
    return ClientError(ClientErrorKind.UNAUTHORIZED, MSG_INVALID_CREDENTIALS)


def to_client_error(exc: AuthError) -> ClientError:
    """Collapse an internal auth failure onto its client-visible form."""
    if isinstance(exc, StorageError):
        return ClientError(ClientErrorKind.INTERNAL, MSG_INTERNAL)
    if isinstance(exc, TokenError):
        return _token_error(exc.kind)
    if isinstance(exc, CsrfError):
        return _csrf_error(exc.kind)
    if isinstance(exc, LoginError):
        return _login_error(exc)
    if isinstance(exc, AccessDeniedError):
        return ClientError(ClientErrorKind.FORBIDDEN, MSG_INSUFFICIENT_ROLE)
    return ClientError(ClientErrorKind.INTERNAL, MSG_INTERNAL)
