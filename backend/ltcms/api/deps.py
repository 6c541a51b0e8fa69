"""Request authentication pipeline.

Handlers declare what they need by the type they depend on:

* ``AuthenticatedRequest``: a verified, unrevoked bearer credential.
* ``CsrfCheckedRequest``: the above, plus the double-submit CSRF check for
  state-changing methods.

``CsrfCheckedRequest`` can only be obtained from an ``AuthenticatedRequest``,
so a CSRF-protected route is always authenticated first.
"""

import logging
from dataclasses import dataclass
from typing import Literal

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ltcms.core.database import get_db
from ltcms.core.errors import AccessDeniedError, FailureKind, TokenError
from ltcms.services.bearer import BearerClaims, BearerCredentialService
from ltcms.services.cookies import CSRF_COOKIE_NAME, SESSION_COOKIE_NAME
from ltcms.services.csrf import CSRF_HEADER_NAME, CsrfGuard
from ltcms.services.secrets import SecretNotInitializedError, SecurityContext
from ltcms.services.token_blacklist import is_token_blacklisted

logger = logging.getLogger(__name__)

CredentialSource = Literal["header", "cookie"]


@dataclass(frozen=True)
class AuthenticatedRequest:
    """Identity attached to a request whose bearer credential verified."""

    claims: BearerClaims
    token: str
    source: CredentialSource

    @property
    def subject(self) -> str:
        return self.claims.sub

    @property
    def role(self) -> str:
        return self.claims.role


@dataclass(frozen=True)
class CsrfCheckedRequest:
    """An authenticated request that also passed the CSRF guard."""

    identity: AuthenticatedRequest


def get_security_context(request: Request) -> SecurityContext:
    context: SecurityContext | None = getattr(request.app.state, "security_context", None)
    if context is None:
        raise SecretNotInitializedError(
            "Security context not initialized. The application was started without secrets."
        )
    return context


def parse_bearer_token(value: str) -> str | None:
    """Return the token from an ``Authorization: Bearer <token>`` value.

    The scheme is case-insensitive. Anything that is not exactly one scheme
    and one token yields None.
    """
    parts = value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def extract_credential(request: Request) -> tuple[str, CredentialSource] | None:
    """Find the bearer credential, preferring the header over the cookie.

    An unparseable Authorization header falls through to the session cookie.
    """
    header = request.headers.get("authorization")
    if header is not None:
        token = parse_bearer_token(header)
        if token:
            return token, "header"

    cookie = request.cookies.get(SESSION_COOKIE_NAME, "").strip()
    if cookie:
        return cookie, "cookie"
    return None


async def get_authenticated_request(
    request: Request,
    db: AsyncSession = Depends(get_db),
    context: SecurityContext = Depends(get_security_context),
) -> AuthenticatedRequest:
    """Dependency that verifies the bearer credential and checks revocation.

    The resulting identity is also stored on ``request.state.identity``.
    """
    found = extract_credential(request)
    if found is None:
        raise TokenError(FailureKind.MISSING_CREDENTIAL, "No bearer header or session cookie")
    token, source = found

    claims = BearerCredentialService.from_context(context).verify(token)

    # Fails closed: a storage error propagates instead of reading as "not revoked"
    if await is_token_blacklisted(db, token):
        raise TokenError(FailureKind.REVOKED, f"Revoked token presented for {claims.sub}")

    identity = AuthenticatedRequest(claims=claims, token=token, source=source)
    request.state.identity = identity
    return identity


async def get_csrf_checked_request(
    request: Request,
    identity: AuthenticatedRequest = Depends(get_authenticated_request),
    context: SecurityContext = Depends(get_security_context),
) -> CsrfCheckedRequest:
    """Dependency that applies the double-submit CSRF check after authentication."""
    CsrfGuard.from_context(context).check(
        request.method,
        subject=identity.subject,
        header_token=request.headers.get(CSRF_HEADER_NAME),
        cookie_token=request.cookies.get(CSRF_COOKIE_NAME),
    )
    return CsrfCheckedRequest(identity=identity)


async def require_admin(
    checked: CsrfCheckedRequest = Depends(get_csrf_checked_request),
) -> CsrfCheckedRequest:
    """Dependency for administrative mutations."""
    if not checked.identity.claims.is_admin:
        raise AccessDeniedError(
            FailureKind.INSUFFICIENT_ROLE,
            f"{checked.identity.subject} with role {checked.identity.role} needs admin",
        )
    return checked
