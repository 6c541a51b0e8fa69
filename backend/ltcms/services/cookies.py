"""Session and CSRF cookies, in their emit and removal forms."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from http.cookies import CookieError
from typing import Literal

from starlette.responses import Response

from ltcms.services.secrets import SecurityContext

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "ltcms_session"
CSRF_COOKIE_NAME = "ltcms_csrf"

SESSION_COOKIE_TTL_SECONDS = 24 * 60 * 60
CSRF_COOKIE_TTL_SECONDS = 6 * 60 * 60

# Rendered as "Thu, 01 Jan 1970 00:00:00 GMT"
UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

SameSite = Literal["lax", "strict"]


@dataclass(frozen=True)
class AuthCookie:
    """Arguments for one ``Response.set_cookie`` call."""

    name: str
    value: str
    max_age: int
    http_only: bool
    same_site: SameSite
    secure: bool
    path: str = "/"
    expires: datetime | None = None


def append_to(response: Response, cookie: AuthCookie) -> bool:
    """Add ``cookie`` to ``response`` as a Set-Cookie header.

    A cookie that cannot be serialized is logged and dropped so the rest of
    the response still goes out. Returns whether the header was added.
    """
    try:
        response.set_cookie(
            cookie.name,
            cookie.value,
            max_age=cookie.max_age,
            expires=cookie.expires,
            path=cookie.path,
            secure=cookie.secure,
            httponly=cookie.http_only,
            samesite=cookie.same_site,
        )
    except (CookieError, UnicodeEncodeError, ValueError) as e:
        logger.error(f"Failed to serialize {cookie.name} cookie for Set-Cookie header: {e}")
        return False
    return True


class CookieBinder:
    """Builds the two cookie families with the deployment's Secure policy.

    The session cookie is HttpOnly so scripts cannot read the bearer token.
    The CSRF cookie is readable by scripts because the front-end echoes it in
    the ``x-csrf-token`` header.
    """

    def __init__(self, secure: bool = True):
        self.secure = secure

    @classmethod
    def from_context(cls, context: SecurityContext) -> "CookieBinder":
        return cls(secure=context.cookies_secure)

    def session_cookie(self, token: str) -> AuthCookie:
        return AuthCookie(
            name=SESSION_COOKIE_NAME,
            value=token,
            max_age=SESSION_COOKIE_TTL_SECONDS,
            http_only=True,
            same_site="lax",
            secure=self.secure,
        )

    def session_removal(self) -> AuthCookie:
        return AuthCookie(
            name=SESSION_COOKIE_NAME,
            value="",
            max_age=0,
            http_only=True,
            same_site="lax",
            secure=self.secure,
            expires=UNIX_EPOCH,
        )

    def csrf_cookie(self, token: str) -> AuthCookie:
        return AuthCookie(
            name=CSRF_COOKIE_NAME,
            value=token,
            max_age=CSRF_COOKIE_TTL_SECONDS,
            http_only=False,
            same_site="strict",
            secure=self.secure,
        )

    def csrf_removal(self) -> AuthCookie:
        return AuthCookie(
            name=CSRF_COOKIE_NAME,
            value="",
            max_age=0,
            http_only=False,
            same_site="strict",
            secure=self.secure,
            expires=UNIX_EPOCH,
        )

    def emit_session(self, response: Response, bearer_token: str, csrf_token: str) -> None:
        append_to(response, self.session_cookie(bearer_token))
        append_to(response, self.csrf_cookie(csrf_token))

    def emit_removal(self, response: Response) -> None:
        append_to(response, self.session_removal())
        append_to(response, self.csrf_removal())
