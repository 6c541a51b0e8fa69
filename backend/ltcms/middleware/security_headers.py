"""Security headers middleware."""

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

CACHEABLE_PREFIXES = ("/api/tutorials/", "/api/public/")
CACHEABLE_PATHS = frozenset({"/api/tutorials"})

PRODUCTION_CSP = (
    "default-src 'self'; script-src 'self'; style-src 'self'; img-src 'self' data:; "
    "connect-src 'self'; object-src 'none'; base-uri 'self'; form-action 'self'; "
    "frame-ancestors 'none'; upgrade-insecure-requests;"
)
DEVELOPMENT_CSP = (
    "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data:; connect-src 'self' ws: wss:; object-src 'none'; base-uri 'self'; "
    "form-action 'self'; frame-ancestors 'none';"
)


def is_cacheable(method: str, path: str) -> bool:
    """Public read-only content may be cached; everything else may not."""
    return method == "GET" and (path in CACHEABLE_PATHS or path.startswith(CACHEABLE_PREFIXES))


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to all responses."""

    def __init__(self, app: ASGIApp, debug: bool = False):
        super().__init__(app)
        self.csp = DEVELOPMENT_CSP if debug else PRODUCTION_CSP

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        if is_cacheable(request.method, request.url.path):
            response.headers["Cache-Control"] = "public, max-age=300, stale-while-revalidate=60"
            for name in ("Pragma", "Expires"):
                if name in response.headers:
                    del response.headers[name]
        else:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
            response.headers["Pragma"] = "no-cache"
            response.headers["Expires"] = "0"

        response.headers["Content-Security-Policy"] = self.csp
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        # Legacy XSS auditor off; CSP covers it
        response.headers["X-XSS-Protection"] = "0"

        forwarded_proto = request.headers.get("x-forwarded-proto", "")
        if forwarded_proto == "https" or request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains; preload"
            )

        return response
