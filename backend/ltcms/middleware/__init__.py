"""Middleware module for LTCMS backend."""

from ltcms.middleware.body_limit import (
    BodySizeLimitMiddleware,
    RequestBodyTooLarge,
    body_too_large_handler,
)
from ltcms.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "BodySizeLimitMiddleware",
    "RequestBodyTooLarge",
    "SecurityHeadersMiddleware",
    "body_too_large_handler",
]
