# LTCMS auth services
from ltcms.services.auth import AuthService, LoginResult
from ltcms.services.bearer import BearerClaims, BearerCredentialService
from ltcms.services.cookies import CookieBinder
from ltcms.services.csrf import CsrfGuard
from ltcms.services.secrets import SecretRegistry, SecurityContext, get_secret_registry

__all__ = [
    "AuthService",
    "BearerClaims",
    "BearerCredentialService",
    "CookieBinder",
    "CsrfGuard",
    "LoginResult",
    "SecretRegistry",
    "SecurityContext",
    "get_secret_registry",
]
