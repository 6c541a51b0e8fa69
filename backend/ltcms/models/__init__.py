# LTCMS Models
from ltcms.models.base import BaseModel
from ltcms.models.login_attempt import LoginAttempt
from ltcms.models.token_blacklist import TokenBlacklist
from ltcms.models.user import User

__all__ = [
    "BaseModel",
    "LoginAttempt",
    "TokenBlacklist",
    "User",
]
