# LTCMS API schemas
from ltcms.schemas.auth import ErrorResponse, LoginRequest, LoginResponse, UserResponse

__all__ = ["ErrorResponse", "LoginRequest", "LoginResponse", "UserResponse"]
