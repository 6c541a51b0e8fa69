"""Authentication API endpoints."""

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from ltcms.api.deps import (
    AuthenticatedRequest,
    CsrfCheckedRequest,
    get_authenticated_request,
    get_csrf_checked_request,
    get_security_context,
)
from ltcms.core.database import get_db
from ltcms.schemas.auth import ErrorResponse, LoginRequest, LoginResponse, UserResponse
from ltcms.services.auth import AuthService
from ltcms.services.cookies import CookieBinder
from ltcms.services.secrets import SecurityContext
from ltcms.services.token_blacklist import blacklist_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

_ERROR_RESPONSES = {
    status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
    status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
}


def get_auth_service(
    db: AsyncSession = Depends(get_db),
    context: SecurityContext = Depends(get_security_context),
) -> AuthService:
    """Dependency to get auth service."""
    return AuthService(db, context)


@router.post(
    "/login",
    response_model=LoginResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
        status.HTTP_429_TOO_MANY_REQUESTS: {"model": ErrorResponse},
    },
)
async def login(
    payload: LoginRequest,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
    context: SecurityContext = Depends(get_security_context),
) -> LoginResponse:
    """Authenticate with username and password.

    Sets the HttpOnly session cookie and the script-readable CSRF cookie, and
    returns the bearer token for header-based clients.
    """
    result = await auth_service.login(payload.username, payload.password)
    CookieBinder.from_context(context).emit_session(
        response, result.bearer_token, result.csrf_token
    )
    return LoginResponse(
        token=result.bearer_token,
        user=UserResponse(username=result.user.username, role=result.user.role),
    )


@router.get("/me", response_model=UserResponse, responses=_ERROR_RESPONSES)
async def get_current_user_info(
    identity: AuthenticatedRequest = Depends(get_authenticated_request),
) -> UserResponse:
    """Get the current user's information."""
    return UserResponse(username=identity.subject, role=identity.role)


@router.post(
    "/logout",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    responses=_ERROR_RESPONSES,
)
async def logout(
    checked: CsrfCheckedRequest = Depends(get_csrf_checked_request),
    db: AsyncSession = Depends(get_db),
    context: SecurityContext = Depends(get_security_context),
) -> Response:
    """Log out the current user.

    Revokes the presented bearer token for the rest of its lifetime and tells
    the browser to drop both cookies.
    """
    identity = checked.identity
    await blacklist_token(db, identity.token, identity.claims.exp)
    await db.commit()

    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    CookieBinder.from_context(context).emit_removal(response)
    logger.info(f"User {identity.subject} logged out")
    return response
