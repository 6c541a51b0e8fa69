"""LTCMS Backend - FastAPI Application Factory."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from ltcms.api import api_router
from ltcms.api.health import router as health_router
from ltcms.core import async_session_maker, settings, setup_logging
from ltcms.core.config import Settings
from ltcms.core.errors import AuthError, ClientErrorKind, to_client_error
from ltcms.core.logging import get_logger
from ltcms.middleware import (
    BodySizeLimitMiddleware,
    RequestBodyTooLarge,
    SecurityHeadersMiddleware,
    body_too_large_handler,
)
from ltcms.services.auth import AuthService, BootstrapError
from ltcms.services.passwords import dummy_password_hash
from ltcms.services.secrets import (
    SecretConfigError,
    SecretRegistry,
    SecurityContext,
    get_secret_registry,
)
from ltcms.services.token_blacklist import cleanup_expired_blacklist_entries

logger = get_logger("main")


def task_done_callback(task: asyncio.Task[None]) -> None:
    """Log unhandled exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}")


def _abort_startup(errors: list[str]) -> None:
    for error in errors:
        logger.error(f"STARTUP FATAL: {error}")
    raise SystemExit(
        f"LTCMS startup aborted due to configuration errors. "
        f"Fix the {len(errors)} error(s) above and restart."
    )


def initialize_security(
    config: Settings,
    registry: SecretRegistry | None = None,
) -> SecurityContext:
    """Load both signing keys into the registry and build the security context.

    Every rejected key is logged before the process exits, so an operator
    sees all problems at once.
    """
    registry = registry or get_secret_registry()
    errors: list[str] = []
    try:
        registry.initialize_bearer_secret(config.jwt_secret)
    except SecretConfigError as e:
        errors.append(str(e))
    try:
        registry.initialize_csrf_secret(config.csrf_secret)
    except SecretConfigError as e:
        errors.append(str(e))

    if errors:
        _abort_startup(errors)

    return SecurityContext.from_registry(
        registry,
        cookies_secure=config.cookies_secure,
        login_attempt_salt=config.login_attempt_salt,
    )


async def bootstrap_admin(context: SecurityContext, config: Settings) -> None:
    """Create the configured admin account, aborting startup if it is unusable."""
    if not config.bootstrap_admin_configured:
        return
    try:
        async with async_session_maker() as db:
            await AuthService(db, context).ensure_bootstrap_admin(
                config.admin_username, config.admin_password
            )
    except BootstrapError as e:
        _abort_startup([str(e)])
    except SQLAlchemyError as e:
        _abort_startup([f"Failed to bootstrap admin user: {e}"])


async def _token_blacklist_cleanup_loop(interval: int) -> None:
    """Periodically remove expired entries from the token blacklist."""
    while True:
        await asyncio.sleep(interval)
        try:
            async with async_session_maker() as db:
                removed = await cleanup_expired_blacklist_entries(db)
                await db.commit()
                if removed > 0:
                    logger.info(f"Cleaned up {removed} expired token blacklist entries")
        except Exception:
            logger.exception("Error cleaning up token blacklist")


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Translate an internal auth failure into its client-visible response."""
    client_error = to_client_error(exc)
    message = f"{request.method} {request.url.path} rejected ({exc.kind.value}): {exc.detail}"
    extra = {
        "failure_kind": exc.kind.value,
        "method": request.method,
        "path": request.url.path,
    }
    if client_error.kind == ClientErrorKind.INTERNAL:
        logger.error(message, extra=extra)
    else:
        logger.warning(message, extra=extra)

    headers = None
    if client_error.kind in (ClientErrorKind.UNAUTHENTICATED, ClientErrorKind.UNAUTHORIZED):
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(
        status_code=client_error.status_code,
        content=client_error.to_body(),
        headers=headers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    setup_logging(
        level=settings.log_level,
        format_type="structured" if not settings.debug else "dev",
    )
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    if getattr(app.state, "security_context", None) is None:
        app.state.security_context = initialize_security(settings)

    for warning in settings.check_security_configuration():
        logger.warning(f"SECURITY: {warning}")

    # Hash once now so the first unknown-user login is not slower than the rest
    await asyncio.get_running_loop().run_in_executor(None, dummy_password_hash)

    await bootstrap_admin(app.state.security_context, settings)

    blacklist_task = asyncio.create_task(
        _token_blacklist_cleanup_loop(settings.token_blacklist_cleanup_interval)
    )
    blacklist_task.add_done_callback(task_done_callback)

    yield

    # Shutdown
    logger.info("Shutting down...")
    blacklist_task.cancel()
    try:
        await blacklist_task
    except asyncio.CancelledError:
        pass


def create_app(security_context: SecurityContext | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``security_context`` is normally built during startup from the
    environment; passing one skips that step.
    """
    app = FastAPI(
        title=settings.app_name,
        description="LTCMS authentication and session API",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.security_context = security_context

    app.add_exception_handler(AuthError, auth_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestBodyTooLarge, body_too_large_handler)  # type: ignore[arg-type]

    app.add_middleware(
        BodySizeLimitMiddleware,
        max_body_size=settings.max_body_size,
        path_limits={"/api/auth/": settings.login_body_limit},
    )

    # Security headers middleware (outside the body limit so 413s carry them too)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.debug)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    # so that CORS headers are present on error responses too.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "HEAD"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Accept",
            "X-CSRF-Token",
        ],
    )

    # Include routers
    app.include_router(health_router)  # /health and /api/health
    app.include_router(api_router)  # API at /api

    return app


# Application instance
app = create_app()
