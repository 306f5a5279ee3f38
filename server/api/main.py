"""
FastAPI application for the Cap Gold auth server.

This module sets up the FastAPI application with the auth, catalog, order and
user routes, CORS, security headers and error handling. Errors are returned as
``{"error": message}`` so clients can show the message directly.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.exceptions import CapGoldError, ErrorCode, handle_exception
from shared.logging_config import AuditLogger, log_structured_error
from server.config import AppConfig, get_config
from server.core.catalog_store import CatalogStore
from server.core.order_store import OrderStore
from server.core.token_service import TokenService
from server.core.user_store import UserStore
from server.middleware.auth import add_security_headers
from server.api.auth import router as auth_router
from server.api.catalog import router as catalog_router
from server.api.orders import router as orders_router
from server.api.users import router as users_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan logging."""
    logger.info("Starting Cap Gold auth server...")
    app.state.started_at = datetime.now(timezone.utc)
    yield
    logger.info(f"Shutting down, {app.state.user_store.count()} user(s) in store")


def create_app(
    config: Optional[AppConfig] = None,
    token_service: Optional[TokenService] = None,
    user_store: Optional[UserStore] = None,
    catalog_store: Optional[CatalogStore] = None,
    order_store: Optional[OrderStore] = None
) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        config: Application configuration, loaded from the environment if omitted
        token_service: Token issuer, built from the security config if omitted
        user_store: User repository, a fresh in-memory store if omitted
        catalog_store: Products and categories, empty if omitted
        order_store: Order book, empty if omitted

    Returns:
        Configured FastAPI app
    """
    config = config or get_config()

    app = FastAPI(
        title="Cap Gold API",
        description="Sign-in, token refresh, catalog, order and user endpoints for Cap Gold clients",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.token_service = token_service or TokenService(
        jwt_secret=config.security.jwt_secret_key,
        access_token_minutes=config.security.access_token_minutes,
        refresh_token_days=config.security.refresh_token_days,
        algorithm=config.security.jwt_algorithm
    )
    app.state.user_store = user_store or UserStore(
        min_password_length=config.security.min_password_length
    )
    app.state.catalog_store = catalog_store or CatalogStore()
    app.state.order_store = order_store or OrderStore()
    audit_logger = AuditLogger("server_audit")
    app.state.audit_logger = audit_logger

    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        response = await call_next(request)
        return add_security_headers(response, request)

    def current_user_id(request: Request) -> Optional[str]:
        user = getattr(request.state, 'current_user', None)
        return user.id if user else None

    @app.exception_handler(CapGoldError)
    async def cap_gold_error_handler(request: Request, exc: CapGoldError):
        """Handle structured CapGoldError exceptions."""
        user_id = current_user_id(request)
        log_structured_error(logger, exc, user_id)
        if exc.get_http_status_code() in (401, 403):
            audit_logger.log_error(exc, user_id)

        return JSONResponse(
            status_code=exc.get_http_status_code(),
            content={'error': exc.message, 'code': exc.error_code.value},
            headers={'X-Error-Code': exc.error_code.value}
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle FastAPI HTTP exceptions with the error body clients expect."""
        if exc.status_code in (401, 403):
            logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={'error': str(exc.detail)},
            headers=exc.headers
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = '.'.join(str(part) for part in first.get('loc', ()) if part != 'body')
        message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Invalid request body"
        return JSONResponse(
            status_code=400,
            content={'error': message, 'code': ErrorCode.VALIDATION_INVALID_INPUT.value}
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        structured_error = handle_exception(
            exc,
            context={
                'request_method': request.method,
                'request_path': str(request.url.path),
                'exception_type': type(exc).__name__
            },
            default_error_code=ErrorCode.INTERNAL_UNEXPECTED_ERROR
        )
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        audit_logger.log_error(structured_error, current_user_id(request))

        message = structured_error.message
        if config.server.environment == "production":
            message = "An internal server error occurred"

        return JSONResponse(
            status_code=500,
            content={'error': message, 'code': structured_error.error_code.value}
        )

    @app.get("/health", tags=["health"])
    async def health():
        """Liveness check."""
        return {
            'status': 'healthy',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'users': app.state.user_store.count()
        }

    app.include_router(auth_router, prefix="/api", tags=["auth"])
    app.include_router(catalog_router, prefix="/api", tags=["catalog"])
    app.include_router(orders_router, prefix="/api", tags=["orders"])
    app.include_router(users_router, prefix="/api", tags=["users"])

    return app
