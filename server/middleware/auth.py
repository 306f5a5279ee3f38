"""
Authentication middleware for the Cap Gold auth server.

This module provides the bearer-token and admin-role dependencies for FastAPI
routes and the security headers added to every response.
"""

import logging
from typing import Optional
from fastapi import HTTPException, Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from shared.exceptions import AuthenticationError, ErrorCode
from shared.models import User
from server.core.catalog_store import CatalogStore
from server.core.order_store import OrderStore
from server.core.token_service import TokenService
from server.core.user_store import UserStore

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


def get_token_service(request: Request) -> TokenService:
    """Get token service from app state."""
    return request.app.state.token_service


def get_user_store(request: Request) -> UserStore:
    """Get user store from app state."""
    return request.app.state.user_store


def get_catalog_store(request: Request) -> CatalogStore:
    return request.app.state.catalog_store


def get_order_store(request: Request) -> OrderStore:
    return request.app.state.order_store


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> User:
    """
    Resolve the signed-in user from the Authorization header.

    Raises:
        HTTPException: 401 when the token is missing, invalid or expired, or
            its user no longer exists
    """
    if not credentials:
        raise _unauthorized("Authentication required")

    token_service = get_token_service(request)
    user_store = get_user_store(request)

    try:
        user_id = token_service.verify_access_token(credentials.credentials)
        user = user_store.get_user(user_id)
    except AuthenticationError as e:
        if e.error_code == ErrorCode.AUTH_USER_NOT_FOUND:
            raise _unauthorized("User no longer exists")
        raise _unauthorized(e.message)

    request.state.current_user = user
    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """
    Resolve the signed-in user and insist on the admin role.

    Raises:
        AuthenticationError: 403 for any other role
    """
    if not current_user.is_admin:
        logger.info(f"User {current_user.id} denied admin access")
        raise AuthenticationError(
            "Admin access required",
            error_code=ErrorCode.AUTH_INSUFFICIENT_PERMISSIONS
        )
    return current_user


def add_security_headers(response, request: Request):
    """Add security headers to response."""
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Cache-Control"] = "no-store"

    # Add HSTS header for HTTPS
    if request.url.scheme == "https":
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    return response
