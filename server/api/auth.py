"""
Authentication API endpoints for Cap Gold.

This module implements sign-in, sign-up, token refresh and profile endpoints
under ``/api/auth``. Credential-issuing endpoints take no Authorization header.
"""

import logging
from typing import Optional, Dict, Any
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from shared.exceptions import CapGoldError
from shared.logging_config import AuditLogger
from shared.models import TokenResponse, User
from server.core.token_service import TokenService
from server.core.user_store import UserStore
from server.middleware.auth import get_current_user, get_token_service, get_user_store

logger = logging.getLogger(__name__)
router = APIRouter()


# Request/Response Models
class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SignInRequest(CamelModel):
    email: str = Field(..., min_length=1, description="Email address or phone number")
    password: str = Field(..., min_length=1)


class SignUpRequest(CamelModel):
    email: str = Field(..., min_length=3)
    password: str
    phone_number: str = Field(..., alias="phoneNumber")
    display_name: Optional[str] = Field(None, alias="displayName")


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, alias="refreshToken")


class UpdateProfileRequest(CamelModel):
    current_password: str = Field(..., min_length=1, alias="currentPassword")
    display_name: Optional[str] = Field(None, alias="displayName")
    phone_number: Optional[str] = Field(None, alias="phoneNumber")
    shop_name: Optional[str] = Field(None, alias="shopName")
    email: Optional[str] = None


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., alias="currentPassword")
    new_password: str = Field(..., alias="newPassword")


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit_logger


def auth_response(user: User, tokens: TokenResponse) -> Dict[str, Any]:
    return {'user': user.to_dict(), 'tokens': tokens.to_json()}


@router.post("/auth/signin/email")
async def sign_in_email(
    body: SignInRequest,
    user_store: UserStore = Depends(get_user_store),
    token_service: TokenService = Depends(get_token_service),
    audit: AuditLogger = Depends(get_audit_logger)
):
    """Sign in with email (or phone number) and password."""
    try:
        user = user_store.authenticate(body.email, body.password)
    except CapGoldError as e:
        audit.log_authentication("email_signin", success=False, failure_reason=e.message)
        raise

    audit.log_authentication("email_signin", user_id=user.id, success=True)
    return auth_response(user, token_service.issue_tokens(user.id))


@router.post("/auth/signup/email", status_code=201)
async def sign_up_email(
    body: SignUpRequest,
    user_store: UserStore = Depends(get_user_store),
    token_service: TokenService = Depends(get_token_service),
    audit: AuditLogger = Depends(get_audit_logger)
):
    """Create an account and sign it in."""
    user = user_store.create_user(body.email, body.password, body.phone_number, body.display_name)
    audit.log_authentication("email_signup", user_id=user.id, success=True)
    return auth_response(user, token_service.issue_tokens(user.id))


@router.post("/auth/refresh")
async def refresh_tokens(
    body: RefreshRequest,
    token_service: TokenService = Depends(get_token_service),
    audit: AuditLogger = Depends(get_audit_logger)
):
    """Rotate a refresh token. Returns the flat token object."""
    try:
        user_id, tokens = token_service.rotate(body.refresh_token)
    except CapGoldError as e:
        audit.log_token_refresh("rejected", detail=e.message)
        raise

    audit.log_token_refresh("success", user_id)
    return tokens.to_json()


@router.get("/auth/me")
async def get_me(current_user: User = Depends(get_current_user)):
    """Profile of the signed-in user."""
    return current_user.to_dict()


@router.put("/auth/me")
async def update_me(
    body: UpdateProfileRequest,
    current_user: User = Depends(get_current_user),
    user_store: UserStore = Depends(get_user_store)
):
    """Update profile fields. Requires the current password."""
    user = user_store.update_profile(
        current_user.id,
        body.current_password,
        display_name=body.display_name,
        phone_number=body.phone_number,
        shop_name=body.shop_name,
        email=body.email
    )
    logger.info(f"Profile updated for user {user.id}")
    return user.to_dict()


@router.post("/auth/password/change")
async def change_password(
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    user_store: UserStore = Depends(get_user_store)
):
    """Change the password of the signed-in user."""
    user = user_store.change_password(current_user.id, body.current_password, body.new_password)
    return user.to_dict()
