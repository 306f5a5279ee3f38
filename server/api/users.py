"""
Admin user management endpoints for Cap Gold.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import Field

from shared.models import User
from server.api.auth import CamelModel
from server.core.user_store import DEFAULT_USER_PAGE_SIZE, UserStore
from server.middleware.auth import get_user_store, require_admin

logger = logging.getLogger(__name__)
router = APIRouter()


class RoleUpdateRequest(CamelModel):
    role: int = Field(..., ge=0, le=3)


@router.get("/users")
async def list_users(
    page_token: Optional[str] = Query(None, alias="pageToken"),
    search: Optional[str] = Query(None),
    page_size: int = Query(DEFAULT_USER_PAGE_SIZE, alias="pageSize", ge=1),
    admin: User = Depends(require_admin),
    user_store: UserStore = Depends(get_user_store)
):
    """One page of accounts plus the token for the next page."""
    users, next_page_token = user_store.list_users(search, page_token, page_size)
    return {
        'users': [user.to_dict() for user in users],
        'nextPageToken': next_page_token,
    }


@router.patch("/users/{user_id}/role")
async def update_user_role(
    user_id: str,
    body: RoleUpdateRequest,
    admin: User = Depends(require_admin),
    user_store: UserStore = Depends(get_user_store)
):
    user = user_store.set_role(user_id, body.role)
    logger.info(f"Admin {admin.id} changed role of user {user_id} to {body.role}")
    return user.to_dict()
