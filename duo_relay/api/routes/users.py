"""
User routes for the Duo Relay API.

Provides endpoints for:
- Create-or-fetch a user by name (login)
- Search users by name fragment
- Fetch a user by id
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import List, Optional

from duo_relay.core.config import AppConfig
from duo_relay.core.errors import RelayError
from duo_relay.core.storage import ChatStorage
from duo_relay.api.routes.dependencies import get_config, get_storage, http_error


router = APIRouter()


class CreateUserRequest(BaseModel):
    """Request model for login by name"""

    username: str
    avatar: str = ""


class UserResponse(BaseModel):
    """Response model for a user"""

    id: str
    username: str
    avatar: str
    inviteCode: str


class LoginResponse(UserResponse):
    created: bool


class UserListResponse(BaseModel):
    users: List[UserResponse]
    count: int


@router.post("/create", response_model=LoginResponse)
def create_user(req: CreateUserRequest, storage: ChatStorage = Depends(get_storage)):
    """Create a user, or return the existing one with the same name"""
    try:
        user, created = storage.get_or_create_user(req.username, req.avatar)
    except RelayError as e:
        raise http_error(e, "create user")
    return {**user.to_public(), "created": created}


@router.get("/search", response_model=UserListResponse)
def search_users(
    q: str,
    exclude: Optional[str] = None,
    storage: ChatStorage = Depends(get_storage),
    cfg: AppConfig = Depends(get_config),
):
    """Search users by name fragment, leaving out ``exclude``"""
    try:
        users = storage.search_users(q, exclude_id=exclude, limit=cfg.search_limit)
    except RelayError as e:
        raise http_error(e, "search users")
    return {"users": [u.to_public() for u in users], "count": len(users)}


@router.get("/{user_id}", response_model=UserResponse)
def get_user(user_id: str, storage: ChatStorage = Depends(get_storage)):
    try:
        user = storage.get_user(user_id)
    except RelayError as e:
        raise http_error(e, "get user")
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user.to_public()
