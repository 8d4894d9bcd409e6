"""Invite routes: resolve a user's invite code so a friend can add them"""

from fastapi import APIRouter, Depends, HTTPException

from duo_relay.core.errors import RelayError
from duo_relay.core.storage import ChatStorage
from duo_relay.api.routes.dependencies import get_storage, http_error
from duo_relay.api.routes.users import UserResponse


router = APIRouter()


@router.get("/{invite_code}", response_model=UserResponse)
def get_invite(invite_code: str, storage: ChatStorage = Depends(get_storage)):
    try:
        user = storage.get_user_by_invite_code(invite_code)
    except RelayError as e:
        raise http_error(e, "get invite")
    if user is None:
        raise HTTPException(status_code=404, detail="Invalid invite code")
    return user.to_public()
