"""
Contacts routes for the Duo Relay API.

Provides endpoints for:
- List a user's contacts with last-message preview and unread count
- Add a contact (both sides, idempotent)
- Remove a contact (initiator's side only)
"""

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel
from typing import List, Optional

from duo_relay.core.errors import RelayError
from duo_relay.core.protocol import contact_summary_payload
from duo_relay.core.storage import ChatStorage
from duo_relay.api.routes.dependencies import get_storage, http_error


router = APIRouter()


class ContactPairRequest(BaseModel):
    """Request model for add/remove"""

    userId: str
    friendId: str


class ContactResponse(BaseModel):
    """Response model for a contact"""

    id: str
    username: str
    avatar: str = ""
    # {text, timestamp, from, read}
    lastMessage: Optional[dict] = None
    unreadCount: int = 0


class ContactBrief(BaseModel):
    id: str
    username: str
    avatar: str = ""


class AddContactResponse(BaseModel):
    message: str
    contact: ContactBrief


class MessageOnlyResponse(BaseModel):
    message: str


@router.get("/{user_id}", response_model=List[ContactResponse])
def list_contacts(user_id: str, storage: ChatStorage = Depends(get_storage)):
    """Contacts sorted by most recent activity, contacts without messages last"""
    try:
        summaries = storage.list_contact_summaries(user_id)
    except RelayError as e:
        raise http_error(e, "get contacts")
    return [contact_summary_payload(s) for s in summaries]


@router.post("/add", response_model=AddContactResponse)
def add_contact(req: ContactPairRequest, storage: ChatStorage = Depends(get_storage)):
    """Add a contact on both sides; repeating the call is harmless"""
    try:
        friend, created = storage.add_contact(req.userId, req.friendId)
    except RelayError as e:
        raise http_error(e, "add contact")
    return {
        "message": "Contact added successfully" if created else "Contact already added",
        "contact": {"id": friend.id, "username": friend.username, "avatar": friend.avatar},
    }


@router.delete("/remove", response_model=MessageOnlyResponse)
def remove_contact(
    req: ContactPairRequest = Body(...), storage: ChatStorage = Depends(get_storage)
):
    """Remove the friend from the requesting user's list only"""
    try:
        storage.remove_contact(req.userId, req.friendId)
    except RelayError as e:
        raise http_error(e, "remove contact")
    return {"message": "Contact removed successfully"}
