"""
Message routes for the Duo Relay API.

Provides endpoints for:
- Paginated room history (oldest first)
- Mark a room's messages read for a recipient
"""

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel
from typing import List, Optional

from duo_relay.core.config import AppConfig
from duo_relay.core.errors import RelayError
from duo_relay.core.protocol import message_payload
from duo_relay.core.router import SignalingRouter
from duo_relay.api.routes.dependencies import get_config, get_router, http_error


router = APIRouter()


class MarkReadRequest(BaseModel):
    roomId: str
    userId: str


class MarkReadResponse(BaseModel):
    message: str
    updated: int


@router.get("/history/{room_id}")
async def get_history(
    room_id: str,
    limit: Optional[int] = None,
    before: Optional[int] = None,
    relay: SignalingRouter = Depends(get_router),
    cfg: AppConfig = Depends(get_config),
) -> List[dict]:
    """Newest page of a room's history (before ``before`` ms if given), oldest first"""
    storage = relay.storage
    try:
        messages = await run_in_threadpool(
            storage.get_history, room_id, limit or cfg.history_page_size, before
        )
        users = await run_in_threadpool(
            storage.get_users,
            {m.from_id for m in messages} | {m.to_id for m in messages},
        )
    except RelayError as e:
        raise http_error(e, "get chat history")
    return [message_payload(m, users) for m in messages]


@router.put("/read", response_model=MarkReadResponse)
async def mark_read(req: MarkReadRequest, relay: SignalingRouter = Depends(get_router)):
    """Mark messages in a room addressed to a user as read"""
    try:
        updated = await relay.mark_read(req.roomId, req.userId)
    except RelayError as e:
        raise http_error(e, "mark messages as read")
    return {"message": "Messages marked as read", "updated": updated}
