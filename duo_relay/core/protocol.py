"""
Websocket wire protocol

Every frame, in both directions, is a JSON text frame::

    {"event": "<name>", "data": {...}}

Inbound events (client -> server):
    announce            {userId}
    send-message        {from, to, text, roomId?}
    join-room           {roomId}
    leave-room          {roomId}
    get-chat-history    {roomId, userId, limit?}
    contact-added       {friendId}
    call-user           {to, kind}
    answer-call         {to, accepted}
    offer / answer / ice-candidate   {to, payload}
    end-call            {to}

``user-login`` and ``message`` are accepted as older names for ``announce``
and ``send-message``.
"""

import json
from typing import Any, Dict, Mapping, Optional, Tuple

from duo_relay.core.errors import InvalidArgument, RelayError, StorageError
from duo_relay.models.chat import ContactSummary, Message, User, ms_to_iso

# inbound
ANNOUNCE = "announce"
SEND_MESSAGE = "send-message"
JOIN_ROOM = "join-room"
LEAVE_ROOM = "leave-room"
GET_CHAT_HISTORY = "get-chat-history"
CONTACT_ADDED = "contact-added"
CALL_USER = "call-user"
ANSWER_CALL = "answer-call"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
END_CALL = "end-call"

# outbound
MESSAGE = "message"
NEW_MESSAGE_NOTIFICATION = "new-message-notification"
USER_ONLINE = "user-online"
USER_OFFLINE = "user-offline"
INCOMING_CALL = "incoming-call"
CALL_ACCEPTED = "call-accepted"
CALL_REJECTED = "call-rejected"
CALL_ENDED = "call-ended"
CHAT_HISTORY = "chat-history"

LOGIN_ERROR = "login-error"
MESSAGE_ERROR = "message-error"
CALL_FAILED = "call-failed"
CHAT_HISTORY_ERROR = "chat-history-error"
ROOM_ERROR = "room-error"
PROTOCOL_ERROR = "protocol-error"

EVENT_ALIASES = {
    "user-login": ANNOUNCE,
    MESSAGE: SEND_MESSAGE,
}

# Which error event answers a failed inbound event. Relay events are absent:
# their failures are logged, never reported to the sender.
ERROR_EVENTS = {
    ANNOUNCE: LOGIN_ERROR,
    SEND_MESSAGE: MESSAGE_ERROR,
    GET_CHAT_HISTORY: CHAT_HISTORY_ERROR,
    JOIN_ROOM: ROOM_ERROR,
    LEAVE_ROOM: ROOM_ERROR,
    CONTACT_ADDED: ROOM_ERROR,
    CALL_USER: CALL_FAILED,
    ANSWER_CALL: CALL_FAILED,
    END_CALL: CALL_FAILED,
}

# Client-facing text for store failures; internal details stay in the log.
GENERIC_FAILURES = {
    ANNOUNCE: "Login failed",
    SEND_MESSAGE: "Failed to send message",
    GET_CHAT_HISTORY: "Failed to get chat history",
    CALL_USER: "Call failed",
}

CALL_KINDS = ("voice", "video")


def canonical_event(name: str) -> str:
    return EVENT_ALIASES.get(name, name)


def parse_frame(raw: str) -> Tuple[str, Dict[str, Any]]:
    """Decode one inbound text frame into ``(event, data)``.

    Raises:
        InvalidArgument: If the frame is not a JSON object with a string event
    """
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError):
        raise InvalidArgument("Frame is not valid JSON")
    if not isinstance(frame, dict):
        raise InvalidArgument("Frame must be a JSON object")
    event = frame.get("event")
    if not isinstance(event, str) or not event:
        raise InvalidArgument("Frame is missing an event name")
    data = frame.get("data") or {}
    if not isinstance(data, dict):
        raise InvalidArgument("Frame data must be a JSON object")
    return canonical_event(event), data


def get_str(data: Mapping[str, Any], *keys: str, required: bool = True) -> Optional[str]:
    """First non-empty string among ``keys`` in ``data``"""
    for key in keys:
        value = data.get(key)
        if value is None or value == "":
            continue
        if not isinstance(value, str):
            raise InvalidArgument(f"'{key}' must be a string")
        return value
    if required:
        raise InvalidArgument(f"'{keys[0]}' is required")
    return None


def error_payload(event: str, error: RelayError) -> Dict[str, str]:
    message = error.message
    if isinstance(error, StorageError):
        message = GENERIC_FAILURES.get(event, "Internal error")
    return {"error": message, "reason": error.reason}


def message_payload(message: Message, users: Mapping[str, User]) -> Dict[str, Any]:
    """Fully resolved message record, with usernames in place of ids"""
    sender = users.get(message.from_id)
    recipient = users.get(message.to_id)
    created = ms_to_iso(message.created_at)
    return {
        "id": str(message.id),
        "roomId": message.room_id,
        "fromId": message.from_id,
        "toId": message.to_id,
        "from": sender.username if sender else message.from_id,
        "to": recipient.username if recipient else message.to_id,
        "fromAvatar": sender.avatar if sender else "",
        "toAvatar": recipient.avatar if recipient else "",
        "text": message.text,
        "read": message.read,
        "createdAt": created,
        "readAt": ms_to_iso(message.read_at),
        "timestamp": created,
    }


def contact_summary_payload(summary: ContactSummary) -> Dict[str, Any]:
    last = summary.last_message
    return {
        "id": summary.id,
        "username": summary.username,
        "avatar": summary.avatar,
        "lastMessage": {
            "text": last.text,
            "timestamp": ms_to_iso(last.timestamp),
            "from": last.from_username,
            "read": last.read,
        }
        if last
        else None,
        "unreadCount": summary.unread_count,
    }
