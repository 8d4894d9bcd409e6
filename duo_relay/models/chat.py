"""
Chat data models

Defines the user, message and contact summary records shared by the
storage layer, the signaling router and the REST routes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import time


def now_ms() -> int:
    """Current wall-clock time in milliseconds"""
    return int(time.time() * 1000)


def ms_to_iso(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


@dataclass
class User:
    """A registered user"""

    id: str  # opaque hex uuid (primary key)
    username: str  # lowercased, unique
    avatar: str = ""
    invite_code: str = ""
    created_at: int = field(default_factory=now_ms)

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "avatar": self.avatar,
            "inviteCode": self.invite_code,
        }


@dataclass
class Message:
    """A chat message between the two members of a room"""

    id: Optional[int] = None
    room_id: str = ""
    from_id: str = ""
    to_id: str = ""
    text: str = ""
    read: bool = False
    created_at: int = 0
    read_at: Optional[int] = None


@dataclass
class LastMessage:
    text: str
    timestamp: int
    from_username: str
    read: bool


@dataclass
class ContactSummary:
    """A contact as shown in a user's sidebar"""

    id: str
    username: str
    avatar: str = ""
    last_message: Optional[LastMessage] = None
    unread_count: int = 0
