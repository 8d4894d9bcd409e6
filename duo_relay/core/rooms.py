"""
Room identifiers.

A room is the addressable group for exactly one pair of users. Its id is the
two user ids sorted and joined, so both clients compute the same value
independently.
"""

from typing import Tuple

from duo_relay.core.errors import InvalidArgument

ROOM_SEPARATOR = "_"


def room_id(user_id1: str, user_id2: str) -> str:
    """Build the room id for a user pair (order-independent)"""
    if not user_id1 or not user_id2:
        raise InvalidArgument("Both user ids are required to build a room id")
    return ROOM_SEPARATOR.join(sorted([user_id1, user_id2]))


def parse_room_id(value: str) -> Tuple[str, str]:
    """Split a room id back into its two user ids.

    Raises:
        InvalidArgument: If the value is not a two-member room id
    """
    parts = value.split(ROOM_SEPARATOR) if value else []
    if len(parts) != 2 or not all(parts):
        raise InvalidArgument(f"Malformed room id: {value!r}")
    return parts[0], parts[1]


def is_member(value: str, user_id: str) -> bool:
    try:
        return user_id in parse_room_id(value)
    except InvalidArgument:
        return False
