"""
Signaling router

The connection-event state machine at the center of the relay:

1. ``announce`` binds a connection to an existing user, registers presence,
   subscribes the connection to one room group per contact and tells every
   other connection the user is online.
2. ``send_message`` authorizes against the contact graph, persists the
   message, then delivers it to the room group and nudges the recipient.
3. The call path (``call_user``, ``answer_call``, the offer/answer/ICE relays
   and ``end_call``) is stateless pass-through between two presence entries.
   Negotiation payloads are forwarded untouched; an absent recipient means
   the payload is dropped.

Store calls run in the threadpool, so every store round trip is a point where
other events (including a second event from the same connection) can run.
Nothing here holds per-connection state across such an await.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from fastapi.concurrency import run_in_threadpool
from loguru import logger

from duo_relay.core import protocol
from duo_relay.core.config import AppConfig
from duo_relay.core.connections import Connection, ConnectionHub, RoomGroups
from duo_relay.core.errors import (
    Forbidden,
    InvalidArgument,
    NotFound,
    RelayError,
    StorageError,
    Unauthorized,
    Unavailable,
)
from duo_relay.core.presence import PresenceRegistry
from duo_relay.core.rooms import is_member, room_id
from duo_relay.core.storage import ChatStorage
from duo_relay.models.chat import Message, User

Handler = Callable[[Connection, Mapping[str, Any]], Awaitable[Any]]

CHAT_HISTORY_LIMIT = 100


class SignalingRouter:
    def __init__(
        self,
        storage: ChatStorage,
        presence: Optional[PresenceRegistry] = None,
        rooms: Optional[RoomGroups] = None,
        hub: Optional[ConnectionHub] = None,
        config: Optional[AppConfig] = None,
    ):
        self.storage = storage
        self.presence = presence or PresenceRegistry()
        self.rooms = rooms or RoomGroups()
        self.hub = hub or ConnectionHub()
        self.config = config or AppConfig()
        self._handlers: Dict[str, Handler] = {
            protocol.ANNOUNCE: self._on_announce,
            protocol.SEND_MESSAGE: self._on_send_message,
            protocol.JOIN_ROOM: self._on_join_room,
            protocol.LEAVE_ROOM: self._on_leave_room,
            protocol.GET_CHAT_HISTORY: self._on_get_chat_history,
            protocol.CONTACT_ADDED: self._on_contact_added,
            protocol.CALL_USER: self._on_call_user,
            protocol.ANSWER_CALL: self._on_answer_call,
            protocol.OFFER: self._on_offer,
            protocol.ANSWER: self._on_answer,
            protocol.ICE_CANDIDATE: self._on_ice_candidate,
            protocol.END_CALL: self._on_end_call,
        }

    async def _store(self, fn, *args, **kwargs):
        return await run_in_threadpool(fn, *args, **kwargs)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self, connection: Connection) -> None:
        self.hub.add(connection)
        logger.info(f"Connected: {connection.id}")

    async def disconnect(self, connection: Connection) -> bool:
        """Terminal close: drop groups, guarded presence removal, offline broadcast.

        In-flight call counterparties are not told; they find out through
        their own transport.

        Returns:
            True if this connection still owned the user's presence entry
        """
        connection.mark_closed()
        self.rooms.leave_all(connection)
        self.hub.discard(connection)

        user_id = connection.user_id
        if user_id is None:
            logger.info(f"Disconnected: {connection.id} (never announced)")
            return False

        removed = self.presence.unregister(user_id, connection)
        if removed:
            await self.hub.broadcast(protocol.USER_OFFLINE, {"userId": user_id})
            logger.info(f"{connection.username} ({user_id}) disconnected")
        else:
            logger.info(
                f"Stale disconnect for {user_id} on {connection.id}; newer session kept"
            )
        return removed

    # ------------------------------------------------------------------
    # Authorization helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_authenticated(connection: Connection) -> str:
        if not connection.is_authenticated or connection.user_id is None:
            raise Unauthorized("Not authenticated")
        return connection.user_id

    def _require_identity(self, connection: Connection, claimed: str) -> str:
        user_id = self._require_authenticated(connection)
        if user_id != claimed:
            raise Unauthorized("Unauthorized")
        return user_id

    # ------------------------------------------------------------------
    # Identity and message path
    # ------------------------------------------------------------------

    async def announce(self, connection: Connection, user_id: str) -> User:
        """Bind ``connection`` to ``user_id`` and mark the user online.

        There is no credential check: any connection may claim any id it
        knows.

        Raises:
            InvalidArgument: Empty user id
            Unauthorized: Connection already bound to a different identity
            NotFound: Unknown user (presence is left untouched)
        """
        if not user_id:
            raise InvalidArgument("userId is required")
        if connection.user_id is not None and connection.user_id != user_id:
            raise Unauthorized("Connection is already bound to another user")

        user = await self._store(self.storage.get_user, user_id)
        if user is None:
            raise NotFound("User not found")

        connection.bind(user.id, user.username)
        self.presence.register(user.id, connection)

        contact_ids = await self._store(self.storage.get_contact_ids, user.id)
        self.rooms.join_many((room_id(user.id, cid) for cid in contact_ids), connection)

        await self.hub.broadcast(
            protocol.USER_ONLINE,
            {"userId": user.id, "username": user.username},
            exclude=connection,
        )
        logger.info(f"{user.username} ({user.id}) logged in on {connection.id}")
        return user

    async def send_message(
        self,
        connection: Connection,
        from_id: str,
        to_id: str,
        text: str,
        room: Optional[str] = None,
    ) -> Message:
        """Persist a chat message and deliver it to the room group.

        A caller-supplied ``room`` is used as-is; otherwise it is computed
        from the pair. Delivery happens after the write completes, so two
        sequential sends from one connection arrive in order.

        Raises:
            Unauthorized: Connection not announced as ``from_id``
            InvalidArgument: Missing recipient, empty or oversized text
            NotFound: Either user is unknown
            Forbidden: The users are not mutual contacts
        """
        self._require_identity(connection, from_id)
        if not to_id:
            raise InvalidArgument("'to' is required")
        body = self.storage.validate_text(text)

        users = await self._store(self.storage.get_users, [from_id, to_id])
        if from_id not in users or to_id not in users:
            raise NotFound("User not found")
        if not await self._store(self.storage.are_contacts, from_id, to_id):
            raise Forbidden("Users are not contacts")

        final_room = room or room_id(from_id, to_id)
        message = await self._store(
            self.storage.append_message, final_room, from_id, to_id, body
        )

        payload = protocol.message_payload(message, users)
        members = self.rooms.members(final_room)
        if members:
            await asyncio.gather(*(m.send(protocol.MESSAGE, payload) for m in members))

        recipient = self.presence.lookup(to_id)
        if recipient is not None:
            await recipient.send(
                protocol.NEW_MESSAGE_NOTIFICATION,
                {"from": users[from_id].username, "fromId": from_id, "roomId": final_room},
            )

        logger.info(
            f"Message {message.id} in {final_room}: {from_id} -> {to_id} "
            f"(delivered to {len(members)} connection(s))"
        )
        return message

    async def mark_read(self, room: str, user_id: str) -> int:
        """Mark ``room``'s unread messages addressed to ``user_id`` as read.

        Not relayed to the sender; read state shows up on the next history fetch.
        """
        if not room or not user_id:
            raise InvalidArgument("roomId and userId are required")
        count = await self._store(self.storage.mark_read, room, user_id)
        logger.debug(f"Marked {count} message(s) read in {room} for {user_id}")
        return count

    def join_room(self, connection: Connection, room: str) -> None:
        self._require_authenticated(connection)
        if not room:
            raise InvalidArgument("roomId is required")
        self.rooms.join(room, connection)

    def leave_room(self, connection: Connection, room: str) -> None:
        self._require_authenticated(connection)
        if not room:
            raise InvalidArgument("roomId is required")
        self.rooms.leave(room, connection)

    def contact_added(self, connection: Connection, friend_id: str) -> str:
        """Subscribe to a freshly added contact's room without re-announcing"""
        user_id = self._require_authenticated(connection)
        if not friend_id:
            raise InvalidArgument("friendId is required")
        room = room_id(user_id, friend_id)
        self.rooms.join(room, connection)
        return room

    async def get_chat_history(
        self,
        connection: Connection,
        room: str,
        user_id: str,
        limit: int = CHAT_HISTORY_LIMIT,
    ) -> List[Dict[str, Any]]:
        """Send the newest ``limit`` messages of ``room``, oldest first.

        This is always the latest window of the room, never its oldest messages.

        Raises:
            Unauthorized: Connection not announced as ``user_id``
            Forbidden: ``user_id`` is not one of the room's two members
        """
        self._require_identity(connection, user_id)
        if not room:
            raise InvalidArgument("roomId is required")
        if not is_member(room, user_id):
            raise Forbidden("Not a member of this room")
        messages = await self._store(self.storage.get_history, room, limit)
        users = await self._store(
            self.storage.get_users,
            {m.from_id for m in messages} | {m.to_id for m in messages},
        )
        payloads = [protocol.message_payload(m, users) for m in messages]
        await connection.send(protocol.CHAT_HISTORY, {"roomId": room, "messages": payloads})
        return payloads

    # ------------------------------------------------------------------
    # Call path
    # ------------------------------------------------------------------

    async def call_user(self, connection: Connection, to_id: str, kind: str) -> None:
        """Ring ``to_id``.

        No queuing and no ring timeout: the callee is either online now or
        the caller is told immediately.

        Raises:
            Unauthorized: Connection not announced
            InvalidArgument: Missing target or unknown call kind
            Forbidden: Not mutual contacts (checked before presence)
            Unavailable: Target has no active connection
        """
        from_id = self._require_authenticated(connection)
        if not to_id:
            raise InvalidArgument("'to' is required")
        if kind not in protocol.CALL_KINDS:
            raise InvalidArgument(f"Call kind must be one of {', '.join(protocol.CALL_KINDS)}")

        if not await self._store(self.storage.are_contacts, from_id, to_id):
            raise Forbidden("User is not a contact")

        callee = self.presence.lookup(to_id)
        if callee is None or callee.is_closed:
            raise Unavailable("User not online")

        delivered = await callee.send(
            protocol.INCOMING_CALL,
            {"from": from_id, "fromDisplayName": connection.username, "kind": kind},
        )
        if not delivered:
            raise Unavailable("User not online")
        logger.info(f"{connection.username} calling {to_id} ({kind})")

    async def answer_call(self, connection: Connection, to_id: str, accepted: bool) -> bool:
        """Tell the original caller whether the call was accepted.

        If the caller has gone away the answer is dropped without telling
        the answering side.
        """
        from_id = self._require_authenticated(connection)
        event = protocol.CALL_ACCEPTED if accepted else protocol.CALL_REJECTED
        delivered = await self._relay(to_id, event, {"from": from_id})
        if delivered:
            logger.info(
                f"{connection.username} {'accepted' if accepted else 'rejected'} call from {to_id}"
            )
        return delivered

    async def relay_offer(self, connection: Connection, to_id: str, payload: Any) -> bool:
        return await self._relay_negotiation(connection, protocol.OFFER, to_id, payload)

    async def relay_answer(self, connection: Connection, to_id: str, payload: Any) -> bool:
        return await self._relay_negotiation(connection, protocol.ANSWER, to_id, payload)

    async def relay_ice_candidate(self, connection: Connection, to_id: str, payload: Any) -> bool:
        return await self._relay_negotiation(connection, protocol.ICE_CANDIDATE, to_id, payload)

    async def _relay_negotiation(
        self, connection: Connection, event: str, to_id: str, payload: Any
    ) -> bool:
        from_id = self._require_authenticated(connection)
        return await self._relay(to_id, event, {"from": from_id, "payload": payload})

    async def end_call(self, connection: Connection, to_id: str) -> bool:
        """Send ``call-ended`` to ``to_id`` and echo it back to the caller.

        Returns:
            Whether the named recipient was reached
        """
        from_id = self._require_authenticated(connection)
        delivered = await self._relay(to_id, protocol.CALL_ENDED, {"from": from_id})
        await connection.send(protocol.CALL_ENDED, {"from": to_id})
        logger.info(f"{connection.username} ended call with {to_id}")
        return delivered

    async def _relay(self, to_id: Optional[str], event: str, data: Dict[str, Any]) -> bool:
        # fire-and-forget: no buffering, no retries
        target = self.presence.lookup(to_id) if to_id else None
        if target is None:
            logger.debug(f"Dropped {event!r} from {data.get('from')}: {to_id} not present")
            return False
        return await target.send(event, data)

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    async def handle_event(
        self, connection: Connection, event: str, data: Mapping[str, Any]
    ) -> None:
        """Run one inbound event to completion.

        Client-side failures come back to the originating connection as the
        event's named error event and never close the connection. Anything
        else propagates to the transport loop.
        """
        event = protocol.canonical_event(event)
        handler = self._handlers.get(event)
        if handler is None:
            await connection.send(
                protocol.PROTOCOL_ERROR,
                {"error": f"Unknown event: {event}", "reason": InvalidArgument.reason},
            )
            return

        if connection.is_closed:
            logger.debug(f"Ignoring {event!r} on closed {connection.id}")
            return

        try:
            await handler(connection, data)
        except StorageError as e:
            logger.exception(f"Store failure handling {event!r} on {connection.id}: {e}")
            await self._report(connection, event, e)
        except RelayError as e:
            logger.warning(f"{event!r} on {connection.id} rejected: {e.reason} ({e.message})")
            await self._report(connection, event, e)

    async def _report(self, connection: Connection, event: str, error: RelayError) -> None:
        error_event = protocol.ERROR_EVENTS.get(event)
        if error_event is None:
            return
        await connection.send(error_event, protocol.error_payload(event, error))

    async def _on_announce(self, connection, data):
        await self.announce(connection, protocol.get_str(data, "userId"))

    async def _on_send_message(self, connection, data):
        await self.send_message(
            connection,
            protocol.get_str(data, "from"),
            protocol.get_str(data, "to"),
            protocol.get_str(data, "text", required=False) or "",
            protocol.get_str(data, "roomId", required=False),
        )

    async def _on_join_room(self, connection, data):
        self.join_room(connection, protocol.get_str(data, "roomId"))

    async def _on_leave_room(self, connection, data):
        self.leave_room(connection, protocol.get_str(data, "roomId"))

    async def _on_contact_added(self, connection, data):
        self.contact_added(connection, protocol.get_str(data, "friendId"))

    async def _on_get_chat_history(self, connection, data):
        limit = data.get("limit", CHAT_HISTORY_LIMIT)
        if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
            raise InvalidArgument("limit must be a positive integer")
        await self.get_chat_history(
            connection,
            protocol.get_str(data, "roomId"),
            protocol.get_str(data, "userId"),
            min(limit, CHAT_HISTORY_LIMIT),
        )

    async def _on_call_user(self, connection, data):
        await self.call_user(
            connection,
            protocol.get_str(data, "to"),
            protocol.get_str(data, "kind", "type"),
        )

    async def _on_answer_call(self, connection, data):
        accepted = data.get("accepted", data.get("answer"))
        if not isinstance(accepted, bool):
            raise InvalidArgument("accepted must be a boolean")
        await self.answer_call(connection, protocol.get_str(data, "to"), accepted)

    async def _on_offer(self, connection, data):
        await self._on_negotiation(connection, protocol.OFFER, data, "offer")

    async def _on_answer(self, connection, data):
        await self._on_negotiation(connection, protocol.ANSWER, data, "answer")

    async def _on_ice_candidate(self, connection, data):
        await self._on_negotiation(connection, protocol.ICE_CANDIDATE, data, "candidate")

    async def _on_negotiation(self, connection, event, data, legacy_key):
        # Relay failures are never reported, an unauthenticated sender included.
        if not connection.is_authenticated:
            logger.debug(f"Dropped {event!r} from unauthenticated {connection.id}")
            return
        to_id = data.get("to") if isinstance(data.get("to"), str) else None
        payload = data["payload"] if "payload" in data else data.get(legacy_key)
        await self._relay_negotiation(connection, event, to_id, payload)

    async def _on_end_call(self, connection, data):
        await self.end_call(connection, protocol.get_str(data, "to"))
