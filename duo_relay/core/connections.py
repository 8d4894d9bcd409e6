"""
Connection handles and room groups.

A ``Connection`` wraps one websocket and carries the per-connection state
machine (unauthenticated -> authenticated -> closed). ``RoomGroups`` tracks
which connections are subscribed to which room feed, and ``ConnectionHub``
holds every open connection for presence broadcasts.

Both shared structures are guarded by a ``threading.Lock`` and hand out
snapshots, so callers can await sends without holding the lock.
"""

import asyncio
import itertools
import threading
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from fastapi import WebSocketDisconnect
from loguru import logger

from duo_relay.core.errors import Unauthorized


class Transport(Protocol):
    """What a connection needs from its socket (FastAPI ``WebSocket`` fits)"""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


_ids = itertools.count(1)


class Connection:
    """One client connection and the identity bound to it"""

    def __init__(self, transport: Transport, connection_id: Optional[str] = None):
        self.transport = transport
        self.id = connection_id or f"conn-{next(_ids)}"
        self.state = ConnectionState.UNAUTHENTICATED
        self.user_id: Optional[str] = None
        self.username: Optional[str] = None
        self._send_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"Connection({self.id!r}, user={self.user_id!r}, state={self.state.value})"

    @property
    def is_authenticated(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED

    @property
    def is_closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    def bind(self, user_id: str, username: str) -> None:
        """Bind an identity for the rest of the connection's life.

        Raises:
            Unauthorized: If the connection is closed or already bound to
                a different identity
        """
        if self.is_closed:
            raise Unauthorized("Connection is closed")
        if self.user_id is not None and self.user_id != user_id:
            raise Unauthorized("Connection is already bound to another user")
        self.user_id = user_id
        self.username = username
        self.state = ConnectionState.AUTHENTICATED

    def mark_closed(self) -> None:
        self.state = ConnectionState.CLOSED

    async def send(self, event: str, data: Dict[str, Any]) -> bool:
        """Best-effort send of one event frame.

        Returns:
            False if the connection is closed or the transport failed
        """
        if self.is_closed:
            return False
        try:
            async with self._send_lock:
                await self.transport.send_json({"event": event, "data": data})
            return True
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"Send of {event!r} to {self.id} failed: {e!r}")
            self.mark_closed()
            return False

    async def close(self, code: int = 1000) -> None:
        if self.is_closed:
            return
        self.mark_closed()
        try:
            await self.transport.close(code=code)
        except (RuntimeError, OSError) as e:
            logger.debug(f"Close of {self.id} failed: {e!r}")


class RoomGroups:
    """Room id -> subscribed connections"""

    def __init__(self):
        self._lock = threading.Lock()
        self._members: Dict[str, Set[Connection]] = {}
        self._rooms_of: Dict[str, Set[str]] = {}

    def join(self, room: str, connection: Connection) -> None:
        with self._lock:
            self._members.setdefault(room, set()).add(connection)
            self._rooms_of.setdefault(connection.id, set()).add(room)

    def join_many(self, rooms: Iterable[str], connection: Connection) -> None:
        for room in rooms:
            self.join(room, connection)

    def leave(self, room: str, connection: Connection) -> None:
        with self._lock:
            self._discard(room, connection)
            rooms = self._rooms_of.get(connection.id)
            if rooms is not None:
                rooms.discard(room)
                if not rooms:
                    del self._rooms_of[connection.id]

    def leave_all(self, connection: Connection) -> List[str]:
        with self._lock:
            rooms = self._rooms_of.pop(connection.id, set())
            for room in rooms:
                self._discard(room, connection)
        return sorted(rooms)

    def _discard(self, room: str, connection: Connection) -> None:
        members = self._members.get(room)
        if members is None:
            return
        members.discard(connection)
        if not members:
            del self._members[room]

    def members(self, room: str) -> List[Connection]:
        with self._lock:
            return list(self._members.get(room, ()))


class ConnectionHub:
    """Every open connection, for server-wide broadcasts"""

    def __init__(self):
        self._lock = threading.Lock()
        self._connections: Set[Connection] = set()

    def add(self, connection: Connection) -> None:
        with self._lock:
            self._connections.add(connection)

    def discard(self, connection: Connection) -> None:
        with self._lock:
            self._connections.discard(connection)

    def snapshot(self) -> List[Connection]:
        with self._lock:
            return list(self._connections)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    async def broadcast(
        self, event: str, data: Dict[str, Any], exclude: Optional[Connection] = None
    ) -> int:
        """Send to every open connection except ``exclude``; returns delivered count"""
        targets = [c for c in self.snapshot() if c is not exclude and not c.is_closed]
        if not targets:
            return 0
        results = await asyncio.gather(*(c.send(event, data) for c in targets))
        return sum(1 for ok in results if ok)
