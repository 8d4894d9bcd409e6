"""
Presence registry

Maps each online user id to the single connection that currently represents
it. Process-local and unpersisted: after a restart everyone is offline until
they reconnect.

Rules:
  - register() always overwrites (last writer wins, no multi-device fan-out)
  - unregister() is guarded: it only removes the entry when the caller's
    connection is the one still registered, so a stale disconnect from a
    replaced connection cannot evict the newer session
"""

import threading
from typing import TYPE_CHECKING, Dict, List, Optional

from loguru import logger

if TYPE_CHECKING:
    from duo_relay.core.connections import Connection


class PresenceRegistry:
    """Lock-guarded ``user_id -> Connection`` map"""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, "Connection"] = {}

    def register(self, user_id: str, connection: "Connection") -> Optional["Connection"]:
        """Bind ``user_id`` to ``connection``, returning the replaced handle if any"""
        with self._lock:
            previous = self._entries.get(user_id)
            self._entries[user_id] = connection
        if previous is not None and previous is not connection:
            logger.info(f"Presence for {user_id} moved from {previous.id} to {connection.id}")
        return previous

    def lookup(self, user_id: str) -> Optional["Connection"]:
        with self._lock:
            return self._entries.get(user_id)

    def unregister(self, user_id: str, connection: "Connection") -> bool:
        """Remove the entry only if it still points at ``connection``.

        Returns:
            True if the entry was removed
        """
        with self._lock:
            if self._entries.get(user_id) is not connection:
                return False
            del self._entries[user_id]
            return True

    def online_user_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
