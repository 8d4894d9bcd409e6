"""
SQLite-backed store for users, contacts and chat messages.

Uses one short-lived connection per call so it can be driven from the
threadpool without sharing connections across threads. Contact edges are
stored once per direction; keeping them symmetric is the job of
``add_contact``, not of the schema.
"""

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
import secrets
import sqlite3
import threading
import uuid

from loguru import logger

from duo_relay.core.errors import (
    Conflict,
    InvalidArgument,
    NotFound,
    StorageError,
)
from duo_relay.core.rooms import room_id
from duo_relay.models.chat import ContactSummary, LastMessage, Message, User, now_ms


USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 30
MESSAGE_MAX_LENGTH = 5000

_USER_COLUMNS = "id, username, avatar, invite_code, created_at"
_MESSAGE_COLUMNS = "id, room_id, from_id, to_id, text, read, created_at, read_at"


def normalize_username(username: str) -> str:
    """Trim and lowercase a username, enforcing the length bounds.

    Raises:
        InvalidArgument: If the name is missing or out of bounds
    """
    name = (username or "").strip().lower()
    if not USERNAME_MIN_LENGTH <= len(name) <= USERNAME_MAX_LENGTH:
        raise InvalidArgument(
            f"Username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters"
        )
    return name


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _row_to_user(row) -> User:
    return User(
        id=row[0],
        username=row[1],
        avatar=row[2] or "",
        invite_code=row[3] or "",
        created_at=row[4],
    )


def _row_to_message(row) -> Message:
    return Message(
        id=row[0],
        room_id=row[1],
        from_id=row[2],
        to_id=row[3],
        text=row[4],
        read=bool(row[5]),
        created_at=row[6],
        read_at=row[7],
    )


class ChatStorage:
    def __init__(self, db_path: str, max_message_length: int = MESSAGE_MAX_LENGTH):
        self.db_path = Path(db_path)
        self.max_message_length = max_message_length
        self._clock_lock = threading.Lock()
        self._last_created_at = 0
        self._ensure_storage_exists()

    def _ensure_storage_exists(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL UNIQUE,
                    avatar TEXT NOT NULL DEFAULT '',
                    invite_code TEXT UNIQUE,
                    created_at INTEGER NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS contacts (
                    user_id TEXT NOT NULL,
                    contact_id TEXT NOT NULL,
                    added_at INTEGER NOT NULL,
                    PRIMARY KEY (user_id, contact_id),
                    FOREIGN KEY (user_id) REFERENCES users(id),
                    FOREIGN KEY (contact_id) REFERENCES users(id)
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    room_id TEXT NOT NULL,
                    from_id TEXT NOT NULL,
                    to_id TEXT NOT NULL,
                    text TEXT NOT NULL,
                    read INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    read_at INTEGER,
                    FOREIGN KEY (from_id) REFERENCES users(id),
                    FOREIGN KEY (to_id) REFERENCES users(id)
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_messages_room_time ON messages(room_id, created_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_messages_pair ON messages(from_id, to_id)
            """)
            conn.commit()
            cursor.execute("SELECT MAX(created_at) FROM messages")
            self._last_created_at = cursor.fetchone()[0] or 0
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path), timeout=10)

    def _next_created_at(self) -> int:
        # Strictly increasing per store, even when the wall clock stalls.
        with self._clock_lock:
            ts = max(now_ms(), self._last_created_at + 1)
            self._last_created_at = ts
            return ts

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, username: str, avatar: str = "") -> User:
        """Insert a new user.

        Raises:
            InvalidArgument: If the username is out of bounds
            Conflict: If the username is already taken
        """
        user = User(
            id=uuid.uuid4().hex,
            username=normalize_username(username),
            avatar=avatar or "",
            invite_code=secrets.token_hex(4),
        )
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                f"INSERT INTO users ({_USER_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
                (user.id, user.username, user.avatar, user.invite_code, user.created_at),
            )
            conn.commit()
            return user
        except sqlite3.IntegrityError as e:
            if "username" in str(e):
                raise Conflict(f"Username '{user.username}' is already taken")
            raise StorageError(f"Failed to create user: {e}")
        except sqlite3.Error as e:
            raise StorageError(f"Failed to create user: {e}")
        finally:
            conn.close()

    def get_or_create_user(self, username: str, avatar: str = "") -> Tuple[User, bool]:
        """Login by name. Returns ``(user, created)``.

        An existing name returns the stored record unchanged.
        """
        name = normalize_username(username)
        existing = self.get_user_by_username(name)
        if existing:
            return existing, False
        try:
            return self.create_user(name, avatar), True
        except Conflict:
            # Lost a concurrent insert for the same name.
            winner = self.get_user_by_username(name)
            if winner is None:
                raise
            return winner, False

    def _fetch_user(self, where: str, value: str) -> Optional[User]:
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE {where} = ?", (value,))
            row = cursor.fetchone()
            return _row_to_user(row) if row else None
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read user: {e}")
        finally:
            conn.close()

    def get_user(self, user_id: str) -> Optional[User]:
        if not user_id:
            return None
        return self._fetch_user("id", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username", (username or "").strip().lower())

    def get_user_by_invite_code(self, code: str) -> Optional[User]:
        if not code:
            return None
        return self._fetch_user("invite_code", code.strip().lower())

    def get_users(self, user_ids: Iterable[str]) -> Dict[str, User]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            placeholders = ", ".join("?" for _ in ids)
            cursor.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id IN ({placeholders})", ids
            )
            return {row[0]: _row_to_user(row) for row in cursor.fetchall()}
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read users: {e}")
        finally:
            conn.close()

    def search_users(
        self, query: str, exclude_id: Optional[str] = None, limit: int = 20
    ) -> List[User]:
        """Case-insensitive substring search on usernames.

        Args:
            query: Fragment of the username
            exclude_id: User to leave out of the results (usually the searcher)
            limit: Maximum number of results

        Returns:
            Matching users ordered by username
        """
        query = (query or "").strip().lower()
        if not query:
            raise InvalidArgument("Search query is required")
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_USER_COLUMNS} FROM users
                WHERE username LIKE ? ESCAPE '\\' AND id != ?
                ORDER BY username ASC
                LIMIT ?
                """,
                (_like_pattern(query), exclude_id or "", limit),
            )
            return [_row_to_user(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to search users: {e}")
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def _require_pair(self, user_id: str, friend_id: str) -> Tuple[User, User]:
        if not user_id or not friend_id:
            raise InvalidArgument("userId and friendId are required")
        user = self.get_user(user_id)
        friend = self.get_user(friend_id)
        if not user or not friend:
            raise NotFound("User or friend not found")
        return user, friend

    def add_contact(self, user_id: str, friend_id: str) -> Tuple[User, bool]:
        """Add a contact edge on both sides.

        Idempotent: if ``user_id`` already lists ``friend_id`` nothing is
        written and ``(friend, False)`` is returned.

        Raises:
            InvalidArgument: Missing ids or self-add
            NotFound: Either user does not exist
        """
        if user_id and user_id == friend_id:
            raise InvalidArgument("Cannot add yourself as a contact")
        _, friend = self._require_pair(user_id, friend_id)

        if self.has_contact(user_id, friend_id):
            return friend, False

        added_at = now_ms()
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO contacts (user_id, contact_id, added_at) VALUES (?, ?, ?)",
                (user_id, friend_id, added_at),
            )
            created = cursor.rowcount > 0
            cursor.execute(
                "INSERT OR IGNORE INTO contacts (user_id, contact_id, added_at) VALUES (?, ?, ?)",
                (friend_id, user_id, added_at),
            )
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to add contact: {e}")
        finally:
            conn.close()

        if created:
            logger.info(f"Contact added: {user_id} <-> {friend_id}")
        return friend, created

    def remove_contact(self, user_id: str, friend_id: str) -> bool:
        """Remove ``friend_id`` from ``user_id``'s contacts only.

        The reverse edge is left in place, so the pair stops being mutual
        contacts while ``friend_id`` still lists ``user_id``.
        """
        self._require_pair(user_id, friend_id)
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM contacts WHERE user_id = ? AND contact_id = ?",
                (user_id, friend_id),
            )
            conn.commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageError(f"Failed to remove contact: {e}")
        finally:
            conn.close()

    def has_contact(self, user_id: str, contact_id: str) -> bool:
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT 1 FROM contacts WHERE user_id = ? AND contact_id = ?",
                (user_id, contact_id),
            )
            return cursor.fetchone() is not None
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read contacts: {e}")
        finally:
            conn.close()

    def are_contacts(self, user_id1: str, user_id2: str) -> bool:
        """True only when each user lists the other"""
        return self.has_contact(user_id1, user_id2) and self.has_contact(user_id2, user_id1)

    def get_contact_ids(self, user_id: str) -> List[str]:
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT contact_id FROM contacts WHERE user_id = ? ORDER BY added_at ASC",
                (user_id,),
            )
            return [row[0] for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read contacts: {e}")
        finally:
            conn.close()

    def list_contact_summaries(self, user_id: str) -> List[ContactSummary]:
        """Contacts with last-message preview and unread count.

        Sorted by most recent activity first; contacts without messages go
        last, in username order.

        Raises:
            NotFound: If the user does not exist
        """
        if not self.get_user(user_id):
            raise NotFound("User not found")

        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT u.id, u.username, u.avatar
                FROM contacts c JOIN users u ON u.id = c.contact_id
                WHERE c.user_id = ?
                ORDER BY u.username ASC
                """,
                (user_id,),
            )
            contacts = cursor.fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list contacts: {e}")
        finally:
            conn.close()

        summaries = []
        for contact_id, username, avatar in contacts:
            rid = room_id(user_id, contact_id)
            summaries.append(
                ContactSummary(
                    id=contact_id,
                    username=username,
                    avatar=avatar or "",
                    last_message=self.get_last_message(rid),
                    unread_count=self.count_unread(rid, user_id),
                )
            )

        # sort is stable, so ties (and contacts with no messages) keep username order
        summaries.sort(
            key=lambda s: s.last_message.timestamp if s.last_message else -1,
            reverse=True,
        )
        return summaries

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def validate_text(self, text: str) -> str:
        body = (text or "").strip()
        if not body:
            raise InvalidArgument("Message text is required")
        if len(body) > self.max_message_length:
            raise InvalidArgument(
                f"Message text exceeds {self.max_message_length} characters"
            )
        return body

    def append_message(self, room: str, from_id: str, to_id: str, text: str) -> Message:
        """Persist a new unread message and return it with its id and timestamp"""
        body = self.validate_text(text)
        message = Message(
            room_id=room,
            from_id=from_id,
            to_id=to_id,
            text=body,
            read=False,
            created_at=self._next_created_at(),
        )
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO messages (room_id, from_id, to_id, text, read, created_at)
                VALUES (?, ?, ?, ?, 0, ?)
                """,
                (message.room_id, message.from_id, message.to_id, message.text, message.created_at),
            )
            conn.commit()
            message.id = cursor.lastrowid
            return message
        except sqlite3.Error as e:
            raise StorageError(f"Failed to store message: {e}")
        finally:
            conn.close()

    def get_history(
        self, room: str, limit: int = 50, before: Optional[int] = None
    ) -> List[Message]:
        """Fetch one page of room history.

        Args:
            room: Room id
            limit: Page size
            before: Only messages created strictly before this ms timestamp

        Returns:
            The newest ``limit`` matching messages, oldest first
        """
        if limit <= 0:
            raise InvalidArgument("limit must be positive")
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            if before is not None:
                cursor.execute(
                    f"""
                    SELECT {_MESSAGE_COLUMNS} FROM messages
                    WHERE room_id = ? AND created_at < ?
                    ORDER BY created_at DESC, id DESC
                    LIMIT ?
                    """,
                    (room, before, limit),
                )
            else:
                cursor.execute(
                    f"""
                    SELECT {_MESSAGE_COLUMNS} FROM messages
                    WHERE room_id = ?
                    ORDER BY created_at DESC, id DESC
                    LIMIT ?
                    """,
                    (room, limit),
                )
            rows = cursor.fetchall()
            return [_row_to_message(row) for row in reversed(rows)]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read history: {e}")
        finally:
            conn.close()

    def get_last_message(self, room: str) -> Optional[LastMessage]:
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT m.text, m.created_at, u.username, m.read
                FROM messages m JOIN users u ON u.id = m.from_id
                WHERE m.room_id = ?
                ORDER BY m.created_at DESC, m.id DESC
                LIMIT 1
                """,
                (room,),
            )
            row = cursor.fetchone()
            if not row:
                return None
            return LastMessage(
                text=row[0], timestamp=row[1], from_username=row[2], read=bool(row[3])
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read last message: {e}")
        finally:
            conn.close()

    def count_unread(self, room: str, user_id: str) -> int:
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COUNT(*) FROM messages WHERE room_id = ? AND to_id = ? AND read = 0",
                (room, user_id),
            )
            return cursor.fetchone()[0]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to count unread messages: {e}")
        finally:
            conn.close()

    def mark_read(self, room: str, user_id: str) -> int:
        """Mark every unread message in ``room`` addressed to ``user_id`` as read.

        Already-read messages are untouched, so ``read_at`` is stamped once.

        Returns:
            Number of messages that changed
        """
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE messages SET read = 1, read_at = ?
                WHERE room_id = ? AND to_id = ? AND read = 0
                """,
                (now_ms(), room, user_id),
            )
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            raise StorageError(f"Failed to mark messages read: {e}")
        finally:
            conn.close()
