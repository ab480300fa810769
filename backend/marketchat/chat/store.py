"""DuckDB-backed chat thread store.

Database Schema:
    chats table:
        - id: Chat thread identifier (UUID)
        - participants: VARCHAR[] of user ids, fixed at creation
        - pair_key: sorted participant pair, used for get-or-create lookups
        - product_id / order_id: optional immutable references
        - last_activity_at: time of the most recent append (never decreases)
        - created_at, is_active (soft-delete flag)
    messages table:
        - id, chat_id, position (0-based append index), sender, content
        - is_read / read_at: read_at set exactly once on false -> true
        - created_at: append time, non-decreasing along position

Consistency:
    Every mutation of a thread (append, mark-read) runs under that thread's
    lock from a :class:`KeyedLock` and inside one DuckDB transaction, so two
    operations on the same chat id never interleave their read-modify-write
    steps. Different chats proceed in parallel on their own cursors.
    Get-or-create is additionally serialized per idempotency key.

Thread Safety:
    Each call opens its own cursor on the shared connection; the store may
    be used from executor threads.
"""
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Sequence, Tuple

import duckdb

from .concurrency import KeyedLock
from .errors import NotFoundError, PersistenceError
from .schemas import ChatThread, Message

logger = logging.getLogger(__name__)

_CREATE_CHATS = """
CREATE TABLE IF NOT EXISTS chats (
    id               VARCHAR PRIMARY KEY,
    participants     VARCHAR[] NOT NULL,
    pair_key         VARCHAR NOT NULL,
    product_id       VARCHAR,
    order_id         VARCHAR,
    last_activity_at TIMESTAMP NOT NULL,
    created_at       TIMESTAMP NOT NULL,
    is_active        BOOLEAN NOT NULL DEFAULT TRUE
)
"""

_CREATE_MESSAGES = """
CREATE TABLE IF NOT EXISTS messages (
    id         VARCHAR PRIMARY KEY,
    chat_id    VARCHAR NOT NULL,
    position   INTEGER NOT NULL,
    sender     VARCHAR NOT NULL,
    content    VARCHAR NOT NULL,
    is_read    BOOLEAN NOT NULL DEFAULT FALSE,
    read_at    TIMESTAMP,
    created_at TIMESTAMP NOT NULL
)
"""

_CHAT_COLUMNS = (
    "id, participants, product_id, order_id, last_activity_at, created_at, is_active"
)
_MESSAGE_COLUMNS = (
    "id, chat_id, position, sender, content, is_read, read_at, created_at"
)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching DuckDB TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def pair_key(user_a: str, user_b: str) -> str:
    """Order-independent key for a participant pair."""
    return "|".join(sorted((str(user_a), str(user_b))))


class ChatStore:
    """Singleton store for chat threads and their message logs."""

    _instance: Optional["ChatStore"] = None
    _default_db_path: str = "chats.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._conn = duckdb.connect(self._db_path)
        self._conn_lock = threading.Lock()
        self._chat_locks = KeyedLock()
        self._create_locks = KeyedLock()
        self._conn.execute(_CREATE_CHATS)
        self._conn.execute(_CREATE_MESSAGES)
        logger.info("[ChatStore] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "ChatStore":
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        with self._conn_lock:
            self._conn.close()

    # -----------------------------------------------------------------------
    # Connection handling
    # -----------------------------------------------------------------------

    @contextmanager
    def _cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._conn_lock:
            cur = self._conn.cursor()
        try:
            yield cur
        except duckdb.Error as exc:
            logger.error("[ChatStore] Query failed: %s", exc)
            raise PersistenceError("Chat store operation failed") from exc
        finally:
            cur.close()

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._cursor() as cur:
            cur.execute("BEGIN TRANSACTION")
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get_chat(self, chat_id: str) -> Optional[ChatThread]:
        with self._cursor() as cur:
            return self._load_chat(cur, str(chat_id))

    def require_chat(self, chat_id: str) -> ChatThread:
        chat = self.get_chat(chat_id)
        if chat is None:
            raise NotFoundError("Chat not found")
        return chat

    def find_active_chat(
        self,
        user_a: str,
        user_b: str,
        product_id: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> Optional[ChatThread]:
        """Find the active thread for (pair, product, order), if any."""
        with self._cursor() as cur:
            return self._find_active(cur, pair_key(user_a, user_b), product_id, order_id)

    def list_chats_for_user(
        self, user_id: str, include_inactive: bool = False
    ) -> List[ChatThread]:
        """Threads the user participates in, most recent activity first."""
        query = (
            f"SELECT {_CHAT_COLUMNS} FROM chats "
            "WHERE list_contains(participants, ?)"
        )
        if not include_inactive:
            query += " AND is_active"
        query += " ORDER BY last_activity_at DESC"
        with self._cursor() as cur:
            rows = cur.execute(query, [str(user_id)]).fetchall()
            return [self._hydrate(cur, row) for row in rows]

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def create_chat(
        self,
        participants: Sequence[str],
        product_id: Optional[str] = None,
        order_id: Optional[str] = None,
        initial_sender: Optional[str] = None,
        initial_content: Optional[str] = None,
    ) -> ChatThread:
        members = [str(p) for p in dict.fromkeys(participants)]
        if len(members) < 2:
            raise ValueError("A chat needs at least two distinct participants")
        chat_id = str(uuid.uuid4())
        now = utcnow()
        with self._chat_locks.hold(chat_id), self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO chats
                  (id, participants, pair_key, product_id, order_id,
                   last_activity_at, created_at, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, TRUE)
                """,
                [
                    chat_id, members, pair_key(members[0], members[1]),
                    product_id, order_id, now, now,
                ],
            )
            if initial_content:
                self._insert_message(cur, chat_id, 0, initial_sender or members[0],
                                     initial_content, now)
            chat = self._load_chat(cur, chat_id)
        logger.info("[ChatStore] Created chat %s for %s", chat_id, members)
        return chat

    def find_or_create_chat(
        self,
        requester_id: str,
        participant_id: str,
        product_id: Optional[str] = None,
        order_id: Optional[str] = None,
        initial_message: Optional[str] = None,
    ) -> Tuple[ChatThread, bool]:
        """Idempotent get-or-create keyed on (pair, product, order).

        Returns:
            Tuple of (chat, created). An existing chat gets ``initial_message``
            appended when one is given.
        """
        key = f"{pair_key(requester_id, participant_id)}#{product_id or ''}#{order_id or ''}"
        with self._create_locks.hold(key):
            existing = self.find_active_chat(requester_id, participant_id, product_id, order_id)
            if existing is None:
                chat = self.create_chat(
                    [requester_id, participant_id],
                    product_id=product_id,
                    order_id=order_id,
                    initial_sender=requester_id,
                    initial_content=initial_message,
                )
                return chat, True
            if initial_message:
                self.append_message(existing.id, requester_id, initial_message)
                existing = self.require_chat(existing.id)
            return existing, False

    def append_message(self, chat_id: str, sender: str, content: str) -> Message:
        """Append a message and bump last_activity_at in one transaction."""
        chat_id = str(chat_id)
        with self._chat_locks.hold(chat_id), self._transaction() as cur:
            row = cur.execute(
                "SELECT last_activity_at FROM chats WHERE id = ?", [chat_id]
            ).fetchone()
            if row is None:
                raise NotFoundError("Chat not found")
            (count,) = cur.execute(
                "SELECT count(*) FROM messages WHERE chat_id = ?", [chat_id]
            ).fetchone()
            # Wall clock may step backwards; keep the log non-decreasing.
            now = max(utcnow(), row[0])
            message = self._insert_message(cur, chat_id, count, str(sender), content, now)
            cur.execute(
                "UPDATE chats SET last_activity_at = ? WHERE id = ?", [now, chat_id]
            )
        logger.debug("[ChatStore] Appended message %s to chat %s", message.id, chat_id)
        return message

    def mark_read(self, chat_id: str, reader_id: str) -> int:
        """Mark every unread message not sent by ``reader_id`` as read.

        A single conditional UPDATE under the chat lock: either every
        matching message flips with the same ``read_at`` or none does.

        Returns:
            Number of messages that transitioned to read.
        """
        chat_id = str(chat_id)
        with self._chat_locks.hold(chat_id), self._transaction() as cur:
            updated = cur.execute(
                """
                UPDATE messages
                   SET is_read = TRUE, read_at = ?
                 WHERE chat_id = ? AND sender <> ? AND NOT is_read
                RETURNING id
                """,
                [utcnow(), chat_id, str(reader_id)],
            ).fetchall()
        if updated:
            logger.debug(
                "[ChatStore] Marked %d message(s) read in chat %s for %s",
                len(updated), chat_id, reader_id,
            )
        return len(updated)

    def deactivate_chat(self, chat_id: str) -> bool:
        chat_id = str(chat_id)
        with self._chat_locks.hold(chat_id), self._transaction() as cur:
            result = cur.execute(
                "UPDATE chats SET is_active = FALSE WHERE id = ? AND is_active RETURNING id",
                [chat_id],
            ).fetchall()
        return bool(result)

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _insert_message(
        self,
        cur: duckdb.DuckDBPyConnection,
        chat_id: str,
        position: int,
        sender: str,
        content: str,
        created_at: datetime,
    ) -> Message:
        message = Message(
            id=str(uuid.uuid4()),
            chat_id=chat_id,
            position=position,
            sender=sender,
            content=content,
            created_at=created_at,
        )
        cur.execute(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, FALSE, NULL, ?)",
            [message.id, chat_id, position, sender, content, created_at],
        )
        return message

    def _find_active(
        self,
        cur: duckdb.DuckDBPyConnection,
        key: str,
        product_id: Optional[str],
        order_id: Optional[str],
    ) -> Optional[ChatThread]:
        row = cur.execute(
            f"""
            SELECT {_CHAT_COLUMNS} FROM chats
             WHERE pair_key = ? AND is_active
               AND product_id IS NOT DISTINCT FROM ?
               AND order_id IS NOT DISTINCT FROM ?
             ORDER BY created_at ASC
             LIMIT 1
            """,
            [key, product_id, order_id],
        ).fetchone()
        return self._hydrate(cur, row) if row else None

    def _load_chat(
        self, cur: duckdb.DuckDBPyConnection, chat_id: str
    ) -> Optional[ChatThread]:
        row = cur.execute(
            f"SELECT {_CHAT_COLUMNS} FROM chats WHERE id = ?", [chat_id]
        ).fetchone()
        return self._hydrate(cur, row) if row else None

    def _hydrate(self, cur: duckdb.DuckDBPyConnection, row: tuple) -> ChatThread:
        rows = cur.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE chat_id = ? ORDER BY position ASC",
            [row[0]],
        ).fetchall()
        messages = [
            Message(
                id=m[0], chat_id=m[1], position=m[2], sender=m[3], content=m[4],
                is_read=m[5], read_at=m[6], created_at=m[7],
            )
            for m in rows
        ]
        return ChatThread(
            id=row[0],
            participants=list(row[1]),
            product_id=row[2],
            order_id=row[3],
            last_activity_at=row[4],
            created_at=row[5],
            is_active=row[6],
            messages=messages,
        )
