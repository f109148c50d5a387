from __future__ import annotations

import sqlite3
from typing import Dict, FrozenSet, Iterable, List

from .errors import NotFound
from .sqlite_backend import SQLiteBackend
from .store import (
    TOMBSTONE_TEXT,
    Message,
    MessageKind,
    MessagePage,
    MessageStore,
    _apply_deletion,
    _now_ms,
    _validate_page,
)


_MESSAGE_COLUMNS = (
    "message_id, sender_id, recipient_id, kind, content, media_url, created_at_ms, delivered_at_ms, seen_at_ms"
)

_DYAD_CLAUSE = "((sender_id=? AND recipient_id=?) OR (sender_id=? AND recipient_id=?))"

_VISIBLE_CLAUSE = (
    "NOT EXISTS (SELECT 1 FROM message_deletions d WHERE d.message_id = messages.message_id AND d.identity_id = ?)"
)

_MAX_ROWID = 2**63 - 1


def _storable_id(message_id: int) -> bool:
    return 0 < message_id <= _MAX_ROWID


class SQLiteMessageStore(MessageStore):
    """Durable message store backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def append(
        self,
        sender_id: str,
        recipient_id: str,
        kind: MessageKind,
        content: str,
        media_url: str | None = None,
        created_at_ms: int | None = None,
    ) -> Message:
        kind = MessageKind(kind)
        created = _now_ms() if created_at_ms is None else created_at_ms
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                """
                INSERT INTO messages (sender_id, recipient_id, kind, content, media_url, created_at_ms)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (sender_id, recipient_id, kind.value, content, media_url, created),
            )
            message_id = int(cursor.lastrowid)
        return Message(
            message_id=message_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            kind=kind,
            content=content,
            media_url=media_url,
            created_at_ms=created,
        )

    def get(self, message_id: int) -> Message | None:
        with self._backend.lock:
            return self._load(self._backend.connection, message_id)

    def list_between(self, viewer_id: str, counterpart_id: str, page: int, page_size: int) -> MessagePage:
        _validate_page(page, page_size)
        dyad_params = [viewer_id, counterpart_id, counterpart_id, viewer_id]
        with self._backend.lock:
            conn = self._backend.connection
            total = conn.execute(
                f"SELECT COUNT(*) FROM messages WHERE {_DYAD_CLAUSE} AND {_VISIBLE_CLAUSE}",
                dyad_params + [viewer_id],
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE {_DYAD_CLAUSE} AND {_VISIBLE_CLAUSE}
                ORDER BY created_at_ms DESC, message_id DESC
                LIMIT ? OFFSET ?
                """,
                dyad_params + [viewer_id, page_size, (page - 1) * page_size],
            ).fetchall()
            deletions = self._load_deletions(conn, [row[0] for row in rows])
        messages = [self._row_to_message(row, deletions.get(row[0], frozenset())) for row in reversed(rows)]
        return MessagePage(messages=messages, page=page, page_size=page_size, total=int(total))

    def mark_delivered(self, message_id: int, at_ms: int) -> Message:
        if not _storable_id(message_id):
            raise NotFound("message not found")
        with self._backend.lock:
            conn = self._backend.connection
            conn.execute(
                """
                UPDATE messages SET delivered_at_ms = MAX(?, created_at_ms)
                WHERE message_id=? AND delivered_at_ms IS NULL
                """,
                (at_ms, message_id),
            )
            return self._require(conn, message_id)

    def mark_seen(self, message_id: int, at_ms: int) -> tuple[Message, bool]:
        if not _storable_id(message_id):
            raise NotFound("message not found")
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.execute(
                "UPDATE messages SET seen_at_ms = MAX(?, created_at_ms) WHERE message_id=? AND seen_at_ms IS NULL",
                (at_ms, message_id),
            )
            changed = cursor.rowcount == 1
            return self._require(conn, message_id), changed

    def mark_seen_batch(self, from_id: str, to_id: str, at_ms: int) -> int:
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                """
                UPDATE messages SET seen_at_ms = MAX(?, created_at_ms)
                WHERE sender_id=? AND recipient_id=? AND seen_at_ms IS NULL
                """,
                (at_ms, from_id, to_id),
            )
            return cursor.rowcount

    def mark_deleted_for_viewer(self, message_id: int, viewer_id: str, also_for_counterpart: bool) -> Message:
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                message = self._require(conn, message_id)
                updated = _apply_deletion(message, viewer_id, also_for_counterpart)
                for identity_id in updated.deleted_for - message.deleted_for:
                    cursor.execute(
                        "INSERT OR IGNORE INTO message_deletions (message_id, identity_id) VALUES (?, ?)",
                        (message_id, identity_id),
                    )
                if updated.fully_deleted:
                    cursor.execute(
                        "UPDATE messages SET content=?, media_url=NULL WHERE message_id=?",
                        (TOMBSTONE_TEXT, message_id),
                    )
                conn.commit()
                return updated
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def count_unseen(self, from_id: str, to_id: str) -> int:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"""
                SELECT COUNT(*) FROM messages
                WHERE sender_id=? AND recipient_id=? AND seen_at_ms IS NULL AND {_VISIBLE_CLAUSE}
                """,
                (from_id, to_id, to_id),
            ).fetchone()
        return int(row[0])

    def _require(self, conn: sqlite3.Connection, message_id: int) -> Message:
        message = self._load(conn, message_id)
        if message is None:
            raise NotFound("message not found")
        return message

    def _load(self, conn: sqlite3.Connection, message_id: int) -> Message | None:
        if not _storable_id(message_id):
            return None
        row = conn.execute(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE message_id=?", (message_id,)).fetchone()
        if row is None:
            return None
        deletions = self._load_deletions(conn, [message_id])
        return self._row_to_message(row, deletions.get(message_id, frozenset()))

    @staticmethod
    def _load_deletions(conn: sqlite3.Connection, message_ids: Iterable[int]) -> Dict[int, FrozenSet[str]]:
        ids: List[int] = list(message_ids)
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = conn.execute(
            f"SELECT message_id, identity_id FROM message_deletions WHERE message_id IN ({placeholders})",
            ids,
        ).fetchall()
        collected: Dict[int, set[str]] = {}
        for row in rows:
            collected.setdefault(row[0], set()).add(row[1])
        return {message_id: frozenset(identities) for message_id, identities in collected.items()}

    @staticmethod
    def _row_to_message(row: sqlite3.Row, deleted_for: FrozenSet[str]) -> Message:
        return Message(
            message_id=row[0],
            sender_id=row[1],
            recipient_id=row[2],
            kind=MessageKind(row[3]),
            content=row[4],
            media_url=row[5],
            created_at_ms=row[6],
            delivered_at_ms=row[7],
            seen_at_ms=row[8],
            deleted_for=deleted_for,
        )
