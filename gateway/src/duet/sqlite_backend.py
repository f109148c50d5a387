from __future__ import annotations

import sqlite3
import threading
from pathlib import Path


SCHEMA_VERSION = 1


class SQLiteBackend:
    """Owns a shared SQLite connection and applies gateway migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS identities (
                identity_id TEXT PRIMARY KEY,
                username TEXT NOT NULL UNIQUE,
                display_name TEXT NOT NULL,
                password_hash TEXT NOT NULL,
                bio TEXT NOT NULL DEFAULT '',
                avatar_url TEXT,
                counterpart_id TEXT REFERENCES identities (identity_id),
                created_at_ms INTEGER NOT NULL,
                last_active_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                message_id INTEGER PRIMARY KEY AUTOINCREMENT,
                sender_id TEXT NOT NULL,
                recipient_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                content TEXT NOT NULL,
                media_url TEXT,
                created_at_ms INTEGER NOT NULL,
                delivered_at_ms INTEGER,
                seen_at_ms INTEGER
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS messages_dyad_created
            ON messages (sender_id, recipient_id, created_at_ms)
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS message_deletions (
                message_id INTEGER NOT NULL REFERENCES messages (message_id),
                identity_id TEXT NOT NULL,
                PRIMARY KEY (message_id, identity_id)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tokens (
                token TEXT PRIMARY KEY,
                identity_id TEXT NOT NULL,
                expires_at_ms INTEGER NOT NULL
            )
            """
        )
