from __future__ import annotations

import hashlib
import hmac
import secrets
import sqlite3
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, List

from .errors import AlreadyPaired, CapacityExceeded, ConflictingPairing, NotFound, UsernameTaken, ValidationError
from .sqlite_backend import SQLiteBackend
from .store import _now_ms


_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1


def hash_secret(secret: str) -> str:
    salt = secrets.token_bytes(16)
    digest = hashlib.scrypt(secret.encode("utf-8"), salt=salt, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)
    return f"scrypt${salt.hex()}${digest.hex()}"


def verify_secret(secret: str, stored: str) -> bool:
    try:
        scheme, salt_hex, digest_hex = stored.split("$")
    except ValueError:
        return False
    if scheme != "scrypt":
        return False
    digest = hashlib.scrypt(
        secret.encode("utf-8"), salt=bytes.fromhex(salt_hex), n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P
    )
    return hmac.compare_digest(digest.hex(), digest_hex)


@dataclass(frozen=True)
class Identity:
    identity_id: str
    username: str
    display_name: str
    password_hash: str
    created_at_ms: int
    last_active_ms: int
    counterpart_id: str | None = None
    bio: str = ""
    avatar_url: str | None = None

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.identity_id,
            "username": self.username,
            "display_name": self.display_name,
            "bio": self.bio,
            "avatar_url": self.avatar_url,
            "counterpart_id": self.counterpart_id,
            "created_at": self.created_at_ms,
            "last_active": self.last_active_ms,
        }


def _check_pairable(requester: Identity, target: Identity) -> bool:
    """Return True when the pair already exists, raise when it may not be formed."""
    if requester.identity_id == target.identity_id:
        raise ValidationError("cannot pair an identity with itself")
    if requester.counterpart_id is not None:
        if requester.counterpart_id == target.identity_id and target.counterpart_id == requester.identity_id:
            return True
        raise AlreadyPaired("identity already has a counterpart")
    if target.counterpart_id is not None and target.counterpart_id != requester.identity_id:
        raise ConflictingPairing("target already has a different counterpart")
    return False


class IdentityStore:
    def create(
        self,
        username: str,
        display_name: str,
        password_hash: str,
        *,
        max_identities: int,
    ) -> Identity:
        """Insert a new identity; capacity is checked before username uniqueness."""
        raise NotImplementedError

    def get(self, identity_id: str) -> Identity | None:
        raise NotImplementedError

    def get_by_username(self, username: str) -> Identity | None:
        raise NotImplementedError

    def list_all(self) -> List[Identity]:
        raise NotImplementedError

    def pair(self, requester_id: str, target_id: str) -> tuple[Identity, Identity]:
        """Atomically set both counterpart pointers or reject the pairing."""
        raise NotImplementedError

    def update_profile(
        self,
        identity_id: str,
        *,
        display_name: str | None = None,
        bio: str | None = None,
        avatar_url: str | None = None,
    ) -> Identity:
        raise NotImplementedError

    def set_password_hash(self, identity_id: str, password_hash: str) -> Identity:
        raise NotImplementedError

    def touch(self, identity_id: str, at_ms: int) -> Identity:
        raise NotImplementedError


class InMemoryIdentityStore(IdentityStore):
    def __init__(self) -> None:
        self._identities: Dict[str, Identity] = {}

    def create(
        self,
        username: str,
        display_name: str,
        password_hash: str,
        *,
        max_identities: int,
    ) -> Identity:
        if len(self._identities) >= max_identities:
            raise CapacityExceeded(f"only {max_identities} identities are allowed")
        if self.get_by_username(username) is not None:
            raise UsernameTaken("username already exists")
        now_ms = _now_ms()
        identity = Identity(
            identity_id=uuid.uuid4().hex,
            username=username,
            display_name=display_name,
            password_hash=password_hash,
            created_at_ms=now_ms,
            last_active_ms=now_ms,
        )
        self._identities[identity.identity_id] = identity
        return identity

    def get(self, identity_id: str) -> Identity | None:
        return self._identities.get(identity_id)

    def get_by_username(self, username: str) -> Identity | None:
        for identity in self._identities.values():
            if identity.username == username:
                return identity
        return None

    def list_all(self) -> List[Identity]:
        return sorted(self._identities.values(), key=lambda i: i.created_at_ms)

    def pair(self, requester_id: str, target_id: str) -> tuple[Identity, Identity]:
        requester = self._require(requester_id)
        target = self._require(target_id)
        if _check_pairable(requester, target):
            return requester, target
        requester = replace(requester, counterpart_id=target_id)
        target = replace(target, counterpart_id=requester_id)
        self._identities[requester_id] = requester
        self._identities[target_id] = target
        return requester, target

    def update_profile(
        self,
        identity_id: str,
        *,
        display_name: str | None = None,
        bio: str | None = None,
        avatar_url: str | None = None,
    ) -> Identity:
        identity = self._require(identity_id)
        changes: Dict[str, Any] = {}
        if display_name is not None:
            changes["display_name"] = display_name
        if bio is not None:
            changes["bio"] = bio
        if avatar_url is not None:
            changes["avatar_url"] = avatar_url
        identity = replace(identity, **changes)
        self._identities[identity_id] = identity
        return identity

    def set_password_hash(self, identity_id: str, password_hash: str) -> Identity:
        identity = replace(self._require(identity_id), password_hash=password_hash)
        self._identities[identity_id] = identity
        return identity

    def touch(self, identity_id: str, at_ms: int) -> Identity:
        identity = self._require(identity_id)
        if at_ms > identity.last_active_ms:
            identity = replace(identity, last_active_ms=at_ms)
            self._identities[identity_id] = identity
        return identity

    def _require(self, identity_id: str) -> Identity:
        identity = self._identities.get(identity_id)
        if identity is None:
            raise NotFound("identity not found")
        return identity


_IDENTITY_COLUMNS = (
    "identity_id, username, display_name, password_hash, created_at_ms, last_active_ms, counterpart_id, bio, avatar_url"
)


class SQLiteIdentityStore(IdentityStore):
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def create(
        self,
        username: str,
        display_name: str,
        password_hash: str,
        *,
        max_identities: int,
    ) -> Identity:
        now_ms = _now_ms()
        identity = Identity(
            identity_id=uuid.uuid4().hex,
            username=username,
            display_name=display_name,
            password_hash=password_hash,
            created_at_ms=now_ms,
            last_active_ms=now_ms,
        )
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                total = cursor.execute("SELECT COUNT(*) FROM identities").fetchone()[0]
                if total >= max_identities:
                    raise CapacityExceeded(f"only {max_identities} identities are allowed")
                existing = cursor.execute("SELECT 1 FROM identities WHERE username=?", (username,)).fetchone()
                if existing:
                    raise UsernameTaken("username already exists")
                cursor.execute(
                    f"INSERT INTO identities ({_IDENTITY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        identity.identity_id,
                        identity.username,
                        identity.display_name,
                        identity.password_hash,
                        identity.created_at_ms,
                        identity.last_active_ms,
                        None,
                        "",
                        None,
                    ),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        return identity

    def get(self, identity_id: str) -> Identity | None:
        with self._backend.lock:
            return self._load(self._backend.connection, "identity_id", identity_id)

    def get_by_username(self, username: str) -> Identity | None:
        with self._backend.lock:
            return self._load(self._backend.connection, "username", username)

    def list_all(self) -> List[Identity]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT {_IDENTITY_COLUMNS} FROM identities ORDER BY created_at_ms ASC, rowid ASC"
            ).fetchall()
        return [self._row_to_identity(row) for row in rows]

    def pair(self, requester_id: str, target_id: str) -> tuple[Identity, Identity]:
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                requester = self._require(conn, requester_id)
                target = self._require(conn, target_id)
                if not _check_pairable(requester, target):
                    cursor.execute(
                        "UPDATE identities SET counterpart_id=? WHERE identity_id=?", (target_id, requester_id)
                    )
                    cursor.execute(
                        "UPDATE identities SET counterpart_id=? WHERE identity_id=?", (requester_id, target_id)
                    )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        return replace(requester, counterpart_id=target_id), replace(target, counterpart_id=requester_id)

    def update_profile(
        self,
        identity_id: str,
        *,
        display_name: str | None = None,
        bio: str | None = None,
        avatar_url: str | None = None,
    ) -> Identity:
        with self._backend.lock:
            conn = self._backend.connection
            self._require(conn, identity_id)
            conn.execute(
                """
                UPDATE identities
                SET display_name=COALESCE(?, display_name), bio=COALESCE(?, bio), avatar_url=COALESCE(?, avatar_url)
                WHERE identity_id=?
                """,
                (display_name, bio, avatar_url, identity_id),
            )
            return self._require(conn, identity_id)

    def set_password_hash(self, identity_id: str, password_hash: str) -> Identity:
        with self._backend.lock:
            conn = self._backend.connection
            self._require(conn, identity_id)
            conn.execute("UPDATE identities SET password_hash=? WHERE identity_id=?", (password_hash, identity_id))
            return self._require(conn, identity_id)

    def touch(self, identity_id: str, at_ms: int) -> Identity:
        with self._backend.lock:
            conn = self._backend.connection
            conn.execute(
                "UPDATE identities SET last_active_ms=MAX(last_active_ms, ?) WHERE identity_id=?",
                (at_ms, identity_id),
            )
            return self._require(conn, identity_id)

    def _require(self, conn: sqlite3.Connection, identity_id: str) -> Identity:
        identity = self._load(conn, "identity_id", identity_id)
        if identity is None:
            raise NotFound("identity not found")
        return identity

    def _load(self, conn: sqlite3.Connection, column: str, value: str) -> Identity | None:
        row = conn.execute(f"SELECT {_IDENTITY_COLUMNS} FROM identities WHERE {column}=?", (value,)).fetchone()
        if row is None:
            return None
        return self._row_to_identity(row)

    @staticmethod
    def _row_to_identity(row: sqlite3.Row) -> Identity:
        return Identity(
            identity_id=row[0],
            username=row[1],
            display_name=row[2],
            password_hash=row[3],
            created_at_ms=row[4],
            last_active_ms=row[5],
            counterpart_id=row[6],
            bio=row[7],
            avatar_url=row[8],
        )
