from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Callable, Dict

from .errors import AuthError
from .sqlite_backend import SQLiteBackend
from .store import _now_ms


DEFAULT_TOKEN_TTL_MS = 30 * 24 * 60 * 60 * 1000


@dataclass
class IssuedToken:
    token: str
    identity_id: str
    expires_at_ms: int


def _new_token() -> str:
    return f"tk_{secrets.token_urlsafe(24)}"


class TokenStore:
    """Issues opaque identity tokens and resolves them back to identities."""

    def issue_token(self, identity_id: str) -> IssuedToken:
        raise NotImplementedError

    def resolve_token(self, token: str) -> str:
        """Return the identity id for ``token`` or raise :class:`AuthError`."""
        raise NotImplementedError

    def revoke(self, token: str) -> None:
        raise NotImplementedError


class InMemoryTokenStore(TokenStore):
    def __init__(self, ttl_ms: int = DEFAULT_TOKEN_TTL_MS, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._tokens: Dict[str, IssuedToken] = {}

    def issue_token(self, identity_id: str) -> IssuedToken:
        issued = IssuedToken(token=_new_token(), identity_id=identity_id, expires_at_ms=self._now() + self._ttl_ms)
        self._tokens[issued.token] = issued
        return issued

    def resolve_token(self, token: str) -> str:
        issued = self._tokens.get(token)
        if issued is None:
            raise AuthError("invalid token")
        if issued.expires_at_ms <= self._now():
            self.revoke(token)
            raise AuthError("token expired")
        return issued.identity_id

    def revoke(self, token: str) -> None:
        self._tokens.pop(token, None)


class SQLiteTokenStore(TokenStore):
    """Durable token store backed by SQLite."""

    def __init__(
        self,
        backend: SQLiteBackend,
        ttl_ms: int = DEFAULT_TOKEN_TTL_MS,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._backend = backend
        self._ttl_ms = ttl_ms
        self._now = now_func

    def issue_token(self, identity_id: str) -> IssuedToken:
        issued = IssuedToken(token=_new_token(), identity_id=identity_id, expires_at_ms=self._now() + self._ttl_ms)
        with self._backend.lock:
            self._backend.connection.execute(
                "INSERT INTO tokens (token, identity_id, expires_at_ms) VALUES (?, ?, ?)",
                (issued.token, issued.identity_id, issued.expires_at_ms),
            )
        return issued

    def resolve_token(self, token: str) -> str:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT identity_id, expires_at_ms FROM tokens WHERE token=?",
                (token,),
            ).fetchone()
        if row is None:
            raise AuthError("invalid token")
        if row[1] <= self._now():
            self.revoke(token)
            raise AuthError("token expired")
        return row[0]

    def revoke(self, token: str) -> None:
        with self._backend.lock:
            self._backend.connection.execute("DELETE FROM tokens WHERE token=?", (token,))
