from __future__ import annotations

from typing import Any, Callable

from .blobs import BlobStore
from .errors import AuthError, NotFound, ValidationError
from .identities import Identity, IdentityStore, hash_secret, verify_secret
from .logging import get_logger
from .pairing import ConversationPairing
from .presence import PresenceRegistry
from .store import _now_ms
from .tokens import IssuedToken, TokenStore


logger = get_logger(__name__)


def _require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


class AccountService:
    """Registration, login and profile upkeep around the identity store."""

    def __init__(
        self,
        identities: IdentityStore,
        pairing: ConversationPairing,
        tokens: TokenStore,
        blobs: BlobStore,
        presence: PresenceRegistry,
        *,
        max_identities: int = 2,
        min_password_length: int = 6,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._identities = identities
        self._pairing = pairing
        self._tokens = tokens
        self._blobs = blobs
        self._presence = presence
        self._max_identities = max_identities
        self._min_password_length = min_password_length
        self._now = now_func

    def register(self, username: Any, password: Any, display_name: Any) -> tuple[Identity, IssuedToken]:
        username = _require_text(username, "username")
        display_name = _require_text(display_name, "display_name")
        if not isinstance(password, str) or not password:
            raise ValidationError("password is required")

        identity = self._identities.create(
            username,
            display_name,
            hash_secret(password),
            max_identities=self._max_identities,
        )
        logger.info("identity_registered", identity_id=identity.identity_id)
        pair = self._pairing.attempt_auto_pair(identity.identity_id)
        if pair is not None:
            identity = pair[0]
        return identity, self._tokens.issue_token(identity.identity_id)

    def login(self, username: Any, password: Any) -> tuple[Identity, IssuedToken]:
        if not isinstance(username, str) or not username or not isinstance(password, str) or not password:
            raise ValidationError("username and password are required")
        identity = self._identities.get_by_username(username.strip())
        if identity is None or not verify_secret(password, identity.password_hash):
            raise AuthError("invalid username or password")
        identity = self._identities.touch(identity.identity_id, self._now())
        logger.info("identity_logged_in", identity_id=identity.identity_id)
        return identity, self._tokens.issue_token(identity.identity_id)

    def authenticate(self, token: str | None) -> Identity:
        """Resolve a bearer token to a live identity, refreshing last-active."""
        if not token:
            raise AuthError("access denied, no token provided")
        identity_id = self._tokens.resolve_token(token)
        if self._identities.get(identity_id) is None:
            raise AuthError("invalid token, identity not found")
        return self._identities.touch(identity_id, self._now())

    def touch(self, identity_id: str) -> Identity:
        return self._identities.touch(identity_id, self._now())

    def change_password(self, identity_id: str, current_password: Any, new_password: Any) -> None:
        if not isinstance(current_password, str) or not isinstance(new_password, str) or not current_password or not new_password:
            raise ValidationError("current and new password are required")
        if len(new_password) < self._min_password_length:
            raise ValidationError(f"new password must be at least {self._min_password_length} characters long")
        identity = self._require(identity_id)
        if not verify_secret(current_password, identity.password_hash):
            raise AuthError("current password is incorrect")
        self._identities.set_password_hash(identity_id, hash_secret(new_password))
        logger.info("password_changed", identity_id=identity_id)

    def update_profile(self, identity_id: str, display_name: Any = None, bio: Any = None) -> Identity:
        if display_name is not None:
            display_name = _require_text(display_name, "display_name")
        if bio is not None and not isinstance(bio, str):
            raise ValidationError("bio must be a string")
        self._require(identity_id)
        return self._identities.update_profile(identity_id, display_name=display_name, bio=bio)

    def update_avatar(self, identity_id: str, data: bytes, filename: str) -> Identity:
        self._require(identity_id)
        url = self._blobs.store(data, "avatar", filename)
        return self._identities.update_profile(identity_id, avatar_url=url)

    def me(self, identity_id: str) -> tuple[Identity, Identity | None]:
        return self._require(identity_id), self._pairing.resolve_counterpart(identity_id)

    def status(self, identity_id: str) -> dict[str, Any]:
        identity = self._require(identity_id)
        return {
            "identity_id": identity.identity_id,
            "is_online": self._presence.is_online(identity_id),
            "last_active": identity.last_active_ms,
        }

    def _require(self, identity_id: str) -> Identity:
        identity = self._identities.get(identity_id)
        if identity is None:
            raise NotFound("identity not found")
        return identity
