from __future__ import annotations

from .errors import AlreadyPaired, NotFound, ValidationError
from .identities import Identity, IdentityStore
from .logging import get_logger


logger = get_logger(__name__)


class ConversationPairing:
    """Enforces the exclusive, symmetric counterpart relation."""

    def __init__(self, identities: IdentityStore) -> None:
        self._identities = identities

    def attempt_auto_pair(self, new_identity_id: str) -> tuple[Identity, Identity] | None:
        """Pair ``new_identity_id`` with the only other identity when both are unpaired."""
        newcomer = self._identities.get(new_identity_id)
        if newcomer is None or newcomer.counterpart_id is not None:
            return None
        others = [i for i in self._identities.list_all() if i.identity_id != new_identity_id]
        if len(others) != 1 or others[0].counterpart_id is not None:
            return None
        pair = self._identities.pair(new_identity_id, others[0].identity_id)
        logger.info("identities_auto_paired", identity_id=new_identity_id, counterpart_id=others[0].identity_id)
        return pair

    def link_by_username(self, requester_id: str, target_username: str) -> tuple[Identity, Identity]:
        if not target_username:
            raise ValidationError("partner username is required")
        requester = self._identities.get(requester_id)
        if requester is None:
            raise NotFound("identity not found")
        if requester.counterpart_id is not None:
            raise AlreadyPaired("you already have a partner linked to your account")
        target = self._identities.get_by_username(target_username)
        if target is None:
            raise NotFound("partner not found")
        pair = self._identities.pair(requester_id, target.identity_id)
        logger.info("identities_linked", identity_id=requester_id, counterpart_id=target.identity_id)
        return pair

    def resolve_counterpart(self, identity_id: str) -> Identity | None:
        identity = self._identities.get(identity_id)
        if identity is None or identity.counterpart_id is None:
            return None
        counterpart = self._identities.get(identity.counterpart_id)
        if counterpart is None or counterpart.counterpart_id != identity_id:
            return None
        return counterpart

    def counterpart_id(self, identity_id: str) -> str | None:
        counterpart = self.resolve_counterpart(identity_id)
        return counterpart.identity_id if counterpart is not None else None
