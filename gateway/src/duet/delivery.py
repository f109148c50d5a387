"""Delivery engine: send, fan-out and per-message status transitions.

A message moves ``Stored`` -> ``DeliveredLive`` when the counterpart's live
connection accepted the push, or stays ``PendingOffline`` until the
counterpart fetches history. ``Seen`` and the deletion states are reached
through :meth:`DeliveryEngine.mark_seen` and :meth:`DeliveryEngine.delete`.

Persistence always happens before any push, and a failed push never rolls
persistence back.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Tuple

from .channel import Connection
from .errors import Forbidden, InvalidPayload, NoCounterpart, NotFound, PushFailed, ValidationError
from .logging import get_logger
from .pairing import ConversationPairing
from .presence import PresenceRegistry
from .store import Message, MessageKind, MessagePage, MessageStore, _now_ms


logger = get_logger(__name__)

MEDIA_PLACEHOLDERS = {
    MessageKind.IMAGE: "Image shared",
    MessageKind.VIDEO: "Video shared",
}


class DeliveryEngine:
    def __init__(
        self,
        messages: MessageStore,
        pairing: ConversationPairing,
        presence: PresenceRegistry,
        *,
        default_page_size: int = 20,
        max_page_size: int = 100,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._messages = messages
        self._pairing = pairing
        self._presence = presence
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size
        self._now = now_func
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def _dyad_lock(self, first_id: str, second_id: str) -> asyncio.Lock:
        key = (first_id, second_id) if first_id <= second_id else (second_id, first_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _require_counterpart(self, identity_id: str) -> str:
        counterpart_id = self._pairing.counterpart_id(identity_id)
        if counterpart_id is None:
            raise NoCounterpart("no partner found")
        return counterpart_id

    async def send(
        self,
        sender_id: str,
        *,
        kind: MessageKind | str = MessageKind.TEXT,
        content: Any = None,
        media_url: Any = None,
    ) -> Message:
        counterpart_id = self._require_counterpart(sender_id)
        kind, content, media_url = _validate_payload(kind, content, media_url)

        async with self._dyad_lock(sender_id, counterpart_id):
            message = self._messages.append(sender_id, counterpart_id, kind, content, media_url, self._now())
        logger.info("message_stored", message_id=message.message_id, sender_id=sender_id, kind=kind.value)

        sender_connection = self._presence.lookup(sender_id)
        await self._push_safely(sender_connection, "message-sent", {"message": message.to_api_dict()})

        recipient_connection = self._presence.lookup(counterpart_id)
        if recipient_connection is None:
            logger.info("message_pending_offline", message_id=message.message_id)
            return message
        try:
            await recipient_connection.push("new-message", {"message": message.to_api_dict()})
        except PushFailed as exc:
            logger.warning("message_push_failed", message_id=message.message_id, error=str(exc))
            return message

        async with self._dyad_lock(sender_id, counterpart_id):
            message = self._messages.mark_delivered(message.message_id, self._now())
        logger.info("message_delivered", message_id=message.message_id)
        await self._push_safely(
            sender_connection,
            "message-delivered",
            {"message_id": message.message_id, "delivered_at": message.delivered_at_ms},
        )
        return message

    async def mark_seen(self, viewer_id: str, message_id: int) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise NotFound("message not found")
        async with self._dyad_lock(message.sender_id, message.recipient_id):
            if message.recipient_id != viewer_id:
                logger.warning("forbidden_mark_seen", identity_id=viewer_id, message_id=message_id)
                raise Forbidden("not authorized to mark this message as seen")
            message, changed = self._messages.mark_seen(message_id, self._now())
        if changed:
            await self._push_safely(
                self._presence.lookup(message.sender_id),
                "message-seen",
                {"message_id": message.message_id, "seen_at": message.seen_at_ms},
            )
        return message

    async def delete(self, requester_id: str, message_id: int, also_for_counterpart: bool = False) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise NotFound("message not found")
        async with self._dyad_lock(message.sender_id, message.recipient_id):
            if message.sender_id != requester_id:
                logger.warning("forbidden_delete", identity_id=requester_id, message_id=message_id)
                raise Forbidden("you can only delete your own messages")
            message = self._messages.mark_deleted_for_viewer(message_id, requester_id, also_for_counterpart)
        logger.info(
            "message_deleted",
            message_id=message_id,
            for_both=also_for_counterpart,
            fully_deleted=message.fully_deleted,
        )
        payload = {"message_id": message.message_id, "message": message.to_api_dict()}
        for participant_id in message.participants():
            await self._push_safely(self._presence.lookup(participant_id), "message-deleted", payload)
        return message

    async def fetch_history(self, viewer_id: str, page: int = 1, limit: int | None = None) -> MessagePage:
        """Return one history page and mark the counterpart's unseen messages as seen."""
        counterpart_id = self._require_counterpart(viewer_id)
        page_size = self._default_page_size if limit is None else limit
        if page_size < 1:
            raise ValidationError("limit must be at least 1")
        page_size = min(page_size, self._max_page_size)

        async with self._dyad_lock(viewer_id, counterpart_id):
            result = self._messages.list_between(viewer_id, counterpart_id, page, page_size)
            marked = self._messages.mark_seen_batch(counterpart_id, viewer_id, self._now())
        if marked:
            logger.info("messages_marked_seen", identity_id=viewer_id, count=marked)
        return result

    def unread_count(self, viewer_id: str) -> int:
        counterpart_id = self._require_counterpart(viewer_id)
        return self._messages.count_unseen(counterpart_id, viewer_id)

    async def typing(self, identity_id: str, is_typing: bool) -> None:
        counterpart_id = self._pairing.counterpart_id(identity_id)
        if counterpart_id is None:
            return
        await self._push_safely(self._presence.lookup(counterpart_id), "partner-typing", {"is_typing": is_typing})

    async def _push_safely(self, connection: Connection | None, event: str, payload: dict[str, Any]) -> bool:
        if connection is None:
            return False
        try:
            await connection.push(event, payload)
        except PushFailed as exc:
            logger.warning("push_failed", event=event, identity_id=connection.identity_id, error=str(exc))
            return False
        return True


def _validate_payload(kind: Any, content: Any, media_url: Any) -> tuple[MessageKind, str, str | None]:
    try:
        kind = MessageKind(kind)
    except ValueError:
        raise InvalidPayload(f"unsupported message kind: {kind}")

    if kind is MessageKind.TEXT:
        if not isinstance(content, str) or not content.strip():
            raise InvalidPayload("message content is required")
        return kind, content, None

    if not isinstance(media_url, str) or not media_url.strip():
        raise InvalidPayload(f"a media reference is required for {kind.value} messages")
    if content is None or (isinstance(content, str) and not content.strip()):
        content = MEDIA_PLACEHOLDERS[kind]
    elif not isinstance(content, str):
        raise InvalidPayload("message content must be a string")
    return kind, content, media_url.strip()
