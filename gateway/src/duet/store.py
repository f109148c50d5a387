from __future__ import annotations

import itertools
import math
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Tuple

from .errors import NotFound, ValidationError


TOMBSTONE_TEXT = "This message was deleted"


def _now_ms() -> int:
    return int(time.time() * 1000)


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"


@dataclass(frozen=True)
class Message:
    """A stored message between the two members of a dyad.

    ``deleted_for`` only ever grows. Once it holds both participants the
    message is fully deleted: content is the tombstone and the media URL is
    cleared.
    """

    message_id: int
    sender_id: str
    recipient_id: str
    kind: MessageKind
    content: str
    media_url: str | None
    created_at_ms: int
    delivered_at_ms: int | None = None
    seen_at_ms: int | None = None
    deleted_for: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def delivered(self) -> bool:
        return self.delivered_at_ms is not None

    @property
    def seen(self) -> bool:
        return self.seen_at_ms is not None

    @property
    def fully_deleted(self) -> bool:
        return len(self.deleted_for) >= 2

    def visible_to(self, viewer_id: str) -> bool:
        return viewer_id not in self.deleted_for

    def participants(self) -> Tuple[str, str]:
        return self.sender_id, self.recipient_id

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.message_id,
            "sender_id": self.sender_id,
            "recipient_id": self.recipient_id,
            "kind": self.kind.value,
            "content": self.content,
            "media_url": self.media_url,
            "delivered": self.delivered,
            "delivered_at": self.delivered_at_ms,
            "seen": self.seen,
            "seen_at": self.seen_at_ms,
            "deleted_for": sorted(self.deleted_for),
            "is_deleted": self.fully_deleted,
            "created_at": self.created_at_ms,
        }


@dataclass(frozen=True)
class MessagePage:
    messages: List[Message]
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size)

    @property
    def has_more(self) -> bool:
        return (self.page - 1) * self.page_size + len(self.messages) < self.total

    def pagination_dict(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.page_size,
            "total_messages": self.total,
            "total_pages": self.total_pages,
            "has_more": self.has_more,
        }


def _validate_page(page: int, page_size: int) -> None:
    if page < 1:
        raise ValidationError("page must be at least 1")
    if page_size < 1:
        raise ValidationError("page size must be at least 1")


def _apply_deletion(message: Message, viewer_id: str, also_for_counterpart: bool) -> Message:
    if viewer_id not in message.participants():
        raise ValidationError("viewer is not a participant")
    deleted_for = set(message.deleted_for)
    deleted_for.add(viewer_id)
    if also_for_counterpart:
        counterpart = message.recipient_id if viewer_id == message.sender_id else message.sender_id
        deleted_for.add(counterpart)
    updated = replace(message, deleted_for=frozenset(deleted_for))
    if updated.fully_deleted:
        updated = replace(updated, content=TOMBSTONE_TEXT, media_url=None)
    return updated


class MessageStore:
    """Storage contract for conversation messages.

    Every mutating method is an atomic read-modify-write on a single message
    (or on the set of messages named by the batch call).
    """

    def append(
        self,
        sender_id: str,
        recipient_id: str,
        kind: MessageKind,
        content: str,
        media_url: str | None = None,
        created_at_ms: int | None = None,
    ) -> Message:
        raise NotImplementedError

    def get(self, message_id: int) -> Message | None:
        raise NotImplementedError

    def list_between(self, viewer_id: str, counterpart_id: str, page: int, page_size: int) -> MessagePage:
        """Return one page of the dyad's history visible to ``viewer_id``.

        Page 1 holds the most recent ``page_size`` messages. Messages inside a
        page are returned oldest first.
        """
        raise NotImplementedError

    def mark_delivered(self, message_id: int, at_ms: int) -> Message:
        raise NotImplementedError

    def mark_seen(self, message_id: int, at_ms: int) -> tuple[Message, bool]:
        """Set ``seen_at_ms`` once; returns the message and whether it changed."""
        raise NotImplementedError

    def mark_seen_batch(self, from_id: str, to_id: str, at_ms: int) -> int:
        raise NotImplementedError

    def mark_deleted_for_viewer(self, message_id: int, viewer_id: str, also_for_counterpart: bool) -> Message:
        raise NotImplementedError

    def count_unseen(self, from_id: str, to_id: str) -> int:
        raise NotImplementedError


class InMemoryMessageStore(MessageStore):
    def __init__(self) -> None:
        self._messages: Dict[int, Message] = {}
        self._ids = itertools.count(1)

    def append(
        self,
        sender_id: str,
        recipient_id: str,
        kind: MessageKind,
        content: str,
        media_url: str | None = None,
        created_at_ms: int | None = None,
    ) -> Message:
        message = Message(
            message_id=next(self._ids),
            sender_id=sender_id,
            recipient_id=recipient_id,
            kind=MessageKind(kind),
            content=content,
            media_url=media_url,
            created_at_ms=_now_ms() if created_at_ms is None else created_at_ms,
        )
        self._messages[message.message_id] = message
        return message

    def get(self, message_id: int) -> Message | None:
        return self._messages.get(message_id)

    def list_between(self, viewer_id: str, counterpart_id: str, page: int, page_size: int) -> MessagePage:
        _validate_page(page, page_size)
        dyad = {viewer_id, counterpart_id}
        visible = [
            message
            for message in self._messages.values()
            if {message.sender_id, message.recipient_id} == dyad and message.visible_to(viewer_id)
        ]
        visible.sort(key=lambda m: (m.created_at_ms, m.message_id), reverse=True)
        skip = (page - 1) * page_size
        window = visible[skip : skip + page_size]
        window.reverse()
        return MessagePage(messages=window, page=page, page_size=page_size, total=len(visible))

    def mark_delivered(self, message_id: int, at_ms: int) -> Message:
        message = self._require(message_id)
        if message.delivered_at_ms is not None:
            return message
        updated = replace(message, delivered_at_ms=max(at_ms, message.created_at_ms))
        self._messages[message_id] = updated
        return updated

    def mark_seen(self, message_id: int, at_ms: int) -> tuple[Message, bool]:
        message = self._require(message_id)
        if message.seen_at_ms is not None:
            return message, False
        updated = replace(message, seen_at_ms=max(at_ms, message.created_at_ms))
        self._messages[message_id] = updated
        return updated, True

    def mark_seen_batch(self, from_id: str, to_id: str, at_ms: int) -> int:
        count = 0
        for message_id, message in list(self._messages.items()):
            if message.sender_id != from_id or message.recipient_id != to_id or message.seen_at_ms is not None:
                continue
            self._messages[message_id] = replace(message, seen_at_ms=max(at_ms, message.created_at_ms))
            count += 1
        return count

    def mark_deleted_for_viewer(self, message_id: int, viewer_id: str, also_for_counterpart: bool) -> Message:
        message = self._require(message_id)
        updated = _apply_deletion(message, viewer_id, also_for_counterpart)
        self._messages[message_id] = updated
        return updated

    def count_unseen(self, from_id: str, to_id: str) -> int:
        return sum(
            1
            for message in self._messages.values()
            if message.sender_id == from_id
            and message.recipient_id == to_id
            and message.seen_at_ms is None
            and message.visible_to(to_id)
        )

    def _require(self, message_id: int) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise NotFound("message not found")
        return message
