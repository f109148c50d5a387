from __future__ import annotations

import asyncio
from typing import Callable, Dict, Optional

from .channel import Connection
from .errors import PushFailed
from .logging import get_logger
from .store import _now_ms


logger = get_logger(__name__)

CounterpartResolver = Callable[[str], Optional[str]]


class PresenceRegistry:
    """Maps each identity to at most one live connection.

    Mutations for one identity are serialized, and the counterpart is told
    about the change only after the mapping is committed, so ``online`` and
    ``offline`` notifications reach it in order.
    """

    def __init__(self, counterpart_of: CounterpartResolver, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._counterpart_of = counterpart_of
        self._now = now_func
        self._connections: Dict[str, Connection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, identity_id: str) -> asyncio.Lock:
        lock = self._locks.get(identity_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identity_id] = lock
        return lock

    def lookup(self, identity_id: str) -> Connection | None:
        connection = self._connections.get(identity_id)
        if connection is None or connection.closed:
            return None
        return connection

    def is_online(self, identity_id: str) -> bool:
        return self.lookup(identity_id) is not None

    async def register(self, identity_id: str, connection: Connection) -> Connection | None:
        """Bind ``connection`` to ``identity_id``; returns the superseded connection, if any."""
        async with self._lock_for(identity_id):
            previous = self._connections.get(identity_id)
            self._connections[identity_id] = connection
            logger.info(
                "presence_registered",
                identity_id=identity_id,
                connection_id=connection.connection_id,
                replaced=previous.connection_id if previous is not None else None,
            )
            await self._notify_counterpart(identity_id, online=True)
        if previous is connection:
            return None
        return previous

    async def unregister(self, identity_id: str, connection: Connection) -> bool:
        """Remove the mapping only if it still points at ``connection``."""
        async with self._lock_for(identity_id):
            current = self._connections.get(identity_id)
            if current is not connection:
                logger.debug(
                    "presence_stale_unregister_ignored",
                    identity_id=identity_id,
                    connection_id=connection.connection_id,
                )
                return False
            del self._connections[identity_id]
            logger.info("presence_unregistered", identity_id=identity_id, connection_id=connection.connection_id)
            await self._notify_counterpart(identity_id, online=False)
        return True

    async def _notify_counterpart(self, identity_id: str, *, online: bool) -> None:
        counterpart_id = self._counterpart_of(identity_id)
        if counterpart_id is None:
            return
        target = self.lookup(counterpart_id)
        if target is None:
            return
        payload = {
            "identity_id": identity_id,
            "is_online": online,
            "status": "online" if online else "offline",
            "last_active": self._now(),
        }
        try:
            await target.push("partner-status", payload)
        except PushFailed as exc:
            logger.warning("presence_notify_failed", identity_id=identity_id, counterpart_id=counterpart_id, error=str(exc))
