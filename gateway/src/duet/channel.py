from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .errors import PushFailed


Sender = Callable[[dict], Awaitable[None]]
Closer = Callable[[str], Awaitable[None]]

_connection_ids = itertools.count(1)


async def _noop_close(_: str) -> None:
    return None


@dataclass(eq=False)
class Connection:
    """One live channel bound to one identity.

    ``push`` returns only after the frame was handed to the transport, so a
    caller that awaits it knows the recipient channel has the payload. Pushing
    to a closed connection raises :class:`PushFailed`.
    """

    identity_id: str
    send: Sender
    close_func: Closer = _noop_close
    connection_id: int = field(default_factory=lambda: next(_connection_ids))
    closed: bool = False
    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def push(self, event: str, payload: dict[str, Any], *, request_id: str | None = None) -> None:
        frame: dict[str, Any] = {"v": 1, "t": event, "body": payload}
        if request_id is not None:
            frame["id"] = request_id
        async with self._send_lock:
            if self.closed:
                raise PushFailed(f"connection {self.connection_id} is closed")
            try:
                await self.send(frame)
            except PushFailed:
                raise
            except (ConnectionError, RuntimeError) as exc:
                self.closed = True
                raise PushFailed(f"connection {self.connection_id} failed: {exc}") from exc

    async def close(self, reason: str = "closed") -> None:
        if self.closed:
            return
        self.closed = True
        await self.close_func(reason)

    def mark_closed(self) -> None:
        self.closed = True
