import asyncio
from typing import Any, Callable

from aiohttp import ClientWebSocketResponse, WSMessage, WSMsgType


async def _receive_before(ws: ClientWebSocketResponse, deadline: float) -> WSMessage:
    remaining = deadline - asyncio.get_running_loop().time()
    if remaining <= 0:
        raise asyncio.TimeoutError("timed out waiting for websocket frame")
    return await ws.receive(timeout=remaining)


async def recv_frame(
    ws: ClientWebSocketResponse,
    predicate: Callable[[dict[str, Any]], bool],
    *,
    timeout: float = 2.0,
) -> dict[str, Any]:
    """Return the first JSON frame matching ``predicate``, answering server pings."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        msg = await _receive_before(ws, deadline)
        if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED, WSMsgType.ERROR):
            raise AssertionError(f"websocket closed while waiting for frame: {msg.type}")
        if msg.type != WSMsgType.TEXT:
            continue
        frame = msg.json()
        if frame.get("t") == "ping":
            await ws.send_json({"v": 1, "t": "pong"})
            continue
        if predicate(frame):
            return frame


async def recv_event(ws: ClientWebSocketResponse, event: str, *, timeout: float = 2.0) -> dict[str, Any]:
    return await recv_frame(ws, lambda frame: frame.get("t") == event, timeout=timeout)


async def wait_closed(ws: ClientWebSocketResponse, *, timeout: float = 2.0) -> int | None:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        msg = await _receive_before(ws, deadline)
        if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
            return ws.close_code


async def assert_no_event(ws: ClientWebSocketResponse, event: str, *, timeout: float = 0.2) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        try:
            msg = await _receive_before(ws, deadline)
        except asyncio.TimeoutError:
            return
        if msg.type == WSMsgType.TEXT and msg.json().get("t") == event:
            raise AssertionError(f"unexpected {event} frame: {msg.data}")
