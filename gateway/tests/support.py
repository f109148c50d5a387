from __future__ import annotations

from typing import Any

from duet.channel import Connection


class FakeClock:
    def __init__(self, start_ms: int = 1_000) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class FrameSink:
    """Collects frames pushed to a :class:`Connection`."""

    def __init__(self) -> None:
        self.frames: list[dict[str, Any]] = []

    async def __call__(self, frame: dict[str, Any]) -> None:
        self.frames.append(frame)

    def events(self) -> list[str]:
        return [frame["t"] for frame in self.frames]

    def bodies(self, event: str) -> list[dict[str, Any]]:
        return [frame["body"] for frame in self.frames if frame["t"] == event]


async def broken_send(_: dict[str, Any]) -> None:
    raise ConnectionResetError("peer went away")


def recording_connection(identity_id: str) -> tuple[Connection, FrameSink]:
    sink = FrameSink()
    return Connection(identity_id=identity_id, send=sink), sink
