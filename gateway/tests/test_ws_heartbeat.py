import asyncio
import tempfile
import unittest

from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from duet.config import GatewayConfig
from duet.ws_transport import create_app


class WsHeartbeatTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()
        self.tmpdir.cleanup()

    async def _start_client(self, *, ping_interval_s: int, ping_miss_limit: int) -> None:
        self.app = create_app(
            GatewayConfig(uploads_dir=self.tmpdir.name),
            ping_interval_s=ping_interval_s,
            ping_miss_limit=ping_miss_limit,
        )
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def _start_session(self):
        resp = await self.client.post(
            "/api/auth/register",
            json={"username": "alice", "password": "secret1", "display_name": "Alice"},
        )
        registered = await resp.json()
        ws = await self.client.ws_connect("/api/ws")
        await ws.send_json({"v": 1, "t": "session.start", "id": "start1", "body": {"token": registered["token"]}})
        ready = await ws.receive_json()
        return ws, ready["body"]["user"]["id"]

    async def test_idle_ping_triggers_timeout_close(self):
        await self._start_client(ping_interval_s=1, ping_miss_limit=0)
        ws, identity_id = await self._start_session()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + 8
        ping_seen = False
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                self.fail("Timed out waiting for server to close idle connection")
            msg = await ws.receive(timeout=remaining)
            if msg.type == WSMsgType.TEXT and msg.json().get("t") == "ping":
                ping_seen = True
            elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                break

        self.assertTrue(ping_seen)
        self.assertEqual(ws.close_code, 1001)

        presence = self.app["runtime"].presence
        for _ in range(50):
            if not presence.is_online(identity_id):
                break
            await asyncio.sleep(0.05)
        self.assertFalse(presence.is_online(identity_id))

    async def test_answered_pings_keep_channel_open(self):
        await self._start_client(ping_interval_s=1, ping_miss_limit=1)
        ws, identity_id = await self._start_session()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2.5
        pings = 0
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                msg = await ws.receive(timeout=remaining)
            except asyncio.TimeoutError:
                break
            if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                self.fail("channel closed although pings were answered")
            if msg.type == WSMsgType.TEXT and msg.json().get("t") == "ping":
                pings += 1
                await ws.send_json({"v": 1, "t": "pong"})

        self.assertGreaterEqual(pings, 1)
        self.assertFalse(ws.closed)
        self.assertTrue(self.app["runtime"].presence.is_online(identity_id))


if __name__ == "__main__":
    unittest.main()
