import unittest
import httpx
from fastapi.testclient import TestClient
from mpvsync import server
from mpvsync.clients.control_client import ControlClient
from mpvsync.models import Leader
from fakes import FakeClock, reset_settings, settle, start_session

class FakeWebSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, message):
        self.sent.append(message)


class TestServerNotReady(unittest.TestCase):
    def setUp(self):
        reset_settings()
        server.session = None
        self.client = TestClient(server.app)

    def test_healthz_starting(self):
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "starting"})

    def test_status_not_ready(self):
        self.assertEqual(self.client.get("/status").json(), {"status": "not_ready"})

    def test_local_event_before_start(self):
        resp = self.client.post("/local/play")
        self.assertEqual(resp.status_code, 503)

    def test_websocket_before_start(self):
        with self.client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "seek", "time": 1.0})
            self.assertEqual(ws.receive_json(), {"type": "error", "error": "Service starting"})


class TestServerEndpoints(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        reset_settings()
        self.clock = FakeClock()
        self.session, self.transport = await start_session(self.clock)
        server.bind(self.session)
        self.control = ControlClient(client=httpx.AsyncClient(
            transport=httpx.ASGITransport(app=server.app), base_url="http://testserver"
        ))
        self.clock.advance(1.0)

    async def asyncTearDown(self):
        await self.control.close()
        server.session = None
        server.hub.clients.clear()
        await self.session.stop()

    async def test_health(self):
        self.assertEqual(await self.control.health(), "connected")

    async def test_status(self):
        status = await self.control.status()
        self.assertEqual(status["status"], "connected")
        self.assertEqual(status["leader"], "local")
        self.assertEqual(status["stats"]["commands_sent"], 5)
        self.assertEqual(status["config"]["drift_threshold"], 0.1)

    async def test_metrics(self):
        text = await self.control.metrics()
        self.assertIn("mpv_wave_sync_up 1", text)
        self.assertIn("mpv_wave_sync_commands_sent_total 5", text)

    async def test_local_seek_forwarded(self):
        body = await self.control.seek(12.0)
        self.assertEqual(body["leader"], "local")
        self.assertEqual(body["local"]["position"], 12.0)
        await settle()
        self.assertIn(["seek", 12.0, "absolute", "exact"], self.transport.sent_commands())

    async def test_play_pause(self):
        await self.control.play()
        await settle()
        self.assertTrue(self.session.engine.remote.playing)
        self.clock.advance(0.5)
        body = await self.control.pause()
        self.assertFalse(body["local"]["playing"])
        await settle()
        self.assertFalse(self.session.engine.remote.playing)

    async def test_progress_and_volume(self):
        body = await self.control.progress(3.5)
        self.assertEqual(body["local"]["position"], 3.5)
        body = await self.control.set_volume(64.6)
        self.assertEqual(body["local"]["volume"], 65)

    async def test_invalid_speed(self):
        with self.assertRaises(httpx.HTTPStatusError) as cm:
            await self.control.set_speed(-1.0)
        self.assertEqual(cm.exception.response.status_code, 400)

    async def test_region(self):
        body = await self.control.play_region(1.0, 2.0)
        self.assertEqual(body["active_region"], {"start": 1.0, "end": 2.0})
        commands = self.transport.sent_commands()
        self.assertEqual(commands[-2], ["seek", 1.0, "absolute", "exact"])
        self.assertEqual(commands[-1], ["set_property", "pause", False])

    async def test_raw_command(self):
        reply = await self.control.command("get_property", "volume")
        self.assertEqual(reply["data"], 100.0)
        self.assertFalse(reply["deduplicated"])

    async def test_raw_command_errors(self):
        with self.assertRaises(httpx.HTTPStatusError) as cm:
            await self.control.command("warp", 1)
        self.assertEqual(cm.exception.response.status_code, 400)

        self.transport.reject = {"get_property": "property unavailable"}
        with self.assertRaises(httpx.HTTPStatusError) as cm:
            await self.control.command("get_property", "chapter")
        self.assertEqual(cm.exception.response.status_code, 502)
        self.assertEqual(cm.exception.response.json()["detail"], "property unavailable")

    async def test_raw_command_timeout(self):
        self.transport.respond = False
        resp = await self.control.client.post(
            "/command", json={"verb": "get_property", "args": ["pause"], "timeout": 0.05}
        )
        self.assertEqual(resp.status_code, 504)

    async def test_raw_command_disconnected(self):
        self.transport.drop("gone")
        resp = await self.control.client.post("/command", json={"verb": "play"})
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(await self.control.health(), "disconnected")

    async def test_reset(self):
        await self.control.seek(12.0)
        await settle()
        await self.control.reset()
        status = await self.control.status()
        self.assertEqual(status["stats"]["commands_sent"], 0)
        self.assertEqual(status["local"]["position"], 0.0)

    async def test_ws_events_drive_engine(self):
        self.assertIsNone(server._apply_ws_event(self.session, {"type": "seek", "time": 8.0}))
        self.assertEqual(self.session.engine.local.position, 8.0)
        self.assertIsNone(server._apply_ws_event(self.session, {"type": "speed", "speed": 1.5}))
        self.assertEqual(self.session.engine.local.speed, 1.5)
        error = server._apply_ws_event(self.session, {"type": "rewind"})
        self.assertEqual(error["type"], "error")
        error = server._apply_ws_event(self.session, {"type": "speed", "speed": 0})
        self.assertEqual(error["type"], "error")

    async def test_corrections_pushed_to_clients(self):
        ws = FakeWebSocket()
        server.hub.clients.add(ws)
        self.transport.emit_property("time-pos", 50.0)
        await settle()
        self.assertEqual(self.session.engine.leader, Leader.REMOTE)
        self.assertEqual(ws.sent[-1]["type"], "correction")
        self.assertEqual(ws.sent[-1]["state"]["position"], 50.0)

        self.transport.drop("mpv exited")
        await settle()
        self.assertEqual(ws.sent[-1], {"type": "disconnected", "reason": "mpv exited"})

if __name__ == '__main__':
    unittest.main()
