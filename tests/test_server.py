import asyncio
import json
import logging
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from careless_convo.chat import VoiceChat
from careless_convo.config import ConvoConfig, LLMConfig, VadConfig
from careless_convo.conversation import ChatMessage, Conversation
from careless_convo.server import LogBroadcaster, _WsLogHandler, create_app
from careless_convo.session import VoiceSession
from tests.fakes import FakeCapture, FakeClock, FakeRecognizer


def make_chat(capture=None) -> VoiceChat:
    config = ConvoConfig(vad=VadConfig(frame_interval_sec=3600))
    session = VoiceSession(config, capture or FakeCapture(), FakeRecognizer(), clock=FakeClock(0.0))
    return VoiceChat(session, Conversation(LLMConfig()))


class ServerTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.tmp.name) / "convo.json")

    def tearDown(self):
        self.tmp.cleanup()

    def client(self, chat) -> TestClient:
        return TestClient(create_app(chat=chat, config_path=self.config_path))


class TestSessionEndpoints(ServerTestCase):
    def test_health(self):
        resp = self.client(make_chat()).get("/health")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "ok")
        self.assertFalse(body["listening"])
        self.assertTrue(body["demo_mode"])

    def test_session_snapshot(self):
        resp = self.client(make_chat()).get("/session")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["phase"], "IDLE")
        self.assertEqual(resp.json()["transcript"], "")

    def test_start_with_denied_microphone(self):
        chat = make_chat(capture=FakeCapture(fail="permission denied"))
        resp = self.client(chat).post("/session/start")
        self.assertEqual(resp.status_code, 503)
        self.assertIn("Microphone access denied", resp.json()["detail"])

    def test_stop_and_reset_when_idle(self):
        client = self.client(make_chat())
        self.assertEqual(client.post("/session/stop").json()["phase"], "IDLE")
        resp = client.post("/session/reset")
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["has_finished"])

    def test_no_chat_is_unavailable(self):
        client = TestClient(create_app(chat=None, config_path=self.config_path))
        self.assertEqual(client.get("/session").status_code, 503)


class TestMessageEndpoints(ServerTestCase):
    def test_list_and_clear(self):
        chat = make_chat()
        chat.conversation.messages.append(ChatMessage(role="user", content="hello"))
        client = self.client(chat)

        listed = client.get("/messages").json()
        self.assertEqual([(m["role"], m["content"]) for m in listed], [("user", "hello")])

        self.assertEqual(client.delete("/messages").status_code, 204)
        self.assertEqual(chat.conversation.messages, [])


class TestConfigEndpoints(ServerTestCase):
    def test_get_config(self):
        body = self.client(make_chat()).get("/config").json()
        self.assertEqual(body["vad"]["activate_frames"], 6)

    def test_put_config_merges_and_persists(self):
        client = self.client(make_chat())
        resp = client.put("/config", json={"vad": {"silence_sec": 0.9}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["vad"]["silence_sec"], 0.9)
        self.assertEqual(resp.json()["vad"]["deactivate_frames"], 18)
        self.assertEqual(ConvoConfig.load(self.config_path).vad.silence_sec, 0.9)
        self.assertEqual(client.get("/config").json()["vad"]["silence_sec"], 0.9)

    def test_put_invalid_config(self):
        client = self.client(make_chat())
        resp = client.put("/config", json={"vad": {"stop_margin": 0.5}})
        self.assertEqual(resp.status_code, 422)
        self.assertFalse(Path(self.config_path).exists())

    def test_put_non_object(self):
        resp = self.client(make_chat()).put("/config", json=[1, 2])
        self.assertEqual(resp.status_code, 400)


class TestLogStream(ServerTestCase):
    def test_ws_logs_replays_history(self):
        app = create_app(chat=make_chat(), config_path=self.config_path)
        app.state.broadcaster._history.append({"level": "INFO", "logger": "x", "msg": "hello", "ts": 0.0})
        with TestClient(app).websocket_connect("/ws/logs") as ws:
            self.assertEqual(ws.receive_json()["msg"], "hello")


class TestLogBroadcaster(unittest.IsolatedAsyncioTestCase):
    async def test_history_keeps_most_recent_events(self):
        broadcaster = LogBroadcaster(history_max=3)
        for i in range(5):
            await broadcaster.broadcast({"msg": str(i)})
        self.assertEqual([e["msg"] for e in broadcaster.history], ["2", "3", "4"])

    async def test_failed_client_is_dropped(self):
        broadcaster = LogBroadcaster()
        healthy, broken = mock.AsyncMock(), mock.AsyncMock()
        broken.send_text.side_effect = RuntimeError("websocket is closed")
        await broadcaster.connect(healthy)
        await broadcaster.connect(broken)

        await broadcaster.broadcast({"msg": "hi"})

        self.assertEqual(broadcaster.client_count, 1)
        healthy.send_text.assert_awaited_once_with(json.dumps({"msg": "hi"}))

    async def test_records_from_audio_threads_are_forwarded(self):
        broadcaster = LogBroadcaster()
        handler = _WsLogHandler(broadcaster)
        handler.loop = asyncio.get_running_loop()
        record = logging.LogRecord(
            "careless_convo.capture", logging.WARNING, __file__, 1, "event=input_status status=%s", ("overflow",), None,
        )
        worker = threading.Thread(target=handler.emit, args=(record,))
        worker.start()
        worker.join()
        for _ in range(50):
            if broadcaster.history:
                break
            await asyncio.sleep(0.01)

        event = broadcaster.history[0]
        self.assertEqual((event["level"], event["logger"]), ("WARNING", "careless_convo.capture"))
        self.assertEqual(event["msg"], "event=input_status status=overflow")

    async def test_unbound_handler_forwards_nothing(self):
        broadcaster = LogBroadcaster()
        handler = _WsLogHandler(broadcaster)
        handler.emit(logging.LogRecord("careless_convo", logging.INFO, __file__, 1, "x", None, None))
        await asyncio.sleep(0)
        self.assertEqual(broadcaster.history, [])


if __name__ == "__main__":
    unittest.main()
