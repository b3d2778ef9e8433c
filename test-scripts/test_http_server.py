import asyncio
import json
import sys
from datetime import datetime, timedelta
from pathlib import Path

from aiohttp import test_utils

# Add root to sys.path
root = Path(__file__).parent.parent
sys.path.insert(0, str(root))

from companion.chat import ChatHistoryStore, ChatMessageRecord
from companion.server import HttpServer, PushHub
from companion.server.sse import KEEP_ALIVE_COMMENT, format_frame
from companion.settings import ObsChatSettings, SettingsManager


class FakeBroker:
    def __init__(self, accept=True):
        self.accept = accept
        self.completed = []
        self.failed = []
        self.cleared = 0
        self.is_auth_pending = False

    def complete_auth(self, code, state):
        self.completed.append((code, state))
        return self.accept

    def fail_auth(self, error):
        self.failed.append(error)
        return True

    async def clear_tokens(self):
        self.cleared += 1


def _server(tmp_path, broker=None):
    settings = SettingsManager(tmp_path / "settings.json")
    history = ChatHistoryStore(lambda: 100)
    hub = PushHub(lambda: 15)
    history.register_sink(hub)
    return HttpServer(broker or FakeBroker(), history, hub, settings, port=0), history, hub, settings


def test_frame_format():
    assert format_frame('{"type": "clear"}') == 'data: {"type": "clear"}\n\n'
    assert format_frame(KEEP_ALIVE_COMMENT) == ": keep-alive\n\n"


def test_keep_alive_has_floor():
    assert PushHub(lambda: 1).keep_alive_seconds() == 5.0
    assert PushHub(lambda: 20).keep_alive_seconds() == 20.0


def test_hub_pushes_messages_and_drops_slow_clients():
    async def scenario():
        hub = PushHub(lambda: 15)
        hub.QUEUE_SIZE = 2
        hub.notify_chat_settings_changed(ObsChatSettings())
        queue = hub.add_client()
        hub.add_chat_message(ChatMessageRecord(timestamp=datetime(2024, 1, 1), author="Anna", text="hi"))
        hub.clear_chat()
        first = json.loads(queue.get_nowait()[len("data: "):].strip())
        second = json.loads(queue.get_nowait()[len("data: "):].strip())
        for _ in range(3):
            hub.publish({"type": "spam"})
        return first, second, hub.client_count

    first, second, clients = asyncio.run(scenario())
    assert first["type"] == "message"
    assert first["message"]["displayName"] == "Anna"
    assert second == {"type": "clear"}
    assert clients == 0


def test_oauth_callback_routes_to_broker(tmp_path):
    async def scenario():
        broker = FakeBroker()
        server, _, _, _ = _server(tmp_path, broker)
        async with test_utils.TestClient(test_utils.TestServer(server.app)) as client:
            ok = await client.get("/", params={"code": "abc", "state": "s1"})
            denied = await client.get("/", params={"error": "access_denied", "error_description": "<b>nein</b>"})
            missing = await client.get("/")
            return broker, ok.status, await denied.text(), missing.status, ok.headers.get("X-Content-Type-Options")

    broker, ok_status, denied_text, missing_status, nosniff = asyncio.run(scenario())
    assert broker.completed == [("abc", "s1")]
    assert broker.failed == ["<b>nein</b>"]
    assert ok_status == 200
    assert "&lt;b&gt;nein&lt;/b&gt;" in denied_text
    assert missing_status == 400
    assert nosniff == "nosniff"


def test_rejected_callback_shows_error(tmp_path):
    async def scenario():
        server, _, _, _ = _server(tmp_path, FakeBroker(accept=False))
        async with test_utils.TestClient(test_utils.TestServer(server.app)) as client:
            resp = await client.get("/", params={"code": "abc", "state": "falsch"})
            return resp.status

    assert asyncio.run(scenario()) == 400


def test_history_respects_overlay_settings(tmp_path):
    async def scenario():
        server, history, _, settings = _server(tmp_path)
        settings.current.twitch.obs_chat.max_messages = 2
        settings.current.twitch.obs_chat.message_lifetime_seconds = 60
        now = datetime.now()
        history.add_message(ChatMessageRecord(timestamp=now - timedelta(minutes=5), author="Alt", text="alt"))
        for text in ("a", "b", "c"):
            history.add_message(ChatMessageRecord(timestamp=now, author="Anna", text=text))
        async with test_utils.TestClient(test_utils.TestServer(server.app)) as client:
            resp = await client.get("/api/history")
            items = await resp.json()
            css = await (await client.get("/api/chat-settings")).json()
            health = await (await client.get("/health")).json()
            return items, css, health

    items, css, health = asyncio.run(scenario())
    assert [i["message"] for i in items] == ["b", "c"]
    assert css["maxMessages"] == 2
    assert css["emoteSize"] == "28px"
    assert health == {"ok": True, "sse_clients": 0}


def test_clear_tokens_route(tmp_path):
    async def scenario():
        broker = FakeBroker()
        server, _, _, _ = _server(tmp_path, broker)
        async with test_utils.TestClient(test_utils.TestServer(server.app)) as client:
            via_get = await client.get("/api/auth/clear")
            ok = await client.post("/api/auth/clear")
            broker.is_auth_pending = True
            busy = await client.post("/api/auth/clear")
            return broker.cleared, via_get.status, ok.status, await ok.json(), busy.status

    cleared, get_status, ok_status, body, busy_status = asyncio.run(scenario())
    assert cleared == 1
    assert get_status == 405
    assert (ok_status, body) == (200, {"ok": True})
    assert busy_status == 409
