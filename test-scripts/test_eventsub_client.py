import asyncio
import json
import sys
from pathlib import Path

import aiohttp
import pytest
from aiohttp import test_utils, web

# Add root to sys.path
root = Path(__file__).parent.parent
sys.path.insert(0, str(root))

from companion.errors import SubscriptionFailure
from companion.monitoring import EventSubClient

WELCOME = {"metadata": {"message_type": "session_welcome"}, "payload": {"session": {"id": "sess-1"}}}
ONLINE = {
    "metadata": {"message_type": "notification"},
    "payload": {"subscription": {"type": "stream.online"}, "event": {"broadcaster_user_login": "chan"}},
}


class FakeAPI:
    def __init__(self, session, errors=None):
        self.session = session
        self.errors = errors or {}
        self.subscribed = []

    def get_http_session(self):
        return self.session

    async def subscribe_eventsub_websocket(self, *, session_id, sub_type, condition, version="1", oauth_token=None):
        self.subscribed.append((session_id, sub_type, oauth_token))
        if sub_type in self.errors:
            raise self.errors[sub_type]
        return {"data": [{"id": "sub"}]}


def _conflict():
    return aiohttp.ClientResponseError(request_info=None, history=(), status=409, message="Conflict")


async def _serve(handler):
    app = web.Application()
    app.router.add_get("/ws", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    return server, str(server.make_url("/ws"))


async def _welcome_then_idle(request):
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    await ws.send_str(json.dumps(WELCOME))
    async for _ in ws:
        pass
    return ws


async def _silent(request):
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    async for _ in ws:
        pass
    return ws


def _client(api, url, token="oauth:user-token"):
    async def resolver():
        return token

    client = EventSubClient(api, resolver, ws_url=url)
    client.add_subscription("stream.online", {"broadcaster_user_id": "42"})
    client.add_subscription("stream.offline", {"broadcaster_user_id": "42"})
    client.add_subscription("stream.online", {"broadcaster_user_id": "42"})
    return client


def test_notification_and_unexpected_close():
    async def handler(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_str(json.dumps(WELCOME))
        await ws.send_str(json.dumps({"metadata": {"message_type": "session_keepalive"}, "payload": {}}))
        await ws.send_str(json.dumps(ONLINE))
        await asyncio.sleep(0.1)
        await ws.close()
        return ws

    async def scenario():
        server, url = await _serve(handler)
        async with aiohttp.ClientSession() as session:
            api = FakeAPI(session)
            client = _client(api, url)
            events, connects, dropped = [], [], asyncio.Event()
            client.stream_online.subscribe(events.append)
            client.connected.subscribe(connects.append)
            client.disconnected.subscribe(dropped.set)
            await client.connect()
            session_id = client.session_id
            await asyncio.wait_for(dropped.wait(), 2.0)
            connected_after = client.is_connected
            await client.disconnect()
        await server.close()
        return api.subscribed, events, connects, session_id, connected_after

    subscribed, events, connects, session_id, connected_after = asyncio.run(scenario())
    assert subscribed == [("sess-1", "stream.online", "user-token"), ("sess-1", "stream.offline", "user-token")]
    assert events == [{"broadcaster_user_login": "chan"}]
    assert connects == [False]
    assert session_id == "sess-1"
    assert connected_after is False


def test_conflict_counts_as_success():
    async def scenario():
        server, url = await _serve(_welcome_then_idle)
        async with aiohttp.ClientSession() as session:
            api = FakeAPI(session, errors={"stream.online": _conflict(), "stream.offline": _conflict()})
            client = _client(api, url)
            await client.connect()
            connected = client.is_connected
            await client.disconnect()
        await server.close()
        return connected

    assert asyncio.run(scenario()) is True


def test_all_subscriptions_failing_raises():
    async def scenario():
        server, url = await _serve(_welcome_then_idle)
        async with aiohttp.ClientSession() as session:
            down = aiohttp.ClientConnectionError("down")
            api = FakeAPI(session, errors={"stream.online": down, "stream.offline": down})
            client = _client(api, url)
            with pytest.raises(SubscriptionFailure):
                await client.connect()
            connected = client.is_connected
        await server.close()
        return connected

    assert asyncio.run(scenario()) is False


def test_missing_token_raises():
    async def scenario():
        server, url = await _serve(_welcome_then_idle)
        async with aiohttp.ClientSession() as session:
            api = FakeAPI(session)
            client = _client(api, url, token=None)
            with pytest.raises(SubscriptionFailure):
                await client.connect()
        await server.close()
        return api.subscribed

    assert asyncio.run(scenario()) == []


def test_missing_welcome_aborts():
    async def scenario():
        server, url = await _serve(_silent)
        async with aiohttp.ClientSession() as session:
            client = _client(FakeAPI(session), url)
            client.WELCOME_TIMEOUT = 0.1
            with pytest.raises(ConnectionError):
                await client.connect()
        await server.close()

    asyncio.run(scenario())
