import asyncio
import sys
from pathlib import Path

import pytest

# Add root to sys.path
root = Path(__file__).parent.parent
sys.path.insert(0, str(root))

from companion.errors import BusyError, ChatConnectionError, ConnectionErrorKind, SubscriptionFailure
from companion.events import EventHook
from companion.models import StreamStatus
from companion.orchestrator import ChatSessionOrchestrator, ConnectionOutcome, ConnectionState
from companion.settings import AppSettings, AutoBroadcastSettings, TwitchSettings


class FakeSettings:
    def __init__(self, **twitch):
        values = {"client_id": "cid", "client_secret": "secret", "bot_username": "bot", "channel": "chan"}
        values.update(twitch)
        self.current = AppSettings(twitch=TwitchSettings(**values))


class FakeBroker:
    async def get_valid_token(self):
        return "tok"


class FakeTransport:
    def __init__(self, confirm=True, disconnect_error=None):
        self.confirm = confirm
        self.disconnect_error = disconnect_error
        self.is_connected = False
        self.initialized = None
        self.disconnect_calls = 0
        self.log = EventHook("log")
        self.connected = EventHook("connected")
        self.joined_channel = EventHook("joined_channel")
        self.message_received = EventHook("message_received")

    def initialize(self, username, access_token, channel):
        self.initialized = (username, access_token, channel)

    async def connect(self):
        if self.confirm:
            self.is_connected = True
            self.connected.emit()

    async def disconnect(self):
        self.disconnect_calls += 1
        self.is_connected = False
        if self.disconnect_error:
            raise self.disconnect_error


class FakeMessenger:
    def __init__(self):
        self.sent = []
        self.started = 0
        self.flushed = 0
        self.stopped = 0

    def send(self, channel, text):
        self.sent.append((channel, text))

    def start(self):
        self.started += 1

    async def flush(self, timeout=5.0):
        self.flushed += 1
        return True

    async def stop(self):
        self.stopped += 1


class FakeStats:
    def __init__(self):
        self.start_calls = 0
        self.stop_calls = 0
        self.reset_calls = 0

    async def start(self):
        self.start_calls += 1

    async def stop(self):
        self.stop_calls += 1

    def reset_bot_start_time(self):
        self.reset_calls += 1


class FakeDecorations:
    emote_count = 3
    badge_count = 2

    def __init__(self):
        self.loaded_with = None

    async def load(self, *, oauth_token=None, broadcaster_id=None):
        self.loaded_with = (oauth_token, broadcaster_id)


class FakeMonitor:
    def __init__(self, start_error=None):
        self.start_error = start_error
        self.started = []
        self.stop_calls = 0
        self.is_monitoring = False
        self.broadcaster_id = None
        self.status_changed = EventHook("status_changed")
        self.log_message = EventHook("log_message")
        self.error = EventHook("error")
        self.monitoring_stopped = EventHook("monitoring_stopped")

    async def start_monitoring(self, channel):
        if self.start_error:
            raise self.start_error
        self.started.append(channel)
        self.is_monitoring = True
        self.broadcaster_id = "42"

    async def stop_monitoring(self):
        self.stop_calls += 1
        self.is_monitoring = False
        self.broadcaster_id = None


class FakeScheduler:
    def __init__(self):
        self.is_active = False
        self.started = []
        self.stop_calls = 0

    def start(self, channel):
        self.started.append(channel)
        self.is_active = True

    def stop(self):
        self.stop_calls += 1
        self.is_active = False

    def manual_send(self):
        return self.is_active


class FakeAudience:
    def __init__(self, farewell=""):
        self.farewell = farewell

    def create_collective_farewell(self):
        return self.farewell


class FakeHandler:
    def __init__(self):
        self.channel = None
        self.messages = []
        self.reset_calls = 0

    def on_joined(self, channel):
        self.channel = channel

    def reset(self):
        self.reset_calls += 1
        self.channel = None

    def handle_message(self, message):
        self.messages.append(message)


class Parts:
    def __init__(self, settings=None, transport=None, monitor=None, farewell=""):
        self.settings = settings or FakeSettings()
        self.transport = transport or FakeTransport()
        self.messenger = FakeMessenger()
        self.stats = FakeStats()
        self.decorations = FakeDecorations()
        self.monitor = monitor or FakeMonitor()
        self.scheduler = FakeScheduler()
        self.audience = FakeAudience(farewell)
        self.handler = FakeHandler()
        self.session = ChatSessionOrchestrator(
            self.settings,
            FakeBroker(),
            self.transport,
            self.messenger,
            self.stats,
            self.decorations,
            self.monitor,
            self.scheduler,
            self.audience,
            self.handler,
        )
        self.session.CONNECT_POLL_INTERVAL = 0.01


async def _connect(parts):
    parts.session.start_connection()
    return await parts.session.wait_for_connection()


def test_successful_connection_runs_all_steps():
    async def scenario():
        parts = Parts()
        progress, completed = [], []
        parts.session.progress.subscribe(progress.append)
        parts.session.connection_completed.subscribe(completed.append)
        result = await _connect(parts)
        return parts, result, progress, completed

    parts, result, progress, completed = asyncio.run(scenario())
    assert result.outcome == ConnectionOutcome.SUCCESS
    assert completed == [result]
    assert parts.session.state == ConnectionState.CONNECTED
    assert parts.transport.initialized == ("bot", "tok", "chan")
    assert parts.messenger.started == 1
    assert (parts.stats.start_calls, parts.stats.reset_calls) == (1, 1)
    assert parts.decorations.loaded_with == ("tok", "42")
    assert parts.monitor.started == ["chan"]
    assert "Hole Access-Token..." in progress


def test_second_start_is_busy():
    async def scenario():
        parts = Parts()
        parts.session.start_connection()
        with pytest.raises(BusyError):
            parts.session.start_connection()
        await parts.session.wait_for_connection()
        with pytest.raises(BusyError):
            parts.session.start_connection()

    asyncio.run(scenario())


def test_cancel_during_confirmation_wait():
    async def scenario():
        parts = Parts(transport=FakeTransport(confirm=False))
        parts.session.start_connection()
        await asyncio.sleep(0.05)
        assert parts.session.cancel_connection() is True
        result = await parts.session.wait_for_connection()
        await asyncio.sleep(0.02)
        return parts, result

    parts, result = asyncio.run(scenario())
    assert result.outcome == ConnectionOutcome.CANCELLED
    assert parts.stats.start_calls == 0
    assert parts.transport.disconnect_calls == 1
    assert parts.session.state == ConnectionState.IDLE


class SlowDisconnectTransport(FakeTransport):
    async def disconnect(self):
        await asyncio.sleep(0.01)
        await super().disconnect()


def test_second_cancel_does_not_interrupt_rollback():
    async def scenario():
        parts = Parts(transport=SlowDisconnectTransport(confirm=False))
        completed = []
        parts.session.connection_completed.subscribe(completed.append)
        parts.session.start_connection()
        await asyncio.sleep(0.05)
        first = parts.session.cancel_connection()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        second = parts.session.cancel_connection()
        result = await parts.session.wait_for_connection()
        state = parts.session.state
        parts.transport.confirm = True
        retry = await _connect(parts)
        return parts, first, second, result, state, completed, retry

    parts, first, second, result, state, completed, retry = asyncio.run(scenario())
    assert (first, second) == (True, False)
    assert result.outcome == ConnectionOutcome.CANCELLED
    assert state == ConnectionState.IDLE
    assert completed[0] is result
    assert parts.messenger.stopped == 1
    assert retry.outcome == ConnectionOutcome.SUCCESS


def test_stop_during_rollback_waits_for_idle():
    async def scenario():
        parts = Parts(transport=SlowDisconnectTransport(confirm=False))
        parts.session.start_connection()
        await asyncio.sleep(0.05)
        parts.session.cancel_connection()
        await asyncio.sleep(0)
        await parts.session.stop()
        result = await parts.session.wait_for_connection()
        return parts, result

    parts, result = asyncio.run(scenario())
    assert result.outcome == ConnectionOutcome.CANCELLED
    assert parts.session.state == ConnectionState.IDLE
    assert parts.transport.disconnect_calls == 1


def test_confirmation_timeout_fails():
    async def scenario():
        parts = Parts(transport=FakeTransport(confirm=False))
        parts.session.CONNECT_TIMEOUT = 0.05
        return parts, await _connect(parts)

    parts, result = asyncio.run(scenario())
    assert result.outcome == ConnectionOutcome.FAILED
    assert isinstance(result.error, ChatConnectionError)
    assert result.error.kind == ConnectionErrorKind.TIMEOUT
    assert parts.stats.start_calls == 0
    assert parts.session.state == ConnectionState.IDLE


def test_monitoring_skipped_without_client_id():
    async def scenario():
        parts = Parts(settings=FakeSettings(client_id=""))
        return parts, await _connect(parts)

    parts, result = asyncio.run(scenario())
    assert result.outcome == ConnectionOutcome.SUCCESS
    assert parts.monitor.started == []
    assert parts.decorations.loaded_with == ("tok", None)


def test_monitoring_failure_does_not_fail_session():
    async def scenario():
        parts = Parts(monitor=FakeMonitor(start_error=SubscriptionFailure("nope")))
        return await _connect(parts)

    assert asyncio.run(scenario()).outcome == ConnectionOutcome.SUCCESS


def test_stop_sends_combined_farewell_then_tears_down():
    async def scenario():
        parts = Parts(farewell="Bis bald, Anna, Ben!")
        await _connect(parts)
        parts.transport.joined_channel.emit("chan")
        await parts.session.stop()
        return parts

    parts = asyncio.run(scenario())
    assert parts.messenger.sent == [("chan", "Bis bald, Anna, Ben! Bot verabschiedet sich.")]
    assert parts.messenger.flushed == 1
    assert parts.transport.disconnect_calls == 1
    assert parts.monitor.stop_calls == 1
    assert parts.stats.stop_calls == 1
    assert parts.handler.reset_calls == 1
    assert parts.session.state == ConnectionState.IDLE


def test_stop_steps_are_isolated():
    async def scenario():
        parts = Parts(transport=FakeTransport(disconnect_error=RuntimeError("socket weg")))
        await _connect(parts)
        await parts.session.stop()
        return parts

    parts = asyncio.run(scenario())
    assert parts.monitor.stop_calls == 1
    assert parts.stats.stop_calls == 1
    assert parts.handler.reset_calls == 1
    assert parts.messenger.stopped == 1


def test_stream_status_drives_auto_broadcast():
    async def scenario():
        settings = FakeSettings(auto_broadcast=AutoBroadcastSettings(auto_broadcast_enabled=True))
        parts = Parts(settings=settings)
        await _connect(parts)
        parts.transport.joined_channel.emit("chan")
        parts.monitor.status_changed.emit(StreamStatus.ONLINE, None)
        started = list(parts.scheduler.started)
        parts.monitor.status_changed.emit(StreamStatus.OFFLINE, None)
        return parts, started

    parts, started = asyncio.run(scenario())
    auto = parts.settings.current.twitch.auto_broadcast
    assert started == ["chan"]
    assert parts.scheduler.is_active is False
    assert parts.messenger.sent == [("chan", auto.stream_start_message), ("chan", auto.stream_stop_message)]


def test_stream_status_ignored_when_auto_broadcast_disabled():
    async def scenario():
        parts = Parts()
        await _connect(parts)
        parts.transport.joined_channel.emit("chan")
        parts.monitor.status_changed.emit(StreamStatus.ONLINE, None)
        return parts

    parts = asyncio.run(scenario())
    assert parts.scheduler.started == []
    assert parts.messenger.sent == []
