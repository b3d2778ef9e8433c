import asyncio
import sys
from pathlib import Path

import pytest

# Add root to sys.path
root = Path(__file__).parent.parent
sys.path.insert(0, str(root))

from companion.errors import AlreadyMonitoring, ChannelNotFound, ReconnectExhausted, SubscriptionFailure
from companion.events import EventHook
from companion.models import StreamInfo, StreamStatus
from companion.monitoring import StreamStatusMonitor


class FakeAPI:
    def __init__(self, user_id="42", stream=None):
        self.user_id = user_id
        self.stream = stream
        self.stream_calls = 0

    async def get_user(self, login, *, oauth_token=None):
        if not self.user_id:
            return None
        return {"id": self.user_id, "login": login}

    async def get_stream(self, user_id, *, oauth_token=None):
        self.stream_calls += 1
        return self.stream


class FakeEventSub:
    def __init__(self, connect_error=None, reconnect_error=None):
        self.connect_error = connect_error
        self.reconnect_error = reconnect_error
        self.subscriptions = []
        self.reconnect_calls = 0
        self.disconnect_calls = 0
        self.connected = EventHook("connected")
        self.disconnected = EventHook("disconnected")
        self.stream_online = EventHook("stream_online")
        self.stream_offline = EventHook("stream_offline")
        self.error = EventHook("error")

    def clear_subscriptions(self):
        self.subscriptions.clear()

    def add_subscription(self, sub_type, condition):
        self.subscriptions.append((sub_type, condition))

    async def connect(self):
        if self.connect_error:
            raise self.connect_error
        self.connected.emit(False)

    async def reconnect(self):
        self.reconnect_calls += 1
        if self.reconnect_error:
            raise self.reconnect_error
        self.connected.emit(True)

    async def disconnect(self):
        self.disconnect_calls += 1


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


async def _token():
    return "user-token"


def _monitor(api=None, eventsub=None, clock=None):
    monitor = StreamStatusMonitor(
        api or FakeAPI(),
        eventsub or FakeEventSub(),
        _token,
        poll_interval=0,
        clock=clock or Clock(),
    )
    monitor.METADATA_RETRY_ATTEMPTS = 0
    return monitor


def _stream(title="Coding", viewers=5):
    return StreamInfo(id="s1", user_id="42", user_login="chan", title=title, game_name="Software", viewer_count=viewers)


def test_start_registers_online_and_offline():
    async def scenario():
        eventsub = FakeEventSub()
        monitor = _monitor(FakeAPI(stream=_stream()), eventsub)
        await monitor.start_monitoring("#Chan")
        result = (monitor.broadcaster_id, monitor.channel, monitor.status, eventsub.subscriptions)
        await monitor.aclose()
        return result

    broadcaster_id, channel, status, subs = asyncio.run(scenario())
    assert broadcaster_id == "42"
    assert channel == "chan"
    assert status == StreamStatus.ONLINE
    assert [s for s, _ in subs] == ["stream.online", "stream.offline"]
    assert subs[0][1] == {"broadcaster_user_id": "42"}


def test_unknown_channel_raises_channel_not_found():
    async def scenario():
        monitor = _monitor(FakeAPI(user_id=None))
        with pytest.raises(ChannelNotFound):
            await monitor.start_monitoring("nobody")
        return monitor.is_monitoring

    assert asyncio.run(scenario()) is False


def test_second_start_raises_already_monitoring():
    async def scenario():
        monitor = _monitor()
        await monitor.start_monitoring("chan")
        with pytest.raises(AlreadyMonitoring):
            await monitor.start_monitoring("chan")
        await monitor.aclose()

    asyncio.run(scenario())


def test_connect_failure_is_subscription_failure():
    async def scenario():
        api = FakeAPI(stream=_stream())
        monitor = _monitor(api, FakeEventSub(connect_error=ConnectionError("boom")))
        changes = []
        monitor.status_changed.subscribe(lambda status, stream: changes.append(status))
        with pytest.raises(SubscriptionFailure):
            await monitor.start_monitoring("chan")
        return monitor.is_monitoring, monitor.broadcaster_id, monitor.snapshot(), changes

    monitoring, broadcaster_id, snapshot, changes = asyncio.run(scenario())
    assert (monitoring, broadcaster_id) == (False, None)
    assert snapshot == (StreamStatus.UNKNOWN, None)
    assert StreamStatus.ONLINE not in changes


def test_monitor_can_restart_after_failed_connect():
    async def scenario():
        eventsub = FakeEventSub(connect_error=ConnectionError("boom"))
        monitor = _monitor(FakeAPI(stream=_stream()), eventsub)
        with pytest.raises(SubscriptionFailure):
            await monitor.start_monitoring("chan")
        eventsub.connect_error = None
        await monitor.start_monitoring("chan")
        status = monitor.status
        await monitor.aclose()
        return status

    assert asyncio.run(scenario()) == StreamStatus.ONLINE


def test_stop_is_idempotent():
    async def scenario():
        eventsub = FakeEventSub()
        monitor = _monitor(eventsub=eventsub)
        await monitor.stop_monitoring()
        await monitor.start_monitoring("chan")
        await monitor.stop_monitoring()
        await monitor.stop_monitoring()
        return monitor.status, monitor.is_monitoring, eventsub.disconnect_calls

    status, monitoring, disconnects = asyncio.run(scenario())
    assert status == StreamStatus.UNKNOWN
    assert monitoring is False
    assert disconnects == 1


def test_status_changed_fires_only_on_transition():
    async def scenario():
        api = FakeAPI(stream=_stream())
        monitor = _monitor(api)
        changes, metadata = [], []
        monitor.status_changed.subscribe(lambda status, stream: changes.append(status))
        monitor.metadata_updated.subscribe(lambda stream: metadata.append(stream.title))
        await monitor.start_monitoring("chan")
        await monitor.refresh_current_status()
        api.stream = _stream(title="Neuer Titel")
        await monitor.refresh_current_status()
        title = monitor.current_stream.title
        await monitor.aclose()
        return changes, metadata, title

    changes, metadata, title = asyncio.run(scenario())
    assert changes == [StreamStatus.ONLINE, StreamStatus.UNKNOWN]
    assert metadata == ["Coding", "Neuer Titel"]
    assert title == "Neuer Titel"


def test_online_push_survives_offline_poll_within_grace():
    async def scenario():
        clock = Clock()
        api = FakeAPI(stream=None)
        eventsub = FakeEventSub()
        monitor = _monitor(api, eventsub, clock)
        await monitor.start_monitoring("chan")
        assert monitor.status == StreamStatus.OFFLINE

        clock.now = 100.0
        await eventsub.stream_online.emit_async({"broadcaster_user_login": "chan"})
        clock.now = 130.0
        await monitor.refresh_current_status()
        within_grace = monitor.status

        clock.now = 100.0 + monitor.ONLINE_GRACE_SECONDS + 1
        await monitor.refresh_current_status()
        after_grace = monitor.status
        await monitor.aclose()
        return within_grace, after_grace

    within_grace, after_grace = asyncio.run(scenario())
    assert within_grace == StreamStatus.ONLINE
    assert after_grace == StreamStatus.OFFLINE


def test_offline_push_clears_metadata():
    async def scenario():
        eventsub = FakeEventSub()
        monitor = _monitor(FakeAPI(stream=_stream()), eventsub)
        await monitor.start_monitoring("chan")
        await eventsub.stream_offline.emit_async({})
        result = monitor.snapshot()
        await monitor.aclose()
        return result

    status, stream = asyncio.run(scenario())
    assert status == StreamStatus.OFFLINE
    assert stream is None


def test_reconnect_gives_up_after_five_attempts():
    async def scenario():
        eventsub = FakeEventSub(reconnect_error=ConnectionError("down"))
        monitor = _monitor(eventsub=eventsub)
        monitor.RECONNECT_BASE_DELAY = 0.001
        errors, stopped = [], asyncio.Event()
        monitor.error.subscribe(errors.append)
        monitor.monitoring_stopped.subscribe(lambda reason: stopped.set())
        await monitor.start_monitoring("chan")

        eventsub.disconnected.emit()
        await asyncio.wait_for(stopped.wait(), 2.0)
        await asyncio.sleep(0.05)
        result = (eventsub.reconnect_calls, monitor.status, monitor.is_monitoring, errors)
        await monitor.aclose()
        return result

    calls, status, monitoring, errors = asyncio.run(scenario())
    assert calls == 5
    assert status == StreamStatus.UNKNOWN
    assert monitoring is False
    assert any(isinstance(e, ReconnectExhausted) and e.attempts == 5 for e in errors)


def test_successful_reconnect_resets_attempts_and_refreshes():
    async def scenario():
        api = FakeAPI(stream=None)
        eventsub = FakeEventSub()
        monitor = _monitor(api, eventsub)
        monitor.RECONNECT_BASE_DELAY = 0.001
        reconnected = asyncio.Event()
        eventsub.connected.subscribe(lambda is_reconnect: is_reconnect and reconnected.set())
        await monitor.start_monitoring("chan")
        polls_before = api.stream_calls

        eventsub.disconnected.emit()
        await asyncio.wait_for(reconnected.wait(), 2.0)
        await asyncio.sleep(0.01)
        result = (eventsub.reconnect_calls, api.stream_calls - polls_before, monitor.is_monitoring)
        await monitor.aclose()
        return result

    calls, polls, monitoring = asyncio.run(scenario())
    assert calls == 1
    assert polls == 1
    assert monitoring is True


def test_metadata_is_fetched_right_after_online_push():
    async def scenario():
        api = FakeAPI(stream=None)
        eventsub = FakeEventSub()
        monitor = _monitor(api, eventsub)
        monitor.METADATA_RETRY_ATTEMPTS = 3
        monitor.METADATA_RETRY_STEP = 60.0
        await monitor.start_monitoring("chan")
        polls_before = api.stream_calls

        api.stream = _stream(title="Live")
        await eventsub.stream_online.emit_async({"broadcaster_user_login": "chan"})
        await asyncio.sleep(0.05)
        result = (api.stream_calls - polls_before, monitor.current_stream)
        await monitor.aclose()
        return result

    polls, stream = asyncio.run(scenario())
    assert polls == 1
    assert stream is not None and stream.title == "Live"
