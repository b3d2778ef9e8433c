import asyncio
import sys
from pathlib import Path

# Add root to sys.path
root = Path(__file__).parent.parent
sys.path.insert(0, str(root))

from companion.broadcast import BroadcastScheduler, render_template
from companion.models import StreamInfo
from companion.settings import AutoBroadcastSettings


class FakeMessenger:
    def __init__(self):
        self.sent = []
        self._waiters = []

    def send(self, channel, text):
        self.sent.append((channel, text))
        for count, event in self._waiters:
            if len(self.sent) >= count:
                event.set()

    async def wait_for(self, count, timeout=2.0):
        event = asyncio.Event()
        self._waiters.append((count, event))
        if len(self.sent) >= count:
            event.set()
        await asyncio.wait_for(event.wait(), timeout)


def _stream(game="Coding"):
    return StreamInfo(id="1", user_id="42", user_login="chan", user_name="Chan", game_name=game, title="Hallo", viewer_count=7)


def _scheduler(messenger, template="#{counter}: {game}", stream=None):
    settings = AutoBroadcastSettings(broadcast_interval_minutes=1, broadcast_message_template=template)
    scheduler = BroadcastScheduler(messenger, lambda: settings, lambda: stream)
    scheduler.INTERVAL_UNIT_SECONDS = 0.02
    return scheduler


def test_render_template_blanks_without_stream():
    assert render_template("#{counter} {title}|{game}|{viewers}", 3, None) == "#3 ||"
    assert render_template("{title} ({viewers})", 1, _stream()) == "Hallo (7)"


def test_three_ticks_count_up():
    async def scenario():
        messenger = FakeMessenger()
        scheduler = _scheduler(messenger, stream=_stream())
        scheduler.start("chan")
        await messenger.wait_for(3)
        scheduler.stop()
        await scheduler.aclose()
        return messenger.sent

    sent = asyncio.run(scenario())
    assert [text for _, text in sent[:3]] == ["#1: Coding", "#2: Coding", "#3: Coding"]
    assert all(channel == "chan" for channel, _ in sent)


def test_restart_resets_counter_without_double_loop():
    async def scenario():
        messenger = FakeMessenger()
        scheduler = _scheduler(messenger, stream=_stream())
        scheduler.start("chan")
        await messenger.wait_for(2)
        scheduler.stop()
        scheduler.start("chan")
        first_run = len(messenger.sent)
        await messenger.wait_for(first_run + 3)
        await scheduler.aclose()
        return messenger.sent[first_run:first_run + 3]

    second_run = asyncio.run(scenario())
    assert [text for _, text in second_run] == ["#1: Coding", "#2: Coding", "#3: Coding"]


def test_start_while_running_hands_over_to_one_loop():
    async def scenario():
        loop = asyncio.get_running_loop()
        messenger = FakeMessenger()
        stamps = []
        messenger.send = _stamped(messenger.send, stamps, loop)
        scheduler = _scheduler(messenger, stream=_stream())
        scheduler.start("chan")
        await messenger.wait_for(2)
        old_loop = scheduler._loop_task
        scheduler.start("chan")
        first_run = len(messenger.sent)
        await messenger.wait_for(first_run + 3)
        old_done = old_loop.done()
        await scheduler.aclose()
        return messenger.sent[first_run:first_run + 3], stamps[first_run:first_run + 3], old_done

    second_run, stamps, old_done = asyncio.run(scenario())
    assert [text for _, text in second_run] == ["#1: Coding", "#2: Coding", "#3: Coding"]
    assert old_done is True
    assert all(b - a >= 0.01 for a, b in zip(stamps, stamps[1:]))


def _stamped(send, stamps, loop):
    def wrapper(channel, text):
        stamps.append(loop.time())
        send(channel, text)

    return wrapper


def test_stop_clears_state():
    async def scenario():
        scheduler = _scheduler(FakeMessenger())
        states = []
        scheduler.state_changed.subscribe(states.append)
        scheduler.start("chan")
        assert scheduler.is_active
        assert scheduler.channel == "chan"
        assert scheduler.next_fire_time is not None
        scheduler.stop()
        snapshot = (scheduler.is_active, scheduler.channel, scheduler.sent_count, scheduler.next_fire_time)
        scheduler.stop()
        await scheduler.aclose()
        return snapshot, states

    snapshot, states = asyncio.run(scenario())
    assert snapshot == (False, None, 0, None)
    assert states == [True, False]


def test_manual_send_only_when_active():
    async def scenario():
        messenger = FakeMessenger()
        scheduler = _scheduler(messenger, template="Manuell #{counter}")
        scheduler.INTERVAL_UNIT_SECONDS = 60.0
        before = scheduler.manual_send()
        scheduler.start("chan")
        during = scheduler.manual_send()
        await scheduler.aclose()
        return before, during, messenger.sent

    before, during, sent = asyncio.run(scenario())
    assert before is False
    assert during is True
    assert sent == [("chan", "Manuell #1")]


def test_empty_render_is_skipped():
    async def scenario():
        messenger = FakeMessenger()
        scheduler = _scheduler(messenger, template="{game}")
        scheduler.start("chan")
        await asyncio.sleep(0.1)
        active = scheduler.is_active
        await scheduler.aclose()
        return active, messenger.sent

    active, sent = asyncio.run(scenario())
    assert active is True
    assert sent == []
