"""
Periodischer Auto-Broadcast in den Chat.

Jeder ``start()`` erzeugt einen neuen Lauf (Generation). Ein neuer Loop wartet,
bis der vorherige Loop vollständig beendet ist; ein alter Loop erkennt an der
Generation, dass er nichts mehr zählen oder senden darf.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from companion.events import EventHook
from companion.models import StreamInfo
from companion.settings import AutoBroadcastSettings

log = logging.getLogger("Companion.BroadcastScheduler")


def render_template(template: str, counter: int, stream: Optional[StreamInfo]) -> str:
    """Substitute {counter}, {title}, {game}, {viewers}; blanks for missing stream data."""
    values = {
        "{counter}": str(counter),
        "{title}": stream.title if stream else "",
        "{game}": stream.game_name if stream else "",
        "{viewers}": str(stream.viewer_count) if stream else "",
    }
    text = template or ""
    for key, value in values.items():
        text = text.replace(key, value or "")
    return text


class BroadcastScheduler:
    INTERVAL_UNIT_SECONDS = 60.0

    def __init__(
        self,
        messenger,
        settings_provider: Callable[[], AutoBroadcastSettings],
        stream_provider: Callable[[], Optional[StreamInfo]],
    ):
        self._messenger = messenger
        self._settings = settings_provider
        self._stream = stream_provider

        self._lock = threading.Lock()
        self._channel: Optional[str] = None
        self._interval = 0.0
        self._counter = 0
        self._next_fire: Optional[datetime] = None
        self._generation = 0
        self._loop_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

        self.state_changed = EventHook("broadcast_state_changed")

    # ---- State -------------------------------------------------------------
    def _is_active_locked(self) -> bool:
        return (
            self._loop_task is not None
            and not self._loop_task.done()
            and self._stop_event is not None
            and not self._stop_event.is_set()
        )

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._is_active_locked()

    @property
    def channel(self) -> Optional[str]:
        with self._lock:
            return self._channel

    @property
    def sent_count(self) -> int:
        with self._lock:
            return self._counter

    @property
    def next_fire_time(self) -> Optional[datetime]:
        with self._lock:
            return self._next_fire

    # ---- Control -----------------------------------------------------------
    def start(self, channel: str) -> None:
        minutes = max(1, int(self._settings().broadcast_interval_minutes or 0))
        with self._lock:
            if self._stop_event is not None:
                self._stop_event.set()
            previous = self._loop_task
            self._generation += 1
            generation = self._generation
            self._channel = channel
            self._counter = 0
            self._interval = minutes * self.INTERVAL_UNIT_SECONDS
            self._next_fire = datetime.now() + timedelta(seconds=self._interval)
            stop_event = asyncio.Event()
            self._stop_event = stop_event
            self._loop_task = asyncio.create_task(self._run(generation, previous, stop_event))
        log.info("Auto-Broadcast gestartet für #%s (Intervall %d min)", channel, minutes)
        self.state_changed.emit(True)

    def stop(self) -> None:
        with self._lock:
            was_active = self._is_active_locked()
            if self._stop_event is not None:
                self._stop_event.set()
            self._generation += 1
            self._channel = None
            self._counter = 0
            self._next_fire = None
        if was_active:
            log.info("Auto-Broadcast gestoppt")
            self.state_changed.emit(False)

    def manual_send(self) -> bool:
        """Send one message out of cadence. Timer is untouched."""
        with self._lock:
            if not self._is_active_locked() or not self._channel:
                return False
            self._counter += 1
            counter = self._counter
            channel = self._channel
        return self._deliver(channel, counter)

    async def aclose(self) -> None:
        self.stop()
        task = self._loop_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    # ---- Loop --------------------------------------------------------------
    async def _run(self, generation: int, previous: Optional[asyncio.Task], stop_event: asyncio.Event) -> None:
        if previous is not None and not previous.done():
            log.debug("Warte auf Ende des vorherigen Broadcast-Loops")
            await asyncio.wait({previous})

        try:
            while True:
                with self._lock:
                    if generation != self._generation or stop_event.is_set():
                        return
                    interval = self._interval
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=interval)
                    return
                except asyncio.TimeoutError:
                    pass
                try:
                    if not self._tick(generation):
                        return
                except Exception:
                    log.exception("Fehler im Broadcast-Tick")
        except asyncio.CancelledError:
            log.info("Broadcast-Loop abgebrochen")
            raise

    def _tick(self, generation: int) -> bool:
        with self._lock:
            if generation != self._generation or not self._channel:
                return False
            self._counter += 1
            counter = self._counter
            channel = self._channel
            self._next_fire = datetime.now() + timedelta(seconds=self._interval)
        self._deliver(channel, counter)
        return True

    def _deliver(self, channel: str, counter: int) -> bool:
        text = render_template(self._settings().broadcast_message_template, counter, self._stream())
        if not text.strip():
            log.warning("Broadcast-Vorlage ergibt leere Nachricht, Tick #%d übersprungen", counter)
            return False
        self._messenger.send(channel, text)
        log.debug("Broadcast #%d gesendet", counter)
        return True


__all__ = ["BroadcastScheduler", "render_template"]
