"""
Live/Offline-Status eines Kanals.

Push-Events (EventSub stream.online / stream.offline) liefern den Status
schnell, die Helix-Abfrage ist die autoritative Quelle. Unmittelbar nach
einem Online-Push hat Helix oft noch keinen Stream-Eintrag, deshalb gilt
innerhalb von ``ONLINE_GRACE_SECONDS`` der Push, danach die Abfrage.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from companion.errors import AlreadyMonitoring, ChannelNotFound, MonitorError, ReconnectExhausted, SubscriptionFailure
from companion.events import EventHook
from companion.models import StreamInfo, StreamStatus

log = logging.getLogger("Companion.StreamStatus")

TokenProvider = Callable[[], Awaitable[Optional[str]]]


class StreamStatusMonitor:
    MAX_RECONNECT_ATTEMPTS = 5
    RECONNECT_BASE_DELAY = 1.0
    METADATA_RETRY_ATTEMPTS = 6
    METADATA_RETRY_STEP = 5.0
    METADATA_RETRY_CAP = 30.0
    ONLINE_GRACE_SECONDS = 90.0
    DISCONNECT_TIMEOUT = 2.0

    def __init__(
        self,
        api,
        eventsub,
        token_provider: TokenProvider,
        *,
        poll_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._api = api
        self._eventsub = eventsub
        self._token_provider = token_provider
        self._poll_interval = poll_interval
        self._clock = clock

        self._state_lock = threading.Lock()
        self._status = StreamStatus.UNKNOWN
        self._stream: Optional[StreamInfo] = None
        self._last_online_push: Optional[float] = None

        self._channel: Optional[str] = None
        self._broadcaster_id: Optional[str] = None
        self._monitoring = False
        self._stop_requested = False
        self._reconnect_attempts = 0

        self._reconnect_task: Optional[asyncio.Task] = None
        self._metadata_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None

        self.status_changed = EventHook("stream_status_changed")
        self.metadata_updated = EventHook("stream_metadata_updated")
        self.log_message = EventHook("stream_monitor_log")
        self.error = EventHook("stream_monitor_error")
        self.monitoring_stopped = EventHook("stream_monitoring_stopped")

        self._unsubscribers = [
            eventsub.connected.subscribe(self._on_connected),
            eventsub.disconnected.subscribe(self._on_disconnected),
            eventsub.stream_online.subscribe(self._on_stream_online),
            eventsub.stream_offline.subscribe(self._on_stream_offline),
            eventsub.error.subscribe(self._on_eventsub_error),
        ]

    # ---- Snapshot ----------------------------------------------------------
    @property
    def status(self) -> StreamStatus:
        with self._state_lock:
            return self._status

    @property
    def current_stream(self) -> Optional[StreamInfo]:
        with self._state_lock:
            return self._stream

    def snapshot(self) -> Tuple[StreamStatus, Optional[StreamInfo]]:
        with self._state_lock:
            return self._status, self._stream

    @property
    def broadcaster_id(self) -> Optional[str]:
        return self._broadcaster_id

    @property
    def channel(self) -> Optional[str]:
        return self._channel

    @property
    def is_monitoring(self) -> bool:
        return self._monitoring

    def _report(self, text: str, level: int = logging.INFO) -> None:
        log.log(level, text)
        self.log_message.emit(text)

    def _set_status(self, status: StreamStatus, stream: Optional[StreamInfo]) -> bool:
        """Apply a transition. Fires ``status_changed`` only if the status differs."""
        if status != StreamStatus.ONLINE:
            stream = None
        with self._state_lock:
            changed = self._status != status
            self._status = status
            self._stream = stream
        if changed:
            log.info("Stream-Status: %s", status.value)
            self.status_changed.emit(status, stream)
        return changed

    def _update_metadata(self, stream: StreamInfo) -> bool:
        with self._state_lock:
            if self._status != StreamStatus.ONLINE:
                return False
            self._stream = stream
        self.metadata_updated.emit(stream)
        return True

    # ---- Public API --------------------------------------------------------
    async def start_monitoring(self, channel: str) -> None:
        if self._monitoring:
            raise AlreadyMonitoring(self._channel)
        channel = (channel or "").strip().lstrip("#").lower()
        self._monitoring = True
        subscribed = False
        try:
            if not channel:
                raise ChannelNotFound(channel)
            token = await self._token_provider()
            user = await self._api.get_user(channel, oauth_token=token)
            if not user or not user.get("id"):
                raise ChannelNotFound(channel)

            self._channel = channel
            self._broadcaster_id = str(user["id"])
            self._stop_requested = False
            self._reconnect_attempts = 0
            self._report(f"Broadcaster-ID für {channel}: {self._broadcaster_id}")

            condition = {"broadcaster_user_id": self._broadcaster_id}
            self._eventsub.clear_subscriptions()
            self._eventsub.add_subscription("stream.online", condition)
            self._eventsub.add_subscription("stream.offline", condition)
            try:
                await self._eventsub.connect()
            except MonitorError:
                raise
            except Exception as exc:
                raise SubscriptionFailure(f"EventSub-Verbindung fehlgeschlagen: {exc}") from exc
            subscribed = True

            # Status erst übernehmen, wenn die Subscriptions stehen
            await self.refresh_current_status()

            if self._poll_interval and self._poll_interval > 0:
                self._poll_task = asyncio.create_task(self._poll_loop())
            self._report(f"Stream-Monitoring für {channel} gestartet")
        except BaseException:
            self._stop_requested = True
            await self._cancel_task(self._metadata_task)
            self._metadata_task = None
            if subscribed:
                try:
                    await asyncio.wait_for(self._eventsub.disconnect(), timeout=self.DISCONNECT_TIMEOUT)
                except Exception:
                    log.debug("EventSub-Trennung nach fehlgeschlagenem Start", exc_info=True)
            self._monitoring = False
            self._channel = None
            self._broadcaster_id = None
            self._last_online_push = None
            self._set_status(StreamStatus.UNKNOWN, None)
            raise

    async def stop_monitoring(self) -> None:
        if not self._monitoring:
            self._set_status(StreamStatus.UNKNOWN, None)
            return
        self._stop_requested = True

        for task in (self._reconnect_task, self._metadata_task, self._poll_task):
            await self._cancel_task(task)
        self._reconnect_task = self._metadata_task = self._poll_task = None

        try:
            await asyncio.wait_for(self._eventsub.disconnect(), timeout=self.DISCONNECT_TIMEOUT)
        except asyncio.TimeoutError:
            log.warning("EventSub-Trennung nach %.0fs abgebrochen", self.DISCONNECT_TIMEOUT)
        except Exception:
            log.exception("Fehler beim Trennen von EventSub")

        self._monitoring = False
        self._channel = None
        self._broadcaster_id = None
        self._last_online_push = None
        self._set_status(StreamStatus.UNKNOWN, None)
        self._report("Stream-Monitoring gestoppt")

    async def refresh_current_status(self) -> bool:
        """Authoritative poll. Returns False if the poll could not be done."""
        if not self._broadcaster_id:
            return False
        try:
            stream = await self._poll_stream()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("Status-Abfrage fehlgeschlagen (%s)", exc.__class__.__name__)
            self.error.emit(exc)
            return False
        self._apply_poll(stream)
        return True

    async def aclose(self) -> None:
        await self.stop_monitoring()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    # ---- Internals ---------------------------------------------------------
    async def _poll_stream(self) -> Optional[StreamInfo]:
        token = await self._token_provider()
        return await self._api.get_stream(self._broadcaster_id, oauth_token=token)

    def _apply_poll(self, stream: Optional[StreamInfo]) -> None:
        if stream is not None:
            if not self._set_status(StreamStatus.ONLINE, stream):
                self._update_metadata(stream)
            return

        current = self.status
        if current == StreamStatus.ONLINE:
            pushed = self._last_online_push
            if pushed is not None and self._clock() - pushed < self.ONLINE_GRACE_SECONDS:
                self._report(
                    "API meldet offline kurz nach Online-Event, Push-Status bleibt bestehen",
                    logging.WARNING,
                )
                return
            self._report("Lokal online, API meldet offline: Status wird korrigiert", logging.WARNING)
        self._set_status(StreamStatus.OFFLINE, None)

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            log.debug("Task beendet mit Fehler", exc_info=True)

    async def _poll_loop(self) -> None:
        try:
            while not self._stop_requested:
                await asyncio.sleep(self._poll_interval)
                if self._stop_requested:
                    break
                await self.refresh_current_status()
        except asyncio.CancelledError:
            log.debug("Status-Poll-Loop beendet")
            raise

    # ---- EventSub callbacks ------------------------------------------------
    def _on_connected(self, is_reconnect: bool) -> None:
        self._reconnect_attempts = 0
        if is_reconnect:
            self._report("EventSub erneut verbunden")
        else:
            self._report("EventSub verbunden")

    def _on_disconnected(self) -> None:
        if self._stop_requested or not self._monitoring:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            log.debug("Reconnect läuft bereits, Disconnect ignoriert")
            return
        self._report("EventSub getrennt, starte Reconnect", logging.WARNING)
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._stop_requested:
            self._reconnect_attempts += 1
            attempt = self._reconnect_attempts
            delay = self.RECONNECT_BASE_DELAY * (2 ** (attempt - 1))
            self._report(
                f"Reconnect-Versuch {attempt}/{self.MAX_RECONNECT_ATTEMPTS} in {delay:.0f}s"
            )
            await asyncio.sleep(delay)
            if self._stop_requested:
                return
            try:
                await self._eventsub.reconnect()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning("Reconnect-Versuch %d fehlgeschlagen (%s)", attempt, exc.__class__.__name__)
                if attempt >= self.MAX_RECONNECT_ATTEMPTS:
                    await self._exhaust()
                    return
                continue
            self._reconnect_attempts = 0
            self._report("Reconnect erfolgreich")
            await self.refresh_current_status()
            return

    async def _exhaust(self) -> None:
        attempts = self._reconnect_attempts
        self._stop_requested = True
        await self._cancel_task(self._metadata_task)
        await self._cancel_task(self._poll_task)
        self._metadata_task = self._poll_task = None
        self._monitoring = False
        self._set_status(StreamStatus.UNKNOWN, None)
        exc = ReconnectExhausted(attempts)
        self._report(str(exc), logging.ERROR)
        self.error.emit(exc)
        self.monitoring_stopped.emit(str(exc))

    async def _on_stream_online(self, event: Dict) -> None:
        self._last_online_push = self._clock()
        current = self.current_stream
        self._set_status(StreamStatus.ONLINE, current)
        self._report(f"Stream online ({event.get('broadcaster_user_login') or self._channel})")
        await self._cancel_task(self._metadata_task)
        self._metadata_task = asyncio.create_task(self._fetch_metadata_with_retry())

    async def _on_stream_offline(self, event: Dict) -> None:
        await self._cancel_task(self._metadata_task)
        self._metadata_task = None
        self._last_online_push = None
        self._set_status(StreamStatus.OFFLINE, None)
        self._report(f"Stream offline ({event.get('broadcaster_user_login') or self._channel})")

    def _on_eventsub_error(self, exc: BaseException) -> None:
        self.error.emit(exc)

    async def _fetch_metadata_with_retry(self) -> None:
        for attempt in range(self.METADATA_RETRY_ATTEMPTS):
            if attempt:
                await asyncio.sleep(min(self.METADATA_RETRY_STEP * attempt, self.METADATA_RETRY_CAP))
            if self.status != StreamStatus.ONLINE or self._stop_requested:
                return
            try:
                stream = await self._poll_stream()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning("Stream-Metadaten nicht abrufbar (%s), Abbruch", exc.__class__.__name__)
                self.error.emit(exc)
                return
            if self.status != StreamStatus.ONLINE:
                return
            if stream is not None:
                self._update_metadata(stream)
                self._report(f"Stream-Metadaten geladen: {stream.title}")
                return
            log.debug("Metadaten-Versuch %d: noch kein Stream-Eintrag", attempt + 1)
        self._report("Stream-Metadaten nach mehreren Versuchen nicht verfügbar", logging.WARNING)


__all__ = ["StreamStatusMonitor"]
