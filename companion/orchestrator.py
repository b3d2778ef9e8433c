"""
Bot-Session: Token → Chat-Verbindung → Statistik → Dekorationen → Stream-Monitoring,
plus symmetrischer Abbau und die Reaktion auf Stream-Statuswechsel
(online → Auto-Broadcast starten, offline → stoppen).
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from companion.errors import BusyError, ChatConnectionError, ConnectionErrorKind
from companion.events import EventHook
from companion.models import ChatMessage, StreamInfo, StreamStatus
from companion.settings import SettingsManager, TwitchSettings

log = logging.getLogger("Companion.Orchestrator")


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class ConnectionOutcome(str, enum.Enum):
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class ConnectionResult:
    outcome: ConnectionOutcome
    error: Optional[BaseException] = None

    @classmethod
    def success(cls) -> "ConnectionResult":
        return cls(ConnectionOutcome.SUCCESS)

    @classmethod
    def cancelled(cls) -> "ConnectionResult":
        return cls(ConnectionOutcome.CANCELLED)

    @classmethod
    def failed(cls, error: BaseException) -> "ConnectionResult":
        return cls(ConnectionOutcome.FAILED, error)


class ChatSessionOrchestrator:
    CONNECT_TIMEOUT = 30.0
    CONNECT_POLL_INTERVAL = 0.5

    def __init__(
        self,
        settings: SettingsManager,
        token_broker,
        transport,
        messenger,
        stats,
        decorations,
        monitor,
        scheduler,
        audience,
        handler,
    ):
        self._settings = settings
        self._broker = token_broker
        self._transport = transport
        self._messenger = messenger
        self._stats = stats
        self._decorations = decorations
        self._monitor = monitor
        self._scheduler = scheduler
        self._audience = audience
        self._handler = handler

        self._state_lock = threading.Lock()
        self._state = ConnectionState.IDLE
        self._started_at: Optional[datetime] = None
        self._connection_task: Optional[asyncio.Task] = None
        self._cancel_requested = False

        self.progress = EventHook("session_progress")
        self.connection_completed = EventHook("session_connection_completed")
        self.state_changed = EventHook("session_state_changed")

        self._unsubscribers: List[Callable[[], None]] = [
            monitor.status_changed.subscribe(self._on_stream_status_changed),
            monitor.log_message.subscribe(self._on_monitor_log),
            monitor.error.subscribe(self._on_monitor_error),
            monitor.monitoring_stopped.subscribe(self._on_monitoring_stopped),
            transport.log.subscribe(self._on_transport_log),
            transport.connected.subscribe(self._on_transport_connected),
            transport.joined_channel.subscribe(self._on_joined_channel),
            transport.message_received.subscribe(self._on_chat_message),
        ]

    # ---- Session -----------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def is_busy(self) -> bool:
        return self.state != ConnectionState.IDLE

    @property
    def channel(self) -> Optional[str]:
        return self._handler.channel

    @property
    def started_at(self) -> Optional[datetime]:
        return self._started_at

    def _set_state(self, state: ConnectionState) -> None:
        with self._state_lock:
            changed = self._state != state
            self._state = state
        if changed:
            log.debug("Session-Status: %s", state.value)
            self.state_changed.emit(state)

    def _report(self, text: str) -> None:
        log.info(text)
        self.progress.emit(text)

    # ---- Connect -----------------------------------------------------------
    def start_connection(self) -> asyncio.Task:
        with self._state_lock:
            if self._state != ConnectionState.IDLE:
                log.warning("Verbindungsstart abgelehnt: Status %s", self._state.value)
                raise BusyError(f"Verbindung läuft bereits ({self._state.value})")
            self._state = ConnectionState.CONNECTING
            self._cancel_requested = False
        self.state_changed.emit(ConnectionState.CONNECTING)
        log.info("Starte Bot-Verbindung")
        self._connection_task = asyncio.create_task(self._connect())
        return self._connection_task

    def cancel_connection(self) -> bool:
        task = self._connection_task
        if task is None or task.done() or self.state != ConnectionState.CONNECTING:
            return False
        if self._cancel_requested:
            log.debug("Abbruch bereits angefordert, Rollback läuft")
            return False
        self._cancel_requested = True
        log.info("Verbindungsversuch wird abgebrochen")
        task.cancel()
        return True

    async def wait_for_connection(self) -> Optional[ConnectionResult]:
        task = self._connection_task
        if task is None:
            return None
        return await asyncio.shield(task)

    async def _connect(self) -> ConnectionResult:
        stats_started = False
        try:
            self._report("Hole Access-Token...")
            token = await self._broker.get_valid_token()
            if not token:
                raise ChatConnectionError(ConnectionErrorKind.TRANSPORT_FAILURE, "Kein Access-Token erhalten")

            tw = self._settings.current.twitch
            self._report("Initialisiere Verbindung...")
            log.info("Chat-Client für %s in #%s", tw.bot_username, tw.channel)
            self._transport.initialize(tw.bot_username, token, tw.channel)

            self._report("Verbinde mit Twitch...")
            try:
                await self._transport.connect()
            except (OSError, RuntimeError) as exc:
                raise ChatConnectionError(ConnectionErrorKind.TRANSPORT_FAILURE, str(exc)) from exc
            await self._wait_for_confirmation()
            self._report("Verbindung hergestellt")
            self._messenger.start()

            self._report("Initialisiere Statistik...")
            await self._stats.start()
            stats_started = True
            self._stats.reset_bot_start_time()

            self._report("Initialisiere Stream-Monitoring...")
            await self._start_stream_monitoring(tw, token)

            # Kanal-Badges brauchen die Broadcaster-ID aus dem Monitoring
            self._report("Lade Emotes und Badges...")
            await self._decorations.load(oauth_token=token, broadcaster_id=self._monitor.broadcaster_id)
            self._report(
                f"{self._decorations.emote_count} Emotes und {self._decorations.badge_count} Badges geladen"
            )

            self._started_at = datetime.now()
            self._set_state(ConnectionState.CONNECTED)
            self._report("Bot erfolgreich verbunden")
            result = ConnectionResult.success()
        except asyncio.CancelledError:
            log.warning("Verbindungsaufbau abgebrochen")
            await self._unwind(stats_started)
            self._report("Verbindung abgebrochen")
            result = ConnectionResult.cancelled()
        except Exception as exc:
            log.error("Verbindungsaufbau fehlgeschlagen: %s", exc, exc_info=True)
            await self._unwind(stats_started)
            self._report(f"Verbindungsfehler: {exc}")
            result = ConnectionResult.failed(exc)

        self.connection_completed.emit(result)
        return result

    async def _wait_for_confirmation(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.CONNECT_TIMEOUT
        while not self._transport.is_connected:
            if loop.time() >= deadline:
                raise ChatConnectionError(
                    ConnectionErrorKind.TIMEOUT,
                    f"Keine Bestätigung vom Chat nach {self.CONNECT_TIMEOUT:.0f}s",
                )
            log.debug("Warte auf Verbindungsbestätigung...")
            await asyncio.sleep(self.CONNECT_POLL_INTERVAL)

    async def _start_stream_monitoring(self, tw: TwitchSettings, token: Optional[str]) -> None:
        if not tw.client_id:
            log.warning("Stream-Monitoring nicht verfügbar: Client ID fehlt")
            self._report("Client ID fehlt, Stream-Monitoring deaktiviert")
            return
        if not token:
            log.warning("Stream-Monitoring nicht verfügbar: Access-Token fehlt")
            self._report("Access-Token fehlt, Stream-Monitoring deaktiviert")
            return
        try:
            await self._monitor.start_monitoring(tw.channel)
        except Exception as exc:
            log.error("Stream-Monitoring für %s nicht gestartet: %s", tw.channel, exc, exc_info=True)
            self._report(f"Stream-Monitoring fehlgeschlagen: {exc}")

    async def _unwind(self, stats_started: bool) -> None:
        """Rollback bis zum Ende durchziehen, auch wenn erneut abgebrochen wird."""
        self._cancel_requested = True
        rollback = asyncio.ensure_future(self._rollback(stats_started))
        while not rollback.done():
            try:
                await asyncio.shield(rollback)
            except asyncio.CancelledError:
                log.debug("Erneuter Abbruch während Rollback ignoriert")
        rollback.result()

    async def _rollback(self, stats_started: bool) -> None:
        """Best-effort teardown after a cancelled or failed attempt."""
        steps = [("Chat trennen", self._transport.disconnect), ("Messenger stoppen", self._messenger.stop)]
        if self._monitor.is_monitoring:
            steps.append(("Monitoring stoppen", self._monitor.stop_monitoring))
        if stats_started:
            steps.append(("Statistik stoppen", self._stats.stop))
        try:
            for label, step in steps:
                try:
                    await step()
                except Exception:
                    log.exception("Rollback-Schritt '%s' fehlgeschlagen", label)
        finally:
            self._handler.reset()
            self._set_state(ConnectionState.IDLE)

    # ---- Stop --------------------------------------------------------------
    async def stop(self) -> None:
        task = self._connection_task
        if task is not None and not task.done():
            if not self._cancel_requested:
                self._cancel_requested = True
                task.cancel()
            await asyncio.wait({task})
        if self.state == ConnectionState.IDLE:
            return
        self._set_state(ConnectionState.DISCONNECTING)
        log.debug("Stoppe Bot-Session")

        self._scheduler.stop()
        await self._send_farewell()

        await self._teardown_step("Fehler beim Trennen vom Chat", self._disconnect_chat)
        await self._teardown_step("Fehler beim Stoppen des Monitorings", self._monitor.stop_monitoring)
        await self._teardown_step("Fehler beim Speichern der Statistik", self._stats.stop)
        await self._teardown_step("Fehler beim Zurücksetzen der Session", self._reset_session)

        self._started_at = None
        self._set_state(ConnectionState.IDLE)
        self._report("Bot gestoppt")

    async def _send_farewell(self) -> None:
        channel = self._handler.channel
        if not self._transport.is_connected or not channel:
            return
        parts = [self._audience.create_collective_farewell()]
        messages = self._settings.current.twitch.messages
        if messages.disconnection_enabled:
            parts.append(messages.disconnection)
        text = " ".join(p.strip() for p in parts if p and p.strip())
        if not text:
            return
        log.info("Sende Abschied an #%s", channel)
        self._messenger.send(channel, text)
        await self._messenger.flush()

    async def _disconnect_chat(self) -> None:
        try:
            if self._transport.is_connected:
                await self._transport.disconnect()
        finally:
            await self._messenger.stop()

    async def _reset_session(self) -> None:
        self._handler.reset()

    async def _teardown_step(self, label: str, step) -> None:
        try:
            await step()
        except Exception as exc:
            log.exception(label)
            self.progress.emit(f"{label}: {exc}")

    # ---- Broadcast controls ------------------------------------------------
    def start_broadcast(self) -> bool:
        channel = self._handler.channel
        if not channel or self._scheduler.is_active:
            return False
        self._scheduler.start(channel)
        return True

    def stop_broadcast(self) -> None:
        self._scheduler.stop()

    def manual_broadcast(self) -> bool:
        return self._scheduler.manual_send()

    # ---- Reactions ---------------------------------------------------------
    def _on_stream_status_changed(self, status: StreamStatus, stream: Optional[StreamInfo]) -> None:
        auto = self._settings.current.twitch.auto_broadcast
        channel = self._handler.channel
        log.info("Stream-Status %s für #%s", status.value, channel)

        if status == StreamStatus.ONLINE:
            if not auto.auto_broadcast_enabled or self._scheduler.is_active or not channel:
                return
            self._scheduler.start(channel)
            self._report("Stream online, Auto-Broadcast gestartet")
            if auto.stream_status_notifications_enabled and auto.stream_start_message:
                self._messenger.send(channel, auto.stream_start_message)
        elif status == StreamStatus.OFFLINE:
            if not auto.auto_broadcast_enabled or not self._scheduler.is_active:
                return
            self._scheduler.stop()
            self._report("Stream offline, Auto-Broadcast gestoppt")
            if auto.stream_status_notifications_enabled and auto.stream_stop_message and channel:
                self._messenger.send(channel, auto.stream_stop_message)

    def _on_monitor_log(self, text: str) -> None:
        self.progress.emit(f"[Monitoring] {text}")

    def _on_monitor_error(self, exc: BaseException) -> None:
        log.error("Stream-Monitoring Fehler: %s", exc)
        self.progress.emit(f"EventSub-Fehler: {exc}")

    def _on_monitoring_stopped(self, reason: str) -> None:
        self.progress.emit(f"Stream-Monitoring gestoppt, manueller Neustart nötig: {reason}")

    def _on_transport_log(self, text: str) -> None:
        log.debug("Chat: %s", text)

    def _on_transport_connected(self) -> None:
        log.info("Chat-Verbindung bestätigt")

    def _on_joined_channel(self, channel: str) -> None:
        self._handler.on_joined(channel)

    def _on_chat_message(self, message: ChatMessage) -> None:
        try:
            self._handler.handle_message(message)
        except Exception:
            log.exception("Chat-Nachricht von %s konnte nicht verarbeitet werden", message.display_name)

    async def aclose(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()


__all__ = [
    "ChatSessionOrchestrator",
    "ConnectionOutcome",
    "ConnectionResult",
    "ConnectionState",
]
