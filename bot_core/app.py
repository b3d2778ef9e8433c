from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from bot_core.logging_setup import LoggingMixin
from companion.api import TwitchAPI
from companion.auth import KeyringTokenStore, TokenBroker
from companion.broadcast import BroadcastScheduler
from companion.chat import (
    AudienceTracker,
    ChatDecorationsProvider,
    ChatHistoryStore,
    ChatMessageHandler,
    CommandProcessor,
    Messenger,
    register_default_commands,
)
from companion.chat.transport import TwitchioTransport
from companion.chat.user_messages import UserMessagesService, register_moderation_commands
from companion.monitoring import EventSubClient, StreamStatusMonitor
from companion.orchestrator import ChatSessionOrchestrator, ConnectionOutcome
from companion.server import HttpServer, PushHub
from companion.settings import CredentialSettings, SettingsManager
from companion.stats import StatisticsCollector

__all__ = ["CompanionApp"]


class CompanionApp(LoggingMixin):
    """
    Companion-Prozess:
     - Settings (JSON + ENV/Tresor)
     - Token-Broker inkl. OAuth-Callback über den lokalen HTTP-Server
     - Chat-Session mit Statistik, Begrüßung, Befehlen, Auto-Broadcast
     - Stream-Monitoring über EventSub
     - OBS-Overlay via SSE
    """

    def __init__(self, credentials: Optional[CredentialSettings] = None, root_dir: Optional[Path] = None):
        self.root_dir = root_dir or Path(__file__).resolve().parent.parent
        self.credentials = credentials or CredentialSettings()
        self.setup_logging(self.credentials.log_level)

        self.settings = SettingsManager(self.credentials.settings_path, credentials=self.credentials)
        tw = self.settings.current.twitch
        self.redact_filter.add_secret(tw.client_secret)

        self.api = TwitchAPI(tw.client_id, tw.client_secret)

        self.token_broker = TokenBroker(lambda: self.settings.current.twitch, KeyringTokenStore())
        self.token_broker.status_changed.subscribe(lambda text: logging.info("[Auth] %s", text))

        self.eventsub = EventSubClient(self.api, self._current_access_token)
        self.monitor = StreamStatusMonitor(
            self.api,
            self.eventsub,
            self._current_access_token,
            poll_interval=float(tw.infrastructure.status_poll_seconds),
        )

        self.transport = TwitchioTransport()
        self.messenger = Messenger(self.transport, lambda: self.settings.current.twitch.infrastructure)
        self.scheduler = BroadcastScheduler(
            self.messenger,
            lambda: self.settings.current.twitch.auto_broadcast,
            lambda: self.monitor.current_stream,
        )

        self.stats = StatisticsCollector(self.settings.path.parent / "statistics")
        self.audience = AudienceTracker(lambda: self.settings.current.twitch.messages)
        self.history = ChatHistoryStore(lambda: self.settings.current.twitch.infrastructure.chat_history_max_items)
        self.push_hub = PushHub(lambda: self.settings.current.twitch.infrastructure.sse_keep_alive_seconds)
        self.history.register_sink(self.push_hub)
        self.settings.chat_settings_changed.subscribe(self.push_hub.notify_chat_settings_changed)

        self.commands = CommandProcessor(tw.command_prefix)
        register_default_commands(self.commands, self.stats, lambda: self.monitor.current_stream)

        self.decorations = ChatDecorationsProvider(self.api)
        self.handler = ChatMessageHandler(
            self.stats,
            self.audience,
            self.history,
            self.commands,
            self.messenger,
            self.decorations,
            lambda: self.settings.current.twitch.messages,
        )
        self.user_messages = UserMessagesService(
            self.stats,
            self.messenger,
            lambda: self.settings.current.twitch.messages,
            lambda: self.handler.channel,
        )
        register_moderation_commands(self.commands, self.stats, self.user_messages)

        self.http_server = HttpServer(self.token_broker, self.history, self.push_hub, self.settings)
        self.session = ChatSessionOrchestrator(
            self.settings,
            self.token_broker,
            self.transport,
            self.messenger,
            self.stats,
            self.decorations,
            self.monitor,
            self.scheduler,
            self.audience,
            self.handler,
        )
        self.session.progress.subscribe(lambda text: logging.info("[Session] %s", text))
        self._closed = asyncio.Event()
        self._closing = False

    async def _current_access_token(self) -> Optional[str]:
        token = self.token_broker.current_token
        return token.access_token if token else None

    async def start(self) -> bool:
        logging.info("Companion startet...")
        infra = self.settings.current.twitch.infrastructure
        if infra.http_server_enabled:
            try:
                await self.http_server.start()
            except OSError as exc:
                logging.error("HTTP-Server konnte nicht gestartet werden: %s", exc)

        self.session.start_connection()
        result = await self.session.wait_for_connection()
        if result is None or result.outcome != ConnectionOutcome.SUCCESS:
            logging.error("Bot-Verbindung fehlgeschlagen: %s", result.error if result else "unbekannt")
            return False
        logging.info("Companion läuft in #%s", self.handler.channel or self.settings.current.twitch.channel)
        return True

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def is_closed(self) -> bool:
        return self._closed.is_set()

    async def close(self) -> None:
        if self._closing:
            await self._closed.wait()
            return
        self._closing = True
        logging.info("Companion fährt herunter...")

        try:
            await self.session.stop()
        except Exception as exc:
            logging.error("Fehler beim Stoppen der Session: %s", exc)

        for label, closer in (
            ("Scheduler", self.scheduler.aclose),
            ("Monitor", self.monitor.aclose),
            ("HTTP-Server", self.http_server.stop),
            ("Token-Broker", self.token_broker.aclose),
            ("Twitch API", self.api.aclose),
            ("Session-Hooks", self.session.aclose),
        ):
            try:
                await closer()
            except Exception as exc:
                logging.error("Fehler beim Schließen (%s): %s", label, exc)

        self._closed.set()
        logging.info("Companion shutdown complete")
