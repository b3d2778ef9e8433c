from __future__ import annotations

import logging
from typing import Callable, Optional

from companion.chat.audience import AudienceTracker
from companion.chat.commands import CommandContext, CommandProcessor, CommandResponse, DeliveryMode
from companion.chat.decorations import ChatDecorationsProvider
from companion.chat.history import ChatHistoryStore, ChatMessageRecord
from companion.models import ChatMessage
from companion.settings import MessageSettings

log = logging.getLogger("Companion.ChatHandler")


class ChatMessageHandler:
    """
    Verarbeitung eingehender Chat-Nachrichten:
    Statistik → Audience → Verlauf → Befehle → Begrüßung → Antwort.
    """

    def __init__(
        self,
        stats,
        audience: AudienceTracker,
        history: ChatHistoryStore,
        commands: CommandProcessor,
        messenger,
        decorations: ChatDecorationsProvider,
        settings_provider: Callable[[], MessageSettings],
    ):
        self._stats = stats
        self._audience = audience
        self._history = history
        self._commands = commands
        self._messenger = messenger
        self._decorations = decorations
        self._settings = settings_provider
        self.channel: Optional[str] = None

    def on_joined(self, channel: str) -> None:
        self.channel = channel
        settings = self._settings()
        if settings.connection_enabled and settings.connection.strip():
            self._messenger.send(channel, settings.connection)

    def reset(self) -> None:
        self.channel = None
        self._audience.clear_all()

    def handle_message(self, message: ChatMessage) -> Optional[CommandResponse]:
        self._stats.track_message(message.user_id, message.display_name)
        is_first_time = self._audience.on_user_message(message.user_id, message.display_name)

        self._history.add_message(
            ChatMessageRecord(
                timestamp=message.timestamp,
                author=message.display_name,
                text=message.text,
                user_id=message.user_id,
                emotes=message.emotes or self._decorations.find_emotes(message.text),
                badges=message.badges,
                badge_urls=self._decorations.badge_urls(message.badges),
                is_broadcaster=message.is_broadcaster,
                is_moderator=message.is_moderator,
                is_vip=message.is_vip,
                is_subscriber=message.is_subscriber,
                is_first_time=is_first_time,
            )
        )

        context = CommandContext(
            channel=message.channel,
            message_id=message.id,
            user_id=message.user_id,
            username=message.username,
            display_name=message.display_name,
            is_moderator=message.is_moderator or message.is_broadcaster,
        )
        response = self._commands.try_process(message.text, context)

        settings = self._settings()
        if settings.welcome_enabled and is_first_time:
            welcome = self._audience.create_welcome(message.display_name)
            if response is not None:
                response.text = f"{welcome} {response.text}".strip()
            elif welcome.strip():
                self._messenger.reply(message.channel, message.id, welcome)

        if response is not None:
            self._deliver(message, response)
        return response

    def _deliver(self, message: ChatMessage, response: CommandResponse) -> None:
        if not response.text.strip():
            return
        if response.delivery == DeliveryMode.REPLY:
            self._messenger.reply(message.channel, response.reply_to_message_id or message.id, response.text)
        else:
            self._messenger.send(message.channel, response.text)


__all__ = ["ChatMessageHandler"]
