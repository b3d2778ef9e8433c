from __future__ import annotations

import logging
from typing import Callable, Optional

from companion.chat.commands import CommandContext, CommandProcessor, CommandResponse
from companion.settings import MessageSettings
from companion.stats.collector import StatisticsCollector, UserStatistics

log = logging.getLogger("Companion.UserMessages")


class UserMessagesService:
    """Belohnen/Bestrafen: Nachrichtenzähler eines Users anpassen und ggf. im Chat melden."""

    def __init__(
        self,
        stats: StatisticsCollector,
        messenger,
        settings_provider: Callable[[], MessageSettings],
        channel_provider: Callable[[], Optional[str]],
    ):
        self._stats = stats
        self._messenger = messenger
        self._settings = settings_provider
        self._channel = channel_provider

    def reward_user(self, user_id: str, amount: int) -> Optional[UserStatistics]:
        settings = self._settings()
        if not settings.reward_enabled:
            log.info("Belohnungen sind deaktiviert")
            return None
        user = self._stats.increment_user_messages(user_id, amount)
        if user is None:
            log.warning("Unbekannter User %s, keine Belohnung", user_id)
            return None
        log.info("%s belohnt (+%d, jetzt %d)", user.name, amount, user.message_count)
        if settings.reward_notification_enabled:
            self._announce(settings.reward, user)
        return user

    def punish_user(self, user_id: str, amount: int) -> Optional[UserStatistics]:
        settings = self._settings()
        if not settings.punishment_enabled:
            log.info("Bestrafungen sind deaktiviert")
            return None
        user = self._stats.decrement_user_messages(user_id, amount)
        if user is None:
            log.warning("Unbekannter User %s, keine Bestrafung", user_id)
            return None
        log.info("%s bestraft (-%d, jetzt %d)", user.name, amount, user.message_count)
        if settings.punishment_notification_enabled:
            self._announce(settings.punishment, user)
        return user

    def _announce(self, template: str, user: UserStatistics) -> None:
        channel = self._channel()
        if not channel:
            return
        text = template.replace("{username}", user.name).replace("{count}", str(user.message_count))
        self._messenger.send(channel, text)


DEFAULT_AMOUNT = 10


def _parse_target(ctx: CommandContext):
    """``!reward @name [anzahl]`` -> (name, amount) oder None."""
    if not ctx.args:
        return None
    name = ctx.args[0]
    amount = DEFAULT_AMOUNT
    if len(ctx.args) > 1:
        try:
            amount = int(ctx.args[1])
        except ValueError:
            return None
    if amount <= 0:
        return None
    return name, amount


def register_moderation_commands(
    processor: CommandProcessor,
    stats: StatisticsCollector,
    service: UserMessagesService,
) -> None:
    """``!reward`` / ``!punish`` für Moderatoren und den Broadcaster."""

    def _adjust(ctx: CommandContext, apply, usage: str) -> Optional[CommandResponse]:
        if not ctx.is_moderator:
            log.debug("%s ist kein Moderator, %s ignoriert", ctx.username, usage)
            return None
        target = _parse_target(ctx)
        if target is None:
            return CommandResponse(f"Verwendung: {processor.prefix}{usage} @name [anzahl]", reply_to_message_id=ctx.message_id)
        name, amount = target
        user = stats.find_user_by_name(name)
        if user is None:
            return CommandResponse(f"{name.lstrip('@')} hat noch nichts geschrieben.", reply_to_message_id=ctx.message_id)
        if apply(user.user_id, amount) is None:
            return CommandResponse("Aktion ist deaktiviert.", reply_to_message_id=ctx.message_id)
        return None

    processor.register(
        "reward",
        lambda ctx: _adjust(ctx, service.reward_user, "reward"),
        "Nachrichten gutschreiben (Mods)",
    )
    processor.register(
        "punish",
        lambda ctx: _adjust(ctx, service.punish_user, "punish"),
        "Nachrichten abziehen (Mods)",
    )


__all__ = ["UserMessagesService", "register_moderation_commands"]
