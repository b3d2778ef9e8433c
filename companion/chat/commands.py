from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from companion.models import StreamInfo

log = logging.getLogger("Companion.Commands")


class DeliveryMode(str, enum.Enum):
    REPLY = "reply"
    NORMAL = "normal"


@dataclass
class CommandContext:
    channel: str
    message_id: str
    user_id: str
    username: str
    display_name: str
    is_moderator: bool = False
    args: List[str] = field(default_factory=list)


@dataclass
class CommandResponse:
    text: str
    delivery: DeliveryMode = DeliveryMode.REPLY
    reply_to_message_id: Optional[str] = None


CommandHandler = Callable[[CommandContext], Optional[CommandResponse]]


@dataclass
class ChatCommand:
    name: str
    handler: CommandHandler
    description: str = ""
    aliases: List[str] = field(default_factory=list)


class CommandProcessor:
    """Case-insensitive ``!trigger args`` parsing and dispatch."""

    def __init__(self, prefix: str = "!"):
        self.prefix = prefix or "!"
        self._commands: Dict[str, ChatCommand] = {}
        self._triggers: Dict[str, ChatCommand] = {}
        self.register("help", self._help, "Liste aller Befehle", aliases=["commands", "befehle"])

    @property
    def commands(self) -> List[ChatCommand]:
        return list(self._commands.values())

    def register(
        self,
        name: str,
        handler: CommandHandler,
        description: str = "",
        aliases: Optional[List[str]] = None,
    ) -> ChatCommand:
        command = ChatCommand(name.lower(), handler, description, [a.lower() for a in aliases or []])
        for trigger in [command.name, *command.aliases]:
            if trigger in self._triggers:
                raise ValueError(f"Befehl '{trigger}' ist bereits registriert")
        self._commands[command.name] = command
        for trigger in [command.name, *command.aliases]:
            self._triggers[trigger] = command
        return command

    def try_process(self, text: str, context: CommandContext) -> Optional[CommandResponse]:
        """Return a response, or None if ``text`` is not a known command."""
        stripped = (text or "").strip()
        if not stripped.startswith(self.prefix):
            return None
        parts = stripped[len(self.prefix):].split()
        if not parts:
            return None
        command = self._triggers.get(parts[0].lower())
        if command is None:
            return None
        context.args = parts[1:]
        try:
            return command.handler(context)
        except Exception:
            log.exception("Befehl %s%s fehlgeschlagen", self.prefix, command.name)
            return None

    def _help(self, ctx: CommandContext) -> CommandResponse:
        names = [f"{self.prefix}{c.name}" for c in self._commands.values() if c.name != "help"]
        if not names:
            return CommandResponse("Keine Befehle verfügbar.", reply_to_message_id=ctx.message_id)
        return CommandResponse(
            "Verfügbare Befehle: " + ", ".join(names),
            reply_to_message_id=ctx.message_id,
        )


def _format_duration(seconds: float) -> str:
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def register_default_commands(
    processor: CommandProcessor,
    stats,
    stream_provider: Callable[[], Optional[StreamInfo]],
) -> None:
    """Built-in commands backed by the statistics collector and stream monitor."""

    def ping(ctx: CommandContext) -> CommandResponse:
        return CommandResponse("Pong!", reply_to_message_id=ctx.message_id)

    def my_stats(ctx: CommandContext) -> CommandResponse:
        user = stats.get_user_statistics(ctx.user_id)
        count = user.message_count if user else 0
        return CommandResponse(f"Du hast {count} Nachrichten geschrieben.", reply_to_message_id=ctx.message_id)

    def top(ctx: CommandContext) -> CommandResponse:
        leaders = stats.get_top_users(5)
        if not leaders:
            return CommandResponse("Noch keine Statistik vorhanden.", DeliveryMode.NORMAL)
        ranking = ", ".join(f"{i}. {u.name} ({u.message_count})" for i, u in enumerate(leaders, start=1))
        return CommandResponse(f"Top-Chatter: {ranking}", DeliveryMode.NORMAL)

    def uptime(ctx: CommandContext) -> CommandResponse:
        started = stats.bot_statistics.bot_started_at
        elapsed = (datetime.now() - started).total_seconds()
        return CommandResponse(f"Bot läuft seit {_format_duration(elapsed)}.", reply_to_message_id=ctx.message_id)

    def stream(ctx: CommandContext) -> CommandResponse:
        info = stream_provider()
        if info is None:
            return CommandResponse("Der Stream ist gerade offline.", reply_to_message_id=ctx.message_id)
        return CommandResponse(
            f"{info.title} | {info.game_name} | {info.viewer_count} Zuschauer",
            reply_to_message_id=ctx.message_id,
        )

    processor.register("ping", ping, "Lebenszeichen des Bots")
    processor.register("stats", my_stats, "Eigene Nachrichtenanzahl", aliases=["messages"])
    processor.register("top", top, "Aktivste Chatter")
    processor.register("uptime", uptime, "Laufzeit des Bots")
    processor.register("stream", stream, "Titel, Spiel und Zuschauer")


__all__ = [
    "ChatCommand",
    "CommandContext",
    "CommandProcessor",
    "CommandResponse",
    "DeliveryMode",
    "register_default_commands",
]
