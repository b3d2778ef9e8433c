"""
Chat-Transport auf Basis von twitchio (IRC).

Die Orchestrierung kennt nur ``ChatTransport``: connect/disconnect,
``is_connected`` und die vier Events log / connected / joined_channel /
message_received. ``TwitchioTransport`` ist die produktive Umsetzung.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol

import twitchio

from companion.events import EventHook
from companion.models import ChatMessage

log = logging.getLogger("Companion.ChatTransport")

EMOTE_URL = "https://static-cdn.jtvnw.net/emoticons/v2/{id}/default/dark/1.0"


class ChatTransport(Protocol):
    log: EventHook
    connected: EventHook
    joined_channel: EventHook
    message_received: EventHook

    @property
    def is_connected(self) -> bool: ...

    def initialize(self, username: str, access_token: str, channel: str) -> None: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def send_message(self, channel: str, text: str) -> None: ...

    async def send_reply(self, channel: str, message_id: str, text: str) -> None: ...


def parse_emote_tag(raw: Optional[str], text: str) -> List[Dict]:
    """Parse the IRC ``emotes`` tag (``id:0-4,6-10/id2:12-15``)."""
    emotes: List[Dict] = []
    if not raw:
        return emotes
    for chunk in raw.split("/"):
        emote_id, _, positions = chunk.partition(":")
        if not emote_id or not positions:
            continue
        for pos in positions.split(","):
            start_raw, _, end_raw = pos.partition("-")
            try:
                start, end = int(start_raw), int(end_raw)
            except ValueError:
                continue
            emotes.append(
                {
                    "id": emote_id,
                    "name": text[start:end + 1],
                    "start": start,
                    "end": end,
                    "url": EMOTE_URL.format(id=emote_id),
                }
            )
    emotes.sort(key=lambda e: e["start"])
    return emotes


def parse_badge_tag(raw: Optional[str]) -> Dict[str, str]:
    badges: Dict[str, str] = {}
    for chunk in (raw or "").split(","):
        name, _, version = chunk.partition("/")
        if name:
            badges[name] = version
    return badges


def chat_message_from_twitchio(message) -> ChatMessage:
    tags = message.tags or {}
    author = message.author
    badges = parse_badge_tag(tags.get("badges"))
    text = message.content or ""
    return ChatMessage(
        id=str(tags.get("id") or getattr(message, "id", "") or ""),
        channel=message.channel.name,
        user_id=str(tags.get("user-id") or getattr(author, "id", "") or ""),
        username=getattr(author, "name", "") or "",
        display_name=tags.get("display-name") or getattr(author, "display_name", None) or getattr(author, "name", ""),
        text=text,
        is_broadcaster="broadcaster" in badges,
        is_moderator=tags.get("mod") == "1" or "moderator" in badges,
        is_vip="vip" in badges,
        is_subscriber=tags.get("subscriber") == "1" or "subscriber" in badges,
        badges=badges,
        emotes=parse_emote_tag(tags.get("emotes"), text),
    )


class _CompanionClient(twitchio.Client):
    def __init__(self, transport: "TwitchioTransport", token: str, channel: str):
        super().__init__(token=token, initial_channels=[channel])
        self._transport = transport

    async def event_ready(self):
        self._transport._on_ready(self.nick)

    async def event_channel_joined(self, channel):
        self._transport._on_joined(channel.name)

    async def event_message(self, message):
        if message.echo:
            return
        self._transport._on_message(message)

    async def event_error(self, error: Exception, data: Optional[str] = None):
        self._transport._on_error(error)


class TwitchioTransport:
    def __init__(self):
        self._client: Optional[_CompanionClient] = None
        self._username: Optional[str] = None
        self._channel: Optional[str] = None
        self._connected = False

        self.log = EventHook("chat_log")
        self.connected = EventHook("chat_connected")
        self.joined_channel = EventHook("chat_joined_channel")
        self.message_received = EventHook("chat_message_received")

    @property
    def is_connected(self) -> bool:
        return self._connected

    def initialize(self, username: str, access_token: str, channel: str) -> None:
        token = access_token if access_token.startswith("oauth:") else f"oauth:{access_token}"
        self._username = username
        self._channel = channel.lstrip("#").lower()
        self._connected = False
        self._client = _CompanionClient(self, token, self._channel)
        log.info("Chat-Client initialisiert für #%s", self._channel)

    async def connect(self) -> None:
        if self._client is None:
            raise RuntimeError("Chat-Client nicht initialisiert")
        await self._client.connect()

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        self._connected = False
        if client is not None:
            await client.close()
            self._emit_log("Vom Chat getrennt")

    async def send_message(self, channel: str, text: str) -> None:
        if self._client is None:
            raise RuntimeError("Chat-Client nicht verbunden")
        target = self._client.get_channel(channel.lstrip("#").lower())
        if target is None:
            raise RuntimeError(f"Kanal #{channel} nicht beigetreten")
        await target.send(text)

    async def send_reply(self, channel: str, message_id: str, text: str) -> None:
        if self._client is None:
            raise RuntimeError("Chat-Client nicht verbunden")
        # twitchio 2.x exposes threaded replies only through the websocket connection
        await self._client._connection.reply(message_id, f"PRIVMSG #{channel.lstrip('#').lower()} :{text}\r\n")

    # ---- twitchio callbacks ------------------------------------------------
    def _emit_log(self, text: str) -> None:
        log.info(text)
        self.log.emit(text)

    def _on_ready(self, nick: Optional[str]) -> None:
        self._connected = True
        self._emit_log(f"Mit Twitch-Chat verbunden als {nick or self._username}")
        self.connected.emit()

    def _on_joined(self, channel: str) -> None:
        self._emit_log(f"Kanal #{channel} beigetreten")
        self.joined_channel.emit(channel)

    def _on_message(self, message) -> None:
        try:
            chat_message = chat_message_from_twitchio(message)
        except (AttributeError, KeyError, TypeError):
            log.exception("Chat-Nachricht konnte nicht gelesen werden")
            return
        self.message_received.emit(chat_message)

    def _on_error(self, error: Exception) -> None:
        log.error("twitchio Fehler: %s", error.__class__.__name__)
        self.log.emit(f"Chat-Fehler: {error.__class__.__name__}")


__all__ = [
    "ChatTransport",
    "TwitchioTransport",
    "chat_message_from_twitchio",
    "parse_badge_tag",
    "parse_emote_tag",
]
