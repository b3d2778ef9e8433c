"""
Server-Sent-Events für das OBS-Overlay.

Jeder Client hat eine eigene Queue; ein Client, dessen Queue überläuft oder
dessen Schreibzugriff fehlschlägt, wird entfernt.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable, Dict, Set

from aiohttp import web

from companion.chat.history import ChatMessageRecord
from companion.settings import ObsChatSettings

log = logging.getLogger("Companion.SSE")

KEEP_ALIVE_COMMENT = ": keep-alive"


def obs_css_settings(settings: ObsChatSettings) -> Dict:
    return {
        "maxMessages": settings.max_messages,
        "enableMessageFadeOut": settings.enable_message_fade_out,
        "messageLifetimeSeconds": settings.message_lifetime_seconds,
        "emoteSize": f"{settings.emote_size_pixels}px",
        "badgeSize": f"{settings.badge_size_pixels}px",
        "showBadges": settings.show_badges,
        "showEmotes": settings.show_emotes,
    }


def format_frame(data: str) -> str:
    if data.startswith(":"):
        return data + "\n\n"
    return f"data: {data}\n\n"


class PushHub:
    QUEUE_SIZE = 256

    def __init__(self, keep_alive_provider: Callable[[], int]):
        self._keep_alive = keep_alive_provider
        self._clients: Set[asyncio.Queue] = set()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def keep_alive_seconds(self) -> float:
        return float(max(5, int(self._keep_alive() or 0)))

    # ---- Display sink ------------------------------------------------------
    def add_chat_message(self, record: ChatMessageRecord) -> None:
        self.publish({"type": "message", "message": record.to_json()})

    def clear_chat(self) -> None:
        log.info("Chat-Clear an %d SSE-Clients", len(self._clients))
        self.publish({"type": "clear"})

    def notify_chat_settings_changed(self, settings: ObsChatSettings) -> None:
        if not self._clients:
            log.debug("Keine SSE-Clients, Settings-Update übersprungen")
            return
        self.publish({"type": "chat_settings_changed", "settings": obs_css_settings(settings)})

    # ---- Fan-out -----------------------------------------------------------
    def publish(self, payload: Dict) -> None:
        self._enqueue(json.dumps(payload, ensure_ascii=False))

    def _enqueue(self, data: str) -> None:
        frame = format_frame(data)
        for queue in list(self._clients):
            try:
                queue.put_nowait(frame)
            except asyncio.QueueFull:
                log.warning("SSE-Client zu langsam, wird getrennt")
                self.remove_client(queue)

    def add_client(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.QUEUE_SIZE)
        self._clients.add(queue)
        log.info("SSE-Client verbunden (%d aktiv)", len(self._clients))
        return queue

    def remove_client(self, queue: asyncio.Queue) -> None:
        if queue in self._clients:
            self._clients.discard(queue)
            log.info("SSE-Client getrennt (%d aktiv)", len(self._clients))

    async def handle(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            }
        )
        await response.prepare(request)
        queue = self.add_client()
        interval = self.keep_alive_seconds()
        try:
            while queue in self._clients:
                try:
                    frame = await asyncio.wait_for(queue.get(), timeout=interval)
                except asyncio.TimeoutError:
                    frame = format_frame(KEEP_ALIVE_COMMENT)
                await response.write(frame.encode("utf-8"))
        except (ConnectionResetError, ConnectionError, RuntimeError) as exc:
            log.debug("SSE-Schreibfehler (%s)", exc.__class__.__name__)
        finally:
            self.remove_client(queue)
        return response


__all__ = ["KEEP_ALIVE_COMMENT", "PushHub", "format_frame", "obs_css_settings"]
