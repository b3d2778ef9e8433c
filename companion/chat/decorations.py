from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

log = logging.getLogger("Companion.Decorations")


class ChatDecorationsProvider:
    """Globale (und optional Kanal-) Emotes und Badges aus Helix."""

    def __init__(self, api):
        self._api = api
        self._emotes: Dict[str, str] = {}
        self._emote_ids: Dict[str, str] = {}
        self._badges: Dict[Tuple[str, str], str] = {}

    @property
    def emote_count(self) -> int:
        return len(self._emotes)

    @property
    def badge_count(self) -> int:
        return len(self._badges)

    async def load(self, *, oauth_token: Optional[str] = None, broadcaster_id: Optional[str] = None) -> None:
        emotes = await self._api.get_global_emotes(oauth_token=oauth_token)
        badge_sets = await self._api.get_global_badges(oauth_token=oauth_token)
        if broadcaster_id:
            badge_sets = badge_sets + await self._api.get_channel_badges(broadcaster_id, oauth_token=oauth_token)

        self._emotes = {}
        self._emote_ids = {}
        for emote in emotes:
            name = emote.get("name")
            url = (emote.get("images") or {}).get("url_1x")
            if name and url:
                self._emotes[name] = url
                self._emote_ids[name] = str(emote.get("id") or name)

        self._badges = {}
        for badge_set in badge_sets:
            set_id = badge_set.get("set_id")
            for version in badge_set.get("versions") or []:
                url = version.get("image_url_1x")
                if set_id and url:
                    self._badges[(set_id, str(version.get("id")))] = url

        log.info("Chat-Dekorationen geladen: %d Emotes, %d Badges", self.emote_count, self.badge_count)

    def emote_url(self, name: str) -> Optional[str]:
        return self._emotes.get(name)

    def find_emotes(self, text: str) -> List[Dict]:
        """Global emotes by word, for messages that arrive without an emotes tag."""
        found: List[Dict] = []
        pos = 0
        for word in (text or "").split(" "):
            url = self.emote_url(word) if word else None
            if url:
                found.append(
                    {"id": self._emote_ids[word], "name": word, "start": pos, "end": pos + len(word) - 1, "url": url}
                )
            pos += len(word) + 1
        return found

    def badge_urls(self, badges: Dict[str, str]) -> List[str]:
        urls = []
        for set_id, version in badges.items():
            url = self._badges.get((set_id, str(version)))
            if url:
                urls.append(url)
        return urls


__all__ = ["ChatDecorationsProvider"]
