from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List

from companion.settings import MessageSettings

log = logging.getLogger("Companion.Audience")


@dataclass
class AudienceEntry:
    user_id: str
    display_name: str
    first_seen_at: datetime


class AudienceTracker:
    """Merkt sich, wer in dieser Session schon geschrieben hat."""

    def __init__(self, settings_provider: Callable[[], MessageSettings]):
        self._settings = settings_provider
        self._lock = threading.Lock()
        self._entries: Dict[str, AudienceEntry] = {}

    def on_user_message(self, user_id: str, display_name: str) -> bool:
        """Return True if this is the user's first message since the last ``clear_all``."""
        key = str(user_id or display_name).lower()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.display_name = display_name or entry.display_name
                return False
            self._entries[key] = AudienceEntry(str(user_id), display_name, datetime.now())
        log.debug("Neuer Zuschauer: %s", display_name)
        return True

    def seen_users(self) -> List[AudienceEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: e.first_seen_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def create_welcome(self, display_name: str) -> str:
        return self._settings().welcome.replace("{username}", display_name or "")

    def create_collective_farewell(self) -> str:
        settings = self._settings()
        if not settings.farewell_enabled:
            return ""
        names = [entry.display_name for entry in self.seen_users() if entry.display_name]
        if not names:
            return ""
        return settings.farewell.replace("{usernames}", ", ".join(names)).strip()

    def clear_all(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        log.debug("Audience zurückgesetzt (%d Einträge)", count)


__all__ = ["AudienceEntry", "AudienceTracker"]
