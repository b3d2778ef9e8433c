"""
Chat-Statistik (Nachrichten pro User, Bot-Laufzeit).

Wird beim Verbinden geladen, alle 60s gespeichert wenn sich etwas geändert
hat und beim Trennen final geschrieben. Schreiben erfolgt atomar über eine
Temp-Datei; beschädigte Dateien werden als ``*.invalid-<timestamp>`` gesichert.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from companion.settings import atomic_write_text, backup_corrupt_file

log = logging.getLogger("Companion.Statistics")


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now()
    return datetime.fromisoformat(value)


@dataclass
class UserStatistics:
    user_id: str
    name: str
    message_count: int = 0
    first_seen: datetime = field(default_factory=datetime.now)
    last_seen: datetime = field(default_factory=datetime.now)

    def to_json(self) -> Dict:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "message_count": self.message_count,
            "first_seen": _ts(self.first_seen),
            "last_seen": _ts(self.last_seen),
        }

    @classmethod
    def from_json(cls, data: Dict) -> "UserStatistics":
        return cls(
            user_id=str(data["user_id"]),
            name=str(data.get("name") or ""),
            message_count=int(data.get("message_count") or 0),
            first_seen=_parse(data.get("first_seen")),
            last_seen=_parse(data.get("last_seen")),
        )


@dataclass
class BotStatistics:
    total_messages_processed: int = 0
    bot_started_at: datetime = field(default_factory=datetime.now)

    def to_json(self) -> Dict:
        return {
            "total_messages_processed": self.total_messages_processed,
            "bot_started_at": _ts(self.bot_started_at),
        }

    @classmethod
    def from_json(cls, data: Dict) -> "BotStatistics":
        return cls(
            total_messages_processed=int(data.get("total_messages_processed") or 0),
            bot_started_at=_parse(data.get("bot_started_at")),
        )


class StatisticsCollector:
    AUTOSAVE_INTERVAL = 60.0

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.users_path = self.directory / "user_statistics.json"
        self.bot_path = self.directory / "bot_statistics.json"
        self._lock = threading.Lock()
        self._users: Dict[str, UserStatistics] = {}
        self._bot = BotStatistics()
        self._dirty = False
        self._autosave_task: Optional[asyncio.Task] = None

    # ---- Lifecycle ---------------------------------------------------------
    async def start(self) -> None:
        await asyncio.to_thread(self._load)
        if self._autosave_task is None or self._autosave_task.done():
            self._autosave_task = asyncio.create_task(self._autosave_loop())
        log.info("Statistik gestartet (%d User)", len(self._users))

    async def stop(self) -> None:
        task = self._autosave_task
        self._autosave_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.save_now(force=True)
        log.info("Statistik gestoppt und gespeichert")

    @property
    def is_running(self) -> bool:
        return self._autosave_task is not None and not self._autosave_task.done()

    async def _autosave_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.AUTOSAVE_INTERVAL)
                try:
                    await self.save_now()
                except OSError:
                    log.exception("Auto-Save der Statistik fehlgeschlagen")
        except asyncio.CancelledError:
            log.debug("Statistik Auto-Save beendet")
            raise

    # ---- Tracking ----------------------------------------------------------
    def track_message(self, user_id: str, name: str) -> None:
        now = datetime.now()
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                user = UserStatistics(user_id=user_id, name=name, first_seen=now, last_seen=now)
                self._users[user_id] = user
            user.name = name or user.name
            user.message_count += 1
            user.last_seen = now
            self._bot.total_messages_processed += 1
            self._dirty = True

    def reset_bot_start_time(self) -> None:
        with self._lock:
            self._bot.bot_started_at = datetime.now()
            self._dirty = True

    @property
    def bot_statistics(self) -> BotStatistics:
        with self._lock:
            return BotStatistics(self._bot.total_messages_processed, self._bot.bot_started_at)

    def get_user_statistics(self, user_id: str) -> Optional[UserStatistics]:
        with self._lock:
            return self._users.get(user_id)

    def find_user_by_name(self, name: str) -> Optional[UserStatistics]:
        needle = (name or "").strip().lstrip("@").lower()
        with self._lock:
            for user in self._users.values():
                if user.name.lower() == needle:
                    return user
        return None

    def get_top_users(self, count: int = 10) -> List[UserStatistics]:
        with self._lock:
            users = sorted(self._users.values(), key=lambda u: (-u.message_count, u.name.lower()))
        return users[: max(0, count)]

    def increment_user_messages(self, user_id: str, amount: int) -> Optional[UserStatistics]:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            user.message_count += max(0, amount)
            self._dirty = True
            return user

    def decrement_user_messages(self, user_id: str, amount: int) -> Optional[UserStatistics]:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            user.message_count = max(0, user.message_count - max(0, amount))
            self._dirty = True
            return user

    # ---- Persistence -------------------------------------------------------
    async def save_now(self, force: bool = False) -> bool:
        with self._lock:
            if not self._dirty and not force:
                return False
            users_payload = {uid: u.to_json() for uid, u in self._users.items()}
            bot_payload = self._bot.to_json()
            self._dirty = False
        try:
            await asyncio.to_thread(self._write, users_payload, bot_payload)
        except OSError:
            with self._lock:
                self._dirty = True
            raise
        log.debug("Statistik gespeichert (%d User)", len(users_payload))
        return True

    def _write(self, users_payload: Dict, bot_payload: Dict) -> None:
        atomic_write_text(self.users_path, json.dumps(users_payload, ensure_ascii=False, indent=2))
        atomic_write_text(self.bot_path, json.dumps(bot_payload, ensure_ascii=False, indent=2))

    def _load(self) -> None:
        users = self._read_users()
        bot = self._read_bot()
        with self._lock:
            self._users = users
            self._bot = bot
            self._dirty = False

    def _read_users(self) -> Dict[str, UserStatistics]:
        if not self.users_path.exists():
            return {}
        try:
            raw = json.loads(self.users_path.read_text(encoding="utf-8"))
            return {str(uid): UserStatistics.from_json(item) for uid, item in raw.items()}
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            log.error("User-Statistik unlesbar (%s), starte leer", exc.__class__.__name__)
            backup_corrupt_file(self.users_path)
            return {}

    def _read_bot(self) -> BotStatistics:
        if not self.bot_path.exists():
            return BotStatistics()
        try:
            return BotStatistics.from_json(json.loads(self.bot_path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            log.error("Bot-Statistik unlesbar (%s), starte leer", exc.__class__.__name__)
            backup_corrupt_file(self.bot_path)
            return BotStatistics()


__all__ = ["BotStatistics", "StatisticsCollector", "UserStatistics"]
