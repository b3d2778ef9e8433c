from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, List, Protocol

log = logging.getLogger("Companion.ChatHistory")


@dataclass
class ChatMessageRecord:
    timestamp: datetime
    author: str
    text: str
    user_id: str = ""
    emotes: List[Dict] = field(default_factory=list)
    badges: Dict[str, str] = field(default_factory=dict)
    badge_urls: List[str] = field(default_factory=list)
    is_broadcaster: bool = False
    is_moderator: bool = False
    is_vip: bool = False
    is_subscriber: bool = False
    is_first_time: bool = False

    def to_json(self) -> Dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "displayName": self.author,
            "message": self.text,
            "userId": self.user_id,
            "emotes": self.emotes,
            "badges": self.badges,
            "badgeUrls": self.badge_urls,
            "status": {
                "broadcaster": self.is_broadcaster,
                "moderator": self.is_moderator,
                "vip": self.is_vip,
                "subscriber": self.is_subscriber,
            },
            "isFirstTime": self.is_first_time,
        }


class ChatDisplaySink(Protocol):
    def add_chat_message(self, record: ChatMessageRecord) -> None: ...

    def clear_chat(self) -> None: ...


class ChatHistoryStore:
    """Begrenzter Ringpuffer plus Fan-out an Anzeige-Sinks."""

    def __init__(self, max_items_provider: Callable[[], int]):
        self._max_items = max_items_provider
        self._lock = threading.Lock()
        self._items: Deque[ChatMessageRecord] = deque()
        self._sinks: List[ChatDisplaySink] = []

    def register_sink(self, sink: ChatDisplaySink) -> Callable[[], None]:
        with self._lock:
            if sink not in self._sinks:
                self._sinks.append(sink)

        def _unregister() -> None:
            self.unregister_sink(sink)

        return _unregister

    def unregister_sink(self, sink: ChatDisplaySink) -> None:
        with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    @property
    def sink_count(self) -> int:
        with self._lock:
            return len(self._sinks)

    def add_message(self, record: ChatMessageRecord) -> None:
        limit = max(1, int(self._max_items() or 1))
        with self._lock:
            self._items.append(record)
            while len(self._items) > limit:
                self._items.popleft()
            sinks = list(self._sinks)
        self._fan_out(sinks, lambda sink: sink.add_chat_message(record))

    def get_history(self) -> List[ChatMessageRecord]:
        with self._lock:
            return list(self._items)

    def clear_history(self) -> None:
        with self._lock:
            self._items.clear()
            sinks = list(self._sinks)
        self._fan_out(sinks, lambda sink: sink.clear_chat())

    def _fan_out(self, sinks: List[ChatDisplaySink], action: Callable[[ChatDisplaySink], None]) -> None:
        for sink in sinks:
            try:
                action(sink)
            except Exception:
                log.warning("Anzeige-Sink %r fehlerhaft, wird entfernt", sink, exc_info=True)
                self.unregister_sink(sink)


__all__ = ["ChatDisplaySink", "ChatHistoryStore", "ChatMessageRecord"]
