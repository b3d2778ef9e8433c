from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


class StreamStatus(str, enum.Enum):
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class StreamInfo:
    id: str = ""
    user_id: str = ""
    user_login: str = ""
    user_name: str = ""
    game_id: str = ""
    game_name: str = ""
    title: str = ""
    language: str = ""
    viewer_count: int = 0
    started_at: Optional[datetime] = None
    thumbnail_url: str = ""
    tags: List[str] = field(default_factory=list)
    is_mature: bool = False

    @classmethod
    def from_helix(cls, data: Dict) -> "StreamInfo":
        return cls(
            id=str(data.get("id") or ""),
            user_id=str(data.get("user_id") or ""),
            user_login=str(data.get("user_login") or ""),
            user_name=str(data.get("user_name") or ""),
            game_id=str(data.get("game_id") or ""),
            game_name=str(data.get("game_name") or ""),
            title=str(data.get("title") or ""),
            language=str(data.get("language") or ""),
            viewer_count=int(data.get("viewer_count") or 0),
            started_at=_parse_ts(data.get("started_at")),
            thumbnail_url=str(data.get("thumbnail_url") or ""),
            tags=list(data.get("tags") or []),
            is_mature=bool(data.get("is_mature")),
        )


@dataclass
class Token:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class ChatMessage:
    """Normalised incoming chat message as delivered by the transport."""

    id: str
    channel: str
    user_id: str
    username: str
    display_name: str
    text: str
    is_broadcaster: bool = False
    is_moderator: bool = False
    is_vip: bool = False
    is_subscriber: bool = False
    badges: Dict[str, str] = field(default_factory=dict)
    emotes: List[Dict] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)


__all__ = ["ChatMessage", "StreamInfo", "StreamStatus", "Token"]
