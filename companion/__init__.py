"""Twitch-Chat-Companion: Session, Auth, Monitoring, Broadcast, Statistik und OBS-Overlay."""

from .errors import (
    AlreadyMonitoring,
    AuthError,
    AuthErrorKind,
    BusyError,
    ChannelNotFound,
    ChatConnectionError,
    CompanionError,
    ConnectionErrorKind,
    ReconnectExhausted,
    RefreshFailed,
    SubscriptionFailure,
)
from .events import EventHook
from .models import ChatMessage, StreamInfo, StreamStatus, Token

__version__ = "0.1.0"

__all__ = [
    "AlreadyMonitoring",
    "AuthError",
    "AuthErrorKind",
    "BusyError",
    "ChannelNotFound",
    "ChatConnectionError",
    "ChatMessage",
    "CompanionError",
    "ConnectionErrorKind",
    "EventHook",
    "ReconnectExhausted",
    "RefreshFailed",
    "StreamInfo",
    "StreamStatus",
    "SubscriptionFailure",
    "Token",
]
