"""
Fehler-Taxonomie des Companion-Bots.

Token- und Verbindungsfehler beenden einen Verbindungsversuch mit genau einem
Ergebnis. Monitor-Fehler werden nur gemeldet (Event), der Scheduler wirft nie
aus seiner Schleife heraus.
"""

from __future__ import annotations

import enum
from typing import Optional


class CompanionError(Exception):
    """Basisklasse für alle Fehler dieses Pakets."""


# ---- Auth -------------------------------------------------------------------
class AuthErrorKind(str, enum.Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    BROWSER_LAUNCH_FAILED = "browser_launch_failed"
    TIMEOUT = "timeout"
    STATE_MISMATCH = "state_mismatch"
    EXCHANGE_FAILED = "exchange_failed"
    USER_DENIED = "user_denied"
    ALREADY_IN_PROGRESS = "already_in_progress"


class AuthError(CompanionError):
    def __init__(self, kind: AuthErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)


class RefreshFailed(AuthError):
    def __init__(self, message: str = "token refresh failed"):
        super().__init__(AuthErrorKind.EXCHANGE_FAILED, message)


# ---- Connection -------------------------------------------------------------
class ConnectionErrorKind(str, enum.Enum):
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    TRANSPORT_FAILURE = "transport_failure"


class ChatConnectionError(CompanionError):
    def __init__(self, kind: ConnectionErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)


class BusyError(CompanionError):
    """A connection attempt or session is already running."""


# ---- Monitoring -------------------------------------------------------------
class MonitorError(CompanionError):
    pass


class ChannelNotFound(MonitorError):
    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"Kanal '{channel}' wurde nicht gefunden")


class AlreadyMonitoring(MonitorError):
    def __init__(self, channel: Optional[str] = None):
        self.channel = channel
        super().__init__(f"Monitoring läuft bereits ({channel or 'unbekannt'})")


class SubscriptionFailure(MonitorError):
    pass


class ReconnectExhausted(MonitorError):
    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"EventSub reconnect failed after {attempts} attempts, monitoring stopped"
        )


__all__ = [
    "AlreadyMonitoring",
    "AuthError",
    "AuthErrorKind",
    "BusyError",
    "ChannelNotFound",
    "ChatConnectionError",
    "CompanionError",
    "ConnectionErrorKind",
    "MonitorError",
    "ReconnectExhausted",
    "RefreshFailed",
    "SubscriptionFailure",
]
