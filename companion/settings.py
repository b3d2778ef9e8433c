"""
Konfiguration des Companion-Bots.

Zwei Ebenen:
- ``CredentialSettings``: Secrets aus ENV/.env (pydantic-settings), inklusive
  der Werte, die ``bot_core.bootstrap`` vorher aus dem Tresor injiziert hat.
- ``AppSettings``: JSON-Datei mit allen Bot-Einstellungen, verwaltet vom
  ``SettingsManager`` (Backup bei Korruption, Wiederherstellung bei
  fehlgeschlagenem Schreiben).
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from companion.events import EventHook

log = logging.getLogger("Companion.Settings")

DEFAULT_SCOPES = [
    "chat:read",
    "chat:edit",
    "user:read:chat",
    "user:write:chat",
]


class CredentialSettings(BaseSettings):
    client_id: Optional[str] = Field(None, alias="TWITCH_CLIENT_ID")
    client_secret: Optional[SecretStr] = Field(None, alias="TWITCH_CLIENT_SECRET")
    bot_username: Optional[str] = Field(None, alias="TWITCH_BOT_USERNAME")
    channel: Optional[str] = Field(None, alias="TWITCH_CHANNEL")
    settings_path: Optional[Path] = Field(None, alias="COMPANION_SETTINGS_PATH")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class _Section(BaseModel):
    model_config = ConfigDict(validate_assignment=True, extra="ignore")


class MessageSettings(_Section):
    welcome_enabled: bool = True
    welcome: str = "Willkommen im Chat, {username}!"
    farewell_enabled: bool = True
    farewell: str = "Bis zum nächsten Mal, {usernames}!"
    connection_enabled: bool = True
    connection: str = "Bot ist verbunden."
    disconnection_enabled: bool = True
    disconnection: str = "Bot verabschiedet sich."
    punishment_enabled: bool = True
    punishment: str = "{username} verliert Nachrichten, neuer Stand: {count}."
    punishment_notification_enabled: bool = True
    reward_enabled: bool = True
    reward: str = "{username} bekommt Nachrichten gutgeschrieben, neuer Stand: {count}."
    reward_notification_enabled: bool = True


class AutoBroadcastSettings(_Section):
    auto_broadcast_enabled: bool = False
    broadcast_interval_minutes: int = 15
    broadcast_message_template: str = "Nachricht #{counter}: {title} ({game}, {viewers} Zuschauer)"
    stream_status_notifications_enabled: bool = True
    stream_start_message: str = "Stream gestartet! Auto-Broadcast läuft."
    stream_stop_message: str = "Stream beendet. Auto-Broadcast gestoppt."


class InfrastructureSettings(_Section):
    http_server_enabled: bool = True
    http_server_host: str = "127.0.0.1"
    http_server_port: int = 8080
    sse_keep_alive_seconds: int = 15
    chat_history_max_items: int = 100
    status_poll_seconds: int = 300
    messages_allowed_in_period: int = 20
    throttling_period_seconds: int = 30


class ObsChatSettings(_Section):
    max_messages: int = 20
    enable_message_fade_out: bool = True
    message_lifetime_seconds: int = 60
    emote_size_pixels: int = 28
    badge_size_pixels: int = 18
    show_badges: bool = True
    show_emotes: bool = True


class TwitchSettings(_Section):
    bot_username: str = ""
    channel: str = ""
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = "http://localhost:8080"
    scopes: List[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))
    command_prefix: str = "!"
    messages: MessageSettings = Field(default_factory=MessageSettings)
    auto_broadcast: AutoBroadcastSettings = Field(default_factory=AutoBroadcastSettings)
    infrastructure: InfrastructureSettings = Field(default_factory=InfrastructureSettings)
    obs_chat: ObsChatSettings = Field(default_factory=ObsChatSettings)


class AppSettings(_Section):
    twitch: TwitchSettings = Field(default_factory=TwitchSettings)

    def apply_credentials(self, creds: CredentialSettings) -> "AppSettings":
        """ENV-Werte überschreiben leere Felder der Datei."""
        tw = self.twitch
        if creds.client_id and not tw.client_id:
            tw.client_id = creds.client_id
        if creds.client_secret and not tw.client_secret:
            tw.client_secret = creds.client_secret.get_secret_value()
        if creds.bot_username and not tw.bot_username:
            tw.bot_username = creds.bot_username
        if creds.channel and not tw.channel:
            tw.channel = creds.channel
        return self


def default_settings_path() -> Path:
    base = os.getenv("APPDATA") or str(Path.home() / ".config")
    return Path(base) / "PoproshaykaBot" / "settings.json"


def backup_corrupt_file(path: Path, suffix: str = "invalid") -> Optional[Path]:
    """Copy ``name.ext`` to ``name.<suffix>-YYYYmmdd-HHMMSS.ext`` next to it."""
    if not path.exists():
        return None
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    target = path.with_name(f"{path.stem}.{suffix}-{stamp}{path.suffix}")
    try:
        shutil.copyfile(path, target)
        log.info("Backup der beschädigten Datei erstellt: %s", target)
        return target
    except OSError:
        log.exception("Backup für %s fehlgeschlagen", path)
        return None


def atomic_write_text(path: Path, text: str) -> bool:
    """
    Write via temp file and replace. Before the first overwrite a one-time
    ``.bak`` copy of the previous file is kept. Returns True if that backup
    was created by this call.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    backup_created = False
    if path.exists():
        bak = path.with_name(path.name + ".bak")
        if not bak.exists():
            shutil.copyfile(path, bak)
            backup_created = True
    os.replace(tmp, path)
    return backup_created


class SettingsManager:
    """Lädt/speichert ``AppSettings`` als JSON."""

    def __init__(self, path: Optional[Path] = None, credentials: Optional[CredentialSettings] = None):
        self.path = Path(path) if path else default_settings_path()
        self._credentials = credentials
        self._lock = threading.Lock()
        self._current: Optional[AppSettings] = None
        self.chat_settings_changed = EventHook("chat_settings_changed")

    @property
    def current(self) -> AppSettings:
        with self._lock:
            if self._current is None:
                self._current = self._load()
            return self._current

    def save_settings(self, settings: AppSettings) -> None:
        log.debug("Speichere Einstellungen nach %s", self.path)
        with self._lock:
            try:
                payload = settings.model_dump_json(indent=2)
                if atomic_write_text(self.path, payload):
                    log.info("Backup der vorherigen Einstellungen erstellt: %s.bak", self.path)
                self._current = settings
                log.info("Einstellungen gespeichert")
            except (OSError, ValueError) as exc:
                log.error("Speichern der Einstellungen fehlgeschlagen (%s)", exc.__class__.__name__)
                self._restore_backup()
                raise RuntimeError(f"Einstellungen konnten nicht gespeichert werden: {exc}") from exc
        self.chat_settings_changed.emit(settings.twitch.obs_chat)

    def _restore_backup(self) -> None:
        bak = self.path.with_name(self.path.name + ".bak")
        if not bak.exists():
            return
        try:
            shutil.copyfile(bak, self.path)
            log.info("Einstellungen aus Backup wiederhergestellt: %s", bak)
        except OSError:
            log.exception("Wiederherstellung aus Backup fehlgeschlagen")

    def _load(self) -> AppSettings:
        settings = self._read_file()
        if self._credentials is not None:
            settings.apply_credentials(self._credentials)
        return settings

    def _read_file(self) -> AppSettings:
        if not self.path.exists():
            log.info("Keine Einstellungsdatei unter %s, verwende Defaults", self.path)
            return AppSettings()
        try:
            settings = AppSettings.model_validate_json(self.path.read_text(encoding="utf-8"))
            log.info("Einstellungen geladen")
            return settings
        except (OSError, ValueError, ValidationError) as exc:
            log.error("Einstellungen unlesbar (%s), verwende Defaults", exc.__class__.__name__)
            backup_corrupt_file(self.path)
            return AppSettings()


__all__ = [
    "AppSettings",
    "AutoBroadcastSettings",
    "CredentialSettings",
    "InfrastructureSettings",
    "MessageSettings",
    "ObsChatSettings",
    "SettingsManager",
    "TwitchSettings",
    "atomic_write_text",
    "backup_corrupt_file",
    "default_settings_path",
]
