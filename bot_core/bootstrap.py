from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import List

import keyring
from dotenv import load_dotenv
from keyring.errors import KeyringError

KEYRING_SERVICE = "PoproshaykaBot"

# Schlüssel, die wir im Tresor erwarten
KEYRING_KEYS = [
    "TWITCH_CLIENT_ID",
    "TWITCH_CLIENT_SECRET",
    "TWITCH_BOT_USERNAME",
    "TWITCH_CHANNEL",
]


def _load_secrets_from_keyring() -> None:
    """
    Lädt Twitch-Zugangsdaten aus dem System-Tresor (Windows Credential Manager,
    macOS Keychain, Secret Service) und injiziert sie in os.environ.
    Service Name: 'PoproshaykaBot'
    """
    loaded_keys = []
    for key in KEYRING_KEYS:
        try:
            # Variante 1: Adresse=PoproshaykaBot, Benutzer=KEY
            val = keyring.get_password(KEYRING_SERVICE, key)

            # Variante 2: Adresse=KEY@PoproshaykaBot, Benutzer=KEY
            if not val:
                val = keyring.get_password(f"{key}@{KEYRING_SERVICE}", key)

            if val:
                os.environ[key] = val
                loaded_keys.append(key)
        except KeyringError as exc:
            logging.getLogger().debug("Tresor-Zugriff für %s fehlgeschlagen: %s", key, type(exc).__name__)

    if loaded_keys:
        logging.getLogger().info(
            "🔐 %d Secrets aus Tresor (%s) geladen: %s", len(loaded_keys), KEYRING_SERVICE, ", ".join(loaded_keys)
        )


def _load_env_robust() -> str | None:
    candidates: List[Path] = []
    custom = os.getenv("DOTENV_PATH")
    if custom:
        candidates.append(Path(custom))

    here = Path(__file__).resolve()
    candidates.append(here.parent.parent / ".env")
    candidates.append(Path.home() / "Documents" / ".env")

    loaded = None
    for path in candidates:
        try:
            if path.exists():
                load_dotenv(dotenv_path=str(path), override=False)
                logging.getLogger().info(".env geladen: %s", path)
                loaded = str(path)
                break
        except OSError as exc:
            logging.getLogger().debug("Konnte .env nicht laden (%s): %r", path, exc)

    # NACH dem Laden der Datei: Tresor checken und ggf. überschreiben
    _load_secrets_from_keyring()
    return loaded


class _RedactSecretsFilter(logging.Filter):
    def __init__(self, keys: List[str], extra_secrets: List[str] | None = None):
        super().__init__()
        self.secrets = [os.getenv(k) for k in keys if os.getenv(k)]
        self.secrets.extend(s for s in (extra_secrets or []) if s)

    def add_secret(self, secret: str | None) -> None:
        if secret and secret not in self.secrets:
            self.secrets.append(secret)

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            # getMessage() formatiert msg % args
            msg = str(record.getMessage())
            redacted = msg
            for secret in self.secrets:
                if secret and secret in redacted:
                    redacted = redacted.replace(secret, "***REDACTED***")

            # Nachricht ist fertig formatiert, args leeren, sonst formatiert der Formatter erneut.
            record.msg = redacted
            record.args = ()
        except Exception:  # noqa: BLE001
            # NIEMALS im Filter loggen -> Endlosschleife!
            pass
        return True


def _configure_root_logging() -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    logging.basicConfig(level=logging.INFO, handlers=[logging.StreamHandler(sys.stdout)])


def _log_runtime_info() -> None:
    logging.getLogger().info("PYTHON exe=%s", sys.executable)
    logging.getLogger().info("CWD=%s", os.getcwd())


def bootstrap_runtime() -> None:
    """
    Early process bootstrap: logging, .env and keyring secrets.
    """
    _configure_root_logging()
    _load_env_robust()
    _log_runtime_info()


__all__ = [
    "KEYRING_KEYS",
    "KEYRING_SERVICE",
    "_RedactSecretsFilter",
    "_load_env_robust",
    "_load_secrets_from_keyring",
    "bootstrap_runtime",
]
