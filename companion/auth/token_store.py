"""
Persistenz der Bot-Tokens im Credential Manager (keyring).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from companion.models import Token

log = logging.getLogger("Companion.TokenStore")

ACCESS_KEY = "TWITCH_ACCESS_TOKEN"
REFRESH_KEY = "TWITCH_REFRESH_TOKEN"
EXPIRES_KEY = "TWITCH_TOKEN_EXPIRES_AT"


def _exc_name(exc: BaseException) -> str:
    return exc.__class__.__name__


class KeyringTokenStore:
    """Speichert Access-/Refresh-Token unter ``service`` im OS-Tresor."""

    def __init__(self, service: str = "PoproshaykaBot"):
        self.service = service
        self._lock = asyncio.Lock()

    async def load(self) -> Optional[Token]:
        try:
            access = await asyncio.to_thread(keyring.get_password, self.service, ACCESS_KEY)
            refresh = await asyncio.to_thread(keyring.get_password, self.service, REFRESH_KEY)
            expires_raw = await asyncio.to_thread(keyring.get_password, self.service, EXPIRES_KEY)
        except KeyringError as exc:
            log.warning("Tresor nicht lesbar (%s).", _exc_name(exc))
            return None
        if not access and not refresh:
            return None
        expires_at = None
        if expires_raw:
            try:
                expires_at = datetime.fromisoformat(expires_raw)
            except ValueError:
                expires_at = None
        log.info("Bot auth aus Tresor geladen (service: %s).", self.service)
        return Token(access_token=access or "", refresh_token=refresh, expires_at=expires_at)

    async def save(self, token: Token) -> None:
        """Persist both tokens; errors are logged, never raised."""
        async with self._lock:
            saved = []
            try:
                if token.access_token:
                    await asyncio.to_thread(keyring.set_password, self.service, ACCESS_KEY, token.access_token)
                    saved.append("ACCESS_TOKEN")
                if token.refresh_token:
                    await asyncio.to_thread(keyring.set_password, self.service, REFRESH_KEY, token.refresh_token)
                    saved.append("REFRESH_TOKEN")
                if token.expires_at:
                    await asyncio.to_thread(
                        keyring.set_password, self.service, EXPIRES_KEY, token.expires_at.isoformat()
                    )
            except KeyringError as exc:
                log.error("Bot auth konnte nicht im Tresor gespeichert werden (%s).", _exc_name(exc))  # nosemgrep: python.lang.security.audit.logging.logger-credential-leak.python-logger-credential-disclosure
                return
            if saved:
                log.info("Bot auth im Tresor gespeichert (types: %s, service: %s).", "+".join(saved), self.service)  # nosemgrep: python.lang.security.audit.logging.logger-credential-leak.python-logger-credential-disclosure

    async def clear(self) -> None:
        async with self._lock:
            for key in (ACCESS_KEY, REFRESH_KEY, EXPIRES_KEY):
                try:
                    await asyncio.to_thread(keyring.delete_password, self.service, key)
                except PasswordDeleteError:
                    continue
                except KeyringError as exc:
                    log.warning("Tresor-Eintrag %s nicht gelöscht (%s).", key, _exc_name(exc))
            log.info("Bot auth aus Tresor entfernt.")


__all__ = ["KeyringTokenStore"]
