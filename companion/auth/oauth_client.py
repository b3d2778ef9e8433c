"""
HTTP-Seite des Twitch OAuth Authorization-Code-Flows (validate, refresh, exchange).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from companion.models import Token

log = logging.getLogger("Companion.OAuth")

TWITCH_AUTHORIZE_URL = "https://id.twitch.tv/oauth2/authorize"
TWITCH_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
TWITCH_VALIDATE_URL = "https://id.twitch.tv/oauth2/validate"


def _exc_name(exc: BaseException) -> str:
    """Return exception class name for safe logging without secret-bearing payloads."""
    return exc.__class__.__name__


def build_authorize_url(client_id: str, redirect_uri: str, scopes: List[str], state: str) -> str:
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": " ".join(scopes),
        "state": state,
    }
    return f"{TWITCH_AUTHORIZE_URL}?{urlencode(params)}"


def _token_from_response(data: Dict, previous_refresh: Optional[str] = None) -> Token:
    access = data.get("access_token")
    if not access:
        raise ValueError("token response without access_token")
    expires_at = None
    expires_in = data.get("expires_in")
    if expires_in:
        expires_at = datetime.now() + timedelta(seconds=int(expires_in))
    return Token(
        access_token=access,
        refresh_token=data.get("refresh_token") or previous_refresh,
        expires_at=expires_at,
    )


class TwitchOAuthClient:
    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._session = session
        self._own_session = session is None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=20))
            self._own_session = True
        return self._session

    async def aclose(self) -> None:
        if self._own_session and self._session and not self._session.closed:
            await self._session.close()

    async def validate(self, access_token: str) -> Optional[Dict]:
        """
        Validate an access token.

        Returns:
            The validate payload (user_id, login, scopes, expires_in) or None
            if Twitch rejects the token.
        """
        token = access_token.replace("oauth:", "").strip()
        if not token:
            return None
        session = self._ensure_session()
        async with session.get(TWITCH_VALIDATE_URL, headers={"Authorization": f"OAuth {token}"}) as resp:
            if resp.status != 200:
                lvl = logging.DEBUG if resp.status == 401 else logging.WARNING
                log.log(lvl, "Token validation failed: HTTP %s", resp.status)
                return None
            data = await resp.json()
            log.debug("Token valid for %s, scope_count=%d", data.get("login"), len(data.get("scopes") or []))
            return data

    async def refresh(self, client_id: str, client_secret: str, refresh_token: str) -> Token:
        form = {
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token.replace("oauth:", "").strip(),
        }
        data = await self._post_token(form, "refresh")
        return _token_from_response(data, previous_refresh=refresh_token)

    async def exchange_code(self, client_id: str, client_secret: str, code: str, redirect_uri: str) -> Token:
        form = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        data = await self._post_token(form, "exchange")
        return _token_from_response(data)

    async def _post_token(self, form: Dict[str, str], purpose: str) -> Dict:
        session = self._ensure_session()
        async with session.post(TWITCH_TOKEN_URL, data=form) as resp:
            if resp.status != 200:
                log.error("Token %s failed: HTTP %s", purpose, resp.status)  # nosemgrep: python.lang.security.audit.logging.logger-credential-leak.python-logger-credential-disclosure
                resp.raise_for_status()
            return await resp.json()


__all__ = [
    "TWITCH_AUTHORIZE_URL",
    "TWITCH_TOKEN_URL",
    "TWITCH_VALIDATE_URL",
    "TwitchOAuthClient",
    "build_authorize_url",
]
