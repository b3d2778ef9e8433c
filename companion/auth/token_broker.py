"""
Token-Lebenszyklus für den Bot-Account.

- Validierung des gespeicherten Tokens
- Refresh (single-flight: parallele Aufrufer teilen sich einen Request)
- Interaktiver Authorization-Code-Flow mit CSRF-State, Callback kommt vom
  lokalen HTTP-Server über ``complete_auth`` / ``fail_auth``
"""

from __future__ import annotations

import asyncio
import enum
import logging
import secrets
import webbrowser
from typing import Callable, Optional, Protocol, Union

import aiohttp

from companion.auth.oauth_client import TwitchOAuthClient, build_authorize_url
from companion.errors import AuthError, AuthErrorKind, RefreshFailed
from companion.events import EventHook
from companion.models import Token
from companion.settings import TwitchSettings

log = logging.getLogger("Companion.TokenBroker")


def _exc_name(exc: BaseException) -> str:
    """Return exception class name for safe logging without secret-bearing payloads."""
    return exc.__class__.__name__


class TokenStore(Protocol):
    async def load(self) -> Optional[Token]: ...

    async def save(self, token: Token) -> None: ...

    async def clear(self) -> None: ...


class AuthFlowState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING_CODE = "exchanging_code"


class TokenBroker:
    AUTH_TIMEOUT = 300.0

    def __init__(
        self,
        settings_provider: Callable[[], TwitchSettings],
        store: TokenStore,
        oauth: Optional[TwitchOAuthClient] = None,
        browser_opener: Callable[[str], bool] = webbrowser.open,
    ):
        self._settings = settings_provider
        self._store = store
        self._oauth = oauth or TwitchOAuthClient()
        self._open_browser = browser_opener

        self._token: Optional[Token] = None
        self._loaded = False
        self._refresh_task: Optional[asyncio.Task] = None
        self._auth_future: Optional[asyncio.Future] = None
        self._auth_state: Optional[str] = None
        self.flow_state = AuthFlowState.IDLE

        self.status_changed = EventHook("token_status")

    # ---- Helpers -----------------------------------------------------------
    def _credentials(self) -> TwitchSettings:
        tw = self._settings()
        if not tw.client_id or not tw.client_secret:
            raise AuthError(
                AuthErrorKind.INVALID_CREDENTIALS,
                "Client ID und Client Secret müssen konfiguriert sein",
            )
        return tw

    def _report(self, text: str) -> None:
        log.info(text)
        self.status_changed.emit(text)

    async def _stored_token(self) -> Optional[Token]:
        if not self._loaded:
            self._token = await self._store.load()
            self._loaded = True
        return self._token

    async def _persist(self, token: Token) -> None:
        self._token = token
        self._loaded = True
        await self._store.save(token)

    @property
    def current_token(self) -> Optional[Token]:
        return self._token

    @property
    def is_auth_pending(self) -> bool:
        return self._auth_future is not None and not self._auth_future.done()

    # ---- Public API --------------------------------------------------------
    async def validate(self, access_token: str) -> bool:
        try:
            return bool(await self._oauth.validate(access_token))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            log.warning("Token-Validierung nicht möglich (%s).", _exc_name(exc))
            return False

    async def get_valid_token(self) -> str:
        """Stored token if valid, else refresh, else interactive authorization."""
        self._credentials()
        token = await self._stored_token()

        if token and token.access_token:
            self._report("Prüfe gespeichertes Token...")
            if await self.validate(token.access_token):
                return token.access_token

        if token and token.refresh_token:
            self._report("Token ungültig, versuche Refresh...")
            try:
                refreshed = await self.refresh_token()
                return refreshed.access_token
            except RefreshFailed as exc:
                log.warning("Refresh fehlgeschlagen (%s), starte Autorisierung.", exc)

        self._report("Starte Autorisierung im Browser...")
        fresh = await self.begin_interactive_auth()
        return fresh.access_token

    async def refresh_token(self) -> Token:
        """Single-flight: concurrent callers await the same in-flight refresh."""
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.ensure_future(self._do_refresh())
            self._refresh_task = task
        return await asyncio.shield(task)

    async def _do_refresh(self) -> Token:
        tw = self._credentials()
        token = await self._stored_token()
        if not token or not token.refresh_token:
            raise RefreshFailed("kein Refresh-Token vorhanden")
        try:
            fresh = await self._oauth.refresh(tw.client_id, tw.client_secret, token.refresh_token)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            log.error("Auth refresh failed (%s).", _exc_name(exc))  # nosemgrep: python.lang.security.audit.logging.logger-credential-leak.python-logger-credential-disclosure
            raise RefreshFailed(f"Refresh fehlgeschlagen: {_exc_name(exc)}") from exc
        await self._persist(fresh)
        self._report("Token erfolgreich erneuert")
        return fresh

    async def begin_interactive_auth(self) -> Token:
        tw = self._credentials()
        if self.is_auth_pending:
            raise AuthError(AuthErrorKind.ALREADY_IN_PROGRESS, "Autorisierung läuft bereits")

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        state = secrets.token_urlsafe(16)
        self._auth_future = future
        self._auth_state = state
        self.flow_state = AuthFlowState.AWAITING_CALLBACK

        try:
            url = build_authorize_url(tw.client_id, tw.redirect_uri, tw.scopes, state)
            try:
                opened = self._open_browser(url)
            except (webbrowser.Error, OSError) as exc:
                raise AuthError(AuthErrorKind.BROWSER_LAUNCH_FAILED, f"Browser konnte nicht geöffnet werden: {exc}") from exc
            if opened is False:
                raise AuthError(AuthErrorKind.BROWSER_LAUNCH_FAILED, "Browser konnte nicht geöffnet werden")
            log.info("Warte auf OAuth-Callback (max. %.0fs)...", self.AUTH_TIMEOUT)

            try:
                code = await asyncio.wait_for(future, timeout=self.AUTH_TIMEOUT)
            except asyncio.TimeoutError as exc:
                raise AuthError(AuthErrorKind.TIMEOUT, "Zeitüberschreitung bei der Autorisierung") from exc
        finally:
            self._auth_future = None
            self._auth_state = None
            if not future.done():
                future.cancel()
            self.flow_state = AuthFlowState.IDLE

        self.flow_state = AuthFlowState.EXCHANGING_CODE
        try:
            token = await self._oauth.exchange_code(tw.client_id, tw.client_secret, code, tw.redirect_uri)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise AuthError(AuthErrorKind.EXCHANGE_FAILED, f"Code-Austausch fehlgeschlagen: {_exc_name(exc)}") from exc
        finally:
            self.flow_state = AuthFlowState.IDLE

        await self._persist(token)
        self._report("Autorisierung erfolgreich")
        return token

    def complete_auth(self, code: str, state: Optional[str]) -> bool:
        """Deliver the OAuth callback. Returns True if the pending flow accepted the code."""
        future = self._auth_future
        if future is None or future.done():
            log.warning("OAuth-Callback ohne wartenden Flow ignoriert")
            return False
        if not state or not secrets.compare_digest(state, self._auth_state or ""):
            log.warning("OAuth-Callback mit ungültigem State abgelehnt")
            future.set_exception(AuthError(AuthErrorKind.STATE_MISMATCH, "Ungültiger state Parameter"))
            return False
        future.set_result(code)
        return True

    def fail_auth(self, error: Union[str, BaseException]) -> bool:
        future = self._auth_future
        if future is None or future.done():
            log.warning("OAuth-Fehler ohne wartenden Flow ignoriert: %s", error)
            return False
        if isinstance(error, AuthError):
            exc = error
        else:
            exc = AuthError(AuthErrorKind.USER_DENIED, f"Autorisierung abgelehnt: {error}")
        future.set_exception(exc)
        return True

    async def clear_tokens(self) -> None:
        self._token = None
        self._loaded = True
        await self._store.clear()
        self._report("Tokens gelöscht")

    async def aclose(self) -> None:
        if self._refresh_task and not self._refresh_task.done():
            self._refresh_task.cancel()
        await self._oauth.aclose()


__all__ = ["AuthFlowState", "TokenBroker", "TokenStore"]
