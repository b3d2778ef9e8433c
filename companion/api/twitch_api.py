import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple, Union

import aiohttp

from companion.api.http_client import build_resilient_connector
from companion.models import StreamInfo

TWITCH_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
TWITCH_API_BASE = "https://api.twitch.tv/helix"

Params = Optional[Union[Dict[str, str], List[Tuple[str, str]]]]


def _strip_oauth_prefix(token: Optional[str]) -> str:
    token = (token or "").strip()
    if token.lower().startswith("oauth:"):
        token = token.split(":", 1)[1]
    return token


class TwitchAPI:
    """
    Async Wrapper für Twitch Helix.

    - Eine wiederverwendete aiohttp.ClientSession (lazy erstellt)
    - App-Access-Token wird automatisch geholt, User-Token kann pro Request
      übergeben werden (EventSub-Websocket verlangt User-Token)
    - Hilfsfunktionen für Users, Streams, EventSub, Emotes & Badges
    """

    def __init__(self, client_id: str, client_secret: str, session: Optional[aiohttp.ClientSession] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self._session = session
        self._own_session = False
        self._token: Optional[str] = None
        self._token_expiry: float = 0.0
        self._lock = asyncio.Lock()
        self._log = logging.getLogger("Companion.TwitchAPI")

    # ---- Session lifecycle -------------------------------------------------
    def _ensure_session(self) -> None:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=20)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                connector=build_resilient_connector(),
                trust_env=True,
            )
            self._own_session = True

    def get_http_session(self) -> aiohttp.ClientSession:
        """Return the internal aiohttp session, ensuring it exists."""
        self._ensure_session()
        assert self._session is not None
        return self._session

    async def aclose(self) -> None:
        if self._own_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    # ---- OAuth -------------------------------------------------------------
    async def _ensure_token(self):
        self._ensure_session()
        async with self._lock:
            if self._token and time.time() < self._token_expiry - 60:
                return
            assert self._session is not None
            data = {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            }
            async with self._session.post(TWITCH_TOKEN_URL, data=data) as r:
                if r.status != 200:
                    txt = await r.text()
                    self._log.error("twitch app token failed: HTTP %s: %s", r.status, txt[:300].replace("\n", " "))
                    r.raise_for_status()
                js = await r.json()
                self._token = js.get("access_token")
                self._token_expiry = time.time() + float(js.get("expires_in", 3600))

    async def _auth_header(self, oauth_token: Optional[str]) -> Dict[str, str]:
        token = _strip_oauth_prefix(oauth_token)
        if not token:
            await self._ensure_token()
            token = self._token or ""
        return {"Client-ID": self.client_id, "Authorization": f"Bearer {token}"}

    # ---- Core requests -----------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Params = None,
        json: Optional[dict] = None,
        oauth_token: Optional[str] = None,
        ok_status: Tuple[int, ...] = (200,),
        max_attempts: int = 3,
    ) -> Dict:
        headers = await self._auth_header(oauth_token)
        self._ensure_session()
        assert self._session is not None
        url = f"{TWITCH_API_BASE}{path}"
        attempts = max(1, min(int(max_attempts or 1), 5))
        last_exc: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                async with self._session.request(method, url, headers=headers, params=params, json=json) as r:
                    if r.status not in ok_status:
                        txt = (await r.text())[:300].replace("\n", " ")
                        if r.status in {500, 502, 503, 504} and attempt < attempts - 1:
                            delay = 0.5 * (attempt + 1)
                            self._log.warning(
                                "%s %s retry %s/%s after HTTP %s (%ss)",
                                method, path, attempt + 1, attempts, r.status, delay,
                            )
                            await asyncio.sleep(delay)
                            continue
                        self._log.error("%s %s failed: HTTP %s: %s", method, path, r.status, txt)
                        raise aiohttp.ClientResponseError(
                            request_info=r.request_info,
                            history=r.history,
                            status=r.status,
                            message=txt or (r.reason or ""),
                            headers=r.headers,
                        )
                    if r.status == 204:
                        return {}
                    return await r.json()
            except aiohttp.ClientResponseError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                last_exc = exc
                if attempt < attempts - 1:
                    delay = 0.5 * (attempt + 1)
                    self._log.warning(
                        "%s %s retry %s/%s after %s (%s)",
                        method, path, attempt + 1, attempts, delay, exc.__class__.__name__,
                    )
                    await asyncio.sleep(delay)
                    continue
                self._log.error("%s %s failed after retries: %s", method, path, exc.__class__.__name__)
                raise
        raise last_exc or RuntimeError(f"{method} {path} failed without raising")

    async def _get(self, path: str, params: Params = None, *, oauth_token: Optional[str] = None) -> Dict:
        return await self._request("GET", path, params=params, oauth_token=oauth_token)

    # ---- Users & Streams ---------------------------------------------------
    async def get_user(self, login: str, *, oauth_token: Optional[str] = None) -> Optional[Dict]:
        login = (login or "").strip().lstrip("#").lower()
        if not login:
            return None
        js = await self._get("/users", params={"login": login}, oauth_token=oauth_token)
        for u in js.get("data", []) or []:
            if (u.get("login") or "").lower() == login:
                return u
        return None

    async def get_stream(self, user_id: str, *, oauth_token: Optional[str] = None) -> Optional[StreamInfo]:
        """Aktueller Stream des Users oder None, wenn offline."""
        js = await self._get("/streams", params={"user_id": str(user_id)}, oauth_token=oauth_token)
        data = js.get("data", []) or []
        if not data:
            return None
        return StreamInfo.from_helix(data[0])

    # ---- Chat decorations --------------------------------------------------
    async def get_global_emotes(self, *, oauth_token: Optional[str] = None) -> List[Dict]:
        js = await self._get("/chat/emotes/global", oauth_token=oauth_token)
        return list(js.get("data", []) or [])

    async def get_global_badges(self, *, oauth_token: Optional[str] = None) -> List[Dict]:
        js = await self._get("/chat/badges/global", oauth_token=oauth_token)
        return list(js.get("data", []) or [])

    async def get_channel_badges(self, broadcaster_id: str, *, oauth_token: Optional[str] = None) -> List[Dict]:
        js = await self._get("/chat/badges", params={"broadcaster_id": str(broadcaster_id)}, oauth_token=oauth_token)
        return list(js.get("data", []) or [])

    # ---- EventSub ----------------------------------------------------------
    async def subscribe_eventsub_websocket(
        self,
        *,
        session_id: str,
        sub_type: str,
        condition: Dict[str, str],
        version: str = "1",
        oauth_token: Optional[str] = None,
    ) -> Dict:
        """Register a WebSocket EventSub subscription (e.g. stream.offline)."""
        payload = {
            "type": sub_type,
            "version": version,
            "condition": condition,
            "transport": {"method": "websocket", "session_id": session_id},
        }
        return await self._request(
            "POST",
            "/eventsub/subscriptions",
            json=payload,
            oauth_token=oauth_token,
            ok_status=(200, 202),
            max_attempts=1,
        )


__all__ = ["TwitchAPI", "TWITCH_API_BASE", "TWITCH_TOKEN_URL"]
