from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp

from companion.errors import SubscriptionFailure
from companion.events import EventHook

TokenResolver = Callable[[], Awaitable[Optional[str]]]

EVENTSUB_WS_URL = "wss://eventsub.wss.twitch.tv/ws"


class EventSubReconnect(Exception):
    """Signals that Twitch requested a reconnect to a new URL."""

    def __init__(self, url: Optional[str]):
        self.url = url
        super().__init__(url)


class EventSubClient:
    """
    EventSub WebSocket client for one broadcaster.

    Connects, waits for ``session_welcome`` and registers the tracked
    subscriptions. Server-requested reconnects (``session_reconnect``) are
    migrated transparently; an unexpected drop only fires ``disconnected``,
    the reconnect policy belongs to the caller.
    """

    WELCOME_TIMEOUT = 15.0

    def __init__(
        self,
        api,
        token_resolver: TokenResolver,
        logger: Optional[logging.Logger] = None,
        ws_url: str = EVENTSUB_WS_URL,
    ):
        self.api = api
        self.log = logger or logging.getLogger("Companion.EventSubWS")
        self._token_resolver = token_resolver
        self._base_url = ws_url
        self._subscriptions: List[Tuple[str, Dict[str, str]]] = []
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._session_id: Optional[str] = None
        self._closing = False

        self.connected = EventHook("eventsub_connected")
        self.disconnected = EventHook("eventsub_disconnected")
        self.stream_online = EventHook("eventsub_stream_online")
        self.stream_offline = EventHook("eventsub_stream_offline")
        self.error = EventHook("eventsub_error")

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def add_subscription(self, sub_type: str, condition: Dict[str, str]) -> None:
        entry = (sub_type, dict(condition))
        if entry not in self._subscriptions:
            self._subscriptions.append(entry)

    def clear_subscriptions(self) -> None:
        self._subscriptions.clear()

    # ---- Lifecycle ---------------------------------------------------------
    async def connect(self) -> None:
        if self.is_connected:
            return
        await self._open(self._base_url, register=True)
        self.connected.emit(False)

    async def reconnect(self) -> None:
        """Fresh session after a drop; subscriptions are registered again."""
        await self._close_current()
        await self._open(self._base_url, register=True)
        self.connected.emit(True)

    async def disconnect(self) -> None:
        self._closing = True
        await self._close_current()
        self._session_id = None

    async def _close_current(self) -> None:
        ws, task = self._ws, self._reader_task
        self._ws = None
        self._reader_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if ws is not None and not ws.closed:
            await ws.close()

    async def _open(self, url: str, *, register: bool) -> None:
        session = self.api.get_http_session()
        ws = await session.ws_connect(url, heartbeat=20)
        try:
            session_id = await self._wait_for_welcome(ws)
            if not session_id:
                raise ConnectionError("EventSub WS: No session_id received, aborting.")
            if register:
                await self._register_all_subscriptions(session_id)
        except BaseException:
            await ws.close()
            raise

        self._closing = False
        self._ws = ws
        self._session_id = session_id
        self._reader_task = asyncio.create_task(self._read_loop(ws))

    async def _wait_for_welcome(self, ws) -> Optional[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.WELCOME_TIMEOUT

        while True:
            timeout = max(0.0, deadline - loop.time())
            if timeout <= 0:
                self.log.error("EventSub WS: Welcome timeout")
                return None
            try:
                msg = await ws.receive(timeout=timeout)
            except asyncio.TimeoutError:
                self.log.error("EventSub WS: Welcome timeout")
                return None

            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except ValueError:
                    continue
                meta = data.get("metadata") or {}
                if meta.get("message_type") == "session_welcome":
                    return (data.get("payload", {}).get("session", {}) or {}).get("id")
                continue

            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                return None

    async def _resolve_token(self) -> Optional[str]:
        try:
            token = await self._token_resolver()
        except Exception as exc:
            self.log.debug("EventSub WS: Could not resolve token (%s)", exc.__class__.__name__)
            return None
        if not token:
            return None
        token = token.strip()
        return token[6:] if token.lower().startswith("oauth:") else token

    @staticmethod
    def _is_already_exists_error(exc: Exception) -> bool:
        return getattr(exc, "status", None) == 409

    async def _register_all_subscriptions(self, session_id: str) -> None:
        if not self._subscriptions:
            self.log.debug("EventSub WS: No subscriptions to register.")
            return

        token = await self._resolve_token()
        if not token:
            raise SubscriptionFailure("EventSub WS: Kein User-Token für Subscriptions verfügbar")

        successful = 0
        last_exc: Optional[Exception] = None
        for sub_type, condition in self._subscriptions:
            try:
                await self.api.subscribe_eventsub_websocket(
                    session_id=session_id,
                    sub_type=sub_type,
                    condition=condition,
                    oauth_token=token,
                )
                successful += 1
                self.log.debug("EventSub WS: Subscribed %s (%s)", sub_type, condition)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if self._is_already_exists_error(exc):
                    successful += 1
                    self.log.info("EventSub WS: Subscription already exists (409): %s", sub_type)
                    continue
                last_exc = exc
                self.log.error("EventSub WS: Subscription failed (%s): %s", sub_type, exc)

        self.log.info(
            "EventSub WS: Subscription-Registrierung abgeschlossen: %d/%d erfolgreich",
            successful,
            len(self._subscriptions),
        )
        if successful == 0:
            raise SubscriptionFailure("EventSub WS: Keine Subscription konnte angelegt werden") from last_exc

    # ---- Reading -----------------------------------------------------------
    async def _read_loop(self, ws) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except ValueError:
                        continue
                    try:
                        await self._handle_message(data)
                    except EventSubReconnect as exc:
                        await self._migrate(ws, exc.url)
                        return
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.log.exception("EventSub WS: Reader crashed")
            self.error.emit(exc)

        if self._ws is ws:
            self._ws = None
            if not self._closing:
                self.log.warning("EventSub WS: Connection closed unexpectedly")
                self.disconnected.emit()

    async def _migrate(self, old_ws, url: Optional[str]) -> None:
        self.log.info("EventSub WS: Reconnect requested to %s", url)
        try:
            await self._open(url or self._base_url, register=False)
            self.log.info("EventSub WS: Reconnect successful - Subscriptions are migrated by Twitch.")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.log.warning("EventSub WS: Migration fehlgeschlagen (%s)", exc.__class__.__name__)
            if self._ws is old_ws:
                self._ws = None
            self.disconnected.emit()
        finally:
            if not old_ws.closed:
                await old_ws.close()

    async def _handle_message(self, data: Dict) -> None:
        meta = data.get("metadata") or {}
        mtype = meta.get("message_type")
        if mtype == "session_keepalive":
            return
        if mtype == "session_reconnect":
            target = data.get("payload", {}).get("session", {}).get("reconnect_url")
            raise EventSubReconnect(target)
        if mtype == "revocation":
            sub_type = ((data.get("payload") or {}).get("subscription") or {}).get("type")
            self.log.warning("EventSub WS: Subscription revoked: %s", sub_type)
            self.error.emit(SubscriptionFailure(f"Subscription widerrufen: {sub_type}"))
            return
        if mtype != "notification":
            return

        payload = data.get("payload") or {}
        sub_type = (payload.get("subscription") or {}).get("type")
        event = payload.get("event") or {}
        if sub_type == "stream.online":
            await self.stream_online.emit_async(event)
        elif sub_type == "stream.offline":
            await self.stream_offline.emit_async(event)


__all__ = ["EVENTSUB_WS_URL", "EventSubClient", "EventSubReconnect"]
