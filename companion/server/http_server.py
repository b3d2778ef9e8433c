from __future__ import annotations

import asyncio
import errno
import html
import logging
from datetime import datetime, timedelta
from typing import Optional

from aiohttp import web

from companion.chat.history import ChatHistoryStore
from companion.server.sse import PushHub, obs_css_settings
from companion.settings import SettingsManager

log = logging.getLogger("Companion.HttpServer")

OAUTH_SUCCESS_HTML = (
    "<!DOCTYPE html><html><head><meta charset='utf-8'><title>Autorisierung erfolgreich</title></head>"
    "<body style='font-family: system-ui, sans-serif'>"
    "<h3>✅ Autorisierung erfolgreich</h3><p>Du kannst dieses Fenster schließen.</p>"
    "</body></html>"
)

OAUTH_ERROR_HTML = (
    "<!DOCTYPE html><html><head><meta charset='utf-8'><title>Autorisierung fehlgeschlagen</title></head>"
    "<body style='font-family: system-ui, sans-serif'>"
    "<h3>❌ Autorisierung fehlgeschlagen</h3><p>Fehler: {error}</p>"
    "</body></html>"
)


@web.middleware
async def security_headers_mw(request: web.Request, handler):
    try:
        resp = await handler(request)
    except web.HTTPException as ex:
        resp = web.Response(text=ex.reason or "error", status=ex.status, content_type="text/plain")
    except Exception:
        log.exception("Unhandled error in request")
        resp = web.Response(text="Interner Fehler", status=500, content_type="text/plain")

    if not resp.prepared:
        resp.headers["Cache-Control"] = "no-store"
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["Referrer-Policy"] = "no-referrer"
    return resp


class HttpServer:
    """
    Lokaler Server für:
      - ``/``            OAuth-Callback (code+state oder error)
      - ``/events``      SSE-Stream fürs Overlay
      - ``/api/history`` Chat-Verlauf (gefiltert nach Overlay-Einstellungen)
      - ``/api/chat-settings`` Overlay-Einstellungen
      - ``/health``
      - ``POST /api/auth/clear`` gespeicherte Tokens verwerfen
    """

    MAX_PORT_RETRIES = 5

    def __init__(
        self,
        token_broker,
        history: ChatHistoryStore,
        push_hub: PushHub,
        settings: SettingsManager,
        *,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ):
        self._broker = token_broker
        self._history = history
        self._hub = push_hub
        self._settings = settings
        infra = settings.current.twitch.infrastructure
        self.host = host or infra.http_server_host
        self.port = port if port is not None else infra.http_server_port

        self.app = web.Application(middlewares=[security_headers_mw])
        self.app.router.add_get("/", self.handle_oauth_callback)
        self.app.router.add_get("/events", self._hub.handle)
        self.app.router.add_get("/api/history", self.handle_history)
        self.app.router.add_get("/api/chat-settings", self.handle_chat_settings)
        self.app.router.add_get("/health", self.handle_health)
        self.app.router.add_post("/api/auth/clear", self.handle_clear_tokens)
        self._runner: Optional[web.AppRunner] = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        if self._runner is not None:
            return
        logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
        runner = web.AppRunner(self.app)
        await runner.setup()

        retry_delay = 0.5
        for attempt in range(self.MAX_PORT_RETRIES):
            try:
                site = web.TCPSite(runner, host=self.host, port=self.port)
                await site.start()
                self._runner = runner
                log.info("HTTP-Server läuft auf http://%s:%s", self.host, self.port)
                return
            except OSError as e:
                if e.errno == errno.EADDRINUSE and attempt < self.MAX_PORT_RETRIES - 1:
                    log.debug(
                        "Port %s belegt, neuer Versuch in %ss (Versuch %s/%s)",
                        self.port, retry_delay, attempt + 1, self.MAX_PORT_RETRIES,
                    )
                    await asyncio.sleep(retry_delay)
                    retry_delay *= 2
                    continue
                await runner.cleanup()
                log.error("HTTP-Server konnte nicht starten (Port %s)", self.port)
                raise

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
            log.info("HTTP-Server gestoppt")

    # ---- Handlers ----------------------------------------------------------
    async def handle_oauth_callback(self, request: web.Request) -> web.Response:
        code = request.query.get("code")
        state = request.query.get("state")
        error = request.query.get("error")

        if code:
            if self._broker.complete_auth(code, state):
                return web.Response(text=OAUTH_SUCCESS_HTML, content_type="text/html")
            return web.Response(
                text=OAUTH_ERROR_HTML.format(error="Ungültiger oder abgelaufener Autorisierungsversuch"),
                content_type="text/html",
                status=400,
            )

        if error:
            description = request.query.get("error_description") or error
            self._broker.fail_auth(description)
            return web.Response(
                text=OAUTH_ERROR_HTML.format(error=html.escape(description)),
                content_type="text/html",
            )

        return web.Response(text="missing code/error", status=400)

    async def handle_history(self, request: web.Request) -> web.Response:
        obs = self._settings.current.twitch.obs_chat
        history = self._history.get_history()
        if obs.enable_message_fade_out:
            cutoff = datetime.now() - timedelta(seconds=obs.message_lifetime_seconds)
            history = [r for r in history if r.timestamp >= cutoff]
        if obs.max_messages > 0:
            history = history[-obs.max_messages:]
        return web.json_response([r.to_json() for r in history])

    async def handle_chat_settings(self, request: web.Request) -> web.Response:
        return web.json_response(obs_css_settings(self._settings.current.twitch.obs_chat))

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": True, "sse_clients": self._hub.client_count})

    async def handle_clear_tokens(self, request: web.Request) -> web.Response:
        if self._broker.is_auth_pending:
            return web.json_response({"ok": False, "error": "auth_pending"}, status=409)
        await self._broker.clear_tokens()
        log.info("Gespeicherte Tokens per HTTP verworfen")
        return web.json_response({"ok": True})


__all__ = ["HttpServer", "security_headers_mw"]
