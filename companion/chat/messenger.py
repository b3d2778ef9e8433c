from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

from companion.settings import InfrastructureSettings

log = logging.getLogger("Companion.Messenger")


@dataclass
class OutgoingMessage:
    channel: str
    text: str
    reply_to: Optional[str] = None


class Messenger:
    """
    Fire-and-forget Versand über den Chat-Transport.

    Nachrichten landen in einer Queue; ein Worker sendet sie unter Einhaltung
    von ``messages_allowed_in_period`` pro ``throttling_period_seconds``.
    Fehler beim Senden werden geloggt und verworfen.
    """

    THROTTLE_RECHECK_SECONDS = 0.5

    def __init__(
        self,
        transport,
        limits_provider: Callable[[], InfrastructureSettings],
        clock: Callable[[], float] = time.monotonic,
    ):
        self._transport = transport
        self._limits = limits_provider
        self._clock = clock
        self._queue: asyncio.Queue = asyncio.Queue()
        self._sent_at: Deque[float] = deque()
        self._worker: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def send(self, channel: str, text: str) -> None:
        if not text or not text.strip():
            return
        self._queue.put_nowait(OutgoingMessage(channel, text))

    def reply(self, channel: str, message_id: str, text: str) -> None:
        if not text or not text.strip():
            return
        self._queue.put_nowait(OutgoingMessage(channel, text, reply_to=message_id))

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def flush(self, timeout: float = 5.0) -> bool:
        """Wait until everything queued so far has been handed to the transport."""
        if self._worker is None or self._worker.done():
            return self._queue.empty()
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            log.warning("Messenger-Queue nach %.1fs nicht leer (%d offen)", timeout, self._queue.qsize())
            return False

    async def stop(self) -> None:
        task, self._worker = self._worker, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        if dropped:
            log.info("%d ungesendete Nachrichten verworfen", dropped)

    async def _throttle(self) -> None:
        limits = self._limits()
        allowed = max(1, int(limits.messages_allowed_in_period or 1))
        period = max(1.0, float(limits.throttling_period_seconds or 1))
        while True:
            now = self._clock()
            while self._sent_at and now - self._sent_at[0] >= period:
                self._sent_at.popleft()
            if len(self._sent_at) < allowed:
                self._sent_at.append(now)
                return
            wait = period - (now - self._sent_at[0])
            log.debug("Rate-Limit erreicht, warte %.1fs", wait)
            await asyncio.sleep(min(max(0.05, wait), self.THROTTLE_RECHECK_SECONDS))

    async def _run(self) -> None:
        while True:
            message: OutgoingMessage = await self._queue.get()
            try:
                await self._throttle()
                if message.reply_to:
                    await self._transport.send_reply(message.channel, message.reply_to, message.text)
                else:
                    await self._transport.send_message(message.channel, message.text)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Nachricht an #%s konnte nicht gesendet werden", message.channel)
            finally:
                self._queue.task_done()


__all__ = ["Messenger", "OutgoingMessage"]
