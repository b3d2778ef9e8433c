from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, List, Set

log = logging.getLogger("Companion.Events")

Callback = Callable[..., Any]


class EventHook:
    """
    Einfache Observer-Liste mit explizitem Abmelden.

    ``subscribe`` liefert eine Funktion zurück, die den Callback wieder
    entfernt. Callbacks dürfen sync oder async sein; Fehler eines Observers
    werden geloggt und stoppen die übrigen nicht.
    """

    def __init__(self, name: str):
        self.name = name
        self._callbacks: List[Callback] = []
        self._pending: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._callbacks)

    def subscribe(self, callback: Callback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(callback)

        return _unsubscribe

    def unsubscribe(self, callback: Callback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def clear(self) -> None:
        self._callbacks.clear()

    def emit(self, *args: Any) -> None:
        """Fire-and-forget: coroutines returned by observers run as tasks."""
        for callback in list(self._callbacks):
            try:
                result = callback(*args)
            except Exception:
                log.exception("Event '%s': observer %r failed", self.name, callback)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._task_done)

    async def emit_async(self, *args: Any) -> None:
        """Run observers sequentially, awaiting async ones."""
        for callback in list(self._callbacks):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Event '%s': observer %r failed", self.name, callback)

    def _task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error(
                "Event '%s': async observer failed",
                self.name,
                exc_info=(type(exc), exc, exc.__traceback__),
            )


__all__ = ["EventHook"]
