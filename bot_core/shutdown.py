from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from bot_core.app import CompanionApp

__all__ = ["graceful_shutdown"]

_shutdown_started = False


async def graceful_shutdown(
    app: CompanionApp,
    reason: str = "signal",
    timeout_close: float = 5.0,
    timeout_total: float = 7.0,
    keep: Optional[Iterable[asyncio.Task]] = None,
) -> None:
    global _shutdown_started
    if _shutdown_started:
        return
    _shutdown_started = True

    logging.info("Graceful shutdown initiated (%s) ...", reason)

    # 1) App sauber schließen (mit Timeout), Abschied geht dabei noch raus
    try:
        await asyncio.wait_for(app.close(), timeout=timeout_close)
        logging.info("app.close() returned")
    except asyncio.TimeoutError:
        logging.error("app.close() timed out after %.1fs", timeout_close)
    except Exception as e:
        logging.error("Error during app.close(): %s", e)

    # 2) Übrige Tasks abbrechen (außer dieser und dem Haupt-Task)
    skip = {asyncio.current_task(), *(keep or ())}
    pending = [t for t in asyncio.all_tasks() if t not in skip]
    for t in pending:
        t.cancel()
    if pending:
        _, still_pending = await asyncio.wait(pending, timeout=max(0.0, timeout_total - timeout_close))
        if still_pending:
            logging.warning("%d Tasks nach Shutdown noch aktiv", len(still_pending))
