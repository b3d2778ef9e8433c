# main_bot.py
# Poproshayka Companion – Twitch-Chat-Bot mit Stream-Monitoring und OBS-Overlay

from __future__ import annotations

import asyncio
import logging
import signal

from bot_core import CompanionApp, bootstrap_runtime, graceful_shutdown

# Früh Logging basic konfigurieren, um .env-/Tresor-Load zu sehen
bootstrap_runtime()


async def main() -> int:
    app = CompanionApp()
    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()

    def _sig_handler(signum: int) -> None:
        logging.info("Received signal %s, shutting down gracefully...", signum)
        asyncio.ensure_future(graceful_shutdown(app, reason=f"signal {signum}", keep=[main_task]))

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _sig_handler, sig)
        except (NotImplementedError, RuntimeError):
            # Windows kennt add_signal_handler nicht, KeyboardInterrupt greift dort
            pass

    try:
        if not await app.start():
            await app.close()
            return 1
        await app.wait_closed()
    except KeyboardInterrupt:
        logging.info("Keyboard interrupt received, shutting down...")
    except Exception:
        logging.exception("Companion crashed")
    finally:
        if not app.is_closed():
            await app.close()
    return 0


def run() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
