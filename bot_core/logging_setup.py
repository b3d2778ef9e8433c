from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Dict

from bot_core.bootstrap import _RedactSecretsFilter

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024

REDACT_KEYS = [
    "TWITCH_CLIENT_SECRET",
    "TWITCH_ACCESS_TOKEN",
    "TWITCH_REFRESH_TOKEN",
]

# twitchio loggt IRC-Rohzeilen (inkl. PASS oauth:...) auf DEBUG
NOISY_LOGGERS: Dict[str, int] = {
    "twitchio": logging.INFO,
    "twitchio.websocket": logging.INFO,
    "twitchio.http": logging.INFO,
    "aiohttp": logging.INFO,
    "aiohttp.access": logging.WARNING,
}


def _rotating_file(path: Path, level: int, backups: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=MAX_LOG_BYTES,
        backupCount=backups,
        encoding="utf-8",
    )
    handler.setLevel(level)
    return handler


def _console_level(level: str) -> int:
    resolved = logging.getLevelName((level or "INFO").upper())
    return resolved if isinstance(resolved, int) else logging.INFO


class LoggingMixin:
    """Logging-Setup inkl. Secret-Filter."""

    root_dir: Path
    redact_filter: _RedactSecretsFilter

    def setup_logging(self, level: str = "INFO"):
        log_dir = self.root_dir / "logs"
        log_dir.mkdir(exist_ok=True)

        console = logging.StreamHandler(sys.stdout)
        console.setLevel(_console_level(level))
        handlers = [
            _rotating_file(log_dir / "companion.log", logging.INFO, backups=5),
            _rotating_file(log_dir / "companion.debug.log", logging.DEBUG, backups=3),
            console,
        ]

        root = logging.getLogger()
        root.handlers.clear()
        # Root auf DEBUG, die Handler filtern selbst
        logging.basicConfig(level=logging.DEBUG, handlers=handlers, format=LOG_FORMAT)

        for name, lvl in NOISY_LOGGERS.items():
            logging.getLogger(name).setLevel(lvl)

        self.redact_filter = _RedactSecretsFilter(REDACT_KEYS)
        for handler in root.handlers:
            handler.addFilter(self.redact_filter)

        logging.info("Companion logging initialized (console=%s, dir=%s)", logging.getLevelName(console.level), log_dir)
