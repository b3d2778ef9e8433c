from __future__ import annotations

# Re-exported helpers for convenience
from .bootstrap import (
    _RedactSecretsFilter,
    _load_env_robust,
    bootstrap_runtime,
)
from .app import CompanionApp
from .shutdown import graceful_shutdown

__all__ = [
    "CompanionApp",
    "graceful_shutdown",
    "_RedactSecretsFilter",
    "_load_env_robust",
    "bootstrap_runtime",
]
