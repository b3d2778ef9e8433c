"""
aiohttp-Connector für Twitch-Requests.

Auf manchen Heimnetzen laufen DNS-Anfragen gelegentlich in Timeouts; ein
Connector mit DNS-Cache, IPv4-Präferenz und optionalen eigenen Nameservern
macht die Helix-/EventSub-Verbindungen stabiler.
"""

from __future__ import annotations

import logging
import os
import socket
from collections.abc import Iterable

import aiohttp
from aiohttp import resolver as aiohttp_resolver

_log = logging.getLogger("Companion.HttpClient")


def _parse_env_dns() -> list[str]:
    raw = os.getenv("HTTP_DNS_SERVERS") or ""
    if not raw:
        return []
    parts = raw.replace(";", ",").split(",")
    return [p.strip() for p in parts if p.strip()]


def build_resilient_connector(
    *,
    dns_servers: Iterable[str] | None = None,
    ttl_dns_cache: int = 300,
    family: socket.AddressFamily = socket.AF_INET,
    limit: int = 100,
) -> aiohttp.TCPConnector:
    """
    TCPConnector mit DNS-Cache und IPv4-Präferenz.

    Eigene Nameserver (Argument oder ``HTTP_DNS_SERVERS``) werden nur genutzt,
    wenn aiohttp einen AsyncResolver bauen kann (benötigt ``aiodns``);
    sonst bleibt es beim System-Resolver.
    """
    nameservers = list(dns_servers or []) or _parse_env_dns()
    resolver = None
    if nameservers:
        try:
            resolver = aiohttp_resolver.AsyncResolver(nameservers=nameservers, rotate=True)
        except Exception as exc:
            _log.warning("AsyncResolver nicht verfügbar (nameservers=%s): %s", nameservers, exc)
            resolver = None

    return aiohttp.TCPConnector(
        resolver=resolver,
        ttl_dns_cache=max(0, ttl_dns_cache),
        family=family,
        limit=limit,
    )


__all__ = ["build_resilient_connector"]
