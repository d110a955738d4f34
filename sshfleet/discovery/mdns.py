"""mDNS advertisement source for ``_ssh._tcp`` services.

Zeroconf calls its listener from its own thread; every callback is turned
into an :class:`AdvertisementEvent` and handed to the event loop through
``call_soon_threadsafe``.  Nothing here touches discovery state directly.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Protocol

from zeroconf import ServiceBrowser, Zeroconf

logger = logging.getLogger(__name__)

SSH_SERVICE_TYPE = "_ssh._tcp.local."

FOUND = "found"
RESOLVED = "resolved"
REMOVED = "removed"


@dataclass
class AdvertisementEvent:
    kind: str  # found | resolved | removed
    name: str
    host: str | None = None
    port: int | None = None
    addresses: list[str] = field(default_factory=list)


Emit = Callable[[AdvertisementEvent], None]


class AdvertisementSource(Protocol):
    """Anything that can push advertisement events into *emit*."""

    async def start(self, emit: Emit) -> None:
        ...

    async def stop(self) -> None:
        ...


def short_name(name: str, service_type: str = SSH_SERVICE_TYPE) -> str:
    """``pi._ssh._tcp.local.`` -> ``pi``."""
    suffix = f".{service_type}"
    return name[: -len(suffix)] if name.endswith(suffix) else name


class ZeroconfAdvertisementSource:
    """Browses for SSH services with zeroconf."""

    def __init__(self, service_type: str = SSH_SERVICE_TYPE, resolve_timeout_ms: int = 5000) -> None:
        self.service_type = service_type
        self.resolve_timeout_ms = resolve_timeout_ms
        self._zeroconf: Zeroconf | None = None
        self._browser: ServiceBrowser | None = None

    async def start(self, emit: Emit) -> None:
        if self._zeroconf is not None:
            return
        loop = asyncio.get_running_loop()

        def _threadsafe_emit(event: AdvertisementEvent) -> None:
            loop.call_soon_threadsafe(emit, event)

        listener = _SSHServiceListener(_threadsafe_emit, self.resolve_timeout_ms)
        self._zeroconf = Zeroconf()
        self._browser = ServiceBrowser(self._zeroconf, self.service_type, listener)
        logger.info("mDNS browser started for %s", self.service_type)

    async def stop(self) -> None:
        if self._browser is not None:
            self._browser.cancel()
            self._browser = None
        if self._zeroconf is not None:
            # close() joins zeroconf's threads; keep it off the event loop
            await asyncio.to_thread(self._zeroconf.close)
            self._zeroconf = None
            logger.info("mDNS browser stopped")


class _SSHServiceListener:
    """Zeroconf service listener translating callbacks into events."""

    def __init__(self, emit: Emit, resolve_timeout_ms: int) -> None:
        self._emit = emit
        self._timeout = resolve_timeout_ms

    def add_service(self, zc, type_: str, name: str) -> None:
        self._emit(AdvertisementEvent(kind=FOUND, name=name))
        self._resolve(zc, type_, name)

    def update_service(self, zc, type_: str, name: str) -> None:
        # Re-resolve (address change, etc.)
        self._resolve(zc, type_, name)

    def remove_service(self, zc, type_: str, name: str) -> None:
        logger.debug("SSH service removed: %s", name)
        self._emit(AdvertisementEvent(kind=REMOVED, name=name))

    def _resolve(self, zc, type_: str, name: str) -> None:
        info = zc.get_service_info(type_, name, timeout=self._timeout)
        if info is None or not info.server:
            logger.debug("Could not resolve %s", name)
            return
        self._emit(AdvertisementEvent(
            kind=RESOLVED,
            name=name,
            host=info.server,
            port=info.port or 22,
            addresses=list(info.parsed_addresses()),
        ))
