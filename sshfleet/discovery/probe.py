"""TCP reachability probe."""

from __future__ import annotations

import asyncio
import logging

from sshfleet.devices import DeviceStatus

logger = logging.getLogger(__name__)


async def probe(host: str, port: int = 22, timeout: float = 2.5) -> DeviceStatus:
    """Try a TCP connect to *host*:*port* within *timeout* seconds.

    Returns ``REACHABLE`` or ``UNREACHABLE``; network errors never escape.
    On timeout ``wait_for`` cancels the pending connect, which closes its
    socket, and a successful connection is closed before returning.
    """
    if not 0 < port < 65536:
        return DeviceStatus.UNREACHABLE
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except (asyncio.TimeoutError, OSError, UnicodeError, ValueError) as exc:
        logger.debug("probe %s:%d unreachable (%s)", host, port, type(exc).__name__)
        return DeviceStatus.UNREACHABLE

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    logger.debug("probe %s:%d reachable", host, port)
    return DeviceStatus.REACHABLE
