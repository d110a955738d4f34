"""Subnet scanner — finds SSH listeners on the local /24.

Picks the machine's primary IPv4 address, enumerates the other 253 hosts
of its /24, and TCP-probes port 22 on all of them concurrently.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import time
from typing import Awaitable, Callable

import psutil

from sshfleet.devices import DeviceStatus
from sshfleet.discovery.models import DiscoveredCandidate, DiscoverySource
from sshfleet.discovery.probe import probe

logger = logging.getLogger(__name__)

# Interface name prefixes treated as the primary wired/wireless NIC.
PRIMARY_INTERFACE_PREFIXES = ("en", "eth")

ProbeFn = Callable[[str, int, float], Awaitable[DeviceStatus]]


def _usable(ip: str) -> bool:
    return not ip.startswith("127.") and not ip.startswith("169.254.")


def primary_ipv4() -> str | None:
    """This machine's LAN address, or ``None`` when there is none."""
    candidate: str | None = None
    for name, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family != socket.AF_INET:
                continue
            ip = addr.address
            if not _usable(ip):
                continue
            if name.startswith(PRIMARY_INTERFACE_PREFIXES):
                return ip
            if candidate is None:
                candidate = ip
    return candidate


def addresses_in_24(ipv4: str) -> list[str]:
    """Every host address of the /24 around *ipv4*, except *ipv4* itself."""
    try:
        own = ipaddress.IPv4Address(ipv4)
    except ValueError:
        return []
    network = ipaddress.IPv4Network(f"{own}/24", strict=False)
    return [str(h) for h in network.hosts() if h != own]


class SubnetScanner:
    """Concurrent TCP probe of the local /24.

    Args:
        port:            Port to probe (22).
        probe_fn:        Reachability check; :func:`probe` by default.
        local_ip:        Override the detected local address.
        max_concurrency: Cap on simultaneous probes; ``None`` = one per host.
    """

    def __init__(
        self,
        port: int = 22,
        probe_fn: ProbeFn = probe,
        local_ip: str | None = None,
        max_concurrency: int | None = None,
    ) -> None:
        self.port = port
        self._probe = probe_fn
        self._local_ip = local_ip
        self._max_concurrency = max_concurrency

    def candidates(self, limit: int | None = None) -> list[str]:
        ip = self._local_ip or primary_ipv4()
        if ip is None:
            logger.warning("No usable IPv4 address — subnet scan skipped")
            return []
        hosts = addresses_in_24(ip)
        if limit is not None and len(hosts) > limit:
            hosts = hosts[:limit]
        return hosts

    async def scan(self, timeout: float = 0.9, limit: int | None = None) -> list[DiscoveredCandidate]:
        """Probe all candidates; return the reachable ones sorted by host.

        Cancelling the caller cancels every outstanding probe.
        """
        hosts = self.candidates(limit)
        if not hosts:
            return []

        sem = asyncio.Semaphore(self._max_concurrency) if self._max_concurrency else None

        async def _check(host: str) -> DiscoveredCandidate | None:
            if sem is not None:
                async with sem:
                    return await self._timed_probe(host, timeout)
            return await self._timed_probe(host, timeout)

        logger.info("Scanning %d hosts on port %d", len(hosts), self.port)
        results = await asyncio.gather(*(_check(h) for h in hosts))
        found = sorted((r for r in results if r is not None), key=lambda c: c.host)
        logger.info("Subnet scan complete — %d SSH host(s) found", len(found))
        return found

    async def _timed_probe(self, host: str, timeout: float) -> DiscoveredCandidate | None:
        start = time.monotonic()
        status = await self._probe(host, self.port, timeout)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        if status is not DeviceStatus.REACHABLE:
            return None
        return DiscoveredCandidate(
            name=host,
            host=host,
            port=self.port,
            ip=host,
            source=DiscoverySource.SUBNET_SCAN,
            latency_ms=elapsed_ms,
        )
