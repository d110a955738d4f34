"""Discovery data model and merge rules."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Iterable


class DiscoverySource(str, Enum):
    """How a candidate was found."""
    ADVERTISEMENT = "advertisement"  # mDNS _ssh._tcp announcement
    SUBNET_SCAN = "subnet-scan"      # TCP probe of the local /24


@dataclass
class DiscoveredCandidate:
    """An SSH endpoint seen on the network but not (yet) a managed device."""

    name: str
    host: str
    port: int = 22
    ip: str | None = None
    source: DiscoverySource = DiscoverySource.SUBNET_SCAN
    latency_ms: int | None = None

    @property
    def key(self) -> tuple[str, int]:
        return candidate_key(self.host, self.port)


def normalize_host(host: str) -> str:
    """Lowercase and drop the DNS root dot: ``Pi.local.`` -> ``pi.local``."""
    host = host.strip()
    if host.endswith("."):
        host = host[:-1]
    return host.lower()


def candidate_key(host: str, port: int) -> tuple[str, int]:
    return normalize_host(host), int(port)


def refine(existing: DiscoveredCandidate, update: DiscoveredCandidate) -> DiscoveredCandidate:
    """Fill fields of *existing* that are still empty from *update*."""
    changes = {}
    for f in fields(existing):
        if getattr(existing, f.name) in (None, "") and getattr(update, f.name) not in (None, ""):
            changes[f.name] = getattr(update, f.name)
    return replace(existing, **changes) if changes else existing


def merge_candidates(
    existing: Iterable[DiscoveredCandidate],
    incoming: Iterable[DiscoveredCandidate],
) -> list[DiscoveredCandidate]:
    """Additive merge keyed by (normalized host, port).

    Entries already present win over later duplicates, so merging is
    idempotent and the resulting key set does not depend on merge order.
    """
    merged: dict[tuple[str, int], DiscoveredCandidate] = {}
    for cand in list(existing) + list(incoming):
        merged.setdefault(cand.key, cand)
    return list(merged.values())
