"""sshfleet.discovery — finding SSH hosts on the local network.

Exports:
    probe                — single TCP reachability check
    SubnetScanner        — concurrent probe of the local /24
    DiscoveryAggregator  — live merge of subnet scans and mDNS announcements
    DiscoveredCandidate  — an SSH endpoint found by either method
"""

from __future__ import annotations

from sshfleet.discovery.aggregator import DiscoveryAggregator
from sshfleet.discovery.models import (
    DiscoveredCandidate,
    DiscoverySource,
    merge_candidates,
    normalize_host,
)
from sshfleet.discovery.probe import probe
from sshfleet.discovery.subnet import SubnetScanner, addresses_in_24, primary_ipv4

__all__ = [
    "DiscoveryAggregator",
    "DiscoveredCandidate",
    "DiscoverySource",
    "SubnetScanner",
    "addresses_in_24",
    "merge_candidates",
    "normalize_host",
    "primary_ipv4",
    "probe",
]
