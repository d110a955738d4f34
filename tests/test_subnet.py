"""Tests for local /24 enumeration and the subnet scanner."""

from __future__ import annotations

import asyncio
import socket
from types import SimpleNamespace

from sshfleet.devices import DeviceStatus
from sshfleet.discovery import subnet
from sshfleet.discovery.models import DiscoverySource
from sshfleet.discovery.subnet import SubnetScanner, addresses_in_24, primary_ipv4


def _inet(address):
    return SimpleNamespace(family=socket.AF_INET, address=address)


def _inet6(address):
    return SimpleNamespace(family=socket.AF_INET6, address=address)


class TestAddresses:
    def test_other_hosts_of_the_24(self):
        hosts = addresses_in_24("192.168.1.10")
        assert len(hosts) == 253
        assert "192.168.1.10" not in hosts
        assert hosts[0] == "192.168.1.1"
        assert hosts[-1] == "192.168.1.254"
        assert "192.168.1.0" not in hosts
        assert "192.168.1.255" not in hosts

    def test_invalid_address(self):
        assert addresses_in_24("not-an-ip") == []
        assert addresses_in_24("") == []


class TestPrimaryIPv4:
    def test_prefers_ethernet(self, monkeypatch):
        monkeypatch.setattr(subnet.psutil, "net_if_addrs", lambda: {
            "lo": [_inet("127.0.0.1")],
            "docker0": [_inet("172.17.0.1")],
            "eth0": [_inet6("fe80::1"), _inet("192.168.1.20")],
        })
        assert primary_ipv4() == "192.168.1.20"

    def test_falls_back_to_first_usable(self, monkeypatch):
        monkeypatch.setattr(subnet.psutil, "net_if_addrs", lambda: {
            "lo": [_inet("127.0.0.1")],
            "wlp2s0": [_inet("169.254.3.4")],
            "docker0": [_inet("172.17.0.1")],
        })
        assert primary_ipv4() == "172.17.0.1"

    def test_none_when_only_loopback(self, monkeypatch):
        monkeypatch.setattr(subnet.psutil, "net_if_addrs", lambda: {"lo": [_inet("127.0.0.1")]})
        assert primary_ipv4() is None


def _fake_probe(reachable):
    async def _probe(host, port, timeout):
        await asyncio.sleep(0)
        return DeviceStatus.REACHABLE if host in reachable else DeviceStatus.UNREACHABLE
    return _probe


class TestSubnetScanner:
    async def test_returns_reachable_sorted(self):
        reachable = {"10.0.0.20", "10.0.0.3", "10.0.0.100"}
        scanner = SubnetScanner(probe_fn=_fake_probe(reachable), local_ip="10.0.0.5")
        found = await scanner.scan(timeout=0.1)
        assert [c.host for c in found] == ["10.0.0.100", "10.0.0.20", "10.0.0.3"]
        for cand in found:
            assert cand.name == cand.host == cand.ip
            assert cand.port == 22
            assert cand.source is DiscoverySource.SUBNET_SCAN
            assert cand.latency_ms is not None and cand.latency_ms >= 0

    async def test_excludes_own_address(self):
        probed = []

        async def _probe(host, port, timeout):
            probed.append(host)
            return DeviceStatus.REACHABLE

        scanner = SubnetScanner(probe_fn=_probe, local_ip="10.0.0.5")
        found = await scanner.scan()
        assert "10.0.0.5" not in probed
        assert len(found) == 253

    async def test_limit(self):
        scanner = SubnetScanner(probe_fn=_fake_probe({"10.0.0.1", "10.0.0.9"}), local_ip="10.0.0.5")
        assert scanner.candidates(limit=5) == [
            "10.0.0.1", "10.0.0.2", "10.0.0.3", "10.0.0.4", "10.0.0.6",
        ]
        found = await scanner.scan(limit=5)
        assert [c.host for c in found] == ["10.0.0.1"]

    async def test_concurrency_cap(self):
        active = 0
        peak = 0

        async def _probe(host, port, timeout):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.001)
            active -= 1
            return DeviceStatus.UNREACHABLE

        scanner = SubnetScanner(probe_fn=_probe, local_ip="10.0.0.5", max_concurrency=4)
        assert await scanner.scan(limit=40) == []
        assert peak <= 4

    async def test_no_local_address(self, monkeypatch):
        monkeypatch.setattr(subnet, "primary_ipv4", lambda: None)
        scanner = SubnetScanner(probe_fn=_fake_probe(set()))
        assert await scanner.scan() == []

    async def test_custom_port(self):
        seen_ports = set()

        async def _probe(host, port, timeout):
            seen_ports.add(port)
            return DeviceStatus.REACHABLE if host == "10.0.0.7" else DeviceStatus.UNREACHABLE

        scanner = SubnetScanner(port=2222, probe_fn=_probe, local_ip="10.0.0.5")
        found = await scanner.scan(limit=10)
        assert seen_ports == {2222}
        assert found[0].port == 2222
