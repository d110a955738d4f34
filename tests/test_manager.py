"""Tests for FleetManager: host trust gate, sudo escalation, busy guard."""

from __future__ import annotations

import asyncio

import pytest

from sshfleet.config import FleetConfig
from sshfleet.discovery.aggregator import DiscoveryAggregator
from sshfleet.discovery.models import DiscoveredCandidate
from sshfleet.manager import (
    DeviceBusy,
    DeviceNotFound,
    FleetManager,
    HostKeyRejected,
    SudoPasswordRequired,
)
from sshfleet.ssh.client import CommandFailed, CommandResult, DeviceAction
from sshfleet.ssh.escalation import EscalationState
from sshfleet.ssh.hostkeys import HostKey, HostKeyScanFailed

KEYS = [HostKey("ssh-ed25519", "AAAA", "SHA256:abc")]


class StaticScanner:
    def __init__(self, found):
        self.found = found

    async def scan(self, timeout=0.9, limit=None):
        return list(self.found)


@pytest.fixture
def manager(store):
    discovery = DiscoveryAggregator(scanner=StaticScanner([]))
    return FleetManager(store, FleetConfig(), discovery=discovery)


@pytest.fixture
def fake_keyscan(monkeypatch):
    calls = []

    async def _scan(host, port=22, timeout=5.0, keyscan_binary="ssh-keyscan"):
        calls.append((host, port))
        return KEYS

    monkeypatch.setattr("sshfleet.manager.scan_host_keys", _scan)
    return calls


@pytest.fixture
def sudo_host(monkeypatch):
    """A remote whose sudo needs a password unless one is piped in."""
    calls = []

    async def _run_action(target, action, *, sudo_password=None, **kwargs):
        calls.append((target, DeviceAction(action), sudo_password))
        if not sudo_password:
            raise CommandFailed(1, "sudo: a password is required")
        return CommandResult(output="", exit_code=0, backend="batch")

    monkeypatch.setattr("sshfleet.ssh.client.run_action", _run_action)
    return calls


class TestAddDevice:
    async def test_plain_add_skips_key_scan(self, manager, store, make_device, fake_keyscan):
        device = await manager.add_device(make_device())
        assert store.get(device.id) is not None
        assert fake_keyscan == []

    async def test_accept_new_requires_confirmation(self, manager, store, make_device, fake_keyscan):
        device = make_device(accept_new_host_key=True, port=2222)
        seen = []

        def confirm(keys):
            seen.extend(keys)
            return True

        await manager.add_device(device, confirm=confirm)
        assert seen == KEYS
        assert fake_keyscan == [("192.168.1.50", 2222)]
        assert store.get(device.id) is not None

    async def test_rejected_keys_save_nothing(self, manager, store, make_device, fake_keyscan):
        device = make_device(accept_new_host_key=True)
        with pytest.raises(HostKeyRejected):
            await manager.add_device(device, confirm=lambda keys: False)
        with pytest.raises(HostKeyRejected):
            await manager.add_device(device)
        assert store.list_all() == []

    async def test_scan_error_saves_nothing(self, manager, store, make_device, monkeypatch):
        async def _fail(host, port=22, timeout=5.0, keyscan_binary="ssh-keyscan"):
            raise HostKeyScanFailed("Timed out scanning host keys")

        monkeypatch.setattr("sshfleet.manager.scan_host_keys", _fail)
        with pytest.raises(HostKeyScanFailed):
            await manager.add_device(make_device(accept_new_host_key=True), confirm=lambda k: True)
        assert store.list_all() == []


class TestDeviceCrud:
    def test_get_missing(self, manager):
        with pytest.raises(DeviceNotFound):
            manager.get_device("nope")

    def test_remove(self, manager, store, make_device):
        device = make_device()
        store.upsert(device)
        manager.remove_device(device.id)
        assert manager.list_devices() == []
        with pytest.raises(DeviceNotFound):
            manager.remove_device(device.id)

    def test_update_requires_existing(self, manager, make_device):
        with pytest.raises(DeviceNotFound):
            manager.update_device(make_device())


class TestSudoFlow:
    async def test_restart_then_supply_password(self, manager, store, make_device, sudo_host):
        device = make_device(ssh_key_path="/k")
        store.upsert(device)

        with pytest.raises(SudoPasswordRequired) as excinfo:
            await manager.restart(device)
        assert excinfo.value.request.action is DeviceAction.RESTART
        assert manager.escalation.state is EscalationState.AWAITING_CREDENTIAL

        result = await manager.submit_sudo_password("hunter2", remember=True)
        assert result.exit_code == 0
        assert sudo_host[-1][2] == "hunter2"
        assert sudo_host[-1][1] is DeviceAction.RESTART
        assert store.get(device.id).password == "hunter2"
        assert manager.escalation.state is EscalationState.IDLE

        # the remembered password is used from now on
        await manager.shutdown(store.get(device.id))
        assert sudo_host[-1][2] == "hunter2"

    async def test_other_failures_propagate(self, manager, make_device, monkeypatch):
        async def _refused(target, action, *, sudo_password=None, **kwargs):
            raise CommandFailed(255, "ssh: connect to host 10.0.0.1 port 22: Connection refused")

        monkeypatch.setattr("sshfleet.ssh.client.run_action", _refused)
        with pytest.raises(CommandFailed) as excinfo:
            await manager.shutdown(make_device())
        assert not isinstance(excinfo.value, SudoPasswordRequired)
        assert manager.escalation.pending is None

    async def test_device_busy(self, manager, make_device, monkeypatch):
        release = asyncio.Event()

        async def _slow(target, action, *, sudo_password=None, **kwargs):
            await release.wait()
            return CommandResult(backend="batch")

        monkeypatch.setattr("sshfleet.ssh.client.run_action", _slow)
        device = make_device()
        first = asyncio.create_task(manager.restart(device))
        await asyncio.sleep(0)
        with pytest.raises(DeviceBusy):
            await manager.execute(device, "uptime")
        release.set()
        await first
        # released after completion
        await manager.restart(device)


class TestDiscovered:
    async def test_registered_hosts_are_hidden(self, store, make_device):
        scanner = StaticScanner([
            DiscoveredCandidate(name="a", host="192.168.1.5"),
            DiscoveredCandidate(name="b", host="192.168.1.6"),
        ])
        manager = FleetManager(store, FleetConfig(), discovery=DiscoveryAggregator(scanner=scanner))
        store.upsert(make_device(host="192.168.1.5"))

        await manager.start_discovery()
        for _ in range(100):
            if not manager.discovery.is_scanning:
                break
            await asyncio.sleep(0.01)
        await manager.discovery.drain()

        assert [c.host for c in manager.discovered()] == ["192.168.1.6"]
        assert manager.rescan() is True
        await manager.stop()
