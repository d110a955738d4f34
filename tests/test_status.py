"""Tests for StatusPoller: single-flight passes, store writes, published updates."""

from __future__ import annotations

import asyncio

from sshfleet.devices import DeviceStatus
from sshfleet.status import StatusPoller, StatusUpdate


def _probe_up(*up_hosts):
    async def _probe(host, port, timeout):
        return DeviceStatus.REACHABLE if host in up_hosts else DeviceStatus.UNREACHABLE
    return _probe


class TestPollerLifecycle:
    def test_initial_state(self, store):
        poller = StatusPoller(store, interval=30)
        assert poller.running is False
        assert poller.refreshing is False
        assert poller.passes == 0

    async def test_start_stop(self, store):
        poller = StatusPoller(store, interval=60, probe_fn=_probe_up())
        await poller.start()
        assert poller.running is True
        await poller.start()  # second start is a no-op
        await poller.stop()
        assert poller.running is False

    async def test_stop_is_idempotent(self, store):
        poller = StatusPoller(store)
        await poller.stop()
        assert poller.running is False

    async def test_loop_polls_periodically(self, store, make_device):
        store.upsert(make_device())
        poller = StatusPoller(store, interval=0.01, probe_fn=_probe_up())
        await poller.start()
        await asyncio.sleep(0.1)
        await poller.stop()
        assert poller.passes >= 2


class TestRefresh:
    async def test_writes_store_and_publishes(self, store, make_device):
        up = make_device("up", "10.0.0.1")
        down = make_device("down", "10.0.0.2")
        store.upsert(up)
        store.upsert(down)
        poller = StatusPoller(store, probe_fn=_probe_up("10.0.0.1"))

        assert await poller.refresh() is True
        assert store.get(up.id).status is DeviceStatus.REACHABLE
        assert store.get(down.id).status is DeviceStatus.UNREACHABLE

        updates = [poller.updates.get_nowait() for _ in range(2)]
        assert poller.updates.empty()
        assert StatusUpdate(up.id, DeviceStatus.REACHABLE) in updates
        assert StatusUpdate(down.id, DeviceStatus.UNREACHABLE) in updates

    async def test_empty_registry(self, store):
        poller = StatusPoller(store, probe_fn=_probe_up())
        assert await poller.refresh() is True
        assert poller.updates.empty()

    async def test_single_flight(self, store, make_device):
        store.upsert(make_device())
        release = asyncio.Event()
        calls = 0

        async def _slow_probe(host, port, timeout):
            nonlocal calls
            calls += 1
            await release.wait()
            return DeviceStatus.REACHABLE

        poller = StatusPoller(store, probe_fn=_slow_probe)
        first = asyncio.create_task(poller.refresh())
        while not poller.refreshing:
            await asyncio.sleep(0)

        assert await poller.refresh() is False
        release.set()
        assert await first is True
        assert calls == 1
        assert poller.passes == 1
        assert poller.refreshing is False

    async def test_probe_exception_counts_as_unreachable(self, store, make_device):
        device = make_device()
        store.upsert(device)

        async def _broken(host, port, timeout):
            raise RuntimeError("boom")

        poller = StatusPoller(store, probe_fn=_broken)
        await poller.refresh()
        assert store.get(device.id).status is DeviceStatus.UNREACHABLE

    async def test_uses_device_port_and_timeout(self, store, make_device):
        store.upsert(make_device(port=2222))
        seen = []

        async def _probe(host, port, timeout):
            seen.append((port, timeout))
            return DeviceStatus.REACHABLE

        poller = StatusPoller(store, timeout=1.5, probe_fn=_probe)
        await poller.refresh()
        assert seen == [(2222, 1.5)]


class TestUpdatesQueue:
    async def test_undrained_updates_are_bounded(self, store, make_device):
        devices = [make_device(f"d{i}", f"10.0.0.{i}") for i in range(3)]
        for device in devices:
            store.upsert(device)
        poller = StatusPoller(store, probe_fn=_probe_up(), max_updates=10)

        for _ in range(100):
            await poller.refresh()

        assert poller.updates.qsize() == 10
        assert poller.passes == 100

    async def test_oldest_updates_are_dropped(self, store, make_device):
        device = make_device(host="10.0.0.1")
        store.upsert(device)
        up = {"value": False}

        async def _flapping(host, port, timeout):
            return DeviceStatus.REACHABLE if up["value"] else DeviceStatus.UNREACHABLE

        poller = StatusPoller(store, probe_fn=_flapping, max_updates=2)
        await poller.refresh()
        await poller.refresh()
        up["value"] = True
        await poller.refresh()

        kept = [poller.updates.get_nowait().status for _ in range(poller.updates.qsize())]
        assert kept == [DeviceStatus.UNREACHABLE, DeviceStatus.REACHABLE]
