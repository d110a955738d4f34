"""Status poller — periodic reachability checks for every registered device."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from sshfleet.devices import Device, DeviceStatus, DeviceStore
from sshfleet.discovery.probe import probe

logger = logging.getLogger(__name__)


@dataclass
class StatusUpdate:
    device_id: str
    status: DeviceStatus


class StatusPoller:
    """Probes all devices every *interval* seconds and on demand.

    Only one pass runs at a time: a refresh requested while a pass is in
    flight (timer or manual) is skipped, not queued.  Results are written
    to the store and published on :attr:`updates`, which holds at most
    *max_updates* entries; when nobody drains it the oldest are dropped.
    """

    def __init__(
        self,
        store: DeviceStore,
        interval: float = 15.0,
        timeout: float = 2.5,
        probe_fn: Callable[[str, int, float], Awaitable[DeviceStatus]] = probe,
        max_updates: int = 256,
    ) -> None:
        self.store = store
        self.interval = interval
        self.timeout = timeout
        self._probe = probe_fn
        self.updates: asyncio.Queue[StatusUpdate] = asyncio.Queue(maxsize=max_updates)
        self._task: asyncio.Task | None = None
        self._in_flight = False
        self._passes = 0

    async def start(self) -> None:
        """Start the background polling loop."""
        if self._task is not None:
            logger.warning("Status poller is already running")
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Status poller started (interval=%gs)", self.interval)

    async def stop(self) -> None:
        """Stop the background polling loop."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Status poller stopped")

    @property
    def running(self) -> bool:
        return self._task is not None

    @property
    def refreshing(self) -> bool:
        return self._in_flight

    @property
    def passes(self) -> int:
        """Number of completed polling passes."""
        return self._passes

    async def refresh(self) -> bool:
        """Run one polling pass unless one is already running.

        Returns ``True`` if this call ran the pass.
        """
        # check-and-set with no await in between: atomic on the event loop
        if self._in_flight:
            logger.debug("Status refresh already in progress — skipped")
            return False
        self._in_flight = True
        try:
            await self._run_pass()
        finally:
            self._in_flight = False
        self._passes += 1
        return True

    async def _loop(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception:
                logger.exception("Status refresh failed")
            await asyncio.sleep(self.interval)

    async def _run_pass(self) -> None:
        devices = self.store.list_all()
        if not devices:
            return
        statuses = await asyncio.gather(*(self._check(d) for d in devices))
        for device, status in zip(devices, statuses):
            try:
                self.store.update_status(device.id, status)
            except Exception as exc:
                logger.warning("Failed to record status for %s: %s", device.name, exc)
                continue
            self._publish(StatusUpdate(device.id, status))
        reachable = sum(1 for s in statuses if s is DeviceStatus.REACHABLE)
        logger.info("Status pass: %d/%d device(s) reachable", reachable, len(devices))

    def _publish(self, update: StatusUpdate) -> None:
        if self.updates.full():
            self.updates.get_nowait()
        self.updates.put_nowait(update)

    async def _check(self, device: Device) -> DeviceStatus:
        try:
            return await self._probe(device.host, device.port, self.timeout)
        except Exception as exc:
            logger.debug("Probe of %s raised %s", device.name, exc)
            return DeviceStatus.UNREACHABLE
