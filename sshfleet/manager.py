"""Fleet manager.

Orchestrates discovery, host trust, status polling, and administrative
commands for all registered devices.  This is the entry point the CLI uses.
"""

from __future__ import annotations

import logging
from typing import Callable

from sshfleet.config import FleetConfig
from sshfleet.devices import Device, DeviceStore
from sshfleet.discovery.aggregator import DiscoveryAggregator
from sshfleet.discovery.mdns import ZeroconfAdvertisementSource
from sshfleet.discovery.models import DiscoveredCandidate, candidate_key
from sshfleet.discovery.subnet import SubnetScanner
from sshfleet.ssh import client as ssh_client
from sshfleet.ssh.client import CommandFailed, CommandResult, DeviceAction
from sshfleet.ssh.escalation import EscalationRequest, SudoEscalation
from sshfleet.ssh.hostkeys import HostKey, scan_host_keys
from sshfleet.status import StatusPoller

logger = logging.getLogger(__name__)


class FleetError(Exception):
    pass


class DeviceNotFound(FleetError):
    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device not found: {device_id}")
        self.device_id = device_id


class DeviceBusy(FleetError):
    def __init__(self, device: Device) -> None:
        super().__init__(f"A command is already running on {device.name}")
        self.device = device


class HostKeyRejected(FleetError):
    def __init__(self, device: Device) -> None:
        super().__init__(f"Host keys for {device.host}:{device.port} were not accepted")
        self.device = device


class SudoPasswordRequired(FleetError):
    """The action needs a sudo password; answer via ``submit_sudo_password``."""

    def __init__(self, request: EscalationRequest, failure: CommandFailed) -> None:
        super().__init__(
            f"sudo needs a password to {request.action.value} {request.device.name}"
        )
        self.request = request
        self.failure = failure


class FleetManager:
    """Central manager for all device operations."""

    def __init__(
        self,
        store: DeviceStore,
        config: FleetConfig | None = None,
        discovery: DiscoveryAggregator | None = None,
    ) -> None:
        self.config = config or FleetConfig()
        self.store = store
        self.poller = StatusPoller(
            store,
            interval=self.config.status_interval,
            timeout=self.config.probe_timeout,
        )
        self.discovery = discovery or DiscoveryAggregator(
            scanner=SubnetScanner(max_concurrency=self.config.scan_concurrency),
            source=ZeroconfAdvertisementSource(self.config.mdns_service_type),
            scan_timeout=self.config.scan_timeout,
            scan_limit=self.config.scan_limit,
        )
        self.escalation = SudoEscalation(store, self._retry_action)
        self._busy: set[str] = set()

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Start background status polling."""
        await self.poller.start()
        logger.info("FleetManager started")

    async def stop(self) -> None:
        await self.poller.stop()
        await self.discovery.stop()
        logger.info("FleetManager stopped")

    # ── Discovery ──────────────────────────────────────────────────

    async def start_discovery(self) -> None:
        await self.discovery.start()

    async def stop_discovery(self) -> None:
        await self.discovery.stop()

    def rescan(self) -> bool:
        return self.discovery.rescan(force=True)

    def discovered(self) -> list[DiscoveredCandidate]:
        """Discovered hosts not already registered as devices."""
        known = {candidate_key(d.host, d.port) for d in self.store.list_all()}
        return [c for c in self.discovery.candidates() if c.key not in known]

    # ── Devices ────────────────────────────────────────────────────

    def list_devices(self) -> list[Device]:
        return self.store.list_all()

    def get_device(self, device_id: str) -> Device:
        device = self.store.get(device_id)
        if device is None:
            raise DeviceNotFound(device_id)
        return device

    async def verify_host_keys(self, device: Device) -> list[HostKey]:
        """Scan *device*'s host keys for operator review."""
        return await scan_host_keys(
            device.host,
            device.port,
            timeout=self.config.keyscan_timeout,
            keyscan_binary=self.config.keyscan_binary,
        )

    async def add_device(
        self,
        device: Device,
        confirm: Callable[[list[HostKey]], bool] | None = None,
    ) -> Device:
        """Register *device*, gated on host key approval for trust-on-first-use.

        With ``accept_new_host_key`` set, the host keys are scanned and
        *confirm* must approve them; scan errors propagate and nothing is
        saved.
        """
        if device.accept_new_host_key:
            keys = await self.verify_host_keys(device)
            if confirm is None or not confirm(keys):
                raise HostKeyRejected(device)
        self.store.upsert(device)
        logger.info("Added device %s (%s:%d)", device.name, device.host, device.port)
        return device

    def update_device(self, device: Device) -> Device:
        self.get_device(device.id)
        self.store.upsert(device)
        return device

    def remove_device(self, device_id: str) -> None:
        if not self.store.delete(device_id):
            raise DeviceNotFound(device_id)
        logger.info("Removed device %s", device_id)

    async def refresh_status(self) -> bool:
        """Manual status refresh; ``False`` if a pass was already running."""
        return await self.poller.refresh()

    # ── Commands ───────────────────────────────────────────────────

    async def execute(self, device: Device, command: str) -> CommandResult:
        """Run an arbitrary command on *device*."""
        with self._claim(device):
            return await ssh_client.execute(device.to_target(), command, **self._exec_options())

    async def shutdown(self, device: Device) -> CommandResult:
        return await self.perform(device, DeviceAction.SHUTDOWN)

    async def restart(self, device: Device) -> CommandResult:
        return await self.perform(device, DeviceAction.RESTART)

    async def perform(self, device: Device, action: DeviceAction | str) -> CommandResult:
        """Run *action*; a sudo password failure raises :class:`SudoPasswordRequired`."""
        action = DeviceAction(action)
        try:
            return await self._run_action(device, action, device.password)
        except CommandFailed as exc:
            request = self.escalation.record_failure(device, action, exc)
            if request is not None:
                raise SudoPasswordRequired(request, exc) from exc
            raise

    async def submit_sudo_password(self, password: str, remember: bool = False) -> CommandResult | None:
        return await self.escalation.submit(password, remember)

    async def _retry_action(self, device: Device, action: DeviceAction, password: str) -> CommandResult:
        current = self.store.get(device.id) or device
        return await self._run_action(current, action, password)

    async def _run_action(
        self,
        device: Device,
        action: DeviceAction,
        sudo_password: str | None,
    ) -> CommandResult:
        with self._claim(device):
            return await ssh_client.run_action(
                device.to_target(),
                action,
                sudo_password=sudo_password,
                **self._exec_options(),
            )

    def _exec_options(self) -> dict:
        return {
            "password_backend": self.config.password_backend,
            "timeout": self.config.command_timeout,
            "config": self.config,
        }

    def _claim(self, device: Device) -> _DeviceClaim:
        return _DeviceClaim(self._busy, device)


class _DeviceClaim:
    """Marks a device busy for the duration of one command."""

    def __init__(self, busy: set[str], device: Device) -> None:
        self._busy = busy
        self._device = device

    def __enter__(self) -> None:
        if self._device.id in self._busy:
            raise DeviceBusy(self._device)
        self._busy.add(self._device.id)

    def __exit__(self, *exc) -> None:
        self._busy.discard(self._device.id)
