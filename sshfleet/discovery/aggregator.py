"""Discovery aggregator — one live view over mDNS and subnet-scan results.

All state changes go through a single inbox queue drained by one consumer
task, so the live candidate set has exactly one writer:

  advertisement source ──┐
                         ├─> inbox ─> _consume() ─> live set
  subnet scan task ──────┘

Scan results are tagged with a generation number; ``stop()`` and forced
``rescan()`` advance it, so batches from a superseded scan are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sshfleet.discovery.mdns import (
    FOUND,
    REMOVED,
    RESOLVED,
    AdvertisementEvent,
    AdvertisementSource,
    short_name,
)
from sshfleet.discovery.models import (
    DiscoveredCandidate,
    DiscoverySource,
    candidate_key,
    refine,
)
from sshfleet.discovery.subnet import SubnetScanner

logger = logging.getLogger(__name__)

IDLE = "idle"
SCANNING = "scanning"
LISTENING = "listening"


@dataclass
class _ScanBatch:
    generation: int
    candidates: list[DiscoveredCandidate]


@dataclass
class _ScanFailed:
    generation: int


class DiscoveryAggregator:
    """Merges advertisement events and subnet scans into a live candidate set."""

    def __init__(
        self,
        scanner: SubnetScanner | None = None,
        source: AdvertisementSource | None = None,
        scan_timeout: float = 0.9,
        scan_limit: int | None = None,
    ) -> None:
        self.scanner = scanner or SubnetScanner()
        self.source = source
        self.scan_timeout = scan_timeout
        self.scan_limit = scan_limit

        self._live: dict[tuple[str, int], DiscoveredCandidate] = {}
        self._services: dict[str, tuple[str, int] | None] = {}
        self._inbox: asyncio.Queue | None = None
        self._consumer: asyncio.Task | None = None
        self._scan_task: asyncio.Task | None = None
        self._generation = 0
        self._scanning = False
        self._running = False

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the advertisement listener and a first subnet scan."""
        if self._running:
            return
        self._running = True
        self._inbox = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume())
        if self.source is not None:
            try:
                await self.source.start(self._post)
            except Exception:
                logger.exception("Failed to start advertisement source")
        self._launch_scan()
        logger.info("Discovery started")

    async def stop(self) -> None:
        """Cancel listener and scan, clear the live set."""
        self._running = False
        self._generation += 1
        self._scanning = False
        if self.source is not None:
            try:
                await self.source.stop()
            except Exception:
                logger.exception("Failed to stop advertisement source")
        for task in (self._scan_task, self._consumer):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._scan_task = None
        self._consumer = None
        self._inbox = None
        self._live.clear()
        self._services.clear()
        logger.info("Discovery stopped")

    def rescan(self, force: bool = True) -> bool:
        """Start another subnet scan without clearing known candidates.

        Returns ``False`` when not running, or when a scan is in flight and
        *force* is off.  A forced rescan cancels the in-flight scan; its
        stragglers are ignored.
        """
        if not self._running:
            return False
        if self._scanning and not force:
            return False
        self._launch_scan()
        return True

    # ── Read side ──────────────────────────────────────────────────

    @property
    def state(self) -> str:
        if not self._running:
            return IDLE
        return SCANNING if self._scanning else LISTENING

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    def candidates(self) -> list[DiscoveredCandidate]:
        """Snapshot of the live set in discovery order."""
        return list(self._live.values())

    async def drain(self) -> None:
        """Wait until every event posted so far has been applied."""
        if self._inbox is not None:
            await self._inbox.join()

    # ── Internal ───────────────────────────────────────────────────

    def _post(self, item) -> None:
        if self._inbox is not None:
            self._inbox.put_nowait(item)

    def _launch_scan(self) -> None:
        if self._scan_task is not None and not self._scan_task.done():
            self._scan_task.cancel()
        self._generation += 1
        self._scanning = True
        self._scan_task = asyncio.create_task(self._scan(self._generation))

    async def _scan(self, generation: int) -> None:
        try:
            found = await self.scanner.scan(timeout=self.scan_timeout, limit=self.scan_limit)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Subnet scan failed")
            self._post(_ScanFailed(generation))
            return
        self._post(_ScanBatch(generation, found))

    async def _consume(self) -> None:
        inbox = self._inbox
        while True:
            item = await inbox.get()
            try:
                self._apply(item)
            except Exception:
                logger.exception("Failed to apply discovery event %r", item)
            finally:
                inbox.task_done()

    def _apply(self, item) -> None:
        if isinstance(item, AdvertisementEvent):
            self._apply_advertisement(item)
        elif isinstance(item, _ScanBatch):
            if item.generation != self._generation:
                logger.debug("Dropping stale scan batch (gen %d)", item.generation)
                return
            for cand in item.candidates:
                self._live.setdefault(cand.key, cand)
            self._scanning = False
        elif isinstance(item, _ScanFailed):
            if item.generation == self._generation:
                self._scanning = False

    def _apply_advertisement(self, event: AdvertisementEvent) -> None:
        if event.kind == FOUND:
            self._services.setdefault(event.name, None)
        elif event.kind == RESOLVED and event.host:
            cand = DiscoveredCandidate(
                name=short_name(event.name),
                host=event.host.rstrip("."),
                port=event.port or 22,
                ip=event.addresses[0] if event.addresses else None,
                source=DiscoverySource.ADVERTISEMENT,
            )
            key = cand.key
            previous = self._services.get(event.name)
            if previous is not None and previous != key:
                # the service moved; forget where it used to be
                self._live.pop(previous, None)
            self._services[event.name] = key
            existing = self._live.get(key)
            self._live[key] = refine(existing, cand) if existing else cand
            logger.debug("Advertised SSH host %s:%d", cand.host, cand.port)
        elif event.kind == REMOVED:
            key = self._services.pop(event.name, None)
            if key is None and event.host and event.port:
                key = candidate_key(event.host, event.port)
            if key is not None:
                self._live.pop(key, None)
