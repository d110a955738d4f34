"""Sudo password escalation.

When a shutdown/restart fails because sudo wanted a password, the failure
is parked as an :class:`EscalationRequest` until the operator supplies one.
The action is then retried once with that password.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable

from sshfleet.ssh.client import CommandResult, DeviceAction, ExecutionFailure

if TYPE_CHECKING:
    from sshfleet.devices import Device, DeviceStore

logger = logging.getLogger(__name__)

# (device, action, sudo_password) -> result
ActionRunner = Callable[["Device", DeviceAction, str], Awaitable[CommandResult]]


def needs_sudo_password(output: str) -> bool:
    """Whether command output looks like sudo refusing for lack of a password.

    String matching only; localized or customised sudo prompts slip through.
    """
    text = output.lower()
    return "sudo" in text and ("password" in text or "a password is required" in text)


class EscalationState(str, Enum):
    IDLE = "idle"
    AWAITING_CREDENTIAL = "awaiting_credential"
    RETRYING = "retrying"


@dataclass
class EscalationRequest:
    device: Device
    action: DeviceAction
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)


class SudoEscalation:
    """Holds at most one pending request; the newest failure wins."""

    def __init__(self, store: DeviceStore, runner: ActionRunner) -> None:
        self._store = store
        self._runner = runner
        self._pending: EscalationRequest | None = None
        self._state = EscalationState.IDLE

    @property
    def state(self) -> EscalationState:
        return self._state

    @property
    def pending(self) -> EscalationRequest | None:
        return self._pending

    def record_failure(
        self,
        device: Device,
        action: DeviceAction | str,
        failure: ExecutionFailure | str,
    ) -> EscalationRequest | None:
        """Park *failure* as a request if it carries the sudo signature."""
        text = failure if isinstance(failure, str) else f"{failure} {failure.output}"
        if not needs_sudo_password(text):
            return None
        if self._pending is not None:
            logger.info("Replacing unresolved sudo request for %s", self._pending.device.name)
        self._pending = EscalationRequest(device=device, action=DeviceAction(action))
        if self._state is not EscalationState.RETRYING:
            self._state = EscalationState.AWAITING_CREDENTIAL
        logger.info("Sudo password required for %s on %s", self._pending.action.value, device.name)
        return self._pending

    def dismiss(self) -> None:
        self._pending = None
        if self._state is EscalationState.AWAITING_CREDENTIAL:
            self._state = EscalationState.IDLE

    async def submit(self, password: str, remember: bool = False) -> CommandResult | None:
        """Retry the pending action with *password*.

        With *remember*, the password is written to the device record first;
        the device's auth mode is left as it is.  A failed retry is logged and
        re-raised, never parked as a new request.
        """
        request = self._pending
        if request is None:
            logger.warning("Sudo password submitted with no pending request")
            return None
        self._pending = None
        self._state = EscalationState.RETRYING

        device = request.device
        if remember:
            device = replace(device, password=password)
            self._store.upsert(device)

        try:
            return await self._runner(device, request.action, password)
        except ExecutionFailure as exc:
            logger.error("Sudo retry of %s failed for %s: %s", request.action.value, device.name, exc)
            raise
        finally:
            self._state = (
                EscalationState.AWAITING_CREDENTIAL if self._pending else EscalationState.IDLE
            )
