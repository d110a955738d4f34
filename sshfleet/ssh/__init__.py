"""sshfleet.ssh — remote command execution and host trust.

Exports:
    SSHTarget, CommandResult, DeviceAction  — execution inputs/outputs
    execute, run_action, shutdown, restart  — backend-selecting entry points
    ExecutionFailure and subclasses         — execution errors
    HostKey, scan_host_keys, fingerprint    — trust-on-first-use
"""

from __future__ import annotations

from sshfleet.ssh.client import (
    AuthenticationFailed,
    Backend,
    CommandFailed,
    CommandResult,
    CommandTimeout,
    DeviceAction,
    ExecutionFailure,
    LaunchFailed,
    SSHTarget,
    execute,
    restart,
    run_action,
    select_backend,
    shutdown,
)
from sshfleet.ssh.hostkeys import (
    HostKey,
    HostKeyError,
    HostKeyScanFailed,
    NoHostKeysFound,
    fingerprint,
    scan_host_keys,
)

__all__ = [
    "AuthenticationFailed",
    "Backend",
    "CommandFailed",
    "CommandResult",
    "CommandTimeout",
    "DeviceAction",
    "ExecutionFailure",
    "LaunchFailed",
    "SSHTarget",
    "execute",
    "restart",
    "run_action",
    "select_backend",
    "shutdown",
    "HostKey",
    "HostKeyError",
    "HostKeyScanFailed",
    "NoHostKeysFound",
    "fingerprint",
    "scan_host_keys",
]
