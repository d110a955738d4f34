"""Host key trust-on-first-use.

Before a device with ``accept_new_host_key`` is saved, its public host
keys are fetched with ``ssh-keyscan`` and shown to the operator as
OpenSSH-style fingerprints (``SHA256:<base64 without padding>``).
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass

from sshfleet.ssh.client import kill_process

logger = logging.getLogger(__name__)

KEY_TYPES = "rsa,ecdsa,ed25519"

# Extra seconds on top of ssh-keyscan's own -T before we give up on it.
_GRACE_SECONDS = 2.0


@dataclass(frozen=True)
class HostKey:
    key_type: str
    key_base64: str
    fingerprint: str


class HostKeyError(Exception):
    pass


class HostKeyScanFailed(HostKeyError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class NoHostKeysFound(HostKeyError):
    def __init__(self) -> None:
        super().__init__("No host keys discovered.")


def fingerprint(raw: bytes) -> str:
    """SHA-256 fingerprint of raw key bytes, as printed by ``ssh-keygen -l``."""
    digest = hashlib.sha256(raw).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def parse_keyscan_output(text: str) -> list[HostKey]:
    """Parse ``host keytype base64 [comment]`` lines; bad lines are skipped."""
    keys: list[HostKey] = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) < 3:
            continue
        key_type, key_b64 = parts[1], parts[2]
        try:
            raw = base64.b64decode(key_b64, validate=True)
        except (binascii.Error, ValueError):
            logger.debug("Skipping undecodable key line: %s", key_type)
            continue
        keys.append(HostKey(key_type=key_type, key_base64=key_b64, fingerprint=fingerprint(raw)))
    return keys


async def scan_host_keys(
    host: str,
    port: int = 22,
    timeout: float = 5.0,
    keyscan_binary: str = "ssh-keyscan",
) -> list[HostKey]:
    """Fetch and fingerprint the public host keys of *host*.

    Raises:
        HostKeyScanFailed: ssh-keyscan could not run, timed out, or printed
            neither a key nor a banner (the host never answered).
        NoHostKeysFound: the scan finished but produced no usable key.
    """
    argv = [
        keyscan_binary,
        "-T", str(max(1, int(timeout))),
        "-p", str(port),
        "-t", KEY_TYPES,
        host,
    ]
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise HostKeyScanFailed(f"{keyscan_binary}: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(), timeout=timeout + _GRACE_SECONDS
        )
    except asyncio.TimeoutError:
        await kill_process(proc)
        raise HostKeyScanFailed(f"Timed out scanning host keys for {host}:{port}") from None
    except BaseException:
        await kill_process(proc)
        raise

    out = (stdout or b"").decode("utf-8", errors="replace")
    err = (stderr or b"").decode("utf-8", errors="replace")

    if not out.strip():
        # ssh-keyscan prints "# host:port SSH-2.0-..." banners on stderr for
        # hosts it reached; no banner means the server never answered.
        lines = [l for l in err.splitlines() if l.strip()]
        reached = any(l.startswith("#") for l in lines)
        problems = [l for l in lines if not l.startswith("#")]
        if not reached:
            reason = (
                "\n".join(problems).strip()
                or f"No response from {host}:{port} (ssh-keyscan exited with {proc.returncode})"
            )
            raise HostKeyScanFailed(reason)
        for line in problems:
            logger.warning("ssh-keyscan %s:%d: %s", host, port, line)

    keys = parse_keyscan_output(out)
    if not keys:
        raise NoHostKeysFound()
    logger.info("Scanned %d host key(s) from %s:%d", len(keys), host, port)
    return keys
