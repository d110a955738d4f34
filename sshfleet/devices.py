"""Device registry — persists managed SSH hosts to SQLite."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from enum import Enum

from sshfleet.ssh.client import SSHTarget

logger = logging.getLogger(__name__)


class DeviceStatus(str, Enum):
    """Last known reachability of a device."""
    UNKNOWN = "unknown"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"

    @property
    def label(self) -> str:
        return {"unknown": "Unknown", "reachable": "Online", "unreachable": "Offline"}[self.value]


@dataclass
class Device:
    """A managed SSH host.

    ``use_password_auth`` selects the login credential: ``password`` when
    true, ``ssh_key_path`` (or the SSH agent) otherwise.  A password stored
    on a key-auth device is only ever fed to sudo.
    """

    name: str
    host: str
    username: str
    port: int = 22
    password: str | None = None
    use_password_auth: bool = False
    ssh_key_path: str | None = None
    accept_new_host_key: bool = False
    status: DeviceStatus = DeviceStatus.UNKNOWN
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_target(self) -> SSHTarget:
        """Connection parameters with exactly one active login credential."""
        if self.use_password_auth:
            return SSHTarget(
                host=self.host,
                port=self.port,
                username=self.username,
                password=self.password or None,
                accept_new_host_key=self.accept_new_host_key,
            )
        return SSHTarget(
            host=self.host,
            port=self.port,
            username=self.username,
            key_path=self.ssh_key_path or None,
            accept_new_host_key=self.accept_new_host_key,
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Device:
        try:
            status = DeviceStatus(row["status"])
        except ValueError:
            status = DeviceStatus.UNKNOWN
        return cls(
            id=row["id"],
            name=row["name"],
            host=row["host"],
            port=int(row["port"]),
            username=row["username"],
            password=row["password"],
            use_password_auth=bool(row["use_password_auth"]),
            ssh_key_path=row["ssh_key_path"],
            accept_new_host_key=bool(row["accept_new_host_key"]),
            status=status,
        )


class DeviceStore:
    """CRUD wrapper around the ``devices`` table.

    Args:
        conn: An open :class:`sqlite3.Connection` with the schema from
            :func:`sshfleet.db.init_db`.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def list_all(self) -> list[Device]:
        """All devices, sorted case-insensitively by name."""
        rows = self._conn.execute(
            "SELECT * FROM devices ORDER BY name COLLATE NOCASE, id"
        ).fetchall()
        return [Device.from_row(r) for r in rows]

    def get(self, device_id: str) -> Device | None:
        row = self._conn.execute(
            "SELECT * FROM devices WHERE id = ?", (device_id,)
        ).fetchone()
        return Device.from_row(row) if row else None

    def upsert(self, device: Device) -> None:
        """Insert or update *device*; uniqueness key is ``id``."""
        self._conn.execute(
            """
            INSERT INTO devices
                (id, name, host, port, username, password, use_password_auth,
                 ssh_key_path, accept_new_host_key, status, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(id) DO UPDATE SET
                name                = excluded.name,
                host                = excluded.host,
                port                = excluded.port,
                username            = excluded.username,
                password            = excluded.password,
                use_password_auth   = excluded.use_password_auth,
                ssh_key_path        = excluded.ssh_key_path,
                accept_new_host_key = excluded.accept_new_host_key,
                status              = excluded.status,
                updated_at          = CURRENT_TIMESTAMP
            """,
            (
                device.id,
                device.name,
                device.host,
                device.port,
                device.username,
                device.password,
                device.use_password_auth,
                device.ssh_key_path,
                device.accept_new_host_key,
                DeviceStatus(device.status).value,
            ),
        )
        self._conn.commit()
        logger.debug("upsert device id=%s host=%s:%d", device.id, device.host, device.port)

    def delete(self, device_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM devices WHERE id = ?", (device_id,))
        self._conn.commit()
        return cur.rowcount > 0

    def update_status(self, device_id: str, status: DeviceStatus) -> None:
        """Record the latest reachability result for *device_id*."""
        self._conn.execute(
            "UPDATE devices SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (DeviceStatus(status).value, device_id),
        )
        self._conn.commit()
