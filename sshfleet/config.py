"""Configuration for sshfleet.

Values come from three layers, later ones winning:
  1. dataclass defaults
  2. a JSON file (``--config PATH`` or ``$SSHFLEET_DATA_DIR/config.json``)
  3. ``SSHFLEET_<FIELD>`` environment variables
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path

logger = logging.getLogger(__name__)

ENV_PREFIX = "SSHFLEET_"


@dataclass
class FleetConfig:
    """Runtime settings — loaded from config.json plus environment."""

    data_dir: str = "./data"

    # Status polling
    status_interval: float = 15.0
    probe_timeout: float = 2.5

    # Subnet scan
    scan_timeout: float = 0.9
    scan_limit: int | None = None
    scan_concurrency: int | None = None  # None = one task per host

    # Host keys
    keyscan_timeout: float = 5.0
    known_hosts_path: str = "~/.ssh/known_hosts"

    # Command execution
    command_timeout: float = 60.0
    connect_timeout: int = 10
    password_backend: str = "scripted"  # scripted | native

    # External tools
    ssh_binary: str = "ssh"
    keyscan_binary: str = "ssh-keyscan"
    expect_binary: str = "expect"

    # mDNS
    mdns_service_type: str = "_ssh._tcp.local."

    @classmethod
    def load(cls, path: str | Path) -> FleetConfig:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {k for k in cls.__dataclass_fields__}
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    @classmethod
    def from_env(
        cls,
        path: str | Path | None = None,
        data_dir: str | Path | None = None,
    ) -> FleetConfig:
        """Load *path* (or the data-dir default) and apply env overrides.

        An explicit *data_dir* wins over ``SSHFLEET_DATA_DIR``, both for
        locating config.json and in the returned config.
        """
        search_dir = data_dir
        if search_dir is None:
            search_dir = os.environ.get(f"{ENV_PREFIX}DATA_DIR", cls.data_dir)
        if path is None:
            path = Path(search_dir) / "config.json"
            config = cls.load(path) if path.exists() else cls()
        else:
            config = cls.load(path)
        config.apply_env()
        if data_dir is not None:
            config.data_dir = str(data_dir)
        return config

    def apply_env(self, environ: dict[str, str] | None = None) -> None:
        """Override fields from ``SSHFLEET_*`` variables."""
        environ = os.environ if environ is None else environ
        for f in fields(self):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                setattr(self, f.name, _coerce(raw, getattr(self, f.name), f.type))
            except ValueError:
                logger.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, f.name.upper(), raw)

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {}
        for k, v in self.__dict__.items():
            data[k] = v
        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / "sshfleet.db"

    @property
    def known_hosts(self) -> Path:
        return Path(self.known_hosts_path).expanduser()


def _coerce(raw: str, current, annotation: str):
    """Convert an env string to the type of the field it overrides."""
    if raw == "" and "None" in str(annotation):
        return None
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, int) or "int" in str(annotation):
        return int(raw)
    return raw
