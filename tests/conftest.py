"""pytest configuration for sshfleet tests."""

from __future__ import annotations

import pytest

from sshfleet.db import get_db, init_db, set_db_path
from sshfleet.devices import Device, DeviceStore


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture
def db_conn(tmp_path):
    db_path = tmp_path / "sshfleet.db"
    set_db_path(db_path)
    init_db(db_path)
    conn = get_db()
    yield conn
    conn.close()


@pytest.fixture
def store(db_conn):
    return DeviceStore(db_conn)


@pytest.fixture
def make_device():
    def _make(name="pi", host="192.168.1.50", **kwargs):
        kwargs.setdefault("username", "pi")
        return Device(name=name, host=host, **kwargs)
    return _make
