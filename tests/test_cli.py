"""Tests for the sshfleet command line."""

from __future__ import annotations

import pytest

from sshfleet.__main__ import build_parser, main


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("SSHFLEET_DATA_DIR", str(tmp_path))
    return tmp_path


class TestParser:
    def test_exec_keeps_remote_words(self):
        args = build_parser().parse_args(["exec", "abc", "--", "ls", "-la", "/tmp"])
        assert args.device_id == "abc"
        assert args.remote_command == ["--", "ls", "-la", "/tmp"]

    def test_add_options(self):
        args = build_parser().parse_args(
            ["add", "pi", "pi.local", "-u", "pi", "-p", "2222", "--accept-new-host-key"]
        )
        assert args.port == 2222
        assert args.accept_new_host_key is True
        assert args.password_auth is False

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestMain:
    def test_list_empty(self, data_dir, capsys):
        assert main(["list"]) == 0
        assert "No devices registered." in capsys.readouterr().out
        assert (data_dir / "sshfleet.db").exists()

    def test_add_then_list(self, data_dir, capsys):
        assert main(["add", "Pi", "192.168.1.50", "-u", "pi"]) == 0
        assert main(["list"]) == 0
        out = capsys.readouterr().out
        assert "Added Pi" in out
        assert "pi@192.168.1.50:22" in out
        assert "Unknown" in out

    def test_remove_missing(self, data_dir, capsys):
        assert main(["remove", "nope"]) == 1
        assert "Device not found: nope" in capsys.readouterr().err

    def test_data_dir_option_reads_its_config(self, tmp_path, monkeypatch, capsys):
        monkeypatch.delenv("SSHFLEET_DATA_DIR", raising=False)
        (tmp_path / "config.json").write_text('{"scan_limit": 3}')
        seen = {}

        async def _dispatch(args, config):
            seen["config"] = config
            return 0

        monkeypatch.setattr("sshfleet.__main__._dispatch", _dispatch)
        assert main(["--data-dir", str(tmp_path), "list"]) == 0
        assert seen["config"].scan_limit == 3
        assert seen["config"].data_dir == str(tmp_path)
