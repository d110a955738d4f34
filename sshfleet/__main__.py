"""sshfleet command-line entry point.

Usage::

    python -m sshfleet discover [--duration S] [--no-mdns] [--limit N]
    python -m sshfleet keyscan HOST [-p PORT]
    python -m sshfleet add NAME HOST -u USER [--password-auth] [--key PATH] [--accept-new-host-key]
    python -m sshfleet list | status [--watch] | remove ID
    python -m sshfleet exec ID CMD... | shutdown ID | restart ID | connect ID
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import os
import sys

from sshfleet import __version__
from sshfleet.config import FleetConfig
from sshfleet.db import get_db, init_db, set_db_path
from sshfleet.devices import Device, DeviceStore
from sshfleet.discovery.aggregator import DiscoveryAggregator
from sshfleet.discovery.mdns import ZeroconfAdvertisementSource
from sshfleet.discovery.subnet import SubnetScanner
from sshfleet.manager import FleetError, FleetManager, SudoPasswordRequired
from sshfleet.ssh.client import ExecutionFailure, build_interactive_args
from sshfleet.ssh.hostkeys import HostKey, HostKeyError, scan_host_keys


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sshfleet",
        description="Discover, monitor, and administer SSH hosts",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", metavar="PATH", help="JSON config file")
    parser.add_argument(
        "--data-dir",
        metavar="PATH",
        default=None,
        help="Override data directory (default: ./data or SSHFLEET_DATA_DIR env var)",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v info, -vv debug")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("discover", help="Find SSH hosts via mDNS and a /24 scan")
    p.add_argument("--duration", type=float, default=5.0, help="Seconds to listen (default 5)")
    p.add_argument("--no-mdns", action="store_true", help="Subnet scan only")
    p.add_argument("--limit", type=int, default=None, help="Probe at most N addresses")

    p = sub.add_parser("keyscan", help="Show host key fingerprints")
    p.add_argument("host")
    p.add_argument("-p", "--port", type=int, default=22)

    p = sub.add_parser("add", help="Register a device")
    p.add_argument("name")
    p.add_argument("host")
    p.add_argument("-p", "--port", type=int, default=22)
    p.add_argument("-u", "--user", required=True)
    p.add_argument("--password-auth", action="store_true", help="Log in with a password (prompted)")
    p.add_argument("--key", metavar="PATH", help="Private key file for key auth")
    p.add_argument("--accept-new-host-key", action="store_true",
                   help="Trust the host key on first connect (after review)")
    p.add_argument("--yes", action="store_true", help="Approve scanned host keys without asking")

    sub.add_parser("list", help="List registered devices")

    p = sub.add_parser("remove", help="Delete a device")
    p.add_argument("device_id")

    p = sub.add_parser("status", help="Refresh reachability of all devices")
    p.add_argument("--watch", action="store_true", help="Keep polling until interrupted")

    p = sub.add_parser("exec", help="Run a command on a device")
    p.add_argument("device_id")
    p.add_argument("remote_command", nargs=argparse.REMAINDER)

    for name in ("shutdown", "restart"):
        p = sub.add_parser(name, help=f"{name.capitalize()} a device via sudo")
        p.add_argument("device_id")

    p = sub.add_parser("connect", help="Open an interactive SSH session")
    p.add_argument("device_id")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")

    config = FleetConfig.from_env(args.config, data_dir=args.data_dir)

    try:
        return asyncio.run(_dispatch(args, config))
    except KeyboardInterrupt:
        print("\nCancelled.")
        return 130
    except (FleetError, ExecutionFailure, HostKeyError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


async def _dispatch(args: argparse.Namespace, config: FleetConfig) -> int:
    if args.command == "discover":
        return await _cmd_discover(args, config)
    if args.command == "keyscan":
        keys = await scan_host_keys(
            args.host, args.port, timeout=config.keyscan_timeout, keyscan_binary=config.keyscan_binary
        )
        _print_keys(keys)
        return 0

    manager = _open_manager(config)
    handler = {
        "add": _cmd_add,
        "list": _cmd_list,
        "remove": _cmd_remove,
        "status": _cmd_status,
        "exec": _cmd_exec,
        "shutdown": _cmd_action,
        "restart": _cmd_action,
        "connect": _cmd_connect,
    }[args.command]
    try:
        return await handler(args, manager)
    finally:
        await manager.stop()


def _open_manager(config: FleetConfig) -> FleetManager:
    set_db_path(config.db_path)
    init_db()
    return FleetManager(DeviceStore(get_db()), config)


# ── Commands ──────────────────────────────────────────────────────


async def _cmd_discover(args: argparse.Namespace, config: FleetConfig) -> int:
    source = None if args.no_mdns else ZeroconfAdvertisementSource(config.mdns_service_type)
    aggregator = DiscoveryAggregator(
        scanner=SubnetScanner(max_concurrency=config.scan_concurrency),
        source=source,
        scan_timeout=config.scan_timeout,
        scan_limit=args.limit if args.limit is not None else config.scan_limit,
    )
    await aggregator.start()
    try:
        await asyncio.sleep(args.duration)
        while aggregator.is_scanning:
            await asyncio.sleep(0.2)
        await aggregator.drain()
        found = aggregator.candidates()
    finally:
        await aggregator.stop()

    if not found:
        print("No SSH hosts found.")
        return 0
    for cand in found:
        latency = f"{cand.latency_ms}ms" if cand.latency_ms is not None else "-"
        print(f"{cand.name:<28} {cand.host}:{cand.port:<6} {cand.ip or '-':<16} "
              f"{cand.source.value:<14} {latency}")
    return 0


async def _cmd_add(args: argparse.Namespace, manager: FleetManager) -> int:
    password = None
    if args.password_auth:
        password = getpass.getpass(f"Password for {args.user}@{args.host}: ")
    device = Device(
        name=args.name,
        host=args.host,
        port=args.port,
        username=args.user,
        password=password,
        use_password_auth=args.password_auth,
        ssh_key_path=args.key,
        accept_new_host_key=args.accept_new_host_key,
    )

    def _confirm(keys: list[HostKey]) -> bool:
        print(f"Host keys for {device.host}:{device.port}:")
        _print_keys(keys)
        if args.yes:
            return True
        return _ask_yes_no("Trust these keys?")

    device = await manager.add_device(device, confirm=_confirm)
    print(f"Added {device.name} ({device.id})")
    return 0


async def _cmd_list(args: argparse.Namespace, manager: FleetManager) -> int:
    devices = manager.list_devices()
    if not devices:
        print("No devices registered.")
        return 0
    for d in devices:
        auth = "password" if d.use_password_auth else "key"
        print(f"{d.id}  {d.name:<20} {d.username}@{d.host}:{d.port:<6} {auth:<9} {d.status.label}")
    return 0


async def _cmd_remove(args: argparse.Namespace, manager: FleetManager) -> int:
    manager.remove_device(args.device_id)
    print(f"Removed {args.device_id}")
    return 0


async def _cmd_status(args: argparse.Namespace, manager: FleetManager) -> int:
    if not args.watch:
        await manager.refresh_status()
        return await _cmd_list(args, manager)

    names = {d.id: d.name for d in manager.list_devices()}
    await manager.start()
    while True:
        update = await manager.poller.updates.get()
        print(f"{names.get(update.device_id, update.device_id):<20} {update.status.label}")


async def _cmd_exec(args: argparse.Namespace, manager: FleetManager) -> int:
    device = manager.get_device(args.device_id)
    words = list(args.remote_command)
    if words and words[0] == "--":
        words = words[1:]
    command = " ".join(words).strip()
    if not command:
        print("error: no command given", file=sys.stderr)
        return 2
    result = await manager.execute(device, command)
    sys.stdout.write(result.output)
    return 0


async def _cmd_action(args: argparse.Namespace, manager: FleetManager) -> int:
    device = manager.get_device(args.device_id)
    try:
        await manager.perform(device, args.command)
    except SudoPasswordRequired as exc:
        print(str(exc))
        password = getpass.getpass(f"[sudo] password for {device.username}@{device.host}: ")
        remember = _ask_yes_no("Remember this password for the device?")
        await manager.submit_sudo_password(password, remember=remember)
    print(f"{args.command} sent to {device.name}")
    return 0


async def _cmd_connect(args: argparse.Namespace, manager: FleetManager) -> int:
    device = manager.get_device(args.device_id)
    argv = build_interactive_args(device.to_target(), manager.config.ssh_binary)
    os.execvp(argv[0], argv)
    return 0  # not reached


# ── Helpers ───────────────────────────────────────────────────────


def _print_keys(keys: list[HostKey]) -> None:
    for key in keys:
        print(f"  {key.key_type:<22} {key.fingerprint}")


def _ask_yes_no(question: str) -> bool:
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


if __name__ == "__main__":
    sys.exit(main())
