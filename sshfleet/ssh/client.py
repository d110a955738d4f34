"""Remote command execution over SSH.

Three interchangeable backends, each a plain coroutine of
``(target, command) -> CommandResult``:

  batch     system ``ssh`` in BatchMode — key or agent auth, never prompts
  scripted  ``expect`` drives ``ssh -tt`` and answers the password prompt
  native    asyncssh, password and/or client key

:func:`select_backend` picks one from the target's credential; anything
that goes wrong raises an :class:`ExecutionFailure` subclass.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_KNOWN_HOSTS = Path("~/.ssh/known_hosts")


# ── Data models ───────────────────────────────────────────────────


@dataclass(frozen=True)
class SSHTarget:
    host: str
    port: int = 22
    username: str = ""
    password: str | None = None
    key_path: str | None = None
    accept_new_host_key: bool = False

    @property
    def destination(self) -> str:
        return f"{self.username}@{self.host}" if self.username else self.host


@dataclass
class CommandResult:
    output: str = ""
    exit_code: int = 0
    backend: str = ""


class Backend(str, Enum):
    BATCH = "batch"
    SCRIPTED = "scripted"
    NATIVE = "native"


class DeviceAction(str, Enum):
    """Administrative actions with a fixed privileged base command."""
    SHUTDOWN = "shutdown"
    RESTART = "restart"

    @property
    def base_command(self) -> str:
        return "shutdown -h now" if self is DeviceAction.SHUTDOWN else "shutdown -r now"


# ── Errors ────────────────────────────────────────────────────────


class ExecutionFailure(Exception):
    """Base class for every command execution error."""

    def __init__(self, message: str, output: str = "", exit_code: int | None = None) -> None:
        super().__init__(message)
        self.output = output
        self.exit_code = exit_code


class CommandFailed(ExecutionFailure):
    """The backend ran and reported a non-zero exit status."""

    def __init__(self, exit_code: int, output: str) -> None:
        super().__init__(f"SSH command failed ({exit_code}): {output.strip()}", output, exit_code)


class AuthenticationFailed(CommandFailed):
    def __init__(self, output: str = "SSH authentication failed") -> None:
        super().__init__(255, output)


class LaunchFailed(ExecutionFailure):
    """The backend process could not be started at all."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Could not start SSH backend: {reason}", reason)
        self.reason = reason


class CommandTimeout(ExecutionFailure):
    def __init__(self, timeout: float, output: str = "") -> None:
        super().__init__(f"SSH command timed out after {timeout:g}s", output)
        self.timeout = timeout


# ── Command building ──────────────────────────────────────────────


def build_sudo_command(base: str, password: str | None) -> str:
    """Wrap *base* in sudo, piping *password* when one is available.

    ``sudo -S -p ''`` reads the password from stdin without printing a
    prompt; ``sudo -n`` fails immediately if no cached credential exists.
    """
    if password:
        return f"printf %s {shlex.quote(password)} | sudo -S -p '' {base}"
    return f"sudo -n {base}"


def build_batch_args(
    target: SSHTarget,
    command: str,
    ssh_binary: str = "ssh",
    connect_timeout: int | None = None,
) -> list[str]:
    """argv for a non-interactive ``ssh`` run."""
    args = [ssh_binary, "-o", "BatchMode=yes"]
    if connect_timeout:
        args += ["-o", f"ConnectTimeout={connect_timeout}"]
    args += ["-p", str(target.port)]
    if target.accept_new_host_key:
        args += ["-o", "StrictHostKeyChecking=accept-new"]
    if target.key_path:
        args += ["-i", target.key_path]
    args.append(target.destination)
    args.append(command)
    return args


def build_interactive_args(target: SSHTarget, ssh_binary: str = "ssh") -> list[str]:
    """argv for a foreground interactive session."""
    args = [ssh_binary, "-p", str(target.port)]
    if target.accept_new_host_key:
        args += ["-o", "StrictHostKeyChecking=accept-new"]
    if target.key_path:
        args += ["-i", target.key_path]
    args.append(target.destination)
    return args


def login_shell(command: str) -> str:
    """Run *command* through ``sh -lc`` for a consistent remote environment."""
    return f"sh -lc {shlex.quote(command)}"


def _tcl_escape(s: str) -> str:
    """Escape *s* for use inside a double-quoted Tcl string."""
    return (
        s.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("[", "\\[")
        .replace("]", "\\]")
    )


def _tcl_quote(s: str) -> str:
    """Quote one word for a Tcl command line (expect's ``spawn``)."""
    if s and not any(c in s for c in " \t\n'\"$`\\[]{};"):
        return s
    return f'"{_tcl_escape(s)}"'


def build_expect_script(
    target: SSHTarget,
    command: str,
    ssh_binary: str = "ssh",
    timeout: float = 30,
) -> str:
    """Tcl script that logs in with ``target.password`` and runs *command*.

    Exit status: ssh's own status, 255 on ``Permission denied``, 124 when
    nothing matches within *timeout* seconds.
    """
    argv = [ssh_binary, "-tt"]
    if target.accept_new_host_key:
        argv += ["-o", "StrictHostKeyChecking=accept-new"]
    argv += ["-p", str(target.port)]
    if target.key_path:
        argv += ["-i", target.key_path]
    argv.append(target.destination)
    argv.append(login_shell(command))
    spawn = " ".join(_tcl_quote(a) for a in argv)
    password = _tcl_escape(target.password or "")

    return (
        f"set timeout {max(1, int(timeout))}\n"
        "log_user 1\n"
        f"spawn -noecho {spawn}\n"
        "expect {\n"
        f'  -re {{(?i)password:}} {{ send -- "{password}\\r"; exp_continue }}\n'
        '  -re {Are you sure you want to continue connecting} { send -- "yes\\r"; exp_continue }\n'
        "  -re {Permission denied} { exit 255 }\n"
        "  timeout { exit 124 }\n"
        "  eof\n"
        "}\n"
        "catch wait result\n"
        "exit [lindex $result 3]\n"
    )


# ── Process plumbing ──────────────────────────────────────────────


async def _run_process(
    argv: list[str],
    timeout: float,
    stdin_data: bytes | None = None,
) -> tuple[int, str]:
    """Run *argv*, returning ``(returncode, stdout + stderr)``."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise LaunchFailed(f"{argv[0]}: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(stdin_data), timeout=timeout)
    except asyncio.TimeoutError:
        await kill_process(proc)
        raise CommandTimeout(timeout) from None
    except BaseException:
        # cancelled by the caller: don't leave ssh/expect running
        await kill_process(proc)
        raise
    output = (stdout or b"").decode("utf-8", errors="replace") + (stderr or b"").decode(
        "utf-8", errors="replace"
    )
    return proc.returncode or 0, output


async def kill_process(proc: asyncio.subprocess.Process) -> None:
    """Kill *proc* if it is still running and reap it."""
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


# ── Backends ──────────────────────────────────────────────────────


async def run_batch(
    target: SSHTarget,
    command: str,
    *,
    timeout: float = 60,
    ssh_binary: str = "ssh",
    connect_timeout: int | None = 10,
    **_: object,
) -> CommandResult:
    """Key/agent auth through the system ssh client; fails fast on any prompt."""
    argv = build_batch_args(target, command, ssh_binary, connect_timeout)
    logger.debug("batch ssh %s:%d", target.host, target.port)
    code, output = await _run_process(argv, timeout)
    if code != 0:
        raise CommandFailed(code, output)
    return CommandResult(output=output, exit_code=0, backend=Backend.BATCH.value)


async def run_scripted(
    target: SSHTarget,
    command: str,
    *,
    timeout: float = 60,
    ssh_binary: str = "ssh",
    expect_binary: str = "expect",
    **kwargs: object,
) -> CommandResult:
    """Password auth by scripting ssh under a pseudo-terminal with expect."""
    if not target.password:
        return await run_batch(target, command, timeout=timeout, ssh_binary=ssh_binary, **kwargs)

    script = build_expect_script(target, command, ssh_binary, timeout)
    logger.debug("scripted ssh %s:%d", target.host, target.port)
    # The script goes over stdin so the password never shows up in argv.
    code, output = await _run_process([expect_binary], timeout + 5, script.encode())
    output = output.replace("\r", "")
    if code == 124:
        raise CommandTimeout(timeout, output)
    if code == 255 and "permission denied" in output.lower():
        raise AuthenticationFailed(output)
    if code != 0:
        raise CommandFailed(code, output)
    return CommandResult(output=output, exit_code=0, backend=Backend.SCRIPTED.value)


async def run_native(
    target: SSHTarget,
    command: str,
    *,
    timeout: float = 60,
    known_hosts_path: str | Path | None = None,
    connect_timeout: int | None = 10,
    **_: object,
) -> CommandResult:
    """asyncssh session with password and/or client key authentication."""
    import asyncssh

    known_hosts = Path(known_hosts_path or DEFAULT_KNOWN_HOSTS).expanduser()
    trust_first_use = target.accept_new_host_key and not known_hosts_has(
        known_hosts, target.host, target.port
    )

    kwargs: dict = {
        "host": target.host,
        "port": target.port,
        "username": target.username or None,
        # accept-new: take the key now, persist it below; otherwise strict
        "known_hosts": None if trust_first_use else str(known_hosts),
    }
    if connect_timeout:
        kwargs["connect_timeout"] = connect_timeout
    if target.password:
        kwargs["password"] = target.password
    if target.key_path:
        kwargs["client_keys"] = [target.key_path]

    try:
        async with asyncssh.connect(**kwargs) as conn:
            if trust_first_use:
                remember_host_key(known_hosts, target.host, target.port, conn.get_server_host_key())
            result = await asyncio.wait_for(
                conn.run(login_shell(command), check=False), timeout=timeout
            )
    except asyncio.TimeoutError:
        raise CommandTimeout(timeout) from None
    except asyncssh.PermissionDenied as exc:
        raise AuthenticationFailed(str(exc)) from exc
    except (OSError, asyncssh.Error) as exc:
        raise CommandFailed(255, str(exc)) from exc

    output = _as_text(result.stdout) + _as_text(result.stderr)
    code = result.exit_status if result.exit_status is not None else 255
    if code != 0:
        raise CommandFailed(code, output)
    return CommandResult(output=output, exit_code=0, backend=Backend.NATIVE.value)


def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


def _known_hosts_pattern(host: str, port: int) -> str:
    return host if port == 22 else f"[{host}]:{port}"


def known_hosts_has(path: Path, host: str, port: int = 22) -> bool:
    """Whether *path* has any entry for host:port, plain or hashed.

    An unreadable or unparsable file counts as a match, so the caller falls
    back to strict verification.
    """
    import asyncssh

    if not path.exists():
        return False
    try:
        known = asyncssh.read_known_hosts(str(path))
    except (OSError, ValueError) as exc:
        logger.warning("Could not read %s (%s); treating %s as known", path, exc, host)
        return True
    return any(known.match(host, "", None if port == 22 else port))


def remember_host_key(path: Path, host: str, port: int, key) -> None:
    """Append *key* (an ``asyncssh.SSHKey``) to the known_hosts file."""
    exported = key.export_public_key("openssh").decode().strip()
    key_type, key_b64 = exported.split()[:2]
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a") as f:
        f.write(f"{_known_hosts_pattern(host, port)} {key_type} {key_b64}\n")
    logger.info("Trusted new host key for %s:%d (%s)", host, port, key_type)


BackendFn = Callable[..., Awaitable[CommandResult]]

BACKENDS: dict[Backend, BackendFn] = {
    Backend.BATCH: run_batch,
    Backend.SCRIPTED: run_scripted,
    Backend.NATIVE: run_native,
}


def select_backend(target: SSHTarget, password_backend: str | Backend = Backend.SCRIPTED) -> Backend:
    """Password login → *password_backend*; everything else → batch."""
    if target.password:
        backend = Backend(password_backend)
        return Backend.SCRIPTED if backend is Backend.BATCH else backend
    return Backend.BATCH


# ── Public API ────────────────────────────────────────────────────


async def execute(
    target: SSHTarget,
    command: str,
    *,
    password_backend: str | Backend = Backend.SCRIPTED,
    timeout: float = 60,
    config=None,
) -> CommandResult:
    """Run *command* on *target* with the backend matching its credential.

    *config* is an optional :class:`sshfleet.config.FleetConfig` supplying
    binary paths, connect timeout and known_hosts location.
    """
    backend = select_backend(target, password_backend)
    options: dict = {}
    if config is not None:
        options = {
            "ssh_binary": config.ssh_binary,
            "expect_binary": config.expect_binary,
            "connect_timeout": config.connect_timeout,
            "known_hosts_path": config.known_hosts,
        }
    logger.info("Running command on %s:%d via %s", target.host, target.port, backend.value)
    return await BACKENDS[backend](target, command, timeout=timeout, **options)


async def run_action(
    target: SSHTarget,
    action: DeviceAction | str,
    *,
    sudo_password: str | None = None,
    **kwargs,
) -> CommandResult:
    """Run a privileged :class:`DeviceAction` through sudo."""
    action = DeviceAction(action)
    command = build_sudo_command(action.base_command, sudo_password)
    return await execute(target, command, **kwargs)


async def shutdown(target: SSHTarget, *, sudo_password: str | None = None, **kwargs) -> CommandResult:
    return await run_action(target, DeviceAction.SHUTDOWN, sudo_password=sudo_password, **kwargs)


async def restart(target: SSHTarget, *, sudo_password: str | None = None, **kwargs) -> CommandResult:
    return await run_action(target, DeviceAction.RESTART, sudo_password=sudo_password, **kwargs)
