"""Run commands on the local host or on a remote host over ssh.

All functions are stateless and use config imported from apropos.config.
Remote command lines are always built with per-argument shlex quoting.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from typing import Optional, Sequence

from apropos.config import config
from apropos.core.errors import ExecutionError, SubprocessTimeoutError

logger = logging.getLogger(__name__)

# ssh reserves exit code 255 for its own (transport) failures
SSH_TRANSPORT_FAILURE = 255


def ssh_shared_options() -> list[str]:
    """ssh options applied to every remote call (timeouts, keepalives, connection reuse)."""
    ssh = config.ssh
    options = [
        "-o",
        "ControlMaster=auto",
        "-o",
        f"ControlPersist={ssh.control_persist}",
        "-o",
        f"ControlPath={ssh.control_path}",
        "-o",
        f"ConnectTimeout={ssh.connect_timeout_s}",
        "-o",
        f"ServerAliveInterval={ssh.keepalive_interval_s}",
        "-o",
        f"ServerAliveCountMax={ssh.keepalive_count_max}",
    ]
    if ssh.batch_mode:
        options.extend(["-o", "BatchMode=yes"])
    return options


def build_ssh_argv(host: str, script: str, *, tty: bool = False) -> list[str]:
    """Build the local argv that runs `script` on `host`.

    Args:
        host: ssh destination (alias or user@host)
        script: Remote shell script (already quoted)
        tty: Request a remote pseudo-terminal (attach mode)
    """
    argv = [config.ssh.binary, *ssh_shared_options()]
    if tty:
        argv.append("-t")
    # "--" keeps a hostile host alias from being parsed as an ssh option
    argv.extend(["--", host, script])
    return argv


def quote_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(arg)) for arg in argv)


def build_remote_script(
    argv: Sequence[str],
    cwd: Optional[str] = None,
    probe_paths: Sequence[str] = (),
) -> str:
    """Build a remote script that runs `argv` inside a login shell.

    When `probe_paths` is given, argv[0] is resolved with `command -v` first and then
    against the listed install locations before giving up with exit code 127.

    Args:
        argv: Program and arguments, quoted individually
        cwd: Optional remote working directory
        probe_paths: Known install locations for argv[0]

    Returns:
        A single shell word safe to pass as ssh's command argument
    """
    if not argv:
        raise ValueError("argv must not be empty")

    program, args = str(argv[0]), [str(a) for a in argv[1:]]
    steps: list[str] = []
    if cwd:
        steps.append(f"cd {shlex.quote(cwd)} || exit 1")

    if probe_paths:
        candidates = " ".join(shlex.quote(p) for p in probe_paths)
        steps.extend(
            [
                f'bin="$(command -v {shlex.quote(program)} 2>/dev/null || true)"',
                'if [ -z "$bin" ]; then',
                f"  for candidate in {candidates}; do",
                '    if [ -x "$candidate" ]; then bin="$candidate"; break; fi',
                "  done",
                "fi",
                'if [ -z "$bin" ]; then',
                f"  echo {shlex.quote(f'{program} not found on remote host PATH')} >&2",
                "  exit 127",
                "fi",
                f'exec "$bin" {quote_argv(args)}'.rstrip(),
            ]
        )
    else:
        steps.append(f"exec {quote_argv([program, *args])}")

    inner = "\n".join(steps)
    return f'exec "${{SHELL:-/bin/sh}}" -lc {shlex.quote(inner)}'


async def communicate_with_timeout(
    process: asyncio.subprocess.Process,
    timeout: float,
    operation: str,
    host: Optional[str] = None,
) -> tuple[bytes, bytes]:
    """Wait for process output, killing the process on timeout or cancellation.

    Raises:
        SubprocessTimeoutError: The process did not finish in time
    """
    try:
        return await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill_and_reap(process)
        raise SubprocessTimeoutError(operation, timeout, process.pid, host) from None
    except asyncio.CancelledError:
        await _kill_and_reap(process)
        raise


async def _kill_and_reap(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


async def run(
    host: Optional[str],
    argv: Sequence[str],
    *,
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
    probe_paths: Sequence[str] = (),
) -> str:
    """Run a command locally (host=None) or on a remote host.

    Args:
        host: ssh destination, or None for the local machine
        argv: Program and arguments
        cwd: Working directory for the command
        timeout: Seconds before the process is killed (default: tmux.command_timeout_s)
        probe_paths: Remote install locations to try when argv[0] is not on PATH

    Returns:
        Standard output with trailing newlines removed

    Raises:
        ExecutionError: Nonzero exit, missing binary, or ssh transport failure
        SubprocessTimeoutError: The command exceeded its timeout
    """
    budget = timeout if timeout is not None else config.tmux.command_timeout_s
    if host:
        local_argv = build_ssh_argv(host, build_remote_script(argv, cwd, probe_paths))
        local_cwd = None
    else:
        local_argv = [str(a) for a in argv]
        local_cwd = cwd

    operation = " ".join(str(a) for a in argv[:2])
    try:
        process = await asyncio.create_subprocess_exec(
            *local_argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=local_cwd,
        )
    except OSError as e:
        # Missing binary or bad cwd: the process never started
        raise ExecutionError(argv, host, None, str(e)) from e

    stdout, stderr = await communicate_with_timeout(process, budget, operation, host)
    if process.returncode != 0:
        stderr_text = stderr.decode("utf-8", errors="replace")
        if host and process.returncode == SSH_TRANSPORT_FAILURE:
            logger.warning("ssh transport failure to %s: %s", host, stderr_text.strip())
        raise ExecutionError(argv, host, process.returncode, stderr_text)

    return stdout.decode("utf-8", errors="replace").rstrip("\n")


async def command_exists(host: Optional[str], executable: str, cwd: Optional[str] = None) -> bool:
    """Check whether `executable` resolves in a login shell on the host.

    Remote hosts use an interactive login shell (-lic) so PATH entries added by
    .bashrc/.zshrc (nvm, volta, ...) are visible.
    """
    if not executable:
        return False

    check = f"command -v {shlex.quote(executable)} >/dev/null 2>&1"
    try:
        if host:
            script = check
            if cwd:
                script = f"cd {shlex.quote(cwd)} 2>/dev/null; {check}"
            remote = f'"${{SHELL:-/bin/sh}}" -lic {shlex.quote(script)} 2>/dev/null'
            local_argv = build_ssh_argv(host, remote)
            process = await asyncio.create_subprocess_exec(
                *local_argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                stdin=asyncio.subprocess.DEVNULL,
            )
        else:
            process = await asyncio.create_subprocess_exec(
                "/bin/sh",
                "-lc",
                check,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=cwd or None,
            )
        await communicate_with_timeout(process, config.tmux.command_timeout_s, f"command -v {executable}", host)
    except (OSError, SubprocessTimeoutError) as e:
        logger.warning("Could not check for %s on %s: %s", executable, host or "local", e)
        return False

    return process.returncode == 0
