"""tmux commands for bridge-managed sessions.

Every function takes the session's host (None for local) and tmux name, and runs
through the host executor so remote calls get ssh wrapping and binary probing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from apropos.config import config
from apropos.constants import MAX_SCROLL_STEPS
from apropos.core import host_executor
from apropos.core.errors import ExecutionError

logger = logging.getLogger(__name__)

# stderr fragments tmux prints when no server is running on the host
_NO_SERVER_MARKERS = (
    "no server running",
    "failed to connect to server",
    "error connecting to",
)


@dataclass(frozen=True)
class TmuxListing:
    """One row of `tmux list-sessions`."""

    name: str
    created: Optional[int] = None


def _tmux_program(host: Optional[str]) -> str:
    if host:
        return config.tmux.remote_binary or "tmux"
    return config.tmux.binary


def _probe_paths(host: Optional[str]) -> Sequence[str]:
    return tuple(config.tmux.remote_candidates) if host else ()


async def run_tmux(
    host: Optional[str],
    args: Sequence[str],
    *,
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
) -> str:
    """Run a tmux subcommand on the host.

    Raises:
        ExecutionError: tmux failed or the host was unreachable
    """
    argv = [_tmux_program(host), *args]
    return await host_executor.run(host, argv, cwd=cwd, timeout=timeout, probe_paths=_probe_paths(host))


# "=" forces an exact name match instead of tmux's prefix matching
def _session_target(name: str) -> str:
    return f"={name}"


def _pane_target(name: str) -> str:
    return f"={name}:"


def _is_no_server(error: ExecutionError) -> bool:
    stderr = error.stderr.lower()
    return any(marker in stderr for marker in _NO_SERVER_MARKERS)


async def new_session(
    host: Optional[str],
    name: str,
    working_dir: str,
    command: str,
    cols: Optional[int] = None,
    rows: Optional[int] = None,
) -> None:
    """Create a detached tmux session running `command` in `working_dir`."""
    args = ["new-session", "-d", "-s", name]
    if cols and rows:
        args.extend(["-x", str(cols), "-y", str(rows)])
    args.extend(["-c", working_dir, command])
    await run_tmux(host, args)


async def set_session_option(host: Optional[str], name: str, option: str, value: str) -> None:
    await run_tmux(host, ["set-option", "-t", _session_target(name), option, value])


async def set_window_option(host: Optional[str], name: Optional[str], option: str, value: str) -> None:
    """Set a window option on `name`, or globally when name is None."""
    target = ["-t", _pane_target(name)] if name else ["-g"]
    await run_tmux(host, ["set-window-option", *target, option, value])


async def configure_embedded_session(host: Optional[str], name: str, *, disable_alternate_screen: bool = True) -> None:
    """Apply the options an embedded browser terminal needs.

    Mouse mode off keeps browser text selection working, status off hides the tmux
    bar, and a deep history limit backs client scrollback. Each option is best effort.
    """
    history_limit = str(config.tmux.history_limit)
    steps: list[tuple[str, Optional[str], str, str]] = [
        ("session", name, "mouse", "off"),
        ("session", name, "status", "off"),
        ("window", None, "history-limit", history_limit),
        ("window", name, "history-limit", history_limit),
    ]
    if disable_alternate_screen:
        steps.append(("window", name, "alternate-screen", "off"))

    for scope, target, option, value in steps:
        try:
            if scope == "session" and target:
                await set_session_option(host, target, option, value)
            else:
                await set_window_option(host, target, option, value)
        except ExecutionError as e:
            logger.warning("Failed to set tmux %s=%s for %s: %s", option, value, name, e)


async def resize_window(host: Optional[str], name: str, cols: int, rows: int) -> None:
    await run_tmux(host, ["resize-window", "-t", _pane_target(name), "-x", str(cols), "-y", str(rows)])


async def list_sessions(host: Optional[str]) -> list[TmuxListing]:
    """List tmux sessions on a host.

    Returns:
        Name and creation epoch for each session. A host with no tmux server
        running yields an empty list.

    Raises:
        ExecutionError: The host could not be listed for any other reason
    """
    try:
        output = await run_tmux(host, ["list-sessions", "-F", "#{session_name}|#{session_created}"])
    except ExecutionError as e:
        if _is_no_server(e):
            return []
        raise

    listings: list[TmuxListing] = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        name, _, created_raw = line.partition("|")
        try:
            created: Optional[int] = int(created_raw)
        except ValueError:
            created = None
        listings.append(TmuxListing(name=name, created=created))
    return listings


async def has_session(host: Optional[str], name: str) -> bool:
    try:
        await run_tmux(host, ["has-session", "-t", _session_target(name)])
    except ExecutionError:
        return False
    return True


async def kill_session(host: Optional[str], name: str) -> None:
    await run_tmux(host, ["kill-session", "-t", _session_target(name)])


async def capture_pane(host: Optional[str], name: str, lines: int, *, timeout: Optional[float] = None) -> str:
    """Capture the pane text including the last `lines` lines of history.

    Wrapped lines are joined (-J) and trailing newlines removed.
    """
    args = ["capture-pane", "-p", "-J", "-S", f"-{lines}", "-t", _pane_target(name)]
    output = await run_tmux(host, args, timeout=timeout)
    return output.rstrip("\n")


async def send_literal(host: Optional[str], name: str, text: str) -> None:
    """Type `text` into the pane without key-name interpretation."""
    if not text:
        return
    await run_tmux(host, ["send-keys", "-t", _pane_target(name), "-l", "--", text])


async def send_key(host: Optional[str], name: str, key: str) -> None:
    """Send a named key (C-m, BSpace, Up, ...)."""
    await run_tmux(host, ["send-keys", "-t", _pane_target(name), key])


async def scroll_history(host: Optional[str], name: str, lines: int) -> None:
    """Scroll the pane through its history using copy-mode.

    Negative `lines` scroll up, positive scroll down; steps are clamped.
    """
    if lines == 0:
        return
    steps = min(MAX_SCROLL_STEPS, max(1, abs(lines)))
    direction = "scroll-up" if lines < 0 else "scroll-down"
    await run_tmux(host, ["copy-mode", "-t", _pane_target(name)])
    await run_tmux(host, ["send-keys", "-t", _pane_target(name), "-X", "-N", str(steps), direction])


def attach_argv(host: Optional[str], name: str) -> list[str]:
    """Build the argv for a process that attaches to the session's terminal."""
    args = [_tmux_program(host), "attach-session", "-t", _session_target(name)]
    if not host:
        return args
    script = host_executor.build_remote_script(args, probe_paths=_probe_paths(host))
    return host_executor.build_ssh_argv(host, script, tty=True)
