"""Registry of bridge-managed tmux sessions across local and remote hosts.

The registry caches what tmux reports, spawns new sessions following the naming
contract and stops them. All mutations happen under one asyncio.Lock; tmux I/O is
always done outside it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from apropos.config import config
from apropos.constants import SHELL_KIND
from apropos.core import host_executor, tmux_bridge
from apropos.core.errors import EarlyExitError, ExecutionError, MissingDependencyError
from apropos.core.events import EventHub, EventType
from apropos.core.input_classifier import sanitize_committed_input
from apropos.core.models import (
    Project,
    Session,
    build_tmux_name,
    generate_suffix,
    is_valid_project_id,
    parse_tmux_name,
    session_id_for,
)
from apropos.core.projects import ProjectDirectory, remote_hosts
from apropos.core.tmux_bridge import TmuxListing

logger = logging.getLogger(__name__)

RemovalListener = Callable[[Session], None]

# Bound on suffix retries before giving up on a unique name
_MAX_NAME_ATTEMPTS = 20


@dataclass
class SpawnRequest:
    kind: str
    raw_command: Optional[str] = None
    prompt: Optional[str] = None
    working_dir: Optional[str] = None
    workspace_label: Optional[str] = None
    cols: Optional[int] = None
    rows: Optional[int] = None


def default_shell() -> str:
    return config.spawn.shell or os.environ.get("SHELL") or "zsh"


def build_command(kind: str, raw_command: Optional[str], working_dir: str) -> str:
    """Resolve the command a new session runs.

    Shell sessions start a login shell in the working directory; agent sessions run
    the configured CLI. A raw command overrides both.
    """
    if raw_command and raw_command.strip():
        return raw_command.strip()
    if kind == SHELL_KIND:
        return f"cd {shlex.quote(working_dir)} && exec {shlex.quote(default_shell())}"
    return config.agents[kind].command


def command_executable(command: str) -> str:
    parts = command.strip().split()
    return parts[0] if parts else ""


def _listing_started_at(listing: TmuxListing) -> datetime:
    if listing.created is None:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(listing.created, tz=timezone.utc)


def _inferred_command(kind: str) -> str:
    return default_shell() if kind == SHELL_KIND else kind


class SessionRegistry:
    """Live session list plus spawn/stop operations."""

    def __init__(self, events: EventHub) -> None:
        self._events = events
        self._sessions: list[Session] = []
        self._reserved: set[tuple[Optional[str], str]] = set()
        self._stopping: set[tuple[Optional[str], str]] = set()
        self._lock = asyncio.Lock()
        self._removal_listeners: list[RemovalListener] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> list[Session]:
        return list(self._sessions)

    def get(self, session_id: str) -> Optional[Session]:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def set_last_input(self, session_id: str, text: str) -> Optional[Session]:
        session = self.get(session_id)
        if session is None:
            return None
        session.last_input = (text or "").strip()
        return session

    def add_removal_listener(self, listener: RemovalListener) -> None:
        self._removal_listeners.append(listener)

    def _notify_removed(self, removed: list[Session]) -> None:
        for session in removed:
            for listener in self._removal_listeners:
                try:
                    listener(session)
                except Exception as e:  # noqa: BLE001
                    logger.error("Removal listener failed for %s: %s", session.id, e, exc_info=True)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, projects: ProjectDirectory) -> list[Session]:
        """Rebuild the session list from live tmux listings.

        The local host and every distinct remote host are listed concurrently. A host
        whose listing fails keeps its previously known sessions.

        Args:
            projects: Lookup used to match tmux names to known projects

        Returns:
            Snapshot of the reconciled list
        """
        reconcile_started = datetime.now(timezone.utc)
        hosts: list[Optional[str]] = [None, *remote_hosts(projects)]
        results = await asyncio.gather(*(tmux_bridge.list_sessions(host) for host in hosts), return_exceptions=True)

        listed: dict[Optional[str], list[TmuxListing]] = {}
        failed: set[Optional[str]] = set()
        for host, result in zip(hosts, results):
            if isinstance(result, Exception):
                logger.warning("Could not list tmux sessions on %s: %s", host or "local", result)
                failed.add(host)
            elif isinstance(result, BaseException):
                raise result
            else:
                listed[host] = result

        kinds = config.session_kinds
        async with self._lock:
            existing = {(s.ssh_host, s.tmux_name): s for s in self._sessions}
            next_sessions: list[Session] = []
            for host, listings in listed.items():
                for listing in listings:
                    if (host, listing.name) in self._stopping:
                        continue
                    session = self._session_from_listing(host, listing, projects, kinds, existing)
                    if session is not None:
                        next_sessions.append(session)

            # Failed hosts keep what we knew about them, and sessions spawned while
            # the listings were in flight are not in them yet
            kept = {id(s) for s in next_sessions}
            next_sessions.extend(
                s
                for s in self._sessions
                if id(s) not in kept and (s.ssh_host in failed or s.started_at >= reconcile_started)
            )
            kept = {id(s) for s in next_sessions}
            removed = [s for s in self._sessions if id(s) not in kept]
            self._sessions = next_sessions
            snapshot = list(next_sessions)

        if removed:
            logger.info("Reconcile dropped %d sessions", len(removed))
        self._notify_removed(removed)
        return snapshot

    @staticmethod
    def _session_from_listing(
        host: Optional[str],
        listing: TmuxListing,
        projects: ProjectDirectory,
        kinds: frozenset[str],
        existing: dict[tuple[Optional[str], str], Session],
    ) -> Optional[Session]:
        parsed = parse_tmux_name(listing.name, kinds)
        if parsed is None:
            return None
        project = projects.get(parsed.project_id)
        if project is None or (project.ssh_host or None) != host:
            return None

        previous = existing.get((host, listing.name))
        if previous is not None:
            previous.project_name = project.name
            return previous

        return Session(
            id=session_id_for(host, listing.name),
            project_id=parsed.project_id,
            project_name=project.name,
            kind=parsed.kind,
            tmux_name=listing.name,
            command=_inferred_command(parsed.kind),
            working_dir=project.path,
            ssh_host=host,
            started_at=_listing_started_at(listing),
        )

    # ------------------------------------------------------------------
    # Spawn / stop
    # ------------------------------------------------------------------

    async def _reserve_name(self, project: Project, kind: str) -> str:
        kinds = config.session_kinds
        async with self._lock:
            taken = {s.tmux_name for s in self._sessions if s.ssh_host == project.ssh_host}
            taken.update(name for host, name in self._reserved if host == project.ssh_host)
            for _ in range(_MAX_NAME_ATTEMPTS):
                name = build_tmux_name(project.id, kind, generate_suffix())
                if name in taken:
                    continue
                parsed = parse_tmux_name(name, kinds)
                if parsed is None or (parsed.project_id, parsed.kind) != (project.id, kind):
                    raise ValueError(f"Session name {name!r} does not map back to project {project.id!r}")
                self._reserved.add((project.ssh_host, name))
                return name
        raise RuntimeError(f"Could not reserve a unique tmux name for {project.id}-{kind}")

    async def spawn(self, project: Project, request: SpawnRequest) -> Session:
        """Start a new tmux session for a project.

        Args:
            project: Target project (local or remote)
            request: Kind, optional command/prompt overrides and dimensions

        Returns:
            The registered Session

        Raises:
            ValueError: Unknown kind or a project id outside the naming contract
            MissingDependencyError: Agent CLI missing on the local host
            EarlyExitError: Agent process died during the grace period
            ExecutionError: tmux or ssh failed
        """
        kind = request.kind
        if kind not in config.session_kinds:
            raise ValueError(f"Unknown session kind: {kind}")
        if not is_valid_project_id(project.id):
            raise ValueError(f"Invalid project id: {project.id}")

        host = project.ssh_host or None
        working_dir = request.working_dir or project.path
        command = build_command(kind, request.raw_command, working_dir)
        is_agent = kind != SHELL_KIND

        try:
            if is_agent and not host:
                executable = command_executable(command)
                if not await host_executor.command_exists(None, executable, cwd=working_dir):
                    raise MissingDependencyError(kind, executable)

            tmux_name = await self._reserve_name(project, kind)
            try:
                session = await self._launch(project, request, tmux_name, working_dir, command, is_agent)
            finally:
                async with self._lock:
                    self._reserved.discard((host, tmux_name))
        except Exception as e:
            await self._events.publish(
                EventType.SESSION_LAUNCH_FAILED,
                {
                    "projectId": project.id,
                    "projectName": project.name,
                    "kind": kind,
                    "command": command,
                    "error": str(e),
                },
                severity="error",
            )
            raise

        await self._events.publish(
            EventType.SESSION_STARTED,
            {
                "projectId": project.id,
                "projectName": project.name,
                "sessionId": session.id,
                "kind": kind,
                "tmuxName": session.tmux_name,
                "command": command,
                "sshHost": host,
            },
        )
        return session

    async def _launch(
        self,
        project: Project,
        request: SpawnRequest,
        tmux_name: str,
        working_dir: str,
        command: str,
        is_agent: bool,
    ) -> Session:
        host = project.ssh_host or None
        cols = request.cols or config.tmux.cols
        rows = request.rows or config.tmux.rows

        # Remote agents need the interactive login PATH (nvm, volta, ...)
        tmux_command = f'"$SHELL" -lic {shlex.quote(command)}' if host and is_agent else command
        await tmux_bridge.new_session(host, tmux_name, working_dir, tmux_command, cols, rows)
        logger.info("Started tmux session %s on %s", tmux_name, host or "local")

        try:
            await tmux_bridge.configure_embedded_session(host, tmux_name, disable_alternate_screen=is_agent)
            if cols and rows:
                # Some tmux versions ignore new-session -x/-y without an attached client
                await tmux_bridge.resize_window(host, tmux_name, cols, rows)

            if is_agent:
                await asyncio.sleep(config.spawn.grace_period_s)
                if not await tmux_bridge.has_session(host, tmux_name):
                    location = f"{host or 'local'}:{working_dir}"
                    raise EarlyExitError(request.kind, location)

            last_input = ""
            prompt = (request.prompt or "").strip()
            if prompt:
                await tmux_bridge.send_literal(host, tmux_name, prompt)
                await tmux_bridge.send_key(host, tmux_name, "C-m")
                last_input = sanitize_committed_input(prompt)
        except EarlyExitError:
            raise
        except Exception:
            await self._discard_tmux_session(host, tmux_name)
            raise

        session = Session(
            id=session_id_for(host, tmux_name),
            project_id=project.id,
            project_name=project.name,
            kind=request.kind,
            tmux_name=tmux_name,
            command=command,
            working_dir=working_dir,
            ssh_host=host,
            workspace_label=request.workspace_label,
            last_input=last_input,
        )
        async with self._lock:
            self._sessions.insert(0, session)
        return session

    async def _discard_tmux_session(self, host: Optional[str], tmux_name: str) -> None:
        try:
            await tmux_bridge.kill_session(host, tmux_name)
        except ExecutionError as e:
            logger.debug("Cleanup kill of %s failed: %s", tmux_name, e)

    async def stop(self, session_id: str) -> Optional[Session]:
        """Kill and unregister a session.

        Returns:
            The removed Session, or None when the id is unknown
        """
        async with self._lock:
            session = self.get(session_id)
            if session is None:
                return None
            self._sessions = [s for s in self._sessions if s.id != session_id]
            key = (session.ssh_host, session.tmux_name)
            self._stopping.add(key)

        try:
            await tmux_bridge.kill_session(session.ssh_host, session.tmux_name)
        except ExecutionError as e:
            # Already gone in tmux; still drop it from the registry
            logger.debug("kill-session for %s failed: %s", session.tmux_name, e)
        finally:
            self._stopping.discard(key)

        logger.info("Stopped session %s", session_id)
        self._notify_removed([session])
        await self._events.publish(
            EventType.SESSION_STOPPED,
            {
                "projectId": session.project_id,
                "projectName": session.project_name,
                "sessionId": session.id,
                "kind": session.kind,
                "tmuxName": session.tmux_name,
                "sshHost": session.ssh_host,
            },
        )
        return session

    async def stop_project(self, project_id: str) -> int:
        """Stop every session of a project. Returns how many were stopped."""
        stopped = 0
        for session in [s for s in self._sessions if s.project_id == project_id]:
            if await self.stop(session.id) is not None:
                stopped += 1
        return stopped
