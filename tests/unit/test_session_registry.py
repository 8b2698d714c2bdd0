"""Unit tests for session reconciliation, spawn and stop."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from apropos.config import config as apropos_config
from apropos.core import host_executor, tmux_bridge
from apropos.core.errors import EarlyExitError, ExecutionError, MissingDependencyError
from apropos.core.events import EventType
from apropos.core.projects import StaticProjectDirectory
from apropos.core.session_registry import SessionRegistry, SpawnRequest, build_command
from apropos.core.tmux_bridge import TmuxListing
from tests.helpers import make_project

LOCAL_LISTING = [
    TmuxListing("proj-agent-a-abcde", 1767225600),
    TmuxListing("proj-tmux-fghij", 1767225601),
    TmuxListing("scratch", 1767225602),
    TmuxListing("ghost-tmux-aaaaa", 1767225603),
    TmuxListing("remote-tmux-bbbbb", 1767225604),
]
REMOTE_LISTING = [TmuxListing("remote-agent-a-ccccc", 1767225605)]


@pytest.fixture
def projects():
    return StaticProjectDirectory(
        [make_project("proj"), make_project("remote", ssh_host="devbox", path="/srv/remote")]
    )


@pytest.fixture
def registry(events):
    return SessionRegistry(events)


@pytest.fixture
def fast_spawn(monkeypatch):
    monkeypatch.setattr(apropos_config.spawn, "grace_period_s", 0)
    monkeypatch.setattr(apropos_config.spawn, "shell", "zsh")


@pytest.fixture
def tmux():
    mocks = {
        "new_session": AsyncMock(),
        "configure_embedded_session": AsyncMock(),
        "resize_window": AsyncMock(),
        "has_session": AsyncMock(return_value=True),
        "send_literal": AsyncMock(),
        "send_key": AsyncMock(),
        "kill_session": AsyncMock(),
    }
    with patch.multiple(tmux_bridge, **mocks):
        yield mocks


def _listings(local=None, remote=None):
    async def list_sessions(host):
        result = remote if host == "devbox" else local
        if isinstance(result, Exception):
            raise result
        return list(result or [])

    return AsyncMock(side_effect=list_sessions)


@pytest.mark.usefixtures("agent_kinds")
class TestReconcile:
    @pytest.mark.asyncio
    async def test_keeps_only_names_matching_known_projects_and_hosts(self, registry, projects):
        with patch.object(tmux_bridge, "list_sessions", new=_listings(LOCAL_LISTING, REMOTE_LISTING)):
            sessions = await registry.reconcile(projects)

        assert sorted(s.id for s in sessions) == [
            "devbox:remote-agent-a-ccccc",
            "local:proj-agent-a-abcde",
            "local:proj-tmux-fghij",
        ]
        remote = registry.get("devbox:remote-agent-a-ccccc")
        assert remote.ssh_host == "devbox"
        assert remote.working_dir == "/srv/remote"
        assert remote.kind == "agent-a"

    @pytest.mark.asyncio
    async def test_is_idempotent(self, registry, projects):
        with patch.object(tmux_bridge, "list_sessions", new=_listings(LOCAL_LISTING, REMOTE_LISTING)):
            first = await registry.reconcile(projects)
            registry.set_last_input("local:proj-agent-a-abcde", "keep me")
            second = await registry.reconcile(projects)

        assert [s.id for s in first] == [s.id for s in second]
        assert registry.get("local:proj-agent-a-abcde").last_input == "keep me"

    @pytest.mark.asyncio
    async def test_failed_host_keeps_previous_sessions(self, registry, projects):
        with patch.object(tmux_bridge, "list_sessions", new=_listings(LOCAL_LISTING, REMOTE_LISTING)):
            await registry.reconcile(projects)

        unreachable = ExecutionError(["tmux"], "devbox", 255, "ssh: connect to host devbox: Connection refused")
        with patch.object(tmux_bridge, "list_sessions", new=_listings(LOCAL_LISTING, unreachable)):
            sessions = await registry.reconcile(projects)

        assert "devbox:remote-agent-a-ccccc" in {s.id for s in sessions}

    @pytest.mark.asyncio
    async def test_vanished_sessions_notify_listeners(self, registry, projects):
        listener = MagicMock()
        registry.add_removal_listener(listener)

        with patch.object(tmux_bridge, "list_sessions", new=_listings(LOCAL_LISTING, REMOTE_LISTING)):
            await registry.reconcile(projects)
        with patch.object(tmux_bridge, "list_sessions", new=_listings(LOCAL_LISTING[1:], REMOTE_LISTING)):
            await registry.reconcile(projects)

        assert registry.get("local:proj-agent-a-abcde") is None
        listener.assert_called_once()
        assert listener.call_args[0][0].id == "local:proj-agent-a-abcde"

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_reconcile(self, registry, projects):
        registry.add_removal_listener(MagicMock(side_effect=RuntimeError("listener broke")))

        with patch.object(tmux_bridge, "list_sessions", new=_listings(LOCAL_LISTING, REMOTE_LISTING)):
            await registry.reconcile(projects)
        with patch.object(tmux_bridge, "list_sessions", new=_listings([], REMOTE_LISTING)):
            sessions = await registry.reconcile(projects)

        assert [s.id for s in sessions] == ["devbox:remote-agent-a-ccccc"]


@pytest.mark.usefixtures("agent_kinds", "fast_spawn")
class TestSpawn:
    @pytest.mark.asyncio
    async def test_shell_session(self, registry, events, tmux):
        with patch.object(host_executor, "command_exists", new=AsyncMock()) as exists:
            session = await registry.spawn(make_project(), SpawnRequest(kind="tmux"))

        exists.assert_not_awaited()
        assert session.id.startswith("local:proj-tmux-")
        assert session.command == "cd /work/proj && exec zsh"
        assert registry.list() == [session]
        tmux["configure_embedded_session"].assert_awaited_once_with(
            None, session.tmux_name, disable_alternate_screen=False
        )
        tmux["has_session"].assert_not_awaited()
        started = events.recent(EventType.SESSION_STARTED)
        assert started[0].payload["sessionId"] == session.id

    @pytest.mark.asyncio
    async def test_agent_session_with_prompt(self, registry, tmux):
        with patch.object(host_executor, "command_exists", new=AsyncMock(return_value=True)) as exists:
            session = await registry.spawn(
                make_project(),
                SpawnRequest(kind="agent-a", prompt="  fix the tests\x1b[0m ", cols=100, rows=30),
            )

        exists.assert_awaited_once_with(None, "agent-a-cli", cwd="/work/proj")
        name = session.tmux_name
        tmux["new_session"].assert_awaited_once_with(None, name, "/work/proj", "agent-a-cli --yolo", 100, 30)
        tmux["resize_window"].assert_awaited_once_with(None, name, 100, 30)
        tmux["send_literal"].assert_awaited_once_with(None, name, "fix the tests\x1b[0m")
        tmux["send_key"].assert_awaited_once_with(None, name, "C-m")
        assert session.last_input == "fix the tests"

    @pytest.mark.asyncio
    async def test_missing_cli_raises_before_tmux(self, registry, events, tmux):
        with patch.object(host_executor, "command_exists", new=AsyncMock(return_value=False)):
            with pytest.raises(MissingDependencyError) as exc_info:
                await registry.spawn(make_project(), SpawnRequest(kind="agent-a"))

        assert exc_info.value.kind == "agent-a"
        assert exc_info.value.executable == "agent-a-cli"
        tmux["new_session"].assert_not_awaited()
        assert registry.list() == []
        failed = events.recent(EventType.SESSION_LAUNCH_FAILED)
        assert failed[0].severity == "error"
        assert failed[0].payload["kind"] == "agent-a"

    @pytest.mark.asyncio
    async def test_remote_agent_skips_preflight_and_uses_login_shell(self, registry, tmux):
        project = make_project("remote", ssh_host="devbox", path="/srv/remote")
        with patch.object(host_executor, "command_exists", new=AsyncMock()) as exists:
            session = await registry.spawn(project, SpawnRequest(kind="agent-a"))

        exists.assert_not_awaited()
        assert session.id.startswith("devbox:remote-agent-a-")
        command = tmux["new_session"].call_args[0][3]
        assert command == "\"$SHELL\" -lic 'agent-a-cli --yolo'"

    @pytest.mark.asyncio
    async def test_early_exit(self, registry, events, tmux):
        tmux["has_session"].return_value = False
        with patch.object(host_executor, "command_exists", new=AsyncMock(return_value=True)):
            with pytest.raises(EarlyExitError) as exc_info:
                await registry.spawn(make_project(), SpawnRequest(kind="agent-a"))

        assert exc_info.value.location == "local:/work/proj"
        assert registry.list() == []
        assert len(events.recent(EventType.SESSION_LAUNCH_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_failure_after_create_kills_orphan(self, registry, tmux):
        tmux["send_literal"].side_effect = ExecutionError(["tmux"], None, 1, "pane is dead")
        with patch.object(host_executor, "command_exists", new=AsyncMock(return_value=True)):
            with pytest.raises(ExecutionError):
                await registry.spawn(make_project(), SpawnRequest(kind="agent-a", prompt="go"))

        tmux["kill_session"].assert_awaited_once()
        assert registry.list() == []

    @pytest.mark.asyncio
    async def test_unknown_kind(self, registry, events, tmux):
        with pytest.raises(ValueError):
            await registry.spawn(make_project(), SpawnRequest(kind="vim"))

        assert events.recent() == []

    @pytest.mark.asyncio
    async def test_invalid_project_id(self, registry, tmux):
        with pytest.raises(ValueError):
            await registry.spawn(make_project("bad id"), SpawnRequest(kind="tmux"))

    @pytest.mark.asyncio
    async def test_raw_command_override(self, registry, tmux):
        session = await registry.spawn(make_project(), SpawnRequest(kind="tmux", raw_command=" htop "))

        assert session.command == "htop"

    @pytest.mark.asyncio
    async def test_newest_session_first(self, registry, tmux):
        first = await registry.spawn(make_project(), SpawnRequest(kind="tmux"))
        second = await registry.spawn(make_project(), SpawnRequest(kind="tmux"))

        assert registry.list() == [second, first]
        assert first.tmux_name != second.tmux_name


@pytest.mark.usefixtures("agent_kinds", "fast_spawn")
class TestStop:
    @pytest.mark.asyncio
    async def test_stop_removes_and_notifies(self, registry, events, tmux):
        listener = MagicMock()
        registry.add_removal_listener(listener)
        session = await registry.spawn(make_project(), SpawnRequest(kind="tmux"))

        stopped = await registry.stop(session.id)

        assert stopped is session
        assert registry.list() == []
        tmux["kill_session"].assert_awaited_once_with(None, session.tmux_name)
        listener.assert_called_once_with(session)
        assert events.recent(EventType.SESSION_STOPPED)[0].payload["sessionId"] == session.id

    @pytest.mark.asyncio
    async def test_stop_already_dead_session(self, registry, tmux):
        session = await registry.spawn(make_project(), SpawnRequest(kind="tmux"))
        tmux["kill_session"].side_effect = ExecutionError(["tmux"], None, 1, "can't find session")

        assert await registry.stop(session.id) is session
        assert registry.list() == []

    @pytest.mark.asyncio
    async def test_slow_kill_does_not_block_reconcile(self, registry, projects, tmux):
        with patch.object(tmux_bridge, "list_sessions", new=_listings(LOCAL_LISTING, REMOTE_LISTING)):
            await registry.reconcile(projects)
        killing = asyncio.Event()
        release = asyncio.Event()

        async def slow_kill(host, name):
            killing.set()
            await release.wait()

        tmux["kill_session"].side_effect = slow_kill
        stopping = asyncio.create_task(registry.stop("local:proj-agent-a-abcde"))
        await killing.wait()

        with patch.object(tmux_bridge, "list_sessions", new=_listings(LOCAL_LISTING, REMOTE_LISTING)):
            sessions = await asyncio.wait_for(registry.reconcile(projects), timeout=0.5)

        assert "local:proj-agent-a-abcde" not in {s.id for s in sessions}
        release.set()
        assert (await stopping).id == "local:proj-agent-a-abcde"

    @pytest.mark.asyncio
    async def test_stop_unknown(self, registry, tmux):
        assert await registry.stop("local:nope-tmux-xxxxx") is None

    @pytest.mark.asyncio
    async def test_stop_project(self, registry, tmux):
        await registry.spawn(make_project(), SpawnRequest(kind="tmux"))
        await registry.spawn(make_project(), SpawnRequest(kind="tmux"))
        other = await registry.spawn(make_project("other", path="/work/other"), SpawnRequest(kind="tmux"))

        assert await registry.stop_project("proj") == 2
        assert registry.list() == [other]


def test_build_command_for_agent(agent_kinds):
    assert build_command("agent-a", None, "/work") == "agent-a-cli --yolo"


def test_build_command_for_shell_quotes_directory(monkeypatch):
    monkeypatch.setattr(apropos_config.spawn, "shell", "/bin/bash")

    assert build_command("tmux", None, "/work/my project") == "cd '/work/my project' && exec /bin/bash"
