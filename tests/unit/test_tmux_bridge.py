"""Unit tests for tmux_bridge.py."""

from unittest.mock import AsyncMock, patch

import pytest

from apropos.core import host_executor, tmux_bridge
from apropos.core.errors import ExecutionError
from apropos.core.tmux_bridge import TmuxListing


def _error(stderr: str, returncode: int = 1) -> ExecutionError:
    return ExecutionError(["tmux", "list-sessions"], None, returncode, stderr)


class TestListSessions:
    @pytest.mark.asyncio
    async def test_parses_name_and_created(self):
        output = "proj-tmux-abcde|1767225600\nscratch|1767225601\n\nbroken|notanumber"
        with patch.object(host_executor, "run", new=AsyncMock(return_value=output)) as run:
            listings = await tmux_bridge.list_sessions(None)

        assert listings == [
            TmuxListing("proj-tmux-abcde", 1767225600),
            TmuxListing("scratch", 1767225601),
            TmuxListing("broken", None),
        ]
        argv = run.call_args[0][1]
        assert argv == ["tmux", "list-sessions", "-F", "#{session_name}|#{session_created}"]

    @pytest.mark.asyncio
    async def test_no_server_running_is_empty(self):
        error = _error("no server running on /tmp/tmux-501/default")
        with patch.object(host_executor, "run", new=AsyncMock(side_effect=error)):
            assert await tmux_bridge.list_sessions(None) == []

    @pytest.mark.asyncio
    async def test_other_failures_propagate(self):
        error = _error("ssh: Could not resolve hostname devbox", returncode=255)
        with patch.object(host_executor, "run", new=AsyncMock(side_effect=error)):
            with pytest.raises(ExecutionError):
                await tmux_bridge.list_sessions("devbox")

    @pytest.mark.asyncio
    async def test_remote_listing_probes_install_locations(self):
        with patch.object(host_executor, "run", new=AsyncMock(return_value="")) as run:
            await tmux_bridge.list_sessions("devbox")

        assert run.call_args[0][0] == "devbox"
        assert "/opt/homebrew/bin/tmux" in run.call_args.kwargs["probe_paths"]


class TestCommands:
    @pytest.mark.asyncio
    async def test_new_session_with_dimensions(self):
        with patch.object(host_executor, "run", new=AsyncMock(return_value="")) as run:
            await tmux_bridge.new_session(None, "proj-tmux-abcde", "/work/proj", "exec zsh", cols=100, rows=30)

        assert run.call_args[0][1] == [
            "tmux",
            "new-session",
            "-d",
            "-s",
            "proj-tmux-abcde",
            "-x",
            "100",
            "-y",
            "30",
            "-c",
            "/work/proj",
            "exec zsh",
        ]

    @pytest.mark.asyncio
    async def test_has_session_uses_exact_match(self):
        with patch.object(host_executor, "run", new=AsyncMock(return_value="")) as run:
            assert await tmux_bridge.has_session(None, "proj-tmux-abcde") is True

        assert run.call_args[0][1][-1] == "=proj-tmux-abcde"

    @pytest.mark.asyncio
    async def test_has_session_false_on_error(self):
        with patch.object(host_executor, "run", new=AsyncMock(side_effect=_error("can't find session"))):
            assert await tmux_bridge.has_session(None, "gone") is False

    @pytest.mark.asyncio
    async def test_capture_pane_arguments(self):
        with patch.object(host_executor, "run", new=AsyncMock(return_value="line1\nline2\n\n")) as run:
            text = await tmux_bridge.capture_pane("devbox", "proj-agent-a-abcde", 120, timeout=8.0)

        assert text == "line1\nline2"
        assert run.call_args[0][1][1:] == ["capture-pane", "-p", "-J", "-S", "-120", "-t", "=proj-agent-a-abcde:"]
        assert run.call_args.kwargs["timeout"] == 8.0

    @pytest.mark.asyncio
    async def test_send_literal_skips_empty_text(self):
        with patch.object(host_executor, "run", new=AsyncMock(return_value="")) as run:
            await tmux_bridge.send_literal(None, "s", "")

        run.assert_not_called()

    @pytest.mark.asyncio
    async def test_send_literal_ends_options_before_text(self):
        with patch.object(host_executor, "run", new=AsyncMock(return_value="")) as run:
            await tmux_bridge.send_literal(None, "s", "--help")

        assert run.call_args[0][1] == ["tmux", "send-keys", "-t", "=s:", "-l", "--", "--help"]

    @pytest.mark.asyncio
    async def test_kill_and_keys_target_exact_session(self):
        with patch.object(host_executor, "run", new=AsyncMock(return_value="")) as run:
            await tmux_bridge.kill_session(None, "p-tmux-abc12")
            await tmux_bridge.send_key(None, "p-tmux-abc12", "C-m")

        kill, key = (call[0][1] for call in run.call_args_list)
        assert kill == ["tmux", "kill-session", "-t", "=p-tmux-abc12"]
        assert key == ["tmux", "send-keys", "-t", "=p-tmux-abc12:", "C-m"]

    @pytest.mark.asyncio
    async def test_scroll_history_clamps_and_picks_direction(self):
        with patch.object(host_executor, "run", new=AsyncMock(return_value="")) as run:
            await tmux_bridge.scroll_history(None, "s", -500)

        copy_mode, send = (call[0][1] for call in run.call_args_list)
        assert copy_mode == ["tmux", "copy-mode", "-t", "=s:"]
        assert send == ["tmux", "send-keys", "-t", "=s:", "-X", "-N", "120", "scroll-up"]

    @pytest.mark.asyncio
    async def test_scroll_down_and_zero(self):
        with patch.object(host_executor, "run", new=AsyncMock(return_value="")) as run:
            await tmux_bridge.scroll_history(None, "s", 0)
            run.assert_not_called()
            await tmux_bridge.scroll_history(None, "s", 3)

        assert run.call_args_list[-1][0][1][-2:] == ["3", "scroll-down"]

    @pytest.mark.asyncio
    async def test_configure_embedded_session_tolerates_failures(self):
        run = AsyncMock(side_effect=[_error("unknown option"), "", "", "", ""])
        with patch.object(host_executor, "run", new=run):
            await tmux_bridge.configure_embedded_session(None, "s")

        options = [call[0][1] for call in run.call_args_list]
        assert len(options) == 5
        assert options[0] == ["tmux", "set-option", "-t", "=s", "mouse", "off"]
        assert ["tmux", "set-window-option", "-g", "history-limit", "50000"] in options
        assert options[-1] == ["tmux", "set-window-option", "-t", "=s:", "alternate-screen", "off"]

    @pytest.mark.asyncio
    async def test_configure_keeps_alternate_screen_for_shells(self):
        with patch.object(host_executor, "run", new=AsyncMock(return_value="")) as run:
            await tmux_bridge.configure_embedded_session(None, "s", disable_alternate_screen=False)

        assert all("alternate-screen" not in call[0][1] for call in run.call_args_list)


class TestAttachArgv:
    def test_local(self):
        assert tmux_bridge.attach_argv(None, "proj-tmux-abcde") == ["tmux", "attach-session", "-t", "=proj-tmux-abcde"]

    def test_remote_uses_ssh_tty(self):
        argv = tmux_bridge.attach_argv("devbox", "proj-tmux-abcde")

        assert argv[0] == "ssh"
        assert "-t" in argv
        assert argv[-2] == "devbox"
        assert "attach-session" in argv[-1]
