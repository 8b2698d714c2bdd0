"""Constants used across Apropos.

This module defines shared constants to ensure consistency.
"""

# Kind used for plain interactive shells. Agent kinds come from config.
SHELL_KIND = "tmux"

# Host label used in session ids for the local machine
LOCAL_HOST_LABEL = "local"

# Naming contract: {project_id}-{kind}-{suffix}
PROJECT_ID_PATTERN = r"[A-Za-z0-9_-]+"
TMUX_NAME_SUFFIX_LENGTH = 5
TMUX_NAME_SUFFIX_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

# Default agent CLIs (NOT user-facing defaults only; config may extend/override)
DEFAULT_AGENT_COMMANDS: dict[str, str] = {
    "codex": "codex",
    "claude": "claude",
    "cursor": "cursor-agent",
    "opencode": "opencode",
}

# Known tmux install locations probed on remote hosts when tmux is not on PATH
DEFAULT_REMOTE_TMUX_CANDIDATES = [
    "/opt/homebrew/bin/tmux",
    "/usr/local/bin/tmux",
    "/usr/bin/tmux",
]

# Terminal type for the attach process
ATTACH_TERM = "xterm-256color"

# Scroll requests are clamped to this many copy-mode steps
MAX_SCROLL_STEPS = 120

# Shell prompt leaders never treated as agent questions
PROMPT_LEADERS = (">", "$", "#", "%")

# Bounded alert event fan-out history
EVENT_HISTORY_LIMIT = 300
