"""Session and project records plus the tmux naming contract."""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from apropos.constants import (
    LOCAL_HOST_LABEL,
    PROJECT_ID_PATTERN,
    TMUX_NAME_SUFFIX_ALPHABET,
    TMUX_NAME_SUFFIX_LENGTH,
)

_PROJECT_ID_RE = re.compile(f"^{PROJECT_ID_PATTERN}$")


@dataclass
class Project:
    """A workspace folder on the local host or an SSH-reachable host."""

    id: str
    name: str
    path: str
    ssh_host: Optional[str] = None


@dataclass
class Session:
    """A live tmux session hosting a shell or an agent CLI."""

    id: str
    project_id: str
    project_name: str
    kind: str
    tmux_name: str
    command: str
    working_dir: str
    ssh_host: Optional[str] = None
    workspace_label: Optional[str] = None
    last_input: str = ""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ParsedTmuxName:
    project_id: str
    kind: str
    suffix: str


def session_id_for(ssh_host: Optional[str], tmux_name: str) -> str:
    """Build the registry id `{host}:{tmux_name}`."""
    return f"{ssh_host or LOCAL_HOST_LABEL}:{tmux_name}"


def is_valid_project_id(project_id: str) -> bool:
    return bool(_PROJECT_ID_RE.match(project_id))


def generate_suffix() -> str:
    return "".join(secrets.choice(TMUX_NAME_SUFFIX_ALPHABET) for _ in range(TMUX_NAME_SUFFIX_LENGTH))


def build_tmux_name(project_id: str, kind: str, suffix: str) -> str:
    return f"{project_id}-{kind}-{suffix}"


def _name_pattern(kinds: Iterable[str]) -> re.Pattern[str]:
    # Longest kinds first so "agent-a" wins over a hypothetical "a".
    ordered = sorted(set(kinds), key=len, reverse=True)
    alternation = "|".join(re.escape(kind) for kind in ordered)
    return re.compile(f"^({PROJECT_ID_PATTERN})-({alternation})-([A-Za-z0-9_-]+)$")


def parse_tmux_name(tmux_name: str, kinds: Iterable[str]) -> Optional[ParsedTmuxName]:
    """Parse `{project_id}-{kind}-{suffix}` against the known kinds.

    Args:
        tmux_name: Name reported by `tmux list-sessions`
        kinds: Every session kind the bridge manages

    Returns:
        Parsed parts, or None when the name is not one of ours
    """
    kind_list = [kind for kind in kinds if kind]
    if not kind_list:
        return None
    match = _name_pattern(kind_list).match(tmux_name)
    if not match:
        return None
    return ParsedTmuxName(project_id=match.group(1), kind=match.group(2), suffix=match.group(3))
