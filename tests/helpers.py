"""Factories and fakes shared by the test suite."""

from datetime import datetime, timezone
from typing import Optional

from apropos.core.models import Project, Session


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_project(project_id: str = "proj", ssh_host: Optional[str] = None, path: str = "/work/proj") -> Project:
    return Project(id=project_id, name=project_id.title(), path=path, ssh_host=ssh_host)


def make_session(
    tmux_name: str = "proj-agent-a-abcde",
    kind: str = "agent-a",
    ssh_host: Optional[str] = None,
    project_id: str = "proj",
    last_input: str = "",
) -> Session:
    host = ssh_host or "local"
    return Session(
        id=f"{host}:{tmux_name}",
        project_id=project_id,
        project_name=project_id.title(),
        kind=kind,
        tmux_name=tmux_name,
        command=kind,
        working_dir="/work/proj",
        ssh_host=ssh_host,
        last_input=last_input,
        started_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
