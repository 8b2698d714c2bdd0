"""Project lookup used by the session registry.

Project bookkeeping lives outside the bridge; the registry only needs to resolve a
project by id and enumerate the known projects (to find remote hosts).
"""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from apropos.config import ProjectEntry
from apropos.core.models import Project


class ProjectDirectory(Protocol):
    def get(self, project_id: str) -> Optional[Project]: ...

    def list(self) -> list[Project]: ...


class StaticProjectDirectory:
    """Projects declared in the `projects` section of the config file."""

    def __init__(self, projects: Iterable[Project] = ()) -> None:
        self._projects: dict[str, Project] = {project.id: project for project in projects}

    @classmethod
    def from_config(cls, entries: Iterable[ProjectEntry]) -> "StaticProjectDirectory":
        return cls(
            Project(
                id=entry.id,
                name=entry.name or entry.id,
                path=entry.path,
                ssh_host=entry.ssh_host or None,
            )
            for entry in entries
        )

    def get(self, project_id: str) -> Optional[Project]:
        return self._projects.get(project_id)

    def list(self) -> list[Project]:
        return list(self._projects.values())

    def add(self, project: Project) -> None:
        self._projects[project.id] = project


def remote_hosts(projects: ProjectDirectory) -> list[str]:
    """Distinct SSH hosts among known projects, in first-seen order."""
    hosts: list[str] = []
    for project in projects.list():
        if project.ssh_host and project.ssh_host not in hosts:
            hosts.append(project.ssh_host)
    return hosts
