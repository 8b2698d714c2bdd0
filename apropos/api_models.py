"""API request/response models for the API server.

JSON on the wire is camelCase; Python attributes stay snake_case.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    from apropos.core.models import Session

_CAMEL = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class CreateSessionRequest(BaseModel):
    """Request to spawn a session in a project."""

    model_config = _CAMEL

    project_ref: str = Field(..., min_length=1)
    kind: str = Field(..., min_length=1)
    raw_command: str | None = None
    prompt: str | None = None
    working_directory_path: str | None = None
    workspace_label: str | None = None
    cols: int | None = Field(default=None, ge=1, le=1000)
    rows: int | None = Field(default=None, ge=1, le=1000)


class SessionDTO(BaseModel):
    """A live session as the UI sees it."""

    model_config = _CAMEL

    id: str
    project_id: str
    project_name: str
    kind: str
    tmux_name: str
    command: str
    working_dir: str
    ssh_host: str | None = None
    workspace_label: str | None = None
    last_input: str = ""
    started_at: datetime

    @classmethod
    def from_core(cls, session: "Session") -> "SessionDTO":
        """Map from the core Session dataclass."""
        return cls(
            id=session.id,
            project_id=session.project_id,
            project_name=session.project_name,
            kind=session.kind,
            tmux_name=session.tmux_name,
            command=session.command,
            working_dir=session.working_dir,
            ssh_host=session.ssh_host,
            workspace_label=session.workspace_label,
            last_input=session.last_input,
            started_at=session.started_at,
        )


class StopProjectSessionsDTO(BaseModel):
    model_config = _CAMEL

    stopped: int


class SpawnErrorDTO(BaseModel):
    """Structured error body for failed spawns."""

    model_config = _CAMEL

    code: Literal["MISSING_CLI", "EARLY_EXIT", "EXECUTION_FAILED"]
    message: str
    kind: str | None = None
    executable: str | None = None
    location: str | None = None
