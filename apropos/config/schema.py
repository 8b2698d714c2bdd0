from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from apropos.constants import (
    DEFAULT_AGENT_COMMANDS,
    DEFAULT_REMOTE_TMUX_CANDIDATES,
    PROJECT_ID_PATTERN,
    SHELL_KIND,
)


class ServerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    host: str = "127.0.0.1"
    port: int = Field(default=4311, ge=1, le=65535)


class TmuxConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    binary: str = "tmux"
    remote_binary: Optional[str] = None  # Tried before the candidates on remote hosts
    remote_candidates: List[str] = Field(default_factory=lambda: list(DEFAULT_REMOTE_TMUX_CANDIDATES))
    history_limit: int = Field(default=50000, ge=1000)
    cols: Optional[int] = Field(default=None, ge=1)
    rows: Optional[int] = Field(default=None, ge=1)
    command_timeout_s: float = Field(default=30.0, gt=0)


class SshConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    binary: str = "ssh"
    connect_timeout_s: int = Field(default=8, ge=1)
    keepalive_interval_s: int = Field(default=20, ge=1)
    keepalive_count_max: int = Field(default=3, ge=1)
    control_persist: str = "10m"
    control_path: str = "/tmp/apropos-ssh-%C"
    batch_mode: bool = True


class SpawnConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    grace_period_s: float = Field(default=0.7, ge=0)
    shell: Optional[str] = None  # Defaults to $SHELL, then zsh


class BridgeConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    attach_enabled: bool = True
    poll_interval_s: float = Field(default=0.14, gt=0)
    input_render_delay_s: float = Field(default=0.01, ge=0)
    capture_lines: int = Field(default=120, ge=1)
    history_lines: int = Field(default=20000, ge=0)
    history_delay_s: float = Field(default=0.15, ge=0)
    history_deadline_s: float = Field(default=0.4, ge=0)
    selection_queue_limit: int = Field(default=200, ge=1)
    default_cols: int = Field(default=120, ge=1)
    default_rows: int = Field(default=40, ge=1)


class DetectorConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    enabled: bool = True
    poll_interval_s: float = Field(default=2.2, gt=0)
    idle_threshold_s: float = Field(default=2.6, gt=0)
    remote_poll_interval_s: float = Field(default=7.0, ge=0)
    capture_lines: int = Field(default=120, ge=1)
    capture_timeout_s: float = Field(default=8.0, gt=0)
    question_scan_lines: int = Field(default=14, ge=1)
    question_min_length: int = Field(default=8, ge=1)
    question_max_length: int = Field(default=260, ge=1)
    tail_chars: int = Field(default=2500, ge=100)
    merge_chars: int = Field(default=8000, ge=100)
    fingerprint_chars: int = Field(default=1800, ge=100)

    @model_validator(mode="after")
    def validate_question_bounds(self) -> "DetectorConfig":
        if self.question_min_length > self.question_max_length:
            raise ValueError("question_min_length must not exceed question_max_length")
        return self


class AgentEntry(BaseModel):
    model_config = ConfigDict(extra="allow")
    command: str = Field(..., min_length=1)


class ProjectEntry(BaseModel):
    model_config = ConfigDict(extra="allow")
    id: str = Field(..., pattern=f"^{PROJECT_ID_PATTERN}$")
    name: Optional[str] = None
    path: str = Field(..., min_length=1)
    ssh_host: Optional[str] = None


def _default_agents() -> Dict[str, AgentEntry]:
    return {kind: AgentEntry(command=command) for kind, command in DEFAULT_AGENT_COMMANDS.items()}


class AproposConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    server: ServerConfig = ServerConfig()
    tmux: TmuxConfig = TmuxConfig()
    ssh: SshConfig = SshConfig()
    spawn: SpawnConfig = SpawnConfig()
    bridge: BridgeConfig = BridgeConfig()
    detector: DetectorConfig = DetectorConfig()
    agents: Dict[str, AgentEntry] = Field(default_factory=_default_agents)
    projects: List[ProjectEntry] = []

    @field_validator("agents")
    @classmethod
    def validate_agent_kinds(cls, v: Dict[str, AgentEntry]) -> Dict[str, AgentEntry]:
        import re

        for kind in v:
            if kind == SHELL_KIND:
                raise ValueError(f"'{SHELL_KIND}' is reserved for plain shell sessions")
            if not re.match(r"^[A-Za-z0-9_-]+$", kind):
                raise ValueError(f"Invalid agent kind: {kind}. Use letters, digits, '_' or '-'")
        return v

    @model_validator(mode="after")
    def validate_unique_projects(self) -> "AproposConfig":
        seen: set[str] = set()
        for project in self.projects:
            if project.id in seen:
                raise ValueError(f"Duplicate project id: {project.id}")
            seen.add(project.id)
        return self

    @property
    def agent_kinds(self) -> frozenset[str]:
        return frozenset(self.agents)

    @property
    def session_kinds(self) -> frozenset[str]:
        return frozenset({SHELL_KIND, *self.agents})
