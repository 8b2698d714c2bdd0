"""Global configuration management.

Config is loaded at module import time and available globally via:
    from apropos.config import config

The path comes from APROPOS_CONFIG_PATH (default: ~/.apropos/config.yml). A missing
file means built-in defaults; tests and the daemon can swap the object with reload_config().
"""

import os
from pathlib import Path

from dotenv import load_dotenv

from apropos.config.loader import DEFAULT_CONFIG_PATH, load_apropos_config
from apropos.config.schema import (
    AgentEntry,
    AproposConfig,
    BridgeConfig,
    DetectorConfig,
    ProjectEntry,
    ServerConfig,
    SpawnConfig,
    SshConfig,
    TmuxConfig,
)

# Load .env (allow override for tests)
_env_path = os.getenv("APROPOS_ENV_PATH")
if _env_path:
    load_dotenv(Path(_env_path).expanduser())
else:
    load_dotenv()


def resolve_config_path(explicit: str | None = None) -> Path:
    """Resolve the config path from an explicit value, the environment, or the default."""
    raw = explicit or os.getenv("APROPOS_CONFIG_PATH")
    if raw:
        return Path(raw).expanduser()
    return DEFAULT_CONFIG_PATH.expanduser()


config: AproposConfig = load_apropos_config(resolve_config_path())


def reload_config(path: str | None = None) -> AproposConfig:
    """Reload configuration in place so modules holding `config` see the new values."""
    fresh = load_apropos_config(resolve_config_path(path))
    for field_name in AproposConfig.model_fields:
        setattr(config, field_name, getattr(fresh, field_name))
    return config


__all__ = [
    "AgentEntry",
    "AproposConfig",
    "BridgeConfig",
    "DetectorConfig",
    "ProjectEntry",
    "ServerConfig",
    "SpawnConfig",
    "SshConfig",
    "TmuxConfig",
    "config",
    "reload_config",
    "resolve_config_path",
]
