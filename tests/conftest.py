"""Pytest configuration for Apropos tests."""

import logging
import os

import pytest

# Never pick up a developer's real config or .env during tests
os.environ["APROPOS_CONFIG_PATH"] = os.path.join(os.path.dirname(__file__), "_no_such_config.yml")
os.environ.setdefault("APROPOS_ENV_PATH", os.path.join(os.path.dirname(__file__), "_no_such.env"))

from apropos.config import AgentEntry  # noqa: E402
from apropos.config import config as apropos_config  # noqa: E402
from apropos.core.events import EventHub  # noqa: E402
from tests.helpers import FakeClock  # noqa: E402

logging.getLogger("apropos").handlers.clear()


def pytest_collection_modifyitems(config, items):
    """Set per-marker timeouts: unit=1s, integration=5s."""
    for item in items:
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(1))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))


@pytest.fixture
def agent_kinds(monkeypatch):
    """Configure a single agent kind, 'agent-a', backed by the 'agent-a-cli' executable."""
    monkeypatch.setattr(apropos_config, "agents", {"agent-a": AgentEntry(command="agent-a-cli --yolo")})
    return apropos_config.agents


@pytest.fixture
def events():
    return EventHub()


@pytest.fixture
def clock():
    return FakeClock()
