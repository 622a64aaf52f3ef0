"""Global pytest fixtures and configuration."""

import sys
from pathlib import Path
from typing import Callable, List

import httpx
import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fieldagent.models.config import AgentConfig  # noqa: E402
from fieldagent.services.config_handler import ConfigurationHandler  # noqa: E402
from fieldagent.services.connection import ConnectionHandler  # noqa: E402
from fieldagent.services.event_bus import EventBus  # noqa: E402

SERVER_URL = "http://mgmt.test"


class FakeServer:
    """httpx.MockTransport wrapper that records every request."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: List[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


@pytest.fixture
def work_dir(tmp_path):
    """Agent data directory."""
    path = tmp_path / "data"
    path.mkdir()
    yield path


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def config_handler(work_dir, event_bus):
    """Non-persisting configuration handler pointing at the fake server."""
    config = AgentConfig(
        server_url=SERVER_URL,
        identification="target-1",
        work_dir=work_dir,
        sync_delay=0,
    )
    return ConfigurationHandler(config=config, event_bus=event_bus, persist=False)


@pytest.fixture
def fake_server():
    """Factory: fake_server(handler) -> FakeServer."""
    return FakeServer


@pytest.fixture
def make_connection(config_handler):
    """Factory: make_connection(server) -> ConnectionHandler using its transport."""

    def _make(server: FakeServer) -> ConnectionHandler:
        return ConnectionHandler(config_handler, transport=server.transport)

    return _make
