"""
Pytest configuration for modelbridge tests.
Every test runs against the 'testing' environment with a fresh configuration.
"""

import os
import socket
import sys
from pathlib import Path

import pytest

# Add the project root to the path
sys.path.insert(0, str(Path(__file__).parent.parent))
os.environ["MODELBRIDGE_ENV"] = "testing"

from api.runtime import RelayRuntime
from api.v1.models import MockModelProvider
from config import Config, reset_config
from relay import create_app
from utils.networking.port_arbiter import PortArbiter

RUNTIME_ENV_VARS = (
    "MODELBRIDGE_CONFIG",
    "MODELBRIDGE_ENV_FILE",
    "MODELBRIDGE_RELAY_HOST",
    "MODELBRIDGE_RELAY_PORT",
    "MODELBRIDGE_AUTO_RECLAIM",
    "MODELBRIDGE_AUTO_OPEN",
    "MODELBRIDGE_DISCOVERY_PORTS",
    "MODELBRIDGE_UPSTREAM_URL",
    "MODELBRIDGE_LOG_LEVEL",
    "USE_MOCK_LLM",
)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    """Keep host environment variables and cached config out of every test."""
    for name in RUNTIME_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MODELBRIDGE_ENV", "testing")
    reset_config()
    yield
    reset_config()


@pytest.fixture
def test_config() -> Config:
    return Config(env="testing")


@pytest.fixture
def mock_provider() -> MockModelProvider:
    return MockModelProvider(chunk_delay=0)


@pytest.fixture
def runtime(test_config, mock_provider) -> RelayRuntime:
    arbiter = PortArbiter(test_config.get("relay.host"), confirm=lambda port, holders: False)
    return RelayRuntime.from_config(test_config, provider=mock_provider, arbiter=arbiter)


@pytest.fixture
def relay_app(runtime):
    app = create_app(runtime)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(relay_app):
    return relay_app.test_client()


def free_port() -> int:
    """Ask the OS for an unused loopback port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def unused_port():
    return free_port
