"""
Root conftest.py for REViewer relay tests.

Shared fixtures: a controllable millisecond clock, relay configuration,
an app wired to a recording sink, and a TestClient bound to it.
"""

import sys
from pathlib import Path
from typing import List

import pytest
from fastapi.testclient import TestClient

# Ensure the project root is in the path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from api.config import RelayConfig
from api.normalizer import TableSnapshot
from main import create_app


# ============================================================================
# Pytest Hooks
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "websocket: mark test as involving WebSocket communication",
    )
    config.addinivalue_line(
        "markers",
        "network: mark test as binding real loopback sockets",
    )


def pytest_collection_modifyitems(config, items):
    """Mark WebSocket tests by name."""
    for item in items:
        if "websocket" in item.name.lower():
            item.add_marker(pytest.mark.websocket)


# ============================================================================
# Shared Fixtures
# ============================================================================


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class RecordingSink:
    """Snapshot sink that keeps everything it receives."""

    def __init__(self):
        self.snapshots: List[TableSnapshot] = []

    def on_snapshot(self, snapshot: TableSnapshot) -> None:
        self.snapshots.append(snapshot)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def relay_config() -> RelayConfig:
    return RelayConfig(port=8765, request_timeout_s=30, liveness_timeout_s=60)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def app(relay_config, sink, clock):
    return create_app(relay_config, sinks=[sink], clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def mtcars_payload():
    """The two-row mtcars excerpt R sends with REView(mtcars[1:2, 1:2])."""
    return {
        "name": "mtcars",
        "data": {"mpg": [21, 22.8], "cyl": [6, 4]},
        "nrow": 2,
        "ncol": 2,
        "colnames": ["mpg", "cyl"],
        "coltypes": ["numeric", "numeric"],
    }
