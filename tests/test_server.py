"""
Tests for the loopback server runner.

These bind real sockets on 127.0.0.1.
"""

import socket

import httpx
import orjson
import pytest
from websockets.sync.client import connect

from api.config import RelayConfig
from api.errors import PortInUse
from api.server import RelayServer, bind_loopback
from main import create_app

pytestmark = pytest.mark.network


def _free_port_pair() -> int:
    """Find a port p where both p and p + 1 are free."""
    for _ in range(50):
        probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
        probe.close()
        if port >= 65534:
            continue
        try:
            other = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            other.bind(("127.0.0.1", port + 1))
            other.close()
            return port
        except OSError:
            continue
    pytest.skip("no adjacent free ports")


def _occupy(port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", port))
    sock.listen(1)
    return sock


class TestBindLoopback:

    def test_binds_configured_port(self):
        port = _free_port_pair()
        sock = bind_loopback("127.0.0.1", port)
        try:
            assert sock.getsockname()[1] == port
        finally:
            sock.close()

    def test_falls_back_to_next_port(self):
        port = _free_port_pair()
        blocker = _occupy(port)
        try:
            sock = bind_loopback("localhost", port)
            assert sock.getsockname()[1] == port + 1
            sock.close()
        finally:
            blocker.close()

    def test_both_ports_taken(self):
        port = _free_port_pair()
        blockers = [_occupy(port), _occupy(port + 1)]
        try:
            with pytest.raises(PortInUse):
                bind_loopback("127.0.0.1", port)
        finally:
            for b in blockers:
                b.close()


class TestRelayServer:

    def test_start_reports_effective_port(self):
        port = _free_port_pair()
        blocker = _occupy(port)
        app = create_app(RelayConfig(port=port))
        server = RelayServer(app)
        try:
            assert server.start() == port + 1
            assert server.is_running()
            assert app.state.relay.port == port + 1

            health = httpx.get(f"http://127.0.0.1:{port + 1}/health", timeout=5).json()
            assert health == {"status": "ok", "port": port + 1, "rSessionConnected": False}

            registered = httpx.post(f"http://127.0.0.1:{port + 1}/register", json={}, timeout=5).json()
            assert registered["port"] == port + 1
        finally:
            server.stop()
            blocker.close()
        assert not server.is_running()

    def test_websocket_display_channel(self, mtcars_payload):
        port = _free_port_pair()
        server = RelayServer(create_app(RelayConfig(port=port)))
        try:
            server.start()
            with connect(f"ws://127.0.0.1:{port}/ws", open_timeout=5) as ws:
                hello = orjson.loads(ws.recv(timeout=5))
                assert hello["type"] == "connected"

                pushed = httpx.post(f"http://127.0.0.1:{port}/review", json=mtcars_payload, timeout=5)
                assert pushed.status_code == 200

                message = orjson.loads(ws.recv(timeout=5))
                assert message["type"] == "snapshot"
                assert message["data"]["name"] == "mtcars"
        finally:
            server.stop()

    def test_top_port_has_no_fallback(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            blocker.bind(("127.0.0.1", 65535))
        except OSError:
            blocker.close()
            pytest.skip("port 65535 unavailable")
        blocker.listen(1)
        try:
            with pytest.raises(PortInUse, match="Port 65535 is in use"):
                bind_loopback("127.0.0.1", 65535)
        finally:
            blocker.close()

    def test_stop_without_start(self):
        server = RelayServer(create_app(RelayConfig()))
        server.stop()
        assert not server.is_running()
