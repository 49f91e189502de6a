"""
Relay context: the state one relay process owns.

create_app() builds a RelayContext and stores it on ``app.state.relay``;
route handlers obtain it through the get_relay dependency. Nothing here
is a module-level singleton, so tests and embedders can run several
relays side by side.
"""

from typing import Callable, List, Optional

from fastapi import Request

from .config import RelayConfig
from .correlator import RequestCorrelator
from .normalizer import TableSnapshot
from .session import Clock, SessionRegistry, SessionState, epoch_millis
from .shared.logger import get_logger
from .sinks import SinkFanout, SnapshotSink

logger = get_logger(__name__)

SessionCallback = Callable[[SessionState], None]


class RelayContext:
    """Session registry, correlator and sinks of one relay."""

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        sinks: Optional[List[SnapshotSink]] = None,
        clock: Clock = epoch_millis,
    ):
        self.config = config or RelayConfig()
        self.clock = clock
        self.session = SessionRegistry(self.config.liveness_timeout_s, clock=clock)
        self.correlator = RequestCorrelator(
            self.session,
            request_timeout_s=self.config.request_timeout_s,
            clock=clock,
        )
        self.sinks = SinkFanout(sinks)
        # effective port; the server runner updates it after binding
        self.port = self.config.port
        self._on_connected: List[SessionCallback] = []

    def on_session_connected(self, callback: SessionCallback) -> Callable[[], None]:
        """Register a callback fired when an R session attaches.

        Returns:
            A function that unregisters the callback.
        """
        self._on_connected.append(callback)

        def remove() -> None:
            if callback in self._on_connected:
                self._on_connected.remove(callback)

        return remove

    def register_session(
        self,
        peer_version: Optional[str] = None,
        peer_process_id: Optional[int] = None,
    ) -> bool:
        """Register the R peer and notify listeners on a new attachment."""
        became_attached = self.session.register(peer_version, peer_process_id)
        if became_attached:
            state = self.session.state
            for callback in list(self._on_connected):
                try:
                    callback(state)
                except Exception as e:
                    logger.error("Session connected callback failed: %s", e)
        return became_attached

    def deliver(self, snapshot: TableSnapshot) -> None:
        self.sinks.on_snapshot(snapshot)

    def status(self) -> dict:
        state = self.session.state
        return {
            "connected": self.session.is_attached(),
            "session": state.to_dict() if state else None,
            "pendingRequests": self.correlator.pending_count(),
        }


def get_relay(request: Request) -> RelayContext:
    """FastAPI dependency returning the relay of the current app."""
    return request.app.state.relay
