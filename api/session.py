"""
R session registry.

Tracks the single R process attached to the relay. Attachment is not a
stored flag: it is derived from the last heartbeat (or poll) and the
liveness timeout, so a peer that goes quiet simply stops counting as
attached without any disconnect call.
"""

import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional

from .config import DEFAULT_LIVENESS_TIMEOUT_S
from .errors import NotRegistered
from .shared.logger import get_logger

logger = get_logger(__name__)

Clock = Callable[[], int]


def epoch_millis() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SessionState:
    """Registration record of one R peer."""

    registered_at_epoch_millis: int
    last_heartbeat_epoch_millis: int
    peer_version: Optional[str] = None
    peer_process_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "registeredAt": self.registered_at_epoch_millis,
            "lastHeartbeat": self.last_heartbeat_epoch_millis,
            "rVersion": self.peer_version,
            "pid": self.peer_process_id,
        }


class SessionRegistry:
    """Holds at most one R session and answers whether it is still alive."""

    def __init__(
        self,
        liveness_timeout_s: float = DEFAULT_LIVENESS_TIMEOUT_S,
        clock: Clock = epoch_millis,
    ):
        self._timeout_ms = int(liveness_timeout_s * 1000)
        self._clock = clock
        self._state: Optional[SessionState] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> Optional[SessionState]:
        return self._state

    @property
    def liveness_timeout_ms(self) -> int:
        return self._timeout_ms

    def register(
        self,
        peer_version: Optional[str] = None,
        peer_process_id: Optional[int] = None,
    ) -> bool:
        """Replace any prior session with a fresh attached one.

        Returns:
            True if the relay went from not-attached to attached.
        """
        with self._lock:
            now = self._clock()
            was_attached = self._is_attached_at(now)
            self._state = SessionState(
                registered_at_epoch_millis=now,
                last_heartbeat_epoch_millis=now,
                peer_version=peer_version,
                peer_process_id=peer_process_id,
            )

        logger.info(
            "R session registered (R %s, pid %s)",
            peer_version or "unknown",
            peer_process_id if peer_process_id is not None else "unknown",
        )
        return not was_attached

    def heartbeat(self) -> None:
        """Extend liveness of the current session.

        Raises:
            NotRegistered: If no session was ever registered.
        """
        with self._lock:
            if self._state is None:
                raise NotRegistered()
            self._state = replace(self._state, last_heartbeat_epoch_millis=self._clock())

    def touch(self) -> None:
        """Extend liveness if a session exists; used by polling."""
        with self._lock:
            if self._state is not None:
                self._state = replace(self._state, last_heartbeat_epoch_millis=self._clock())

    def is_attached(self) -> bool:
        return self._is_attached_at(self._clock())

    def _is_attached_at(self, now: int) -> bool:
        state = self._state
        if state is None:
            return False
        return now - state.last_heartbeat_epoch_millis < self._timeout_ms
