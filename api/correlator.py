"""
Request/response correlation for the pull path.

The extension asks R for something (the list of data frames, or one data
frame) by issuing a request here. R discovers it by polling /pending and
answers through /respond/{id}; the answer resolves the future returned by
issue(). Requests nobody answers are retired by a timer.

All mutation happens on the event loop that runs the relay; the lock
guards readers on other threads (diagnostics, tests).
"""

import asyncio
import threading
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from .config import DEFAULT_REQUEST_TIMEOUT_S
from .errors import MalformedPayload, NotConnected, PeerError, RequestTimeout
from .normalizer import TableSnapshot, normalize_payload
from .session import Clock, SessionRegistry, epoch_millis
from .shared.logger import get_logger

logger = get_logger(__name__)


class RequestKind(str, Enum):
    """What the extension is asking R for."""

    LIST_DATA_FRAMES = "listDataFrames"
    GET_DATA = "getData"


@dataclass
class PendingRequest:
    """A pull request waiting for R to respond."""

    id: str
    kind: RequestKind
    created_at_epoch_millis: int
    future: "asyncio.Future[Any]" = field(repr=False)
    params: Optional[Dict[str, Any]] = None
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        """Form served to the polling R session."""
        return {
            "id": self.id,
            "type": self.kind.value,
            "params": self.params,
        }


class RequestCorrelator:
    """
    Tracks outstanding extension -> R requests by id.

    Each request resolves exactly once: by a response, by a peer error,
    or by timeout. Later responses for the same id are reported as not
    found and change nothing.
    """

    def __init__(
        self,
        session: SessionRegistry,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        normalizer: Callable[[Any], TableSnapshot] = normalize_payload,
        clock: Clock = epoch_millis,
    ):
        """Initialize the correlator.

        Args:
            session: Registry consulted before any request is issued
            request_timeout_s: Seconds before an unanswered request fails
            normalizer: Converts getData payloads into snapshots
            clock: Epoch-millisecond time source
        """
        self._session = session
        self._timeout_s = request_timeout_s
        self._normalizer = normalizer
        self._clock = clock
        self._pending: Dict[str, PendingRequest] = {}
        self._counter = 0
        self._lock = threading.Lock()

    @property
    def request_timeout_s(self) -> float:
        return self._timeout_s

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def list_pending(self) -> List[PendingRequest]:
        with self._lock:
            return list(self._pending.values())

    def issue(
        self,
        kind: RequestKind,
        params: Optional[Dict[str, Any]] = None,
    ) -> "asyncio.Future[Any]":
        """Queue a request for R and return a future for its answer.

        Must be called from the relay's event loop. If no R session is
        attached the returned future has already failed with NotConnected
        and nothing is queued.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        if not self._session.is_attached():
            future.set_exception(NotConnected())
            return future

        now = self._clock()
        with self._lock:
            self._counter += 1
            request_id = f"req_{self._counter}_{now}"
            request = PendingRequest(
                id=request_id,
                kind=RequestKind(kind),
                created_at_epoch_millis=now,
                future=future,
                params=params,
            )
            self._pending[request_id] = request

        request.timer = loop.call_later(self._timeout_s, self._expire, request_id)
        future.add_done_callback(partial(self._drop_if_cancelled, request_id))
        logger.debug("Issued %s request %s", request.kind.value, request_id)
        return future

    def take_oldest_pending(self) -> Optional[PendingRequest]:
        """Return the earliest-created pending request without removing it."""
        with self._lock:
            if not self._pending:
                return None
            # dict order breaks ties between equal timestamps
            return min(self._pending.values(), key=lambda r: r.created_at_epoch_millis)

    def resolve(
        self,
        request_id: str,
        data: Any = None,
        error: Optional[str] = None,
    ) -> bool:
        """Settle a pending request with R's answer.

        Args:
            request_id: Id R received from /pending
            data: Response payload; getData payloads are normalized first
            error: Error message reported by R; rejects the request

        Returns:
            False if no such request is pending (already settled, timed
            out or never issued); True otherwise.

        Raises:
            MalformedPayload: If a getData payload fails normalization.
                The request is rejected with the same error first.
        """
        with self._lock:
            request = self._pending.pop(request_id, None)
        if request is None:
            return False

        if request.timer is not None:
            request.timer.cancel()

        if error:
            logger.info("R reported error for %s: %s", request_id, error)
            self._settle(request, exc=PeerError(str(error)))
            return True

        if request.kind == RequestKind.GET_DATA:
            try:
                result = self._normalizer(data)
            except MalformedPayload as e:
                self._settle(request, exc=e)
                raise
        else:
            result = data

        self._settle(request, result=result)
        logger.debug("Resolved %s request %s", request.kind.value, request_id)
        return True

    def is_pending(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._pending

    def fail(self, request_id: str, exc: BaseException) -> bool:
        """Reject a pending request with ``exc``; False if not pending."""
        with self._lock:
            request = self._pending.pop(request_id, None)
        if request is None:
            return False
        if request.timer is not None:
            request.timer.cancel()
        self._settle(request, exc=exc)
        return True

    def cancel_all(self, reason: str = "Relay stopped") -> int:
        """Fail every pending request; used at shutdown."""
        with self._lock:
            requests = list(self._pending.values())
            self._pending.clear()

        for request in requests:
            if request.timer is not None:
                request.timer.cancel()
            self._settle(request, exc=NotConnected(reason))
        return len(requests)

    def _expire(self, request_id: str) -> None:
        with self._lock:
            request = self._pending.pop(request_id, None)
        if request is None:
            return
        logger.warning(
            "%s request %s timed out after %.0fs",
            request.kind.value,
            request_id,
            self._timeout_s,
        )
        self._settle(request, exc=RequestTimeout())

    def _drop_if_cancelled(self, request_id: str, future: "asyncio.Future[Any]") -> None:
        """Unqueue a request whose caller gave up, so R stops seeing it."""
        if not future.cancelled():
            return
        with self._lock:
            request = self._pending.pop(request_id, None)
        if request is None:
            return
        if request.timer is not None:
            request.timer.cancel()
        logger.info("Dropped %s request %s: caller cancelled", request.kind.value, request_id)

    @staticmethod
    def _settle(
        request: PendingRequest,
        result: Any = None,
        exc: Optional[BaseException] = None,
    ) -> None:
        # the awaiting caller may have been cancelled already
        if request.future.done():
            return
        if exc is not None:
            request.future.set_exception(exc)
        else:
            request.future.set_result(result)
