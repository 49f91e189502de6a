"""
Snapshot sinks.

A sink receives every TableSnapshot the relay produces (pushed by R or
pulled by the extension) and hands it to whatever draws it. Delivery is
fire-and-forget: a failing sink is logged and never affects the relay's
HTTP response.
"""

from typing import Callable, List, Optional, Protocol

from .normalizer import TableSnapshot
from .shared.logger import get_logger

logger = get_logger(__name__)


class SnapshotSink(Protocol):
    """Consumer of normalized tables."""

    def on_snapshot(self, snapshot: TableSnapshot) -> None:
        ...


class SinkFanout:
    """
    Delivers each snapshot to every registered sink.

    Keeps the last delivered snapshot so a display surface that attaches
    late can still show the most recent table.
    """

    def __init__(self, sinks: Optional[List[SnapshotSink]] = None):
        self._sinks: List[SnapshotSink] = list(sinks or [])
        self._last: Optional[TableSnapshot] = None

    @property
    def last_snapshot(self) -> Optional[TableSnapshot]:
        return self._last

    def add(self, sink: SnapshotSink) -> Callable[[], None]:
        """Register a sink; returns a function that removes it again."""
        self._sinks.append(sink)

        def remove() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return remove

    def __len__(self) -> int:
        return len(self._sinks)

    def on_snapshot(self, snapshot: TableSnapshot) -> None:
        self._last = snapshot
        if not self._sinks:
            logger.warning("No display sink registered; snapshot %r not shown", snapshot.name)
            return

        for sink in list(self._sinks):
            try:
                sink.on_snapshot(snapshot)
            except Exception as e:
                logger.error("Snapshot sink %s failed: %s", type(sink).__name__, e)
