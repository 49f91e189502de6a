"""
Data provider for the extension side of the pull path.

Wraps the correlator with the operations the extension's commands need
(list the data frames in R's global environment, fetch one of them) and
keeps fetched snapshots in a short-lived cache so reopening a table does
not round-trip through R.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError, field_validator

from .context import RelayContext
from .correlator import RequestKind
from .errors import MalformedPayload
from .normalizer import TableSnapshot
from .shared.logger import get_logger

logger = get_logger(__name__)


class DataFrameMetadata(BaseModel):
    """Summary of one data frame, as listed by R."""

    name: str
    rows: int = 0
    columns: int = 0
    size: str = ""
    columnNames: List[str] = []

    @field_validator("columnNames", mode="before")
    @classmethod
    def _unbox_names(cls, value: Any) -> Any:
        # jsonlite unboxes a single column name into a bare string
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


@dataclass
class _CacheEntry:
    snapshot: TableSnapshot
    stored_at: int


class DataFrameService:
    """
    Pull-path facade used by the extension.

    Every fetched snapshot is also delivered to the relay's sinks, the
    same way a pushed one is.
    """

    def __init__(self, relay: RelayContext, cache_ttl_s: Optional[float] = None):
        self._relay = relay
        ttl = relay.config.cache_ttl_s if cache_ttl_s is None else cache_ttl_s
        self._ttl_ms = int(ttl * 1000)
        self._cache: Dict[str, _CacheEntry] = {}

    def is_connected(self) -> bool:
        return self._relay.session.is_attached()

    async def list_data_frames(self) -> List[DataFrameMetadata]:
        """Ask R for the data frames in its global environment.

        Raises:
            NotConnected: No R session is attached.
            RequestTimeout: R did not answer in time.
            PeerError: R answered with an error.
            MalformedPayload: R's answer is not a list of data frames.
        """
        raw = await self._relay.correlator.issue(RequestKind.LIST_DATA_FRAMES)
        if raw is None:
            return []
        if isinstance(raw, dict):
            raw = [raw]
        if not isinstance(raw, list):
            raise MalformedPayload("Invalid data frame list from R")
        try:
            return [DataFrameMetadata.model_validate(item) for item in raw]
        except ValidationError as e:
            raise MalformedPayload(f"Invalid data frame list from R: {e.errors()[0]['msg']}") from None

    async def get_data_frame(
        self,
        name: str,
        use_cache: bool = True,
        deliver: bool = True,
    ) -> TableSnapshot:
        """Fetch a data frame by name, from cache when still fresh."""
        snapshot = self._get_cached(name) if use_cache else None
        if snapshot is None:
            try:
                snapshot = await self._relay.correlator.issue(
                    RequestKind.GET_DATA, {"name": name}
                )
            except Exception as e:
                logger.error("Failed to get data frame %r: %s", name, e)
                raise
            self._cache[name] = _CacheEntry(snapshot, self._relay.clock())

        if deliver:
            self._relay.deliver(snapshot)
        return snapshot

    async def refresh(self, name: str) -> TableSnapshot:
        """Fetch a data frame again, bypassing the cache."""
        self.invalidate(name)
        return await self.get_data_frame(name, use_cache=False)

    def invalidate(self, name: Optional[str] = None) -> None:
        if name is None:
            self._cache.clear()
        else:
            self._cache.pop(name, None)

    def cached_names(self) -> List[str]:
        return [name for name in list(self._cache) if self._get_cached(name) is not None]

    def _get_cached(self, name: str) -> Optional[TableSnapshot]:
        entry = self._cache.get(name)
        if entry is None:
            return None
        if self._relay.clock() - entry.stored_at > self._ttl_ms:
            del self._cache[name]
            return None
        return entry.snapshot
