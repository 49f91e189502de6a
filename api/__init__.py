"""
API package for the REViewer relay.

This package provides:
- Table normalization of R data frames (normalizer.py)
- R session registration and liveness (session.py)
- Pull request correlation with timeouts (correlator.py)
- Relay protocol routes used by R (relay.py)
- Health, status and extension-facing routes (system.py)
- Snapshot sinks (sinks.py) and the pull-path data provider (data_provider.py)
- Loopback server runner with port fallback (server.py)
"""

from .config import RelayConfig
from .context import RelayContext
from .correlator import PendingRequest, RequestCorrelator, RequestKind
from .normalizer import ColumnDescriptor, ColumnType, TableSnapshot, normalize_payload
from .session import SessionRegistry, SessionState

__all__ = [
    "RelayConfig",
    "RelayContext",
    "RequestCorrelator",
    "RequestKind",
    "PendingRequest",
    "SessionRegistry",
    "SessionState",
    "ColumnDescriptor",
    "ColumnType",
    "TableSnapshot",
    "normalize_payload",
]
