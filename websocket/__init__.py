"""
WebSocket module for the REViewer relay.

Pushes normalized tables and R session notifications to display
surfaces connected over WebSocket.
"""

from .manager import (
    SESSION_CHANNEL,
    SNAPSHOT_CHANNEL,
    MessageType,
    WebSocketManager,
    WebSocketMessage,
    WebSocketSink,
)

__all__ = [
    "WebSocketManager",
    "WebSocketMessage",
    "WebSocketSink",
    "MessageType",
    "SNAPSHOT_CHANNEL",
    "SESSION_CHANNEL",
]
