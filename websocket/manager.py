"""
WebSocket connection manager for the REViewer relay.

Display surfaces (the data grid panel) connect to /ws and receive:
- snapshot messages for every table pushed or pulled through the relay
- session_connected messages when an R session attaches

Clients can limit what they receive by subscribing to channels:
- snapshots - normalized tables
- session - R session attach notifications
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set

import orjson
from fastapi import WebSocket

from api.normalizer import TableSnapshot
from api.session import SessionState
from api.shared.logger import get_logger

logger = get_logger(__name__)

SNAPSHOT_CHANNEL = "snapshots"
SESSION_CHANNEL = "session"


class MessageType(str, Enum):
    """Types of WebSocket messages."""

    # Relay events
    SNAPSHOT = "snapshot"
    SESSION_CONNECTED = "session_connected"

    # Control messages
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"


@dataclass
class WebSocketMessage:
    """Represents a WebSocket message."""

    type: MessageType
    channel: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now().isoformat()

    def to_json(self) -> str:
        """Convert message to JSON string."""
        return orjson.dumps({
            "type": self.type.value,
            "channel": self.channel,
            "data": self.data,
            "timestamp": self.timestamp,
        }).decode("utf-8")

    @classmethod
    def from_json(cls, json_str: str) -> "WebSocketMessage":
        """Create message from JSON string."""
        data = orjson.loads(json_str)
        if not isinstance(data, dict):
            raise ValueError("message must be a JSON object")
        return cls(
            type=MessageType(data.get("type", "error")),
            channel=data.get("channel", ""),
            data=data.get("data") or {},
            timestamp=data.get("timestamp"),
        )


class WebSocketManager:
    """
    Manages WebSocket connections of display surfaces.

    A new connection is subscribed to every relay channel; clients may
    unsubscribe from the ones they do not need.
    """

    def __init__(self):
        # All active connections
        self._connections: Set[WebSocket] = set()

        # Channel subscriptions: channel -> set of WebSockets
        self._channels: Dict[str, Set[WebSocket]] = {}

        # Connection metadata: WebSocket -> subscription info
        self._connection_info: Dict[WebSocket, Dict[str, Any]] = {}

        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, client_id: Optional[str] = None) -> None:
        """
        Accept a new WebSocket connection.

        Args:
            websocket: The WebSocket connection
            client_id: Optional client identifier
        """
        await websocket.accept()

        async with self._lock:
            self._connections.add(websocket)
            self._connection_info[websocket] = {
                "client_id": client_id,
                "connected_at": datetime.now().isoformat(),
                "subscriptions": {SNAPSHOT_CHANNEL, SESSION_CHANNEL},
            }
            for channel in (SNAPSHOT_CHANNEL, SESSION_CHANNEL):
                self._channels.setdefault(channel, set()).add(websocket)

        await self.send_to_connection(
            websocket,
            WebSocketMessage(
                type=MessageType.CONNECTED,
                channel="system",
                data={
                    "client_id": client_id,
                    "message": "Connected to REViewer relay",
                },
            ),
        )

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            subscriptions = self._connection_info.get(websocket, {}).get("subscriptions", set())
            for channel in subscriptions:
                if channel in self._channels:
                    self._channels[channel].discard(websocket)
                    if not self._channels[channel]:
                        del self._channels[channel]

            self._connections.discard(websocket)
            self._connection_info.pop(websocket, None)

    async def subscribe(self, websocket: WebSocket, channel: str) -> None:
        async with self._lock:
            self._channels.setdefault(channel, set()).add(websocket)
            if websocket in self._connection_info:
                self._connection_info[websocket]["subscriptions"].add(channel)

        await self.send_to_connection(
            websocket,
            WebSocketMessage(
                type=MessageType.SUBSCRIBED,
                channel=channel,
                data={"channel": channel},
            ),
        )

    async def unsubscribe(self, websocket: WebSocket, channel: str) -> None:
        async with self._lock:
            if channel in self._channels:
                self._channels[channel].discard(websocket)
                if not self._channels[channel]:
                    del self._channels[channel]

            if websocket in self._connection_info:
                self._connection_info[websocket]["subscriptions"].discard(channel)

        await self.send_to_connection(
            websocket,
            WebSocketMessage(
                type=MessageType.UNSUBSCRIBED,
                channel=channel,
                data={"channel": channel},
            ),
        )

    async def send_to_connection(
        self,
        websocket: WebSocket,
        message: WebSocketMessage,
    ) -> bool:
        """
        Send a message to a specific connection.

        Returns:
            True if sent successfully, False otherwise
        """
        try:
            await websocket.send_text(message.to_json())
            return True
        except Exception as e:
            logger.warning("Error sending WebSocket message: %s", e)
            await self.disconnect(websocket)
            return False

    async def broadcast_to_channel(
        self,
        channel: str,
        message: WebSocketMessage,
    ) -> int:
        """
        Broadcast a message to all subscribers of a channel.

        Returns:
            Number of connections that received the message
        """
        async with self._lock:
            subscribers = list(self._channels.get(channel, set()))

        payload = message.to_json()
        sent_count = 0
        disconnected = []

        for websocket in subscribers:
            try:
                await websocket.send_text(payload)
                sent_count += 1
            except Exception:
                disconnected.append(websocket)

        for ws in disconnected:
            await self.disconnect(ws)

        return sent_count

    def get_channel_subscribers(self, channel: str) -> int:
        return len(self._channels.get(channel, set()))

    def get_connection_count(self) -> int:
        """Get the total number of active connections."""
        return len(self._connections)

    async def handle_message(
        self,
        websocket: WebSocket,
        message_text: str,
    ) -> Optional[WebSocketMessage]:
        """
        Handle an incoming WebSocket message.

        Returns:
            Response message or None
        """
        try:
            message = WebSocketMessage.from_json(message_text)
        except (orjson.JSONDecodeError, ValueError) as e:
            return WebSocketMessage(
                type=MessageType.ERROR,
                channel="system",
                data={"error": f"Invalid message format: {e}"},
            )

        if message.type == MessageType.PING:
            return WebSocketMessage(
                type=MessageType.PONG,
                channel="system",
                data={"timestamp": datetime.now().isoformat()},
            )

        if message.type == MessageType.SUBSCRIBE:
            channel = message.data.get("channel")
            if channel:
                await self.subscribe(websocket, channel)
            return None

        if message.type == MessageType.UNSUBSCRIBE:
            channel = message.data.get("channel")
            if channel:
                await self.unsubscribe(websocket, channel)
            return None

        return None


class WebSocketSink:
    """
    Snapshot sink that forwards tables to connected display surfaces.

    Broadcasts are scheduled on the relay's event loop and never awaited
    by the caller, so a slow client cannot hold up an HTTP response.
    """

    def __init__(self, manager: WebSocketManager, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._manager = manager
        self._loop = loop
        self._tasks: Set["asyncio.Future[Any]"] = set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def on_snapshot(self, snapshot: TableSnapshot) -> None:
        message = WebSocketMessage(
            type=MessageType.SNAPSHOT,
            channel=SNAPSHOT_CHANNEL,
            data=snapshot.to_dict(),
        )
        self._schedule(SNAPSHOT_CHANNEL, message)

    def on_session_connected(self, state: SessionState) -> None:
        message = WebSocketMessage(
            type=MessageType.SESSION_CONNECTED,
            channel=SESSION_CHANNEL,
            data=state.to_dict(),
        )
        self._schedule(SESSION_CHANNEL, message)

    def _schedule(self, channel: str, message: WebSocketMessage) -> None:
        if self._manager.get_channel_subscribers(channel) == 0:
            return

        coro = self._manager.broadcast_to_channel(channel, message)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not None and (self._loop is None or running is self._loop):
            task = running.create_task(coro)
        elif self._loop is not None and self._loop.is_running():
            task = asyncio.run_coroutine_threadsafe(coro, self._loop)
        else:
            coro.close()
            logger.debug("No event loop for WebSocket broadcast on %s", channel)
            return

        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
