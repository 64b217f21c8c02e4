"""
WebSocket connection manager for live match updates.

Keeps every connected client and broadcasts lifecycle events
(match-started, team-assigned, passcode-revealed, ...) to all of them.
Emitting is fire-and-forget: a dead socket or a serialization problem is
logged and dropped, never raised to the caller.
"""

import asyncio
import json
import logging
from typing import Dict, Set, Optional, Any
from datetime import datetime, timedelta
from fastapi import WebSocket

from raceleague.models.schemas import LiveUpdateEvent
from raceleague.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# Timeout for WebSocket connections (30 seconds of inactivity)
WEBSOCKET_TIMEOUT_SECONDS = 30


class WebSocketManager:
    """Manages WebSocket connections for live match updates."""

    def __init__(self):
        """Initialize the WebSocket manager."""
        self.active_connections: Set[WebSocket] = set()
        # Dictionary mapping WebSocket to last activity timestamp
        self.connection_timestamps: Dict[WebSocket, datetime] = {}
        # Lock for safe access to the connection set
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        """
        Register a WebSocket connection.

        Args:
            websocket: WebSocket connection object (already accepted)
        """
        async with self._lock:
            self.active_connections.add(websocket)
            self.connection_timestamps[websocket] = utcnow()
            logger.info(f"Live update client connected (total connections: {len(self.active_connections)})")

    async def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection."""
        async with self._lock:
            self.active_connections.discard(websocket)
            self.connection_timestamps.pop(websocket, None)
            logger.info("Live update client disconnected")

    async def broadcast(self, message: dict) -> int:
        """
        Send a message to every connection.

        Returns:
            Number of connections the message reached
        """
        async with self._lock:
            connections = list(self.active_connections)

        message_json = json.dumps(message, default=str)
        sent = 0
        disconnected = []
        for websocket in connections:
            try:
                await websocket.send_text(message_json)
                sent += 1
            except Exception as e:
                logger.warning(f"Error sending live update: {e}")
                disconnected.append(websocket)

        if disconnected:
            async with self._lock:
                for websocket in disconnected:
                    self.active_connections.discard(websocket)
                    self.connection_timestamps.pop(websocket, None)
        return sent

    async def emit(self, event: LiveUpdateEvent, data: Dict[str, Any]) -> None:
        """Broadcast {"event", "data"}; never raises."""
        try:
            await self.broadcast({"event": event.value, "data": data})
        except Exception as e:
            logger.warning(f"Failed to emit {event.value}: {e}")

    async def get_connection_count(self) -> int:
        async with self._lock:
            return len(self.active_connections)

    async def update_activity(self, websocket: WebSocket):
        """
        Update the last activity timestamp for a WebSocket connection.
        Called when receiving ping or other messages from client.
        """
        async with self._lock:
            if websocket in self.connection_timestamps:
                self.connection_timestamps[websocket] = utcnow()

    async def cleanup_stale_connections(self):
        """
        Close and forget connections with no activity within the timeout period.

        This should be called periodically (e.g., every minute).
        """
        threshold = utcnow() - timedelta(seconds=WEBSOCKET_TIMEOUT_SECONDS)
        async with self._lock:
            stale = [ws for ws, last in self.connection_timestamps.items() if last < threshold]

        for websocket in stale:
            try:
                await websocket.close()
            except Exception as e:
                logger.warning(f"Error closing stale connection: {e}")
            await self.disconnect(websocket)
        if stale:
            logger.info(f"Cleaned up {len(stale)} stale live update connection(s)")


# Global WebSocket manager instance
_websocket_manager: Optional[WebSocketManager] = None


def get_websocket_manager() -> WebSocketManager:
    """
    Get the global WebSocket manager instance.

    Returns:
        WebSocketManager instance
    """
    global _websocket_manager
    if _websocket_manager is None:
        _websocket_manager = WebSocketManager()
    return _websocket_manager


def set_websocket_manager(manager: Optional[WebSocketManager]) -> None:
    """Replace the global manager (tests install a recording fake)."""
    global _websocket_manager
    _websocket_manager = manager
