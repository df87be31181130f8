"""
Direct messages between connected users over websockets.

Best effort only: a message for a user who is not connected is dropped and
the sender is told it was not delivered.
"""
import threading
from typing import Dict, Optional

from fastapi import WebSocket

from config import get_logger

logger = get_logger("chat")


class ConnectionRegistry:
    """user id -> open websocket; one connection per user, the newest wins."""

    def __init__(self):
        self._lock = threading.Lock()
        self._connections: Dict[str, WebSocket] = {}

    def connect(self, user_id: str, websocket: WebSocket) -> None:
        with self._lock:
            self._connections[user_id] = websocket
        logger.info("user %s connected", user_id)

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        with self._lock:
            if self._connections.get(user_id) is websocket:
                del self._connections[user_id]
        logger.info("user %s disconnected", user_id)

    def get(self, user_id: str) -> Optional[WebSocket]:
        with self._lock:
            return self._connections.get(user_id)

    def online(self) -> list:
        with self._lock:
            return sorted(self._connections)

    async def send(self, sender_id: str, receiver_id: str, message: str) -> bool:
        receiver = self.get(receiver_id)
        if receiver is None:
            return False
        try:
            await receiver.send_json({"type": "message", "sender_id": sender_id, "message": message})
        except Exception as e:
            # receiver went away without a clean disconnect
            logger.warning("dropping stale connection for %s: %r", receiver_id, e)
            self.disconnect(receiver_id, receiver)
            return False
        return True


registry = ConnectionRegistry()
