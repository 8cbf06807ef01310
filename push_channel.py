"""
Push Channel

WebSocket connections of the UI clients, keyed by client id. Messages are
sent as JSON; a connection that fails on send is dropped and reported to
the disconnect callback so its subscription and exec session go away too.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Iterable, Optional

from fastapi import WebSocket

from models import PushMessage
from utils import logger

DisconnectCallback = Callable[[str], Awaitable[None]]


class ConnectionManager:
    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.on_disconnect: Optional[DisconnectCallback] = None

    def __contains__(self, client_id: str) -> bool:
        return client_id in self.active_connections

    def __len__(self):
        return len(self.active_connections)

    async def connect(self, client_id: str, websocket: WebSocket):
        await websocket.accept()
        previous = self.active_connections.get(client_id)
        self.active_connections[client_id] = websocket
        if previous is not None and previous is not websocket:
            logger.info("Replacing connection of client", client_id=client_id)
            await self._close(previous)
        logger.info("Client connected", client_id=client_id)

    def disconnect(self, client_id: str, websocket: Optional[WebSocket] = None):
        current = self.active_connections.get(client_id)
        if current is None or (websocket is not None and current is not websocket):
            return
        del self.active_connections[client_id]
        logger.info("Client disconnected", client_id=client_id)

    async def send(self, client_id: str, message: PushMessage) -> bool:
        """Send one message to one client; False when it is gone"""
        websocket = self.active_connections.get(client_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(message.to_wire())
            return True
        except Exception as e:
            logger.warning("Dropping client after failed send", client_id=client_id, error=str(e))
            self.disconnect(client_id, websocket)
            if self.on_disconnect:
                await self.on_disconnect(client_id)
            return False

    async def publish(self, client_ids: Iterable[str], message: PushMessage):
        client_ids = [client_id for client_id in client_ids if client_id in self.active_connections]
        if client_ids:
            await asyncio.gather(*(self.send(client_id, message) for client_id in client_ids))

    async def broadcast(self, message: PushMessage):
        await self.publish(list(self.active_connections), message)

    async def close_all(self):
        for client_id in list(self.active_connections):
            await self._close(self.active_connections.pop(client_id))

    async def _close(self, websocket: WebSocket):
        try:
            await websocket.close()
        except Exception as e:
            logger.debug("Closing websocket failed", error=str(e))
