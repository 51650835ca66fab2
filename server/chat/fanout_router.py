"""
Event fan-out router module.

Pushes named events to the live connection of a user. Delivery is
best-effort and at-most-once: an offline user or a broken socket drops the
event. There is no queue and no retry. Clients catch up by fetching
history.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set

from common.constants import EventNames
from common.protocol_definitions import create_event_message
from server.presence.presence_registry import PresenceRegistry
from server.utils.logger import logger


class FanoutRouter:
    """Server-side event delivery."""

    def __init__(self, registry: PresenceRegistry):
        self.registry = registry
        self.connections: Set = set()  # every live connection, bound or not
        self._tasks: Set[asyncio.Task] = set()
        self._presence_pending = False

    def attach(self, connection):
        """Track a connection so it receives broadcasts."""
        self.connections.add(connection)

    def detach(self, connection):
        self.connections.discard(connection)

    async def notify(self, user_id: str, event: str, payload: Dict[str, Any]) -> bool:
        """
        Deliver one event to user_id if they are online.

        Never raises; returns whether the frame was written.
        """
        connection = self.registry.lookup(user_id)
        if connection is None:
            logger.log_delivery_dropped(user_id, event, "offline")
            return False

        try:
            delivered = await connection.send(create_event_message(event, payload))
        except Exception as e:
            logger.warning(f"Push of '{event}' to {user_id} failed: {e}")
            return False

        if not delivered:
            logger.log_delivery_dropped(user_id, event, "connection closed")
        return delivered

    async def broadcast(self, event: str, payload: Dict[str, Any]) -> int:
        """Deliver one event to every attached connection; returns the delivered count."""
        frame = create_event_message(event, payload)
        delivered = 0
        for connection in list(self.connections):
            try:
                if await connection.send(frame):
                    delivered += 1
            except Exception as e:
                logger.warning(f"Broadcast of '{event}' to {connection!r} failed: {e}")
        return delivered

    def publish_presence(self, snapshot: Optional[List[str]] = None):
        """
        Schedule an online-users broadcast.

        Registry listener hook. Bursts of changes collapse into one pending
        broadcast that reads the registry when it runs, so every client
        converges on the latest snapshot.
        """
        if self._presence_pending:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._presence_pending = True
        self.spawn(self._broadcast_presence(), loop)

    async def _broadcast_presence(self):
        self._presence_pending = False
        user_ids = self.registry.online_user_ids()
        await self.broadcast(EventNames.ONLINE_USERS, {"user_ids": user_ids})

    def spawn(self, coro, loop: Optional[asyncio.AbstractEventLoop] = None) -> asyncio.Task:
        """Run a delivery coroutine in the background, keeping a reference until done."""
        loop = loop or asyncio.get_running_loop()
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self):
        """Wait for in-flight deliveries."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        self._presence_pending = False
        self.connections.clear()
