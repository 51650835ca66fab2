"""
Chat client module.

This module handles client-side messaging over the push channel: it tags
requests with a request_id, routes replies back to the awaiting caller,
and dispatches server push events to subscribed handlers.
"""

import asyncio
import uuid
from typing import Any, Callable, Dict, List, Optional, Set

from common.constants import MessageTypes, REQUEST_TIMEOUT
from common.errors import RequestFailed
from common.protocol_definitions import (
    create_login_message, create_reconnect_user_message, create_get_peers_message,
    create_get_conversation_message, create_send_message, create_mark_seen_message,
    create_heartbeat_message, encode_frame
)
from client.utils.logger import logger


class ChatClient:
    """Client-side chat functionality."""

    def __init__(self, writer: Optional[asyncio.StreamWriter] = None, request_timeout: float = REQUEST_TIMEOUT):
        self.writer = writer
        self.user_id: Optional[str] = None
        self.request_timeout = request_timeout
        self.message_handler: Optional[Callable] = None
        self._replies: Dict[str, asyncio.Queue] = {}  # request_id -> reply frames
        self._event_handlers: Dict[str, List[Callable]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def set_writer(self, writer: Optional[asyncio.StreamWriter]):
        """Set the writer for sending messages."""
        self.writer = writer

    def set_message_handler(self, handler: Callable):
        """Set the handler for frames that are neither replies nor events."""
        self.message_handler = handler

    def set_user_id(self, user_id: str):
        self.user_id = user_id

    async def send_message(self, message: dict) -> bool:
        """Send a JSON message to the server."""
        if not self.writer:
            logger.error("[ERROR] Not connected to server")
            return False

        try:
            msg_data = encode_frame(message)
            self.writer.write(msg_data)
            await self.writer.drain()
            return True
        except (ConnectionError, OSError, RuntimeError) as e:
            logger.error(f"[ERROR] Failed to send message: {e}")
            return False

    # Request/response correlation

    def open_request(self) -> str:
        """Reserve a request_id whose replies will be queued for next_reply()."""
        request_id = uuid.uuid4().hex
        self._replies[request_id] = asyncio.Queue()
        return request_id

    def close_request(self, request_id: str):
        self._replies.pop(request_id, None)

    async def next_reply(self, request_id: str, timeout: Optional[float] = None) -> dict:
        """
        Wait for the next frame addressed to request_id.

        Raises:
            RequestFailed: The server answered with an error frame
            ConnectionError: The connection dropped while waiting
            asyncio.TimeoutError: No reply in time
        """
        queue = self._replies[request_id]
        frame = await asyncio.wait_for(queue.get(), timeout or self.request_timeout)
        if isinstance(frame, BaseException):
            raise frame
        if frame.get('type') == MessageTypes.ERROR:
            raise RequestFailed(frame.get('error', 'internal'), frame.get('message', ''))
        return frame

    async def request(self, message: dict) -> Dict[str, Any]:
        """Send a request and return the data of its response."""
        request_id = self.open_request()
        message['request_id'] = request_id
        try:
            if not await self.send_message(message):
                raise ConnectionError("Not connected to server")
            frame = await self.next_reply(request_id)
            return frame.get('data') or {}
        finally:
            self.close_request(request_id)

    def fail_pending(self, error: BaseException):
        """Wake every waiting request with error (connection lost)."""
        for queue in self._replies.values():
            queue.put_nowait(error)

    # Event subscription

    def on(self, event: str, handler: Callable) -> Callable[[], None]:
        """Subscribe to a push event; returns a callable that unsubscribes."""
        self._event_handlers.setdefault(event, []).append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Callable):
        handlers = self._event_handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event: str) -> int:
        return len(self._event_handlers.get(event, []))

    async def handle_message(self, message: dict):
        """Route one incoming frame."""
        request_id = message.get('request_id')
        if request_id and request_id in self._replies:
            self._replies[request_id].put_nowait(message)
            return

        if message.get('type') == MessageTypes.EVENT:
            self.dispatch_event(message.get('event', ''), message.get('data') or {})
            return

        if self.message_handler:
            await self.message_handler(message)

    def dispatch_event(self, event: str, data: dict):
        """
        Call every handler for event.

        Handlers run inline; coroutine handlers are scheduled as tasks so a
        handler that issues a request cannot block the reader that would
        deliver its reply.
        """
        for handler in list(self._event_handlers.get(event, [])):
            try:
                result = handler(data)
            except Exception as e:
                logger.error(f"[ERROR] Handler for '{event}' failed: {e}")
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.create_task(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    # Protocol operations

    async def login(self, user_id: str) -> bool:
        self.user_id = user_id
        return await self.send_message(create_login_message(user_id))

    async def reconnect_user(self) -> bool:
        if not self.user_id:
            return False
        return await self.send_message(create_reconnect_user_message(self.user_id))

    async def heartbeat(self) -> bool:
        return await self.send_message(create_heartbeat_message())

    async def get_peers(self) -> List[dict]:
        data = await self.request(create_get_peers_message(''))
        return data.get('peers', [])

    async def get_conversation(self, peer_id: str) -> List[dict]:
        data = await self.request(create_get_conversation_message('', peer_id))
        return data.get('messages', [])

    async def send_text(self, peer_id: str, text: str) -> dict:
        data = await self.request(create_send_message('', peer_id, text))
        return data.get('message') or {}

    async def mark_seen(self, message_ids: List[int]) -> int:
        data = await self.request(create_mark_seen_message('', message_ids))
        return int(data.get('updated_count', 0))

    async def close(self):
        """Cancel handler tasks and fail outstanding requests."""
        self.fail_pending(ConnectionError("Client closed"))
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
