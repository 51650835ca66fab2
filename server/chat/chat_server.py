"""
Chat server module.

Request handlers for the push channel: identity announcement, peer
directory, conversation history, text sends and read receipts. Handlers
return the reply payload and raise ChatError subclasses; the connection
loop in server.main_server turns both into frames.
"""

from typing import Any, Dict

from common.errors import UnauthorizedError, ValidationError
from common.protocol_definitions import create_login_success_message, create_heartbeat_ack_message
from server.chat.fanout_router import FanoutRouter
from server.chat.message_service import MessageService
from server.presence.presence_registry import PresenceRegistry
from server.utils.logger import logger


class ChatServer:
    """Server-side chat functionality."""

    def __init__(self, registry: PresenceRegistry, router: FanoutRouter, message_service: MessageService):
        self.registry = registry
        self.router = router
        self.message_service = message_service

    async def handle_login(self, connection, data: dict):
        """Bind the announced user id to this connection (login and reconnect_user)."""
        user_id = data.get('user_id')
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("Missing user_id")

        previous = self.registry.lookup(user_id)
        connection.user_id = user_id
        if self.registry.bind(user_id, connection):
            logger.log_bind(user_id, connection.conn_id, getattr(previous, 'conn_id', None))
        else:
            logger.debug(f"User {user_id} re-announced on conn_id={connection.conn_id}")

        await connection.send(create_login_success_message(user_id))

    async def handle_heartbeat(self, connection, data: dict):
        logger.debug(f"Heartbeat from conn_id={connection.conn_id}")
        await connection.send(create_heartbeat_ack_message())

    async def handle_get_peers(self, connection, data: dict) -> Dict[str, Any]:
        user_id = self.require_login(connection)
        peers = await self.message_service.list_peers(user_id)
        return {"peers": peers}

    async def handle_get_conversation(self, connection, data: dict) -> Dict[str, Any]:
        user_id = self.require_login(connection)
        messages = await self.message_service.list_conversation(user_id, data.get('peer_id'))
        return {"messages": [message.to_dict() for message in messages]}

    async def handle_send_message(self, connection, data: dict) -> Dict[str, Any]:
        user_id = self.require_login(connection)
        message = await self.message_service.send(user_id, data.get('peer_id'), data.get('text'))
        return {"message": message.to_dict()}

    async def handle_mark_seen(self, connection, data: dict) -> Dict[str, Any]:
        user_id = self.require_login(connection)
        updated_count = await self.message_service.mark_seen(user_id, data.get('message_ids', []))
        return {"updated_count": updated_count}

    def disconnect(self, connection):
        """Drop the presence binding held by a closing connection."""
        user_id = self.registry.user_for(connection)
        if self.registry.unbind(connection):
            logger.log_unbind(user_id, connection.conn_id)
        self.router.detach(connection)

    def require_login(self, connection) -> str:
        """The id this connection announced, or UnauthorizedError."""
        if not connection.user_id:
            raise UnauthorizedError("Not logged in")
        return connection.user_id
