#!/usr/bin/env python3
"""
LAN Messenger Server - Main Entry Point

This is the main entry point for the server application.
It owns every server component (message store, presence registry, fan-out
router, message service, document transfers) and runs the JSON-lines
connection loop that dispatches client requests to them.
"""

import asyncio
import json
import sys
import os
from typing import Dict, Iterable, Optional, Tuple

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from common.constants import MessageTypes, MAX_LINE_SIZE
from common.errors import ChatError
from common.protocol_definitions import create_error_message, create_response_message
from server.chat.chat_server import ChatServer
from server.chat.connection import ClientConnection
from server.chat.fanout_router import FanoutRouter
from server.chat.message_service import MessageService
from server.files.attachment_storage import AttachmentStorage
from server.files.file_server import FileServer
from server.presence.presence_registry import PresenceRegistry
from server.store.message_store import MessageStore
from server.utils.config import ServerConfig
from server.utils.logger import logger


class MessengerServer:
    """Main server class that integrates all functionality."""

    def __init__(self, host: str = '0.0.0.0', port: int = 9000, upload_dir: str = 'uploads',
                 database_url: str = 'sqlite:///messenger.db', store: Optional[MessageStore] = None,
                 config: Optional[ServerConfig] = None):
        self.config = config or ServerConfig(host, port, upload_dir, database_url)
        self.connections: Dict[int, ClientConnection] = {}  # conn_id -> connection
        self.next_conn_id = 1
        self.server: Optional[asyncio.AbstractServer] = None

        # Initialize modules
        self.store = store or MessageStore(self.config.database_url)
        self.registry = PresenceRegistry()
        self.router = FanoutRouter(self.registry)
        self.registry.add_listener(self.router.publish_presence)
        self.attachment_storage = AttachmentStorage(self.config.upload_dir, self.config.max_document_size)
        self.message_service = MessageService(self.store, self.router, self.attachment_storage)
        self.chat_server = ChatServer(self.registry, self.router, self.message_service)
        self.file_server = FileServer(self.attachment_storage, self.message_service, self.config.host,
                                      self.config.transfer_timeout, self.config.chunk_size,
                                      self.config.progress_log_interval)

        # Requests answered with a response frame
        self.request_handlers = {
            MessageTypes.GET_PEERS: self.chat_server.handle_get_peers,
            MessageTypes.GET_CONVERSATION: self.chat_server.handle_get_conversation,
            MessageTypes.SEND_MESSAGE: self.chat_server.handle_send_message,
            MessageTypes.MARK_SEEN: self.chat_server.handle_mark_seen,
        }

    @property
    def port(self) -> int:
        """Port actually bound (useful when configured with port 0)."""
        if self.server is None or not self.server.sockets:
            return self.config.port
        return self.server.sockets[0].getsockname()[1]

    async def seed_users(self, users: Iterable[Tuple[str, str]]):
        """Register users on behalf of the identity subsystem."""
        for user_id, full_name in users:
            await self.store.add_user(user_id, full_name=full_name)
            logger.info(f"Registered user {user_id} ({full_name})")

    def get_next_conn_id(self) -> int:
        conn_id = self.next_conn_id
        self.next_conn_id += 1
        return conn_id

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handle individual client connection."""
        connection = ClientConnection(self.get_next_conn_id(), reader, writer)
        self.connections[connection.conn_id] = connection
        self.router.attach(connection)

        logger.log_connection(connection.addr, connection.conn_id)

        # Late joiners still get the current online list
        self.router.publish_presence()

        try:
            while True:
                try:
                    data = await reader.readline()
                except ValueError:
                    # Line exceeded the stream limit; the buffer has been discarded
                    logger.warning(f"Message too large from conn_id={connection.conn_id}")
                    await connection.send(create_error_message("Message too large", 'validation'))
                    continue

                if not data:
                    break

                try:
                    message = json.loads(data.decode('utf-8').strip())
                except (json.JSONDecodeError, UnicodeDecodeError) as e:
                    logger.error(f"Malformed JSON from conn_id={connection.conn_id}: {e}")
                    await connection.send(create_error_message("Malformed JSON", 'validation'))
                    continue

                if not isinstance(message, dict):
                    await connection.send(create_error_message("Expected a JSON object", 'validation'))
                    continue

                if not await self.dispatch(connection, message):
                    break

        except asyncio.CancelledError:
            logger.info(f"Connection cancelled for conn_id={connection.conn_id}")
        except (ConnectionError, OSError) as e:
            logger.error(f"Socket error for conn_id={connection.conn_id}: {e}")
        finally:
            await self.disconnect_client(connection)

    async def dispatch(self, connection: ClientConnection, message: dict) -> bool:
        """Route one frame; returns False when the connection should close."""
        msg_type = message.get('type', '')
        request_id = message.get('request_id')

        # Validate message type
        if not isinstance(msg_type, str) or len(msg_type) == 0:
            logger.warning(f"Received message with invalid type from conn_id={connection.conn_id}")
            await connection.send(create_error_message("Missing message type", 'validation', request_id))
            return True

        logger.debug(f"Received from conn_id={connection.conn_id}: {msg_type}")

        try:
            if msg_type in (MessageTypes.LOGIN, MessageTypes.RECONNECT_USER):
                await self.chat_server.handle_login(connection, message)
            elif msg_type == MessageTypes.HEARTBEAT:
                await self.chat_server.handle_heartbeat(connection, message)
            elif msg_type == MessageTypes.LOGOUT:
                logger.info(f"Logout request from conn_id={connection.conn_id}")
                return False
            elif msg_type == MessageTypes.SEND_DOCUMENT:
                self.chat_server.require_login(connection)
                await self.file_server.handle_send_document(connection, message)
            elif msg_type == MessageTypes.FILE_REQUEST:
                self.chat_server.require_login(connection)
                await self.file_server.handle_file_request(connection, message)
            elif msg_type in self.request_handlers:
                data = await self.request_handlers[msg_type](connection, message)
                await connection.send(create_response_message(request_id, data))
            else:
                logger.warning(f"Unknown message type '{msg_type}' from conn_id={connection.conn_id}")
                await connection.send(create_error_message(f"Unknown message type '{msg_type}'", 'validation', request_id))
        except ChatError as e:
            logger.debug(f"{msg_type} from conn_id={connection.conn_id} rejected: {e.message}")
            await connection.send(create_error_message(e.message, e.kind, request_id))
        except Exception as e:
            logger.exception(f"Error processing {msg_type} from conn_id={connection.conn_id}: {e}")
            await connection.send(create_error_message("Internal server error", 'internal', request_id))
        return True

    async def disconnect_client(self, connection: ClientConnection):
        """Remove client and release its presence binding."""
        self.chat_server.disconnect(connection)
        self.connections.pop(connection.conn_id, None)
        await connection.close()
        logger.log_disconnect(connection.conn_id, connection.user_id)

    async def start(self):
        """Prepare storage and start listening."""
        self.store.init_db()
        self.server = await asyncio.start_server(
            self.handle_client,
            self.config.host,
            self.config.port,
            limit=MAX_LINE_SIZE
        )

        addr = ', '.join(str(sock.getsockname()) for sock in self.server.sockets)
        logger.info(f"Server listening on {addr}")

    async def run(self):
        """Start the server and serve until cancelled."""
        await self.start()
        try:
            async with self.server:
                await self.server.serve_forever()
        finally:
            await self.stop()

    async def stop(self):
        """Shut everything down in reverse dependency order."""
        if self.server is not None:
            self.server.close()
        for connection in list(self.connections.values()):
            await connection.close()
        await self.file_server.close()
        await self.message_service.drain()
        await self.router.close()
        self.registry.clear()
        self.store.close()
        logger.info("Server stopped")
