#!/usr/bin/env python3
"""
LAN Messenger Client - Main Entry Point

This is the main entry point for the client application.
It integrates the client modules (request/event channel, session controller,
document transfers) into a command-line messenger.
"""

import asyncio
import json
import sys
import os
from pathlib import Path
from typing import Optional, Set

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from client.chat.chat_client import ChatClient
from client.chat.session_controller import SessionController
from client.files.file_client import FileClient
from client.utils.config import ClientConfig
from client.utils.logger import logger
from common.constants import MessageTypes, EventNames, MAX_RETRY_ATTEMPTS
from common.errors import ChatError
from common.protocol_definitions import create_logout_message


class MessengerClient:
    """Main client class that integrates all functionality."""

    def __init__(self, host: str = 'localhost', port: int = 9000, user_id: str = None,
                 history_poll_interval: float = 120, download_dir: Optional[str] = None):
        self.config = ClientConfig(host, port, user_id, history_poll_interval)
        if download_dir:
            self.config.download_dir = download_dir
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.running = False
        self.logged_in = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

        # Initialize modules
        self.chat_client = ChatClient(request_timeout=self.config.request_timeout)
        self.file_client = FileClient(self.chat_client, self.config.host, self.config.download_dir,
                                      self.config.chunk_size, self.config.transfer_timeout)
        self.session = SessionController(self.chat_client, user_id, self.file_client,
                                         self.config.history_poll_interval)

        # Set up module connections
        self._setup_modules()

    def _setup_modules(self):
        """Set up connections between modules."""
        self.chat_client.set_message_handler(self.handle_message)
        self.chat_client.set_user_id(self.config.user_id)
        self.chat_client.on(EventNames.NEW_MESSAGE, self._show_new_message)
        self.chat_client.on(EventNames.ONLINE_USERS, self._show_online_users)

    async def connect(self, retry_count: int = MAX_RETRY_ATTEMPTS, base_delay: float = 1.0):
        """Establish connection to the server with retry logic and exponential backoff."""
        attempt = 0

        while attempt < retry_count:
            try:
                self.reader, self.writer = await asyncio.open_connection(self.config.host, self.config.port)
                logger.log_connection(self.config.host, self.config.port, True)
                self.running = True
                self.chat_client.set_writer(self.writer)
                return True
            except (ConnectionError, OSError) as e:
                attempt += 1
                logger.log_connection(self.config.host, self.config.port, False)
                logger.log_error("connection", e)

                if attempt < retry_count:
                    delay = base_delay * (2 ** (attempt - 1))  # Exponential backoff
                    logger.info(f"[INFO] Retrying connection in {delay}s (attempt {attempt}/{retry_count})...")
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"[ERROR] Failed to connect after {retry_count} attempts")
                    return False
        return False

    async def send_login(self):
        """Announce our user id on the current connection."""
        self.logged_in.clear()
        logger.show_login_info(self.config.user_id)
        await self.chat_client.login(self.config.user_id)

    async def send_heartbeat(self):
        """Send periodic heartbeat messages."""
        while self.running:
            await asyncio.sleep(self.config.heartbeat_interval)
            if self.running:
                await self.chat_client.heartbeat()

    async def send_logout(self):
        """Send logout message to server."""
        logger.info("[INFO] Sending logout...")
        await self.chat_client.send_message(create_logout_message())

    async def listen_for_messages(self):
        """Listen for incoming messages from server with automatic reconnection."""
        while self.running:
            try:
                data = await self.reader.readline()
                if not data:
                    logger.info("[INFO] Server closed connection, attempting to reconnect...")
                    if not await self._reconnect():
                        break
                    continue

                try:
                    message = json.loads(data.decode('utf-8').strip())
                except (json.JSONDecodeError, UnicodeDecodeError) as e:
                    logger.error(f"[ERROR] Malformed JSON received: {e}")
                    continue

                await self.chat_client.handle_message(message)

            except asyncio.CancelledError:
                logger.info("[INFO] Listener cancelled")
                break
            except (ConnectionError, OSError) as e:
                logger.error(f"[ERROR] Connection lost: {e}")
                if self.running and await self._reconnect():
                    continue  # Resume listening after successful reconnection
                break

    async def _reconnect(self):
        """Reconnect to the server with exponential backoff and re-announce."""
        self.chat_client.set_writer(None)
        self.chat_client.fail_pending(ConnectionError("Connection lost"))
        await self.session.set_connected(False)

        max_attempts = self.config.reconnect_attempts
        for attempt in range(max_attempts):
            delay = self.config.reconnect_delay_base * (2 ** attempt)
            logger.info(f"[INFO] Attempting to reconnect in {delay}s (attempt {attempt + 1}/{max_attempts})...")
            await asyncio.sleep(delay)

            if await self.connect(retry_count=1):
                logger.info("[INFO] Reconnected successfully!")
                await self.send_login()
                return True

        logger.error("[ERROR] Failed to reconnect after multiple attempts")
        self.running = False
        return False

    async def handle_message(self, message: dict):
        """Handle frames that are neither replies nor events."""
        msg_type = message.get('type', '')

        if msg_type == MessageTypes.LOGIN_SUCCESS:
            logger.show_login_success(message.get('user_id'))
            self.logged_in.set()
            # Catch up in the background; the reader must stay free for replies
            self._spawn(self.session.set_connected(True))

        elif msg_type == MessageTypes.HEARTBEAT_ACK:
            # Silently acknowledge heartbeat
            pass

        elif msg_type == MessageTypes.ERROR:
            error_msg = message.get('message', 'Unknown error')
            logger.error(f"[ERROR] Server error ({message.get('error', 'internal')}): {error_msg}")

        else:
            logger.debug(f"Unhandled frame type '{msg_type}'")

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _show_new_message(self, data: dict):
        message = data.get('message') or {}
        if message.get('sender_id') == self.config.user_id:
            return  # already shown from the send reply
        if self.session.belongs_to_active(message):
            logger.show_message(message, self.config.user_id)
        elif message.get('receiver_id') == self.config.user_id:
            sender = message.get('sender_id')
            logger.info(f"[EVENT] New message from {sender} ({self.session.unread_count(sender)} unread)")

    def _show_online_users(self, data: dict):
        logger.show_online_users(data.get('user_ids') or [])

    async def handle_command(self, line: str) -> bool:
        """Run one line of user input; returns False to quit."""
        if not line.startswith('/'):
            message = await self.session.send_text(line)
            logger.show_message(message, self.config.user_id)
            return True

        command, _, argument = line.partition(' ')
        argument = argument.strip()

        if command == '/quit':
            return False
        elif command == '/help':
            logger.show_interactive_mode_info()
        elif command == '/peers':
            peers = await self.session.load_peers()
            logger.show_peers(peers, self.session.online_user_ids)
        elif command == '/online':
            logger.show_online_users(list(self.session.online_user_ids))
        elif command == '/chat':
            if not argument:
                logger.warning("[WARN] Usage: /chat <user_id>")
                return True
            await self.session.select_peer(argument)
            logger.info(f"[INFO] Chatting with {argument}")
            self._show_history()
        elif command == '/history':
            await self.session.refresh_history()
            self._show_history()
        elif command == '/senddoc':
            if not argument:
                logger.warning("[WARN] Usage: /senddoc <path>")
                return True
            message = await self.session.send_document(argument)
            logger.show_message(message, self.config.user_id)
        elif command == '/download':
            if not argument:
                logger.warning("[WARN] Usage: /download <stored filename>")
                return True
            path = await self.file_client.download_document(Path(argument).name)
            logger.info(f"[INFO] Saved to {path}")
        else:
            logger.warning(f"[WARN] Unknown command {command}; try /help")
        return True

    def _show_history(self):
        if not self.session.messages:
            logger.info("[INFO] No messages yet")
        for message in self.session.messages:
            logger.show_message(message, self.config.user_id)

    async def interactive_mode(self):
        """Run client with interactive chat input."""
        if not await self.connect():
            return

        await self.send_login()

        heartbeat_task = asyncio.create_task(self.send_heartbeat())
        listener_task = asyncio.create_task(self.listen_for_messages())

        logger.show_interactive_mode_info()

        try:
            while self.running:
                user_input = await asyncio.get_running_loop().run_in_executor(None, sys.stdin.readline)
                if not user_input:
                    break  # EOF
                line = user_input.strip()
                if not line:
                    continue
                try:
                    if not await self.handle_command(line):
                        break
                except (ChatError, ConnectionError, asyncio.TimeoutError) as e:
                    logger.error(f"[ERROR] {e}")
        except asyncio.CancelledError:
            pass
        finally:
            await self.shutdown(listener_task, heartbeat_task)

    async def shutdown(self, *tasks: asyncio.Task):
        """Log out, stop background tasks and close the connection."""
        self.running = False
        if self.writer:
            await self.send_logout()

        tasks = tasks + tuple(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self.session.close()
        await self.chat_client.close()

        if self.writer:
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except (ConnectionError, OSError):
                pass

        logger.info("[INFO] Disconnected from server")
