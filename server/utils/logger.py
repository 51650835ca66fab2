"""
Server logging module.

This module handles server-side logging functionality.
"""

import logging
from datetime import datetime
from pathlib import Path

from common.constants import LOG_DIR, CHAT_LOG_FILE, TRANSFER_LOG_FILE


class ServerLogger:
    """Server logging class."""

    def __init__(self, logs_dir: str = LOG_DIR, log_level: int = logging.INFO):
        self.logs_dir = Path(logs_dir)
        self.logs_dir.mkdir(exist_ok=True)

        # Set up main logger
        self.logger = logging.getLogger('messenger_server')
        self.logger.setLevel(log_level)

        # Remove existing handlers
        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)

        # Create console handler
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)

        # Create formatter
        formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_handler.setFormatter(formatter)

        # Add handler to logger
        self.logger.addHandler(console_handler)

        # Set up file paths
        self.chat_log_path = self.logs_dir / CHAT_LOG_FILE
        self.transfer_log_path = self.logs_dir / TRANSFER_LOG_FILE

    def set_level(self, log_level: int):
        """Change the level of the logger and its handlers."""
        self.logger.setLevel(log_level)
        for handler in self.logger.handlers:
            handler.setLevel(log_level)

    def info(self, message: str):
        """Log info message."""
        self.logger.info(message)

    def error(self, message: str):
        """Log error message."""
        self.logger.error(message)

    def warning(self, message: str):
        """Log warning message."""
        self.logger.warning(message)

    def debug(self, message: str):
        """Log debug message."""
        self.logger.debug(message)

    def exception(self, message: str):
        """Log error message with the active traceback."""
        self.logger.exception(message)

    def log_connection(self, addr: tuple, conn_id: int):
        """Log client connection."""
        self.info(f"New connection from {addr}, assigned conn_id={conn_id}")

    def log_disconnect(self, conn_id: int, user_id: str = None):
        """Log client disconnect."""
        if user_id:
            self.info(f"User {user_id} (conn_id={conn_id}) disconnected")
        else:
            self.info(f"Anonymous connection conn_id={conn_id} closed")

    def log_bind(self, user_id: str, conn_id: int, replaced_conn_id: int = None):
        """Log a presence binding."""
        if replaced_conn_id is not None and replaced_conn_id != conn_id:
            self.info(f"User {user_id} now bound to conn_id={conn_id} (replaced conn_id={replaced_conn_id})")
        else:
            self.info(f"User {user_id} bound to conn_id={conn_id}")

    def log_unbind(self, user_id: str, conn_id: int):
        """Log removal of a presence binding."""
        self.info(f"User {user_id} unbound from conn_id={conn_id}")

    def log_message_sent(self, message_id: int, sender_id: str, receiver_id: str, text: str, document: str = None):
        """Log a persisted message."""
        suffix = f" [document: {document}]" if document else ""
        self.info(f"Message {message_id} from {sender_id} to {receiver_id}{suffix}")
        self._write_to_file(self.chat_log_path, f"{datetime.now().isoformat()} | {sender_id} -> {receiver_id} | id={message_id} | {text}{suffix}")

    def log_messages_seen(self, requester_id: str, message_ids: list):
        """Log read receipts."""
        self.info(f"User {requester_id} marked {len(message_ids)} message(s) seen: {message_ids}")
        self._write_to_file(self.chat_log_path, f"{datetime.now().isoformat()} | SEEN | {requester_id} | ids={message_ids}")

    def log_delivery_dropped(self, user_id: str, event: str, reason: str):
        """Log a best-effort push that was not delivered."""
        self.debug(f"Dropped '{event}' for {user_id}: {reason}")

    def log_document_upload(self, original_filename: str, stored_filename: str, size: int, uploader: str):
        """Log document upload."""
        self.info(f"✓ DOCUMENT UPLOAD SUCCESS: '{original_filename}' ({size} bytes)")
        self.info(f"  Uploader: {uploader}")
        self.info(f"  Stored as: {stored_filename}")
        self._write_to_file(self.transfer_log_path, f"{datetime.now().isoformat()} | UPLOAD | {original_filename} | USER: {uploader} | SIZE: {size} bytes | STORED: {stored_filename}")

    def log_document_download(self, stored_filename: str, size: int, requester: str):
        """Log document download."""
        self.info(f"✓ DOCUMENT DOWNLOAD SUCCESS: '{stored_filename}' ({size} bytes) to {requester}")
        self._write_to_file(self.transfer_log_path, f"{datetime.now().isoformat()} | DOWNLOAD | {stored_filename} | TO: {requester} | SIZE: {size} bytes")

    def log_error(self, operation: str, error: Exception):
        """Log error with operation context."""
        self.error(f"Error in {operation}: {error}")

    def _write_to_file(self, file_path: Path, content: str):
        """Write content to log file."""
        try:
            with open(file_path, 'a', encoding='utf-8') as f:
                f.write(content + '\n')
        except OSError as e:
            self.error(f"Failed to write to log file {file_path}: {e}")


# Global logger instance
logger = ServerLogger()
