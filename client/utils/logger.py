"""
Client logging module.

This module handles client-side logging functionality.
"""

import logging
import sys


class ClientLogger:
    """Client logging class."""

    def __init__(self, log_level: int = logging.INFO):
        self.logger = logging.getLogger('messenger_client')
        self.logger.setLevel(log_level)

        # Remove existing handlers
        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)

        # Create console handler
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)

        # Create formatter
        formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_handler.setFormatter(formatter)

        # Add handler to logger
        self.logger.addHandler(console_handler)

    def set_level(self, log_level: int):
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

    def log_connection(self, host: str, port: int, success: bool):
        """Log connection attempt."""
        status = "Connected" if success else "Failed to connect"
        self.info(f"{status} to {host}:{port}")

    def log_document_upload(self, filename: str, size: int, peer_id: str):
        """Log document upload attempt."""
        self.info(f"Uploading document: {filename} ({size} bytes) to {peer_id}")

    def log_document_download(self, filename: str, path: str):
        """Log completed document download."""
        self.info(f"Downloaded document: {filename} -> {path}")

    def show_login_info(self, user_id: str):
        """Show login information."""
        self.info(f"[INFO] Announcing as '{user_id}'...")

    def show_login_success(self, user_id: str):
        """Show login success."""
        self.info(f"[SUCCESS] Online as '{user_id}'")

    def show_peers(self, peers: list, online_user_ids=()):
        """Show the peer directory."""
        self.info(f"[INFO] Peers ({len(peers)}):")
        for p in peers:
            status = "online" if p.get('id') in online_user_ids else "offline"
            self.info(f"  - {p.get('full_name') or p.get('id')} (id={p.get('id')}, {status})")

    def show_message(self, message: dict, self_id: str):
        """Show one conversation line with its delivery mark."""
        timestamp = (message.get('created_at') or '')[:19]
        author = "me" if message.get('sender_id') == self_id else message.get('sender_id')
        text = message.get('text', '')
        document = message.get('document')
        if document:
            text = f"{text} [document: {document.get('original_filename')} -> /download {document.get('filename')}]".strip()
        mark = ""
        if message.get('sender_id') == self_id:
            mark = " ✓✓" if message.get('seen') else " ✓"
        self.info(f"[{timestamp}] {author}: {text}{mark}")

    def show_online_users(self, user_ids: list):
        self.info(f"[EVENT] Online: {', '.join(sorted(user_ids)) or 'nobody'}")

    def show_interactive_mode_info(self):
        """Show interactive mode information."""
        self.info("[INFO] Type messages to chat with the selected peer (Ctrl+C to exit)")
        self.info("[INFO] Commands: /peers /chat <id> /history /senddoc <path> /download <file> /online /help /quit")

    def log_error(self, operation: str, error: Exception):
        """Log error with operation context."""
        self.error(f"Error in {operation}: {error}")


# Global logger instance
logger = ClientLogger()
