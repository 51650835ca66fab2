"""
Client configuration module.

This module handles client-side configuration settings.
"""

from common.constants import (
    DEFAULT_HOST, DEFAULT_PORT, DOWNLOAD_DIR, CHUNK_SIZE, HEARTBEAT_INTERVAL, REQUEST_TIMEOUT,
    TRANSFER_TIMEOUT, DEFAULT_HISTORY_POLL_INTERVAL, MIN_HISTORY_POLL_INTERVAL, RECONNECT_ATTEMPTS,
    RECONNECT_DELAY_BASE
)


class ClientConfig:
    """Client configuration class."""

    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT, user_id: str = None,
                 history_poll_interval: float = DEFAULT_HISTORY_POLL_INTERVAL):
        self.host = host
        self.port = port
        self.user_id = user_id

        # Document transfer settings
        self.download_dir = DOWNLOAD_DIR
        self.chunk_size = CHUNK_SIZE
        self.transfer_timeout = TRANSFER_TIMEOUT

        # Connection settings
        self.heartbeat_interval = HEARTBEAT_INTERVAL
        self.request_timeout = REQUEST_TIMEOUT
        self.reconnect_attempts = RECONNECT_ATTEMPTS
        self.reconnect_delay_base = RECONNECT_DELAY_BASE

        # History re-fetch fallback for missed pushes
        self.history_poll_interval = self.clamp_poll_interval(history_poll_interval)

    @staticmethod
    def clamp_poll_interval(interval: float) -> float:
        """0 disables polling; anything else is raised to the minimum."""
        if not interval or interval <= 0:
            return 0
        return max(float(interval), float(MIN_HISTORY_POLL_INTERVAL))
