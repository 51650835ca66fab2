"""
Server configuration module.

This module handles server-side configuration settings.
"""

from common.constants import (
    DEFAULT_SERVER_HOST, DEFAULT_PORT, UPLOAD_DIR, DEFAULT_DATABASE_URL,
    CHUNK_SIZE, PROGRESS_LOG_INTERVAL, TRANSFER_TIMEOUT, MAX_DOCUMENT_SIZE
)


class ServerConfig:
    """Server configuration class."""

    def __init__(self, host: str = DEFAULT_SERVER_HOST, port: int = DEFAULT_PORT, upload_dir: str = UPLOAD_DIR,
                 database_url: str = DEFAULT_DATABASE_URL):
        self.host = host
        self.port = port
        self.upload_dir = upload_dir
        self.database_url = database_url

        # File transfer settings
        self.chunk_size = CHUNK_SIZE
        self.progress_log_interval = PROGRESS_LOG_INTERVAL
        self.transfer_timeout = TRANSFER_TIMEOUT
        self.max_document_size = MAX_DOCUMENT_SIZE
