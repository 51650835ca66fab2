"""
Shared constants for LAN Messenger.

This module contains all constants used across client and server components.
"""

# Network Configuration
DEFAULT_HOST = 'localhost'
DEFAULT_SERVER_HOST = '0.0.0.0'
DEFAULT_PORT = 9000
MAX_LINE_SIZE = 1024 * 1024  # Reject JSON lines above 1MB

# Buffer Sizes
CHUNK_SIZE = 8192
PROGRESS_LOG_INTERVAL = 1024 * 1024  # Log progress every 1MB

# Timeouts
HEARTBEAT_INTERVAL = 10  # seconds
TRANSFER_TIMEOUT = 300  # 5 minutes in seconds
REQUEST_TIMEOUT = 30  # seconds

# History poll fallback (client side)
DEFAULT_HISTORY_POLL_INTERVAL = 120  # seconds, 0 disables
MIN_HISTORY_POLL_INTERVAL = 5

# Reconnection
MAX_RETRY_ATTEMPTS = 3
RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY_BASE = 1.0

# Storage
UPLOAD_DIR = 'uploads'
DOWNLOAD_DIR = 'downloads'
DEFAULT_DATABASE_URL = 'sqlite:///messenger.db'

# Documents
MAX_DOCUMENT_SIZE = 50 * 1024 * 1024  # 50MB
DOCUMENT_URL_PREFIX = '/download/document/'
ALLOWED_DOCUMENT_TYPES = {
    'application/pdf': '.pdf',
    'application/msword': '.doc',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document': '.docx',
    'text/plain': '.txt',
    'application/vnd.ms-excel': '.xls',
    'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet': '.xlsx',
    'application/vnd.ms-powerpoint': '.ppt',
    'application/vnd.openxmlformats-officedocument.presentationml.presentation': '.pptx',
}

# Logging
LOG_DIR = 'logs'
CHAT_LOG_FILE = 'chat_history.log'
TRANSFER_LOG_FILE = 'file_transfers.log'


# Message Types
class MessageTypes:
    # Client to Server
    LOGIN = 'login'
    RECONNECT_USER = 'reconnect_user'
    HEARTBEAT = 'heartbeat'
    GET_PEERS = 'get_peers'
    GET_CONVERSATION = 'get_conversation'
    SEND_MESSAGE = 'send_message'
    SEND_DOCUMENT = 'send_document'
    MARK_SEEN = 'mark_seen'
    FILE_REQUEST = 'file_request'
    LOGOUT = 'logout'

    # Server to Client
    LOGIN_SUCCESS = 'login_success'
    RESPONSE = 'response'
    EVENT = 'event'
    HEARTBEAT_ACK = 'heartbeat_ack'
    DOCUMENT_UPLOAD_PORT = 'document_upload_port'
    DOCUMENT_DOWNLOAD_PORT = 'document_download_port'
    ERROR = 'error'


# Push event names
class EventNames:
    ONLINE_USERS = 'online_users'
    NEW_MESSAGE = 'new_message'
    MESSAGE_SEEN = 'message_seen'
