"""
Protocol definitions for LAN Messenger.

This module defines the message structures and data formats used in communication
between client and server components. Every frame is a single JSON object
terminated by a newline.
"""

import json
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, asdict
from datetime import datetime, timezone

from common.constants import MessageTypes


@dataclass
class DocumentRef:
    """Attachment descriptor stored alongside a message."""
    url: str
    filename: str
    original_filename: str
    mimetype: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def encode_frame(message: Dict[str, Any]) -> bytes:
    """Serialize a message as one JSON line."""
    return json.dumps(message).encode('utf-8') + b'\n'


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """
    Render a stored timestamp for the wire as ISO-8601 UTC (None stays None).

    SQLite keeps no offset, so naive values read back from it are UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


# Client to server

def create_login_message(user_id: str) -> Dict[str, Any]:
    """Create a login message announcing the user id for this connection."""
    return {
        "type": MessageTypes.LOGIN,
        "user_id": user_id
    }


def create_reconnect_user_message(user_id: str) -> Dict[str, Any]:
    """Create a re-announcement of the user id on an open connection."""
    return {
        "type": MessageTypes.RECONNECT_USER,
        "user_id": user_id
    }


def create_heartbeat_message() -> Dict[str, Any]:
    """Create a heartbeat message."""
    return {
        "type": MessageTypes.HEARTBEAT,
        "timestamp": datetime.now().isoformat()
    }


def create_get_peers_message(request_id: str) -> Dict[str, Any]:
    """Create a peer directory request."""
    return {
        "type": MessageTypes.GET_PEERS,
        "request_id": request_id
    }


def create_get_conversation_message(request_id: str, peer_id: str) -> Dict[str, Any]:
    """Create a conversation history request."""
    return {
        "type": MessageTypes.GET_CONVERSATION,
        "request_id": request_id,
        "peer_id": peer_id
    }


def create_send_message(request_id: str, peer_id: str, text: str) -> Dict[str, Any]:
    """Create a text message send request."""
    return {
        "type": MessageTypes.SEND_MESSAGE,
        "request_id": request_id,
        "peer_id": peer_id,
        "text": text
    }


def create_send_document_message(request_id: str, peer_id: str, filename: str, mimetype: str,
                                 size: int, text: str = "") -> Dict[str, Any]:
    """Create a document send offer."""
    return {
        "type": MessageTypes.SEND_DOCUMENT,
        "request_id": request_id,
        "peer_id": peer_id,
        "filename": filename,
        "mimetype": mimetype,
        "size": size,
        "text": text
    }


def create_mark_seen_message(request_id: str, message_ids: List[int]) -> Dict[str, Any]:
    """Create a mark-seen request."""
    return {
        "type": MessageTypes.MARK_SEEN,
        "request_id": request_id,
        "message_ids": list(message_ids)
    }


def create_file_request_message(request_id: str, filename: str) -> Dict[str, Any]:
    """Create a document download request."""
    return {
        "type": MessageTypes.FILE_REQUEST,
        "request_id": request_id,
        "filename": filename
    }


def create_logout_message() -> Dict[str, Any]:
    """Create a logout message."""
    return {
        "type": MessageTypes.LOGOUT
    }


# Server to client

def create_login_success_message(user_id: str) -> Dict[str, Any]:
    """Create a login success message."""
    return {
        "type": MessageTypes.LOGIN_SUCCESS,
        "user_id": user_id
    }


def create_response_message(request_id: Optional[str], data: Dict[str, Any]) -> Dict[str, Any]:
    """Create a successful reply to a request."""
    return {
        "type": MessageTypes.RESPONSE,
        "request_id": request_id,
        "data": data
    }


def create_error_message(message: str, kind: str = 'internal', request_id: Optional[str] = None) -> Dict[str, Any]:
    """Create an error message."""
    return {
        "type": MessageTypes.ERROR,
        "request_id": request_id,
        "error": kind,
        "message": message
    }


def create_event_message(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Create a server push event."""
    return {
        "type": MessageTypes.EVENT,
        "event": event,
        "data": data
    }


def create_heartbeat_ack_message() -> Dict[str, Any]:
    """Create a heartbeat acknowledgment message."""
    return {
        "type": MessageTypes.HEARTBEAT_ACK,
        "timestamp": datetime.now().isoformat()
    }


def create_document_upload_port_message(request_id: str, port: int) -> Dict[str, Any]:
    """Create a document upload port message."""
    return {
        "type": MessageTypes.DOCUMENT_UPLOAD_PORT,
        "request_id": request_id,
        "port": port
    }


def create_document_download_port_message(request_id: str, filename: str, original_filename: str,
                                          size: int, port: int) -> Dict[str, Any]:
    """Create a document download port message."""
    return {
        "type": MessageTypes.DOCUMENT_DOWNLOAD_PORT,
        "request_id": request_id,
        "filename": filename,
        "original_filename": original_filename,
        "size": size,
        "port": port
    }
