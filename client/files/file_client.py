"""
File client module.

This module handles client-side document transfer: the offer/upload handshake
that turns a local file into a document message, and downloads of stored
documents.
"""

import asyncio
import mimetypes
from pathlib import Path
from typing import Optional, Tuple

from common.constants import (
    MessageTypes, ALLOWED_DOCUMENT_TYPES, CHUNK_SIZE, DOWNLOAD_DIR, MAX_DOCUMENT_SIZE, TRANSFER_TIMEOUT
)
from common.errors import RequestFailed, ValidationError
from common.protocol_definitions import create_send_document_message, create_file_request_message
from client.utils.logger import logger

CONNECT_TIMEOUT = 10.0


class FileClient:
    """Client-side document transfer functionality."""

    def __init__(self, chat_client, host: str = 'localhost', download_dir: str = DOWNLOAD_DIR,
                 chunk_size: int = CHUNK_SIZE, transfer_timeout: float = TRANSFER_TIMEOUT):
        self.chat_client = chat_client
        self.host = host
        self.download_dir = Path(download_dir)
        self.chunk_size = chunk_size
        self.transfer_timeout = transfer_timeout

    def set_host(self, host: str):
        """Set the server host for transfers."""
        self.host = host

    @staticmethod
    def guess_mimetype(file_path: str) -> str:
        mimetype, _ = mimetypes.guess_type(str(file_path))
        return mimetype or 'application/octet-stream'

    @staticmethod
    def validate_document(file_path: str, mimetype: str) -> Tuple[Path, int]:
        """Check a local file before offering it; the server checks again."""
        path = Path(file_path)

        try:
            # Normalize the path to prevent path traversal
            normalized_path = path.resolve()
        except (OSError, RuntimeError) as e:
            raise ValidationError(f"Invalid file path: {e}") from e

        if not normalized_path.is_file():
            raise ValidationError(f"File not found: {file_path}")

        if mimetype not in ALLOWED_DOCUMENT_TYPES:
            raise ValidationError("Only PDF, Word, TXT, Excel, and PowerPoint files are allowed")

        size = normalized_path.stat().st_size
        if size == 0:
            raise ValidationError(f"File is empty: {file_path}")
        if size > MAX_DOCUMENT_SIZE:
            raise ValidationError(f"File too large: {size} bytes (max: {MAX_DOCUMENT_SIZE} bytes)")

        return normalized_path, size

    async def send_document(self, peer_id: str, file_path: str, mimetype: Optional[str] = None,
                            text: str = "") -> dict:
        """
        Offer, upload, and return the persisted document message.

        Raises:
            ValidationError: Local checks failed; nothing was sent
            RequestFailed: The server rejected the offer or the upload
            ConnectionError: Not connected, or the upload connection failed
        """
        mimetype = mimetype or self.guess_mimetype(file_path)
        path, size = self.validate_document(file_path, mimetype)

        request_id = self.chat_client.open_request()
        try:
            offer = create_send_document_message(request_id, peer_id, path.name, mimetype, size, text)
            if not await self.chat_client.send_message(offer):
                raise ConnectionError("Not connected to server")

            reply = await self.chat_client.next_reply(request_id)
            if reply.get('type') != MessageTypes.DOCUMENT_UPLOAD_PORT:
                raise RequestFailed('internal', f"Unexpected reply '{reply.get('type')}'")

            logger.log_document_upload(path.name, size, peer_id)
            await self._upload(path, reply['port'])

            result = await self.chat_client.next_reply(request_id, timeout=self.transfer_timeout)
            return (result.get('data') or {}).get('message') or {}
        finally:
            self.chat_client.close_request(request_id)

    async def _upload(self, path: Path, upload_port: int):
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, upload_port),
            timeout=CONNECT_TIMEOUT
        )
        try:
            with open(path, 'rb') as f:
                while True:
                    data = f.read(self.chunk_size)
                    if not data:
                        break
                    writer.write(data)
                    await asyncio.wait_for(writer.drain(), timeout=self.transfer_timeout)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def download_document(self, stored_filename: str, save_dir: Optional[str] = None) -> Path:
        """Fetch a stored document; returns where it was saved."""
        request_id = self.chat_client.open_request()
        try:
            if not await self.chat_client.send_message(create_file_request_message(request_id, stored_filename)):
                raise ConnectionError("Not connected to server")
            reply = await self.chat_client.next_reply(request_id)
        finally:
            self.chat_client.close_request(request_id)

        if reply.get('type') != MessageTypes.DOCUMENT_DOWNLOAD_PORT:
            raise RequestFailed('internal', f"Unexpected reply '{reply.get('type')}'")

        target_dir = Path(save_dir) if save_dir else self.download_dir
        target_dir.mkdir(parents=True, exist_ok=True)
        save_path = self._unique_path(target_dir, reply.get('original_filename') or stored_filename)
        expected_size = reply.get('size', 0)

        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, reply['port']),
            timeout=CONNECT_TIMEOUT
        )
        bytes_received = 0
        try:
            with open(save_path, 'wb') as f:
                while True:
                    data = await asyncio.wait_for(reader.read(self.chunk_size), timeout=self.transfer_timeout)
                    if not data:
                        break
                    f.write(data)
                    bytes_received += len(data)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

        if bytes_received != expected_size:
            save_path.unlink(missing_ok=True)
            raise ConnectionError(f"Download incomplete: {bytes_received}/{expected_size} bytes")

        logger.log_document_download(stored_filename, str(save_path))
        return save_path

    @staticmethod
    def _unique_path(directory: Path, filename: str) -> Path:
        name = Path(filename).name or 'document'
        candidate = directory / name
        counter = 1
        while candidate.exists():
            candidate = directory / f"{Path(name).stem}_{counter}{Path(name).suffix}"
            counter += 1
        return candidate
