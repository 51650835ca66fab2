"""
File server module.

This module moves document bytes outside the JSON-lines channel. A validated
send_document offer gets a one-shot upload listener on an ephemeral port. A
file_request gets a one-shot download listener. Only after the upload is
complete on disk does the message get persisted and fanned out.
"""

import asyncio
from typing import Dict, Optional, Set

from common.constants import CHUNK_SIZE, PROGRESS_LOG_INTERVAL, TRANSFER_TIMEOUT
from common.errors import ChatError, NotFoundError
from common.protocol_definitions import (
    create_document_upload_port_message, create_document_download_port_message,
    create_response_message, create_error_message
)
from server.files.attachment_storage import AttachmentStorage
from server.utils.logger import logger


class FileServer:
    """Server-side document transfer functionality."""

    def __init__(self, storage: AttachmentStorage, message_service, host: str = '0.0.0.0',
                 transfer_timeout: float = TRANSFER_TIMEOUT, chunk_size: int = CHUNK_SIZE,
                 progress_log_interval: int = PROGRESS_LOG_INTERVAL):
        self.storage = storage
        self.message_service = message_service
        self.host = host
        self.transfer_timeout = transfer_timeout
        self.chunk_size = chunk_size
        self.progress_log_interval = progress_log_interval
        self.sessions: Dict[int, dict] = {}  # port -> session info
        self._tasks: Set[asyncio.Task] = set()
        self.lock = asyncio.Lock()  # Protect sessions

    async def handle_send_document(self, connection, data: dict):
        """
        Validate a document offer and open an upload port for it.

        Raises ChatError before anything is written when the offer is
        rejected; the caller turns that into an error reply.
        """
        request_id = data.get('request_id')
        sender_id = connection.user_id
        peer_id = data.get('peer_id')
        filename = data.get('filename', '')
        mimetype = data.get('mimetype', '')
        size = data.get('size', 0)
        text = data.get('text') or ""

        await self.message_service.validate_document(sender_id, peer_id, filename, mimetype, size)

        stored_filename = self.storage.allocate(filename)
        session_info = {
            'kind': 'upload',
            'request_id': request_id,
            'sender_id': sender_id,
            'peer_id': peer_id,
            'original_filename': filename,
            'stored_filename': stored_filename,
            'mimetype': mimetype,
            'size': size,
            'text': text,
            'connection': connection,
            'claimed': False,
        }
        logger.info(f"Document offer from {sender_id} to {peer_id}: {filename} ({size} bytes, {mimetype})")

        async def accept_upload(reader, writer):
            if session_info['claimed']:
                writer.close()
                return
            session_info['claimed'] = True
            try:
                await self.handle_document_upload(reader, writer, session_info)
            finally:
                await self._close_session(session_info)

        port = await self._open_session(accept_upload, session_info)
        await connection.send(create_document_upload_port_message(request_id, port))

    async def handle_file_request(self, connection, data: dict):
        """Open a download port for a stored document."""
        request_id = data.get('request_id')
        stored_filename = data.get('filename', '')

        if not self.storage.exists(stored_filename):
            logger.warning(f"Document request from {connection.user_id} for unknown file '{stored_filename}'")
            raise NotFoundError("Document not found")

        size = self.storage.size_of(stored_filename)
        document = await self.message_service.find_document(stored_filename)
        original_filename = document.original_filename if document else self.storage.original_name_of(stored_filename)
        session_info = {
            'kind': 'download',
            'request_id': request_id,
            'requester': connection.user_id,
            'stored_filename': stored_filename,
            'size': size,
            'connection': connection,
            'claimed': False,
        }

        async def accept_download(reader, writer):
            if session_info['claimed']:
                writer.close()
                return
            session_info['claimed'] = True
            try:
                await self.handle_document_download(reader, writer, session_info)
            finally:
                await self._close_session(session_info)

        port = await self._open_session(accept_download, session_info)
        await connection.send(create_document_download_port_message(
            request_id, stored_filename, original_filename, size, port
        ))

    async def handle_document_upload(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                                     session_info: dict):
        """Receive exactly the offered number of bytes, then persist the message."""
        request_id = session_info['request_id']
        connection = session_info['connection']
        stored_filename = session_info['stored_filename']
        expected_size = session_info['size']

        addr = writer.get_extra_info('peername')
        logger.info(f"Document upload connection from {addr} for {stored_filename}")

        file_path = self.storage.path_for(stored_filename)
        bytes_received = 0
        timed_out = False

        try:
            with open(file_path, 'wb') as f:
                while bytes_received < expected_size:
                    chunk_size = min(self.chunk_size, expected_size - bytes_received)
                    try:
                        data = await asyncio.wait_for(reader.read(chunk_size), timeout=self.transfer_timeout)
                    except asyncio.TimeoutError:
                        logger.warning(f"Upload stalled: {bytes_received}/{expected_size} bytes")
                        timed_out = True
                        break

                    if not data:
                        logger.warning(f"Connection closed before upload complete: {bytes_received}/{expected_size} bytes")
                        break

                    f.write(data)
                    bytes_received += len(data)

                    if bytes_received % self.progress_log_interval < self.chunk_size:
                        progress = (bytes_received / expected_size) * 100
                        logger.debug(f"Upload progress [{stored_filename}]: {bytes_received}/{expected_size} bytes ({progress:.1f}%)")
        except OSError as e:
            logger.log_error("document upload", e)
            self.storage.discard(stored_filename)
            await connection.send(create_error_message("Failed to store document", 'internal', request_id))
            await self._close_writer(writer)
            return

        await self._close_writer(writer)

        if bytes_received != expected_size:
            logger.error(f"Upload incomplete: {bytes_received}/{expected_size} bytes")
            self.storage.discard(stored_filename)
            reason = "Transfer timed out" if timed_out else "Upload incomplete"
            await connection.send(create_error_message(reason, 'validation', request_id))
            return

        logger.log_document_upload(session_info['original_filename'], stored_filename,
                                   bytes_received, session_info['sender_id'])

        document = self.storage.describe(stored_filename, session_info['original_filename'],
                                         session_info['mimetype'])
        try:
            message = await self.message_service.send(
                session_info['sender_id'], session_info['peer_id'], session_info['text'], document
            )
        except ChatError as e:
            self.storage.discard(stored_filename)
            await connection.send(create_error_message(e.message, e.kind, request_id))
            return

        await connection.send(create_response_message(request_id, {"message": message.to_dict()}))

    async def handle_document_download(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                                       session_info: dict):
        """Stream a stored document to the requester."""
        stored_filename = session_info['stored_filename']
        requester = session_info['requester']

        addr = writer.get_extra_info('peername')
        logger.info(f"Document download connection from {addr} for {stored_filename}")

        bytes_sent = 0
        try:
            with open(self.storage.path_for(stored_filename), 'rb') as f:
                while True:
                    data = f.read(self.chunk_size)
                    if not data:
                        break

                    writer.write(data)
                    await asyncio.wait_for(writer.drain(), timeout=self.transfer_timeout)
                    bytes_sent += len(data)

            logger.log_document_download(stored_filename, bytes_sent, requester)
        except (ConnectionError, OSError, asyncio.TimeoutError) as e:
            logger.log_error("document download", e)
        finally:
            await self._close_writer(writer)

    async def _open_session(self, handler, session_info: dict) -> int:
        server = await asyncio.start_server(handler, self.host, 0)
        port = server.sockets[0].getsockname()[1]
        session_info['server'] = server
        session_info['port'] = port

        async with self.lock:
            self.sessions[port] = session_info

        logger.info(f"{session_info['kind'].capitalize()} server started on port {port} for {session_info['stored_filename']}")

        task = asyncio.create_task(self._expire_session(session_info))
        session_info['expiry_task'] = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return port

    async def _expire_session(self, session_info: dict):
        await asyncio.sleep(self.transfer_timeout)
        if session_info['claimed']:
            return
        logger.info(f"{session_info['kind'].capitalize()} server on port {session_info['port']} timed out and closed")
        await self._close_session(session_info, cancel_expiry=False)
        await session_info['connection'].send(create_error_message(
            "Transfer timed out", 'validation', session_info['request_id']
        ))

    async def _close_session(self, session_info: dict, cancel_expiry: bool = True):
        async with self.lock:
            self.sessions.pop(session_info.get('port'), None)
        server = session_info.get('server')
        if server is not None:
            server.close()
        expiry_task: Optional[asyncio.Task] = session_info.get('expiry_task')
        if cancel_expiry and expiry_task is not None and expiry_task is not asyncio.current_task():
            expiry_task.cancel()

    @staticmethod
    async def _close_writer(writer: asyncio.StreamWriter):
        try:
            writer.close()
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    async def close(self):
        """Tear down every open transfer listener."""
        async with self.lock:
            sessions = list(self.sessions.values())
            self.sessions.clear()
        for session_info in sessions:
            server = session_info.get('server')
            if server is not None:
                server.close()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
