"""
Client connection module.

Wraps one accepted TCP stream. This object is the handle that the presence
registry binds to a user id.
"""

import asyncio
from typing import Optional

from common.protocol_definitions import encode_frame
from server.utils.logger import logger


class ClientConnection:
    """One live push channel."""

    def __init__(self, conn_id: int, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.conn_id = conn_id
        self.reader = reader
        self.writer = writer
        self.addr = writer.get_extra_info('peername')
        self.user_id: Optional[str] = None
        self.closed = False
        self._write_lock = asyncio.Lock()  # Keep frames from interleaving

    async def send(self, message: dict) -> bool:
        """Write one JSON frame; False if the connection is gone."""
        if self.closed:
            return False

        data = encode_frame(message)
        try:
            async with self._write_lock:
                self.writer.write(data)
                await self.writer.drain()
            return True
        except (ConnectionError, OSError, RuntimeError) as e:
            logger.debug(f"Send failed on conn_id={self.conn_id}: {e}")
            return False

    async def close(self):
        """Close the underlying stream once."""
        if self.closed:
            return
        self.closed = True
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    def __repr__(self) -> str:
        return f"ClientConnection(conn_id={self.conn_id}, user_id={self.user_id!r})"
