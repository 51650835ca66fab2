"""
Message service module.

Ties persistence to real-time delivery. Every operation validates first,
writes to the store second, and only then schedules fan-out, so a client
never sees a push for a message it cannot also fetch. Fan-out runs in the
background and its failures never reach the caller.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Set

from common.constants import EventNames
from common.errors import NotFoundError, ValidationError
from common.protocol_definitions import DocumentRef
from server.files.attachment_storage import AttachmentStorage
from server.store.message_store import Message, MessageStore
from server.utils.logger import logger

MIN_MESSAGE_ID = -2 ** 63
MAX_MESSAGE_ID = 2 ** 63 - 1


class MessageService:
    """Send, list, and mark-seen operations over the message store."""

    def __init__(self, store: MessageStore, router, attachment_storage: Optional[AttachmentStorage] = None):
        self.store = store
        self.router = router
        self.attachment_storage = attachment_storage
        self._tasks: Set[asyncio.Task] = set()

    async def send(self, sender_id: str, receiver_id: str, text: Optional[str] = None,
                   document: Optional[DocumentRef] = None) -> Message:
        """
        Persist a message and push it to both participants.

        Args:
            sender_id: Authenticated user id of the sender
            receiver_id: Peer the message is addressed to
            text: Message body; missing text is stored as ""
            document: Attachment descriptor from the attachment storage

        Returns:
            The persisted message

        Raises:
            ValidationError: Malformed ids or text
            NotFoundError: Receiver does not exist
            PersistenceError: Store write failed
        """
        self._require_user_id(sender_id, "sender_id")
        self._require_user_id(receiver_id, "peer_id")
        if text is None:
            text = ""
        elif not isinstance(text, str):
            raise ValidationError("text must be a string")
        if document is not None and not isinstance(document, DocumentRef):
            raise ValidationError("document must be an attachment reference")

        await self._require_existing_user(receiver_id)

        message = await self.store.create_message(sender_id, receiver_id, text, document)
        logger.log_message_sent(message.id, sender_id, receiver_id, text,
                                document.original_filename if document else None)

        self._schedule_fan_out(EventNames.NEW_MESSAGE, message)
        return message

    async def validate_document(self, sender_id: str, receiver_id: str, filename: str,
                                mimetype: str, size: int):
        """Reject a document send before any byte is uploaded."""
        self._require_user_id(sender_id, "sender_id")
        self._require_user_id(receiver_id, "peer_id")
        if self.attachment_storage is None:
            raise ValidationError("Document attachments are not enabled")
        self.attachment_storage.validate(filename, mimetype, size)
        await self._require_existing_user(receiver_id)

    async def list_conversation(self, user_a: str, user_b: str) -> List[Message]:
        """Both directions between two users, oldest first."""
        self._require_user_id(user_a, "user_id")
        self._require_user_id(user_b, "peer_id")
        return await self.store.list_conversation(user_a, user_b)

    async def mark_seen(self, requester_id: str, message_ids: Iterable[Any]) -> int:
        """
        Mark messages addressed to requester_id as seen.

        Messages that are already seen or belong to someone else are
        skipped. Returns how many changed. Each changed message is pushed
        to its sender and receiver as message_seen.
        """
        self._require_user_id(requester_id, "user_id")
        ids = self._coerce_message_ids(message_ids)

        updated = await self.store.mark_seen(requester_id, ids)
        if updated:
            logger.log_messages_seen(requester_id, [m.id for m in updated])
        for message in updated:
            self._schedule_fan_out(EventNames.MESSAGE_SEEN, message)
        return len(updated)

    async def list_peers(self, requester_id: str) -> List[Dict[str, Any]]:
        """Every other user, credential fields stripped."""
        self._require_user_id(requester_id, "user_id")
        users = await self.store.list_users_except(requester_id)
        return [user.to_public_dict() for user in users]

    async def find_document(self, stored_filename: str) -> Optional[DocumentRef]:
        """Attachment reference for a stored file, or None if no message carries it."""
        message = await self.store.find_document(stored_filename)
        return message.document if message is not None else None

    async def drain(self):
        """Wait for scheduled fan-out to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()

    def _schedule_fan_out(self, event: str, message: Message):
        # Snapshot now; the row could be updated again before the task runs
        payload = {"message": message.to_dict()}
        recipients = list(dict.fromkeys((message.receiver_id, message.sender_id)))
        task = asyncio.create_task(self._fan_out(event, payload, recipients))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fan_out(self, event: str, payload: Dict[str, Any], recipients: List[str]):
        for user_id in recipients:
            try:
                await self.router.notify(user_id, event, payload)
            except Exception as e:
                logger.warning(f"Fan-out of '{event}' to {user_id} failed: {e}")

    async def _require_existing_user(self, user_id: str):
        if await self.store.get_user(user_id) is None:
            raise NotFoundError("Receiver not found")

    @staticmethod
    def _require_user_id(value: Any, field: str):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"Missing or invalid {field}")

    @staticmethod
    def _coerce_message_ids(message_ids: Iterable[Any]) -> List[int]:
        if isinstance(message_ids, (str, bytes)) or not isinstance(message_ids, (list, tuple, set, frozenset)):
            raise ValidationError("message_ids must be a list of ids")
        ids = []
        for value in message_ids:
            if isinstance(value, bool):
                raise ValidationError(f"Invalid message id: {value!r}")
            if isinstance(value, int):
                message_id = value
            elif isinstance(value, str) and value.isascii() and value.isdigit():
                message_id = int(value)
            else:
                raise ValidationError(f"Invalid message id: {value!r}")
            # Ids beyond a 64-bit row id cannot match anything
            if MIN_MESSAGE_ID <= message_id <= MAX_MESSAGE_ID:
                ids.append(message_id)
        return ids
