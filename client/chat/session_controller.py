"""
Session controller module.

Client-side view of the active conversation. It merges fetched history with
pushed events, keyed by message id, and sends read receipts for messages
addressed to us. Push delivery is best-effort, so an optional low-frequency
history re-fetch catches anything that was missed.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set

from common.constants import EventNames
from common.errors import ChatError, ValidationError
from client.utils.config import ClientConfig
from client.utils.logger import logger


def _message_order(message: dict):
    return (message.get('created_at') or '', message.get('id') or 0)


class SessionController:
    """Local conversation state for one logged-in user."""

    def __init__(self, chat_client, user_id: str, file_client=None,
                 history_poll_interval: float = 0):
        self.chat_client = chat_client
        self.file_client = file_client
        self.user_id = user_id
        self.history_poll_interval = ClientConfig.clamp_poll_interval(history_poll_interval)

        self.active_peer_id: Optional[str] = None
        self.messages: List[dict] = []
        self._index: Dict[int, dict] = {}
        self.peers: List[dict] = []
        self.online_user_ids: Set[str] = set()
        self.unread: Dict[str, Set[int]] = {}  # peer_id -> unseen message ids outside the active chat
        self.connected = False

        self._acknowledging: Set[int] = set()
        self._conversation_unsubscribers: List[Callable[[], None]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self._change_listeners: List[Callable[[str], None]] = []

        # Session-wide subscriptions, independent of the active chat
        self._session_unsubscribers = [
            chat_client.on(EventNames.ONLINE_USERS, self._on_online_users),
            chat_client.on(EventNames.NEW_MESSAGE, self._track_unread),
            chat_client.on(EventNames.MESSAGE_SEEN, self._clear_unread),
        ]

    def add_change_listener(self, listener: Callable[[str], None]):
        """listener(kind) with kind in messages / presence / unread / connection."""
        self._change_listeners.append(listener)

    def _changed(self, kind: str):
        for listener in list(self._change_listeners):
            listener(kind)

    # Conversation selection

    async def select_peer(self, peer_id: str):
        """
        Switch the active conversation.

        Drops the previous subscription, subscribes for the new peer,
        fetches history and acknowledges everything unseen that was sent
        to us. Subscribing before the fetch means nothing pushed during
        the fetch is lost; reconciliation makes the overlap harmless.
        """
        if not isinstance(peer_id, str) or not peer_id:
            raise ValidationError("Missing peer id")

        self._teardown_conversation()
        self.active_peer_id = peer_id
        self.messages = []
        self._index = {}
        if self.unread.pop(peer_id, None):
            self._changed('unread')

        self._subscribe_conversation(peer_id)
        await self.refresh_history()
        self._restart_polling()

    async def refresh_history(self):
        """Re-fetch the active conversation and acknowledge unseen messages."""
        peer_id = self.active_peer_id
        if peer_id is None:
            return

        messages = await self.chat_client.get_conversation(peer_id)
        if peer_id != self.active_peer_id:
            return  # switched away while fetching

        self.reconcile(messages)
        unseen = [m['id'] for m in messages
                  if m.get('receiver_id') == self.user_id and not m.get('seen') and m.get('id') is not None]
        if unseen:
            await self._acknowledge(unseen)

    def belongs_to_active(self, message: dict) -> bool:
        peer_id = self.active_peer_id
        if peer_id is None:
            return False
        return message.get('sender_id') == peer_id or message.get('receiver_id') == peer_id

    # Reconciliation

    def reconcile(self, incoming: Iterable[dict]) -> int:
        """
        Merge messages into local state by id.

        Duplicates update in place instead of appending, and a message
        already known as seen is never turned back to unseen by a stale
        copy. Returns how many new messages were added.
        """
        added = 0
        for message in incoming:
            message_id = message.get('id')
            if message_id is None:
                continue
            existing = self._index.get(message_id)
            if existing is None:
                copy = dict(message)
                self._index[message_id] = copy
                self.messages.append(copy)
                added += 1
                continue

            stale_seen = existing.get('seen') and not message.get('seen')
            seen, seen_at = existing.get('seen'), existing.get('seen_at')
            existing.update(message)
            if stale_seen:
                existing['seen'], existing['seen_at'] = seen, seen_at

        self.messages.sort(key=_message_order)
        self._changed('messages')
        return added

    def apply_seen(self, message: dict) -> bool:
        """Update seen state of a local message by id; False if not held locally."""
        existing = self._index.get(message.get('id'))
        if existing is None or not message.get('seen'):
            return False
        existing['seen'] = True
        existing['seen_at'] = message.get('seen_at') or existing.get('seen_at')
        if message.get('updated_at'):
            existing['updated_at'] = message['updated_at']
        self._changed('messages')
        return True

    async def _acknowledge(self, message_ids: List[int]):
        ids = [mid for mid in message_ids if mid not in self._acknowledging]
        if not ids:
            return
        self._acknowledging.update(ids)
        try:
            await self.chat_client.mark_seen(ids)
        except (ChatError, ConnectionError, asyncio.TimeoutError) as e:
            logger.warning(f"[WARN] Could not mark {len(ids)} message(s) seen: {e}")
            return
        finally:
            self._acknowledging.difference_update(ids)

        # The message_seen push carries the authoritative seen_at; fill in
        # locally in case that push is lost.
        now = datetime.now(timezone.utc).isoformat()
        for mid in ids:
            local = self._index.get(mid)
            if local is not None and not local.get('seen'):
                local['seen'] = True
                local['seen_at'] = now
        self._changed('messages')

    # Sending

    async def send_text(self, text: str) -> dict:
        """Send to the active peer; local state only changes on success."""
        peer_id = self._require_active_peer()
        message = await self.chat_client.send_text(peer_id, text)
        if message and peer_id == self.active_peer_id:
            self.reconcile([message])
        return message

    async def send_document(self, file_path: str, mimetype: Optional[str] = None, text: str = "") -> dict:
        peer_id = self._require_active_peer()
        if self.file_client is None:
            raise ValidationError("Document transfer is not available")
        message = await self.file_client.send_document(peer_id, file_path, mimetype, text)
        if message and peer_id == self.active_peer_id:
            self.reconcile([message])
        return message

    async def load_peers(self) -> List[dict]:
        self.peers = await self.chat_client.get_peers()
        return self.peers

    def _require_active_peer(self) -> str:
        if self.active_peer_id is None:
            raise ValidationError("No peer selected")
        return self.active_peer_id

    # Push handlers

    def _subscribe_conversation(self, peer_id: str):
        def on_new_message(data: dict):
            message = data.get('message') or {}
            if peer_id != self.active_peer_id or not self.belongs_to_active(message):
                return
            self.reconcile([message])
            if message.get('receiver_id') == self.user_id and not message.get('seen'):
                self._spawn(self._acknowledge([message['id']]))

        def on_message_seen(data: dict):
            # Matched by id whatever conversation the message is in
            self.apply_seen(data.get('message') or {})

        self._conversation_unsubscribers = [
            self.chat_client.on(EventNames.NEW_MESSAGE, on_new_message),
            self.chat_client.on(EventNames.MESSAGE_SEEN, on_message_seen),
        ]

    def _teardown_conversation(self):
        for unsubscribe in self._conversation_unsubscribers:
            unsubscribe()
        self._conversation_unsubscribers = []
        self._stop_polling()

    def _on_online_users(self, data: dict):
        self.online_user_ids = set(data.get('user_ids') or [])
        self._changed('presence')

    def _track_unread(self, data: dict):
        message = data.get('message') or {}
        if self.belongs_to_active(message):
            return
        if message.get('receiver_id') != self.user_id or message.get('seen'):
            return
        self.unread.setdefault(message.get('sender_id'), set()).add(message.get('id'))
        self._changed('unread')

    def _clear_unread(self, data: dict):
        message = data.get('message') or {}
        ids = self.unread.get(message.get('sender_id'))
        if ids and message.get('id') in ids:
            ids.discard(message.get('id'))
            if not ids:
                del self.unread[message.get('sender_id')]
            self._changed('unread')

    def unread_count(self, peer_id: str) -> int:
        return len(self.unread.get(peer_id, ()))

    # Connection state and polling

    async def set_connected(self, connected: bool):
        """Record connection state; catch up on history after a reconnect."""
        was_connected = self.connected
        self.connected = connected
        self._changed('connection')
        if connected and not was_connected and self.active_peer_id is not None:
            try:
                await self.refresh_history()
            except (ChatError, ConnectionError, asyncio.TimeoutError) as e:
                logger.warning(f"[WARN] History refresh after reconnect failed: {e}")

    def _restart_polling(self):
        self._stop_polling()
        if self.history_poll_interval > 0 and self.active_peer_id is not None:
            self._poll_task = asyncio.create_task(self._poll_history())

    def _stop_polling(self):
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll_history(self):
        while True:
            await asyncio.sleep(self.history_poll_interval)
            try:
                await self.refresh_history()
            except (ChatError, ConnectionError, asyncio.TimeoutError) as e:
                logger.warning(f"[WARN] History poll failed: {e}")

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self):
        """Wait for read receipts issued from push handlers."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        """Detach every handler and stop background work."""
        self._teardown_conversation()
        for unsubscribe in self._session_unsubscribers:
            unsubscribe()
        self._session_unsubscribers = []
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        self.active_peer_id = None
