#!/usr/bin/env python3
"""
Unit tests for session_controller.py

Events are dispatched through a real ChatClient; its network calls are
replaced with AsyncMocks.
"""

import asyncio
import unittest
from unittest.mock import AsyncMock

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from common.constants import EventNames
from common.errors import RequestFailed, ValidationError
from client.chat.chat_client import ChatClient
from client.chat.session_controller import SessionController


def make_message(message_id, sender, receiver, text="hi", seen=False, created_at=None):
    return {
        "id": message_id,
        "sender_id": sender,
        "receiver_id": receiver,
        "text": text,
        "document": None,
        "seen": seen,
        "seen_at": "2024-01-01T00:00:05" if seen else None,
        "created_at": created_at or f"2024-01-01T00:00:{message_id:02d}",
        "updated_at": created_at or f"2024-01-01T00:00:{message_id:02d}",
    }


class SessionTestCase(unittest.IsolatedAsyncioTestCase):
    """Controller for alice with a mocked channel."""

    async def asyncSetUp(self):
        self.client = ChatClient()
        self.client.get_conversation = AsyncMock(return_value=[])
        self.client.mark_seen = AsyncMock(side_effect=lambda ids: len(ids))
        self.client.send_text = AsyncMock()
        self.client.get_peers = AsyncMock(return_value=[])
        self.session = SessionController(self.client, "alice")

    async def asyncTearDown(self):
        await self.session.close()
        await self.client.close()

    def push(self, event, message):
        self.client.dispatch_event(event, {"message": message})


class TestSelectPeer(SessionTestCase):

    async def test_select_loads_history_and_acknowledges(self):
        self.client.get_conversation.return_value = [
            make_message(1, "bob", "alice"),
            make_message(2, "alice", "bob"),
            make_message(3, "bob", "alice", seen=True),
        ]

        await self.session.select_peer("bob")

        self.assertEqual([m["id"] for m in self.session.messages], [1, 2, 3])
        self.client.mark_seen.assert_awaited_once_with([1])
        self.assertTrue(self.session.messages[0]["seen"])
        self.assertFalse(self.session.messages[1]["seen"])

    async def test_select_requires_peer(self):
        with self.assertRaises(ValidationError):
            await self.session.select_peer("")

    async def test_switching_peer_drops_old_subscription(self):
        await self.session.select_peer("bob")
        handlers_for_bob = self.client.handler_count(EventNames.NEW_MESSAGE)

        await self.session.select_peer("carol")

        self.assertEqual(self.client.handler_count(EventNames.NEW_MESSAGE), handlers_for_bob)
        self.push(EventNames.NEW_MESSAGE, make_message(7, "bob", "alice"))
        self.assertEqual(self.session.messages, [])

    async def test_failed_acknowledge_keeps_messages_unseen(self):
        self.client.get_conversation.return_value = [make_message(1, "bob", "alice")]
        self.client.mark_seen.side_effect = RequestFailed('internal', 'store down')

        await self.session.select_peer("bob")

        self.assertFalse(self.session.messages[0]["seen"])


class TestReconcile(SessionTestCase):

    async def test_duplicates_are_merged(self):
        await self.session.select_peer("bob")
        message = make_message(1, "alice", "bob")

        self.assertEqual(self.session.reconcile([message]), 1)
        self.assertEqual(self.session.reconcile([message, dict(message)]), 0)
        self.assertEqual(len(self.session.messages), 1)

    async def test_stale_copy_does_not_revert_seen(self):
        await self.session.select_peer("bob")
        self.session.reconcile([make_message(1, "alice", "bob", seen=True)])

        self.session.reconcile([make_message(1, "alice", "bob", seen=False)])

        self.assertTrue(self.session.messages[0]["seen"])
        self.assertEqual(self.session.messages[0]["seen_at"], "2024-01-01T00:00:05")

    async def test_messages_sorted_by_creation(self):
        await self.session.select_peer("bob")
        self.session.reconcile([make_message(3, "bob", "alice", seen=True),
                                make_message(1, "alice", "bob")])
        self.session.reconcile([make_message(2, "alice", "bob")])
        self.assertEqual([m["id"] for m in self.session.messages], [1, 2, 3])

    async def test_push_overlapping_history(self):
        """A push that lands during the history fetch appears once."""
        pushed = make_message(1, "alice", "bob")

        async def fetch_with_push(peer_id):
            self.push(EventNames.NEW_MESSAGE, pushed)
            return [pushed]

        self.client.get_conversation.side_effect = fetch_with_push
        await self.session.select_peer("bob")

        self.assertEqual([m["id"] for m in self.session.messages], [1])


class TestPushHandling(SessionTestCase):

    async def test_incoming_message_is_acknowledged(self):
        await self.session.select_peer("bob")

        self.push(EventNames.NEW_MESSAGE, make_message(5, "bob", "alice"))
        await self.session.drain()

        self.client.mark_seen.assert_awaited_with([5])
        self.assertTrue(self.session.messages[0]["seen"])

    async def test_own_echo_not_acknowledged(self):
        await self.session.select_peer("bob")
        self.push(EventNames.NEW_MESSAGE, make_message(5, "alice", "bob"))
        await self.session.drain()

        self.client.mark_seen.assert_not_awaited()
        self.assertEqual(len(self.session.messages), 1)

    async def test_other_conversation_counts_as_unread(self):
        await self.session.select_peer("bob")

        self.push(EventNames.NEW_MESSAGE, make_message(8, "carol", "alice"))

        self.assertEqual(self.session.messages, [])
        self.assertEqual(self.session.unread_count("carol"), 1)

        self.client.get_conversation.return_value = [make_message(8, "carol", "alice")]
        await self.session.select_peer("carol")
        self.assertEqual(self.session.unread_count("carol"), 0)

    async def test_message_seen_updates_local_copy(self):
        await self.session.select_peer("bob")
        self.session.reconcile([make_message(1, "alice", "bob")])

        self.push(EventNames.MESSAGE_SEEN, make_message(1, "alice", "bob", seen=True))

        self.assertTrue(self.session.messages[0]["seen"])

    async def test_message_seen_for_unknown_id_is_ignored(self):
        await self.session.select_peer("bob")
        self.assertFalse(self.session.apply_seen(make_message(99, "alice", "bob", seen=True)))

    async def test_online_users(self):
        self.client.dispatch_event(EventNames.ONLINE_USERS, {"user_ids": ["alice", "bob"]})
        self.assertEqual(self.session.online_user_ids, {"alice", "bob"})

    async def test_change_listener(self):
        kinds = []
        self.session.add_change_listener(kinds.append)
        self.client.dispatch_event(EventNames.ONLINE_USERS, {"user_ids": []})
        self.assertEqual(kinds, ["presence"])


class TestSending(SessionTestCase):

    async def test_send_text_reconciles_reply(self):
        await self.session.select_peer("bob")
        self.client.send_text.return_value = make_message(4, "alice", "bob", text="yo")

        await self.session.send_text("yo")

        self.client.send_text.assert_awaited_once_with("bob", "yo")
        self.assertEqual([m["text"] for m in self.session.messages], ["yo"])

    async def test_failed_send_leaves_state_unchanged(self):
        await self.session.select_peer("bob")
        self.client.send_text.side_effect = RequestFailed('not_found', 'Receiver not found')

        with self.assertRaises(RequestFailed):
            await self.session.send_text("yo")
        self.assertEqual(self.session.messages, [])

    async def test_send_without_peer(self):
        with self.assertRaises(ValidationError):
            await self.session.send_text("hello?")

    async def test_send_document_uses_file_client(self):
        file_client = AsyncMock()
        file_client.send_document.return_value = make_message(6, "alice", "bob", text="")
        self.session.file_client = file_client
        await self.session.select_peer("bob")

        await self.session.send_document("/tmp/report.pdf", "application/pdf")

        file_client.send_document.assert_awaited_once_with("bob", "/tmp/report.pdf", "application/pdf", "")
        self.assertEqual([m["id"] for m in self.session.messages], [6])


class TestConnectionAndPolling(SessionTestCase):

    async def test_reconnect_refreshes_history(self):
        await self.session.select_peer("bob")
        await self.session.set_connected(True)
        self.client.get_conversation.reset_mock()

        await self.session.set_connected(False)
        await self.session.set_connected(True)

        self.client.get_conversation.assert_awaited_once_with("bob")

    async def test_poll_interval_clamped(self):
        self.assertEqual(SessionController(self.client, "alice", history_poll_interval=1).history_poll_interval, 5)
        self.assertEqual(SessionController(self.client, "alice", history_poll_interval=0).history_poll_interval, 0)

    async def test_polling_refetches(self):
        self.session.history_poll_interval = 0.01
        await self.session.select_peer("bob")
        self.client.get_conversation.reset_mock()

        await asyncio.sleep(0.05)

        self.assertGreaterEqual(self.client.get_conversation.await_count, 1)

    async def test_close_detaches_handlers(self):
        await self.session.select_peer("bob")
        await self.session.close()
        for event in (EventNames.NEW_MESSAGE, EventNames.MESSAGE_SEEN, EventNames.ONLINE_USERS):
            self.assertEqual(self.client.handler_count(event), 0)


if __name__ == '__main__':
    unittest.main()
