#!/usr/bin/env python3
"""
End-to-end tests for the messenger server.

Starts MessengerServer on an ephemeral port with an in-memory store and
talks to it over real sockets.
"""

import asyncio
import json
import tempfile
import unittest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from common.constants import EventNames, MessageTypes
from common.errors import RequestFailed
from common.protocol_definitions import (
    create_login_message, create_get_peers_message, create_get_conversation_message,
    create_send_message, create_mark_seen_message, create_heartbeat_message, create_file_request_message,
    create_send_document_message
)
from client.chat.chat_client import ChatClient
from client.files.file_client import FileClient
from server.main_server import MessengerServer
from server.store.message_store import MessageStore

TIMEOUT = 5


class RawClient:
    """Line-level test client that buffers frames it was not asked for."""

    def __init__(self, reader, writer):
        self.reader = reader
        self.writer = writer
        self.buffer = []

    async def send(self, message: dict):
        self.writer.write(json.dumps(message).encode('utf-8') + b'\n')
        await self.writer.drain()

    async def send_raw(self, data: bytes):
        self.writer.write(data)
        await self.writer.drain()

    async def expect(self, predicate) -> dict:
        for i, frame in enumerate(self.buffer):
            if predicate(frame):
                return self.buffer.pop(i)
        while True:
            line = await asyncio.wait_for(self.reader.readline(), TIMEOUT)
            if not line:
                raise ConnectionError("server closed the connection")
            frame = json.loads(line)
            if predicate(frame):
                return frame
            self.buffer.append(frame)

    async def reply(self, request_id: str) -> dict:
        return await self.expect(lambda f: f.get('request_id') == request_id)

    async def event(self, name: str, condition=lambda data: True) -> dict:
        frame = await self.expect(lambda f: f.get('type') == MessageTypes.EVENT
                                  and f.get('event') == name and condition(f.get('data')))
        return frame['data']

    async def close(self):
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


class ServerTestCase(unittest.IsolatedAsyncioTestCase):
    """Running server with alice, bob and carol registered."""

    async def asyncSetUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.server = MessengerServer(host='127.0.0.1', port=0, upload_dir=self.tmpdir.name,
                                      store=MessageStore("sqlite://"))
        await self.server.start()
        await self.server.seed_users([("alice", "Alice"), ("bob", "Bob"), ("carol", "Carol")])
        self.clients = []

    async def asyncTearDown(self):
        for client in self.clients:
            await client.close()
        await self.server.stop()
        self.tmpdir.cleanup()

    async def connect(self, user_id=None) -> RawClient:
        reader, writer = await asyncio.open_connection('127.0.0.1', self.server.port)
        client = RawClient(reader, writer)
        self.clients.append(client)
        if user_id:
            await client.send(create_login_message(user_id))
            frame = await client.expect(lambda f: f.get('type') == MessageTypes.LOGIN_SUCCESS)
            self.assertEqual(frame['user_id'], user_id)
        return client


class TestLoginAndPresence(ServerTestCase):

    async def test_requests_require_login(self):
        client = await self.connect()
        await client.send(create_get_peers_message("r1"))
        reply = await client.reply("r1")
        self.assertEqual(reply['type'], MessageTypes.ERROR)
        self.assertEqual(reply['error'], 'unauthorized')

    async def test_login_without_user_id(self):
        client = await self.connect()
        await client.send({"type": MessageTypes.LOGIN})
        reply = await client.expect(lambda f: f.get('type') == MessageTypes.ERROR)
        self.assertEqual(reply['error'], 'validation')

    async def test_online_users_broadcast(self):
        alice = await self.connect("alice")
        await self.connect("bob")

        data = await alice.event(EventNames.ONLINE_USERS, lambda d: set(d['user_ids']) == {"alice", "bob"})
        self.assertEqual(sorted(data['user_ids']), ["alice", "bob"])

    async def test_disconnect_goes_offline(self):
        alice = await self.connect("alice")
        bob = await self.connect("bob")
        await alice.event(EventNames.ONLINE_USERS, lambda d: "bob" in d['user_ids'])

        await bob.close()

        await alice.event(EventNames.ONLINE_USERS, lambda d: d['user_ids'] == ["alice"])

    async def test_heartbeat(self):
        client = await self.connect("alice")
        await client.send(create_heartbeat_message())
        await client.expect(lambda f: f.get('type') == MessageTypes.HEARTBEAT_ACK)

    async def test_get_peers(self):
        alice = await self.connect("alice")
        await alice.send(create_get_peers_message("r1"))
        reply = await alice.reply("r1")
        self.assertEqual([p['id'] for p in reply['data']['peers']], ["bob", "carol"])


class TestMessaging(ServerTestCase):

    async def test_send_and_receive(self):
        alice = await self.connect("alice")
        bob = await self.connect("bob")

        await alice.send(create_send_message("r1", "bob", "hello"))
        reply = await alice.reply("r1")
        message = reply['data']['message']
        self.assertEqual(reply['type'], MessageTypes.RESPONSE)
        self.assertEqual(message['text'], "hello")
        self.assertFalse(message['seen'])

        pushed = await bob.event(EventNames.NEW_MESSAGE)
        self.assertEqual(pushed['message']['id'], message['id'])
        echoed = await alice.event(EventNames.NEW_MESSAGE)
        self.assertEqual(echoed['message']['id'], message['id'])

    async def test_offline_receiver_fetches_history(self):
        alice = await self.connect("alice")
        await alice.send(create_send_message("r1", "bob", "while you were out"))
        sent = (await alice.reply("r1"))['data']['message']

        bob = await self.connect("bob")
        await bob.send(create_get_conversation_message("r2", "alice"))
        history = (await bob.reply("r2"))['data']['messages']

        self.assertEqual([m['id'] for m in history], [sent['id']])

    async def test_unknown_receiver(self):
        alice = await self.connect("alice")
        await alice.send(create_send_message("r1", "mallory", "hi"))
        reply = await alice.reply("r1")
        self.assertEqual(reply['type'], MessageTypes.ERROR)
        self.assertEqual(reply['error'], 'not_found')

    async def test_mark_seen_notifies_sender(self):
        alice = await self.connect("alice")
        bob = await self.connect("bob")
        await alice.send(create_send_message("r1", "bob", "hi"))
        message = (await alice.reply("r1"))['data']['message']

        await bob.send(create_mark_seen_message("r2", [message['id']]))
        reply = await bob.reply("r2")
        self.assertEqual(reply['data'], {"updated_count": 1})

        seen = await alice.event(EventNames.MESSAGE_SEEN)
        self.assertEqual(seen['message']['id'], message['id'])
        self.assertTrue(seen['message']['seen'])

        await alice.send(create_mark_seen_message("r3", [message['id']]))
        self.assertEqual((await alice.reply("r3"))['data'], {"updated_count": 0})

    async def test_malformed_json_keeps_connection(self):
        alice = await self.connect("alice")
        await alice.send_raw(b'{not json}\n')
        error = await alice.expect(lambda f: f.get('type') == MessageTypes.ERROR)
        self.assertEqual(error['error'], 'validation')

        await alice.send(create_get_peers_message("r1"))
        self.assertEqual((await alice.reply("r1"))['type'], MessageTypes.RESPONSE)

    async def test_unknown_type(self):
        alice = await self.connect("alice")
        await alice.send({"type": "teleport", "request_id": "r1"})
        self.assertEqual((await alice.reply("r1"))['error'], 'validation')

    async def test_rebind_routes_to_latest_connection(self):
        first = await self.connect("bob")
        second = await self.connect("bob")
        alice = await self.connect("alice")

        await alice.send(create_send_message("r1", "bob", "which one?"))
        await alice.reply("r1")

        await second.event(EventNames.NEW_MESSAGE)
        await first.close()
        self.clients.remove(first)
        await asyncio.sleep(0.05)
        self.assertTrue(self.server.registry.is_online("bob"))


class TestDocuments(ServerTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.reader, self.writer = await asyncio.open_connection('127.0.0.1', self.server.port)
        self.chat_client = ChatClient(self.writer, request_timeout=TIMEOUT)
        self.file_client = FileClient(self.chat_client, '127.0.0.1',
                                      download_dir=str(Path(self.tmpdir.name) / "downloads"),
                                      transfer_timeout=TIMEOUT)
        self.listener = asyncio.create_task(self._listen())
        self.logged_in = asyncio.Event()
        self.chat_client.set_message_handler(self._on_frame)
        await self.chat_client.login("alice")
        await asyncio.wait_for(self.logged_in.wait(), TIMEOUT)

    async def asyncTearDown(self):
        self.listener.cancel()
        await asyncio.gather(self.listener, return_exceptions=True)
        await self.chat_client.close()
        self.writer.close()
        await super().asyncTearDown()

    async def _listen(self):
        while True:
            line = await self.reader.readline()
            if not line:
                return
            await self.chat_client.handle_message(json.loads(line))

    async def _on_frame(self, frame):
        if frame.get('type') == MessageTypes.LOGIN_SUCCESS:
            self.logged_in.set()

    def write_file(self, name: str, content: bytes) -> Path:
        path = Path(self.tmpdir.name) / "outbox" / name
        path.parent.mkdir(exist_ok=True)
        path.write_bytes(content)
        return path

    async def test_upload_and_download(self):
        path = self.write_file("report.pdf", b"%PDF-1.4 " + b"x" * 5000)

        message = await self.file_client.send_document("bob", str(path), "application/pdf", "see attached")

        self.assertEqual(message['text'], "see attached")
        document = message['document']
        self.assertEqual(document['original_filename'], "report.pdf")
        self.assertEqual(document['url'], "/download/document/" + document['filename'])
        self.assertTrue(self.server.attachment_storage.exists(document['filename']))

        saved = await self.file_client.download_document(document['filename'])
        self.assertEqual(saved.read_bytes(), path.read_bytes())
        self.assertEqual(saved.name, "report.pdf")

    async def test_download_keeps_original_name(self):
        path = self.write_file("my report.pdf", b"%PDF-1.4 spaced")

        message = await self.file_client.send_document("bob", str(path), "application/pdf")
        stored_filename = message['document']['filename']
        self.assertTrue(stored_filename.endswith("my_report.pdf"))

        saved = await self.file_client.download_document(stored_filename)
        self.assertEqual(saved.name, "my report.pdf")
        self.assertEqual(saved.read_bytes(), path.read_bytes())

    async def test_document_visible_in_history(self):
        path = self.write_file("notes.txt", b"hello")
        sent = await self.file_client.send_document("bob", str(path))

        history = await self.chat_client.get_conversation("bob")
        self.assertEqual(history[-1]['id'], sent['id'])
        self.assertEqual(history[-1]['document']['mimetype'], "text/plain")

    async def test_disallowed_type_rejected_by_server(self):
        offer = {
            "type": MessageTypes.SEND_DOCUMENT, "peer_id": "bob",
            "filename": "archive.zip", "mimetype": "application/zip", "size": 10,
        }
        with self.assertRaises(RequestFailed) as ctx:
            await self.chat_client.request(offer)
        self.assertEqual(ctx.exception.kind, 'validation')
        self.assertEqual(await self.chat_client.get_conversation("bob"), [])

    async def test_document_to_unknown_receiver(self):
        path = self.write_file("notes.txt", b"hello")
        with self.assertRaises(RequestFailed) as ctx:
            await self.file_client.send_document("mallory", str(path))
        self.assertEqual(ctx.exception.kind, 'not_found')

    async def test_missing_document_download(self):
        with self.assertRaises(RequestFailed) as ctx:
            await self.chat_client.request(create_file_request_message('', "nope.pdf"))
        self.assertEqual(ctx.exception.kind, 'not_found')



class TestStalledUpload(ServerTestCase):

    async def test_stalled_upload_times_out_and_is_discarded(self):
        self.server.file_server.transfer_timeout = 0.3
        alice = await self.connect("alice")

        await alice.send(create_send_document_message("r1", "bob", "notes.txt", "text/plain", 100))
        offer = await alice.reply("r1")
        self.assertEqual(offer['type'], MessageTypes.DOCUMENT_UPLOAD_PORT)

        _, upload_writer = await asyncio.open_connection('127.0.0.1', offer['port'])
        try:
            upload_writer.write(b"0123456789")
            await upload_writer.drain()

            error = await alice.reply("r1")
        finally:
            upload_writer.close()

        self.assertEqual(error['type'], MessageTypes.ERROR)
        self.assertEqual(error['error'], 'validation')
        self.assertEqual(error['message'], "Transfer timed out")

        await asyncio.sleep(0.05)
        self.assertEqual(self.server.file_server.sessions, {})
        self.assertEqual(list(Path(self.tmpdir.name).iterdir()), [])

        await alice.send(create_get_conversation_message("r2", "bob"))
        self.assertEqual((await alice.reply("r2"))['data']['messages'], [])

if __name__ == '__main__':
    unittest.main()
