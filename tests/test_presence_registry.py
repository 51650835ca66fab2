#!/usr/bin/env python3
"""
Unit tests for presence_registry.py

Covers:
- Last bind wins
- Stale unbinds leave newer bindings alone
- Listener snapshots after every change
"""

import unittest
from unittest.mock import Mock

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from server.presence.presence_registry import PresenceRegistry


class TestPresenceRegistry(unittest.TestCase):
    """Test cases for the presence registry."""

    def setUp(self):
        self.registry = PresenceRegistry()
        self.conn_a = object()
        self.conn_b = object()

    def test_bind_and_lookup(self):
        self.assertTrue(self.registry.bind("alice", self.conn_a))
        self.assertIs(self.registry.lookup("alice"), self.conn_a)
        self.assertEqual(self.registry.user_for(self.conn_a), "alice")
        self.assertTrue(self.registry.is_online("alice"))
        self.assertEqual(len(self.registry), 1)

    def test_lookup_unknown_user(self):
        self.assertIsNone(self.registry.lookup("nobody"))
        self.assertFalse(self.registry.is_online("nobody"))

    def test_last_bind_wins(self):
        self.registry.bind("alice", self.conn_a)
        self.registry.bind("alice", self.conn_b)

        self.assertIs(self.registry.lookup("alice"), self.conn_b)
        self.assertIsNone(self.registry.user_for(self.conn_a))
        self.assertEqual(self.registry.online_user_ids(), ["alice"])

    def test_rebinding_same_connection_is_noop(self):
        listener = Mock()
        self.registry.bind("alice", self.conn_a)
        self.registry.add_listener(listener)

        self.assertFalse(self.registry.bind("alice", self.conn_a))
        listener.assert_not_called()

    def test_stale_unbind_keeps_newer_binding(self):
        """Old connection closing after a rebind must not take the user offline."""
        self.registry.bind("alice", self.conn_a)
        self.registry.bind("alice", self.conn_b)

        self.assertFalse(self.registry.unbind(self.conn_a))
        self.assertIs(self.registry.lookup("alice"), self.conn_b)

    def test_unbind_by_connection(self):
        self.registry.bind("alice", self.conn_a)
        self.assertTrue(self.registry.unbind(self.conn_a))
        self.assertFalse(self.registry.is_online("alice"))
        self.assertIsNone(self.registry.user_for(self.conn_a))

    def test_unbind_by_user_id(self):
        self.registry.bind("alice", self.conn_a)
        self.assertTrue(self.registry.unbind("alice"))
        self.assertIsNone(self.registry.lookup("alice"))
        self.assertFalse(self.registry.unbind("alice"))

    def test_connection_announcing_new_id_releases_old_one(self):
        self.registry.bind("alice", self.conn_a)
        self.registry.bind("bob", self.conn_a)

        self.assertFalse(self.registry.is_online("alice"))
        self.assertIs(self.registry.lookup("bob"), self.conn_a)

    def test_listener_receives_snapshots(self):
        snapshots = []
        self.registry.add_listener(snapshots.append)

        self.registry.bind("alice", self.conn_a)
        self.registry.bind("bob", self.conn_b)
        self.registry.unbind(self.conn_a)

        self.assertEqual(snapshots, [["alice"], ["alice", "bob"], ["bob"]])

    def test_remove_listener(self):
        listener = Mock()
        self.registry.add_listener(listener)
        self.registry.remove_listener(listener)
        self.registry.bind("alice", self.conn_a)
        listener.assert_not_called()

    def test_clear(self):
        listener = Mock()
        self.registry.bind("alice", self.conn_a)
        self.registry.add_listener(listener)

        self.registry.clear()

        self.assertEqual(len(self.registry), 0)
        listener.assert_called_once_with([])


if __name__ == '__main__':
    unittest.main()
