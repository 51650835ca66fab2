"""
Presence registry module.

Ephemeral, in-process mapping from user id to the connection currently
representing that user. Nothing here is persisted: after a restart every
user is offline until their client announces itself again.

All mutations are plain synchronous code on the event loop thread, so a bind
and an unbind for the same user can never interleave.
"""

from typing import Callable, Dict, Hashable, List, Optional, Union


class PresenceRegistry:
    """User id -> connection handle, last bind wins."""

    def __init__(self):
        self._by_user: Dict[str, Hashable] = {}
        self._by_connection: Dict[Hashable, str] = {}
        self._listeners: List[Callable[[List[str]], None]] = []

    def add_listener(self, listener: Callable[[List[str]], None]):
        """Register a callback invoked with the online snapshot after every change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[List[str]], None]):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def bind(self, user_id: str, connection: Hashable) -> bool:
        """
        Bind user_id to connection, replacing any earlier binding.

        A connection represents at most one user, so re-announcing a
        different id on the same connection releases the previous one.
        Returns False when the exact binding already existed.
        """
        if self._by_user.get(user_id) is connection:
            return False

        previous_user = self._by_connection.pop(connection, None)
        if previous_user is not None and self._by_user.get(previous_user) is connection:
            del self._by_user[previous_user]

        replaced = self._by_user.get(user_id)
        if replaced is not None:
            self._by_connection.pop(replaced, None)

        self._by_user[user_id] = connection
        self._by_connection[connection] = user_id
        self._notify()
        return True

    def unbind(self, key: Union[str, Hashable]) -> bool:
        """
        Remove a binding by connection handle or by user id.

        Unbinding a connection that has since been superseded by a newer
        bind for the same user leaves the newer binding untouched.
        """
        if isinstance(key, str):
            connection = self._by_user.pop(key, None)
            if connection is None:
                return False
            self._by_connection.pop(connection, None)
            self._notify()
            return True

        user_id = self._by_connection.pop(key, None)
        if user_id is None:
            return False
        if self._by_user.get(user_id) is key:
            del self._by_user[user_id]
        self._notify()
        return True

    def lookup(self, user_id: str) -> Optional[Hashable]:
        return self._by_user.get(user_id)

    def user_for(self, connection: Hashable) -> Optional[str]:
        return self._by_connection.get(connection)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._by_user

    def online_user_ids(self) -> List[str]:
        return list(self._by_user.keys())

    def clear(self):
        """Drop every binding (process shutdown)."""
        if not self._by_user and not self._by_connection:
            return
        self._by_user.clear()
        self._by_connection.clear()
        self._notify()

    def __len__(self) -> int:
        return len(self._by_user)

    def _notify(self):
        snapshot = self.online_user_ids()
        for listener in list(self._listeners):
            listener(snapshot)
