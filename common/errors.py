"""
Error taxonomy shared by the server and the client.

Each error carries the ``kind`` string used in ``error`` replies on the wire.
"""


class ChatError(Exception):
    """Base class for errors reported back to a requesting client."""

    kind = 'internal'

    def __init__(self, message: str = ''):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(ChatError):
    """Missing or malformed field, or a disallowed attachment."""

    kind = 'validation'


class NotFoundError(ChatError):
    """Referenced user or document does not exist."""

    kind = 'not_found'


class PersistenceError(ChatError):
    """The message store could not complete a read or write."""

    kind = 'internal'


class UnauthorizedError(ChatError):
    """Request issued on a connection that never announced a user id."""

    kind = 'unauthorized'


class RequestFailed(ChatError):
    """Client side: the server answered a request with an error reply."""

    def __init__(self, kind: str, message: str = ''):
        super().__init__(message)
        self.kind = kind
