"""
Message store module.

Durable record of users and messages, backed by SQLModel. Sessions are
synchronous, so every public coroutine runs its unit of work on a worker
thread. Writes are serialized through a single asyncio lock.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import DateTime
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, and_, col, create_engine, or_, select

from common.constants import DEFAULT_DATABASE_URL
from common.errors import PersistenceError
from common.protocol_definitions import DocumentRef, format_timestamp
from server.utils.logger import logger


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """
    Directory entry for a chat participant.

    Owned by the identity subsystem; the store only keeps what the core
    needs for existence checks and the peer list.
    """
    __tablename__ = "users"

    id: str = Field(primary_key=True)
    full_name: str = Field(default="")
    email: Optional[str] = Field(default=None, index=True)
    profile_pic: str = Field(default="")
    password: str = Field(default="")  # credential, never leaves the server
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "profile_pic": self.profile_pic,
            "created_at": format_timestamp(self.created_at),
        }


class Message(SQLModel, table=True):
    """
    One direct message.

    Only the seen/seen_at pair ever changes after insert, and only
    from unseen to seen.
    """
    __tablename__ = "message"

    id: Optional[int] = Field(default=None, primary_key=True)
    sender_id: str = Field(index=True, nullable=False)
    receiver_id: str = Field(index=True, nullable=False)
    text: str = Field(default="")
    document_url: Optional[str] = Field(default=None)
    document_filename: Optional[str] = Field(default=None)
    document_original_filename: Optional[str] = Field(default=None)
    document_mimetype: Optional[str] = Field(default=None)
    seen: bool = Field(default=False)
    seen_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    @property
    def document(self) -> Optional[DocumentRef]:
        if not self.document_filename:
            return None
        return DocumentRef(
            url=self.document_url or "",
            filename=self.document_filename,
            original_filename=self.document_original_filename or self.document_filename,
            mimetype=self.document_mimetype or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        document = self.document
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "text": self.text,
            "document": document.to_dict() if document else None,
            "seen": self.seen,
            "seen_at": format_timestamp(self.seen_at),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }


def create_store_engine(database_url: str = DEFAULT_DATABASE_URL):
    """Create an engine usable from worker threads."""
    kwargs: Dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every thread sees an empty database
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


class MessageStore:
    """Persistence for users and messages."""

    def __init__(self, database_url: str = DEFAULT_DATABASE_URL, engine=None):
        self.engine = engine if engine is not None else create_store_engine(database_url)
        self.lock = asyncio.Lock()  # Serializes writes

    def init_db(self):
        """Create tables if they do not exist."""
        SQLModel.metadata.create_all(self.engine)

    def close(self):
        """Release pooled connections."""
        self.engine.dispose()

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    async def _read(self, operation: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as e:
            logger.log_error(operation, e)
            raise PersistenceError(f"Message store unavailable during {operation}") from e

    async def _write(self, operation: str, func, *args):
        async with self.lock:
            return await self._read(operation, func, *args)

    # Users

    async def add_user(self, user_id: str, full_name: str = "", email: Optional[str] = None,
                       profile_pic: str = "", password: str = "") -> User:
        """Insert a user, or refresh the profile fields of an existing one."""
        return await self._write("add_user", self._add_user, user_id, full_name, email, profile_pic, password)

    def _add_user(self, user_id, full_name, email, profile_pic, password) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                user = User(id=user_id, full_name=full_name, email=email,
                            profile_pic=profile_pic, password=password)
            else:
                user.full_name = full_name or user.full_name
                user.email = email or user.email
                user.profile_pic = profile_pic or user.profile_pic
                user.password = password or user.password
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self._read("get_user", self._get_user, user_id)

    def _get_user(self, user_id: str) -> Optional[User]:
        with self._session() as session:
            return session.get(User, user_id)

    async def list_users_except(self, user_id: str) -> List[User]:
        return await self._read("list_users_except", self._list_users_except, user_id)

    def _list_users_except(self, user_id: str) -> List[User]:
        with self._session() as session:
            statement = select(User).where(User.id != user_id).order_by(col(User.full_name), col(User.id))
            return list(session.exec(statement).all())

    # Messages

    async def create_message(self, sender_id: str, receiver_id: str, text: str = "",
                             document: Optional[DocumentRef] = None) -> Message:
        """Persist a new unseen message and return it with its id."""
        return await self._write("create_message", self._create_message, sender_id, receiver_id, text, document)

    def _create_message(self, sender_id, receiver_id, text, document) -> Message:
        now = utcnow()
        message = Message(
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text,
            seen=False,
            created_at=now,
            updated_at=now,
        )
        if document is not None:
            message.document_url = document.url
            message.document_filename = document.filename
            message.document_original_filename = document.original_filename
            message.document_mimetype = document.mimetype

        with self._session() as session:
            session.add(message)
            session.commit()
            session.refresh(message)
            return message

    async def list_conversation(self, user_a: str, user_b: str) -> List[Message]:
        """Messages between two users in either direction, oldest first."""
        return await self._read("list_conversation", self._list_conversation, user_a, user_b)

    def _list_conversation(self, user_a: str, user_b: str) -> List[Message]:
        with self._session() as session:
            statement = select(Message).where(
                or_(
                    and_(Message.sender_id == user_a, Message.receiver_id == user_b),
                    and_(Message.sender_id == user_b, Message.receiver_id == user_a),
                )
            ).order_by(col(Message.created_at), col(Message.id))
            return list(session.exec(statement).all())

    async def find_document(self, stored_filename: str) -> Optional[Message]:
        """The message carrying a stored attachment, if any."""
        return await self._read("find_document", self._find_document, stored_filename)

    def _find_document(self, stored_filename: str) -> Optional[Message]:
        with self._session() as session:
            statement = select(Message).where(Message.document_filename == stored_filename)
            return session.exec(statement).first()

    async def mark_seen(self, requester_id: str, message_ids: Iterable[int]) -> List[Message]:
        """
        Flip unseen messages addressed to requester_id to seen.

        Returns only the messages that actually changed; ids that are
        unknown, already seen, or addressed to someone else are skipped.
        All changes land in one commit.
        """
        return await self._write("mark_seen", self._mark_seen, requester_id, sorted(set(message_ids)))

    def _mark_seen(self, requester_id: str, message_ids: List[int]) -> List[Message]:
        if not message_ids:
            return []
        now = utcnow()
        with self._session() as session:
            statement = select(Message).where(
                col(Message.id).in_(message_ids),
                Message.receiver_id == requester_id,
                Message.seen == False,  # noqa: E712
            ).order_by(col(Message.id))
            messages = list(session.exec(statement).all())
            for message in messages:
                message.seen = True
                message.seen_at = now
                message.updated_at = now
                session.add(message)
            session.commit()
            return messages
