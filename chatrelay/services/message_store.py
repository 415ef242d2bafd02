"""Relay message storage (consumed only after the gate allows a message)."""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.database.models import Message
from chatrelay.database.session import get_session

logger = logging.getLogger(__name__)

# Hard cap on a single page of messages
MAX_PAGE_SIZE = 100

SYSTEM_SENDER = "system"


class MessageStoreError(RuntimeError):
    """The message database could not be read or written."""


class MessageStore:
    """Append-only message log with "newer than" range queries."""

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        """
        Args:
            session_maker: Session factory. Uses the global one from
                ``init_db`` if not provided.
        """
        self._session_maker = session_maker

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self._session_maker or get_session()

    async def append(self, sender: str, body: str, timestamp: int) -> int:
        """
        Store a message.

        Returns:
            ID of the new message

        Raises:
            MessageStoreError: Database write failed
        """
        try:
            async with self._sessions()() as session:
                message = Message(user=sender, message=body, timestamp=timestamp)
                session.add(message)
                await session.commit()
                return message.id
        except SQLAlchemyError as e:
            logger.error(f"Failed to store message from {sender!r}: {e}")
            raise MessageStoreError("Message append failed") from e

    async def query(
        self,
        since: int,
        after_id: Optional[int] = None,
        limit: int = MAX_PAGE_SIZE,
    ) -> List[Message]:
        """
        Messages newer than ``since`` in ascending timestamp order.

        Args:
            since: Only messages with timestamp > since
            after_id: Only messages with id > after_id (incremental polling)
            limit: Page size, capped at 100

        Raises:
            MessageStoreError: Database read failed
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        stmt = select(Message).where(Message.timestamp > since)
        if after_id is not None:
            stmt = stmt.where(Message.id > after_id)
        stmt = stmt.order_by(Message.timestamp.asc(), Message.id.asc()).limit(limit)

        try:
            async with self._sessions()() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Failed to query messages since {since}: {e}")
            raise MessageStoreError("Message query failed") from e
