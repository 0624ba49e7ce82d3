from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from talent_chat.client.contracts import PushFeed
from talent_chat.client.db.psql import session_scope
from talent_chat.db.models.conversation import Conversation as ConversationRow
from talent_chat.db.models.message import Message as MessageRow
from talent_chat.db.models.profile import Profile as ProfileRow
from talent_chat.model.chat.conversation import Conversation, Profile
from talent_chat.model.chat.event import MESSAGES_TABLE, ChangeEvent, EventType
from talent_chat.model.chat.message import Message, NewMessage
from talent_chat.service.chat.errors import DuplicateConversation

logger = logging.getLogger(__name__)


def _pair_clause(party_a: str, party_b: str):
    return or_(
        and_(ConversationRow.participant_a == party_a, ConversationRow.participant_b == party_b),
        and_(ConversationRow.participant_a == party_b, ConversationRow.participant_b == party_a),
    )


class SqlChatStore:
    """ChatStore and ProfileStore over SQLAlchemy.

    Blocking session work runs in worker threads. Committed inserts and read
    updates are published to ``feed`` when one is given, standing in for the
    database's own change notifications.
    """

    def __init__(self, factory: Optional[sessionmaker] = None, feed: Optional[PushFeed] = None):
        self._factory = factory
        self._feed = feed

    async def find_conversation(self, party_a: str, party_b: str) -> Optional[Conversation]:
        return await asyncio.to_thread(self._find_conversation, party_a, party_b)

    def _find_conversation(self, party_a: str, party_b: str) -> Optional[Conversation]:
        with session_scope(self._factory) as db:
            row = db.execute(select(ConversationRow).where(_pair_clause(party_a, party_b))).scalars().first()
            return Conversation.model_validate(row) if row is not None else None

    async def create_conversation(self, party_a: str, party_b: str) -> Conversation:
        return await asyncio.to_thread(self._create_conversation, party_a, party_b)

    def _create_conversation(self, party_a: str, party_b: str) -> Conversation:
        low, high = sorted((party_a, party_b))
        try:
            with session_scope(self._factory) as db:
                row = ConversationRow(participant_a=low, participant_b=high)
                db.add(row)
                db.flush()
                db.refresh(row)
                return Conversation.model_validate(row)
        except IntegrityError as exc:
            raise DuplicateConversation(f"conversation exists for {low}/{high}") from exc

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return await asyncio.to_thread(self._get_conversation, conversation_id)

    def _get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with session_scope(self._factory) as db:
            row = db.get(ConversationRow, conversation_id)
            return Conversation.model_validate(row) if row is not None else None

    async def list_conversations(self, participant_id: str) -> List[Conversation]:
        return await asyncio.to_thread(self._list_conversations, participant_id)

    def _list_conversations(self, participant_id: str) -> List[Conversation]:
        with session_scope(self._factory) as db:
            rows = db.execute(
                select(ConversationRow).where(
                    or_(
                        ConversationRow.participant_a == participant_id,
                        ConversationRow.participant_b == participant_id,
                    )
                )
            ).scalars().all()
            return [Conversation.model_validate(r) for r in rows]

    async def list_messages(self, conversation_id: str) -> List[Message]:
        return await asyncio.to_thread(self._list_messages, conversation_id)

    def _list_messages(self, conversation_id: str) -> List[Message]:
        with session_scope(self._factory) as db:
            rows = db.execute(
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at.asc(), MessageRow.id.asc())
            ).scalars().all()
            return [Message.model_validate(r) for r in rows]

    async def insert_message(self, message: NewMessage) -> Message:
        stored = await asyncio.to_thread(self._insert_message, message)
        await self._publish(EventType.INSERT, stored)
        return stored

    def _insert_message(self, message: NewMessage) -> Message:
        with session_scope(self._factory) as db:
            row = MessageRow(
                conversation_id=message.conversation_id,
                sender_id=message.sender_id,
                content=message.content,
                media_url=message.media_url,
                media_type=message.media_type.value if message.media_type else None,
            )
            db.add(row)
            db.flush()
            db.refresh(row)
            db.execute(
                update(ConversationRow)
                .where(ConversationRow.id == message.conversation_id)
                .values(updated_at=row.created_at)
            )
            return Message.model_validate(row)

    async def last_message(self, conversation_id: str) -> Optional[Message]:
        return await asyncio.to_thread(self._last_message, conversation_id)

    def _last_message(self, conversation_id: str) -> Optional[Message]:
        with session_scope(self._factory) as db:
            row = db.execute(
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at.desc(), MessageRow.id.desc())
                .limit(1)
            ).scalars().first()
            return Message.model_validate(row) if row is not None else None

    async def count_unread(self, conversation_id: str, viewer_id: str) -> int:
        return await asyncio.to_thread(self._count_unread, conversation_id, viewer_id)

    def _count_unread(self, conversation_id: str, viewer_id: str) -> int:
        with session_scope(self._factory) as db:
            return db.execute(
                select(func.count(MessageRow.id)).where(
                    MessageRow.conversation_id == conversation_id,
                    MessageRow.sender_id != viewer_id,
                    MessageRow.is_read.is_(False),
                )
            ).scalar_one()

    async def mark_read(self, conversation_id: str, reader_id: str) -> List[Message]:
        updated = await asyncio.to_thread(self._mark_read, conversation_id, reader_id)
        for message in updated:
            await self._publish(EventType.UPDATE, message)
        return updated

    def _mark_read(self, conversation_id: str, reader_id: str) -> List[Message]:
        with session_scope(self._factory) as db:
            rows = db.execute(
                select(MessageRow).where(
                    MessageRow.conversation_id == conversation_id,
                    MessageRow.sender_id != reader_id,
                    MessageRow.is_read.is_(False),
                )
            ).scalars().all()
            for row in rows:
                row.is_read = True
            db.flush()
            return [Message.model_validate(r) for r in rows]

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        return await asyncio.to_thread(self._get_profile, user_id)

    def _get_profile(self, user_id: str) -> Optional[Profile]:
        with session_scope(self._factory) as db:
            row = db.get(ProfileRow, user_id)
            return Profile.model_validate(row) if row is not None else None

    async def _publish(self, event_type: EventType, message: Message) -> None:
        if self._feed is None:
            return
        event = ChangeEvent(table=MESSAGES_TABLE, type=event_type, record=message.model_dump(mode="json"))
        try:
            await self._feed.publish(event)
        except Exception:
            # The row is committed; subscribers reconcile on their next fetch
            logger.exception("publish failed table=%s id=%s", MESSAGES_TABLE, message.id)
