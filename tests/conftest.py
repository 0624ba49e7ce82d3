import asyncio
import itertools
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

os.environ.setdefault("DATABASE_URL", f"sqlite:///{tempfile.gettempdir()}/talent_chat_test.db")

from fastapi.testclient import TestClient

from talent_chat.model.chat.conversation import Conversation, Profile
from talent_chat.model.chat.event import MESSAGES_TABLE, ChangeEvent, EventType, FeedStatus
from talent_chat.model.chat.message import Message, NewMessage
from talent_chat.service.chat.errors import DuplicateConversation, SubscriptionLost, UploadFailed

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class InMemoryChatStore:
    """ChatStore/ProfileStore double; publishes committed rows like the SQL store."""

    def __init__(self, feed=None, first_message_id: int = 1):
        self.feed = feed
        self.conversations: Dict[str, Conversation] = {}
        self.messages: List[Message] = []
        self.profiles: Dict[str, Profile] = {}
        self.fail_fetch = False
        self.fail_list = False
        self.fail_insert = False
        self.insert_gate: Optional[asyncio.Event] = None
        self.insert_calls = 0
        self._conversation_ids = itertools.count(1)
        self._message_ids = itertools.count(first_message_id)

    def add_conversation(self, party_a: str, party_b: str) -> Conversation:
        conversation = Conversation(
            id=f"conv-{next(self._conversation_ids)}",
            participant_a=party_a,
            participant_b=party_b,
            created_at=T0,
        )
        self.conversations[conversation.id] = conversation
        return conversation

    def add_message(self, conversation_id, sender_id, content, created_at=None, is_read=False) -> Message:
        message = Message(
            id=str(next(self._message_ids)),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            is_read=is_read,
            created_at=created_at or datetime.now(timezone.utc),
        )
        self.messages.append(message)
        return message

    async def find_conversation(self, party_a, party_b):
        await asyncio.sleep(0)
        for c in self.conversations.values():
            if {c.participant_a, c.participant_b} == {party_a, party_b}:
                return c
        return None

    async def create_conversation(self, party_a, party_b):
        await asyncio.sleep(0)
        for c in self.conversations.values():
            if {c.participant_a, c.participant_b} == {party_a, party_b}:
                raise DuplicateConversation(c.id)
        return self.add_conversation(party_a, party_b)

    async def get_conversation(self, conversation_id):
        return self.conversations.get(conversation_id)

    async def list_conversations(self, participant_id):
        if self.fail_list:
            raise ConnectionError("backend unavailable")
        return [c for c in self.conversations.values() if c.involves(participant_id)]

    async def list_messages(self, conversation_id):
        await asyncio.sleep(0)
        if self.fail_fetch:
            raise ConnectionError("backend unavailable")
        rows = [m for m in self.messages if m.conversation_id == conversation_id]
        return sorted(rows, key=lambda m: (m.created_at, int(m.id)))

    async def insert_message(self, message: NewMessage):
        self.insert_calls += 1
        if self.insert_gate is not None:
            await self.insert_gate.wait()
        if self.fail_insert:
            raise ConnectionError("insert rejected")
        stored = Message(
            id=str(next(self._message_ids)),
            created_at=datetime.now(timezone.utc),
            **message.model_dump(),
        )
        self.messages.append(stored)
        await self._publish(EventType.INSERT, stored)
        return stored

    async def last_message(self, conversation_id):
        rows = await self.list_messages(conversation_id)
        return rows[-1] if rows else None

    async def count_unread(self, conversation_id, viewer_id):
        return sum(
            1
            for m in self.messages
            if m.conversation_id == conversation_id and m.sender_id != viewer_id and not m.is_read
        )

    async def mark_read(self, conversation_id, reader_id):
        updated = []
        for i, m in enumerate(self.messages):
            if m.conversation_id == conversation_id and m.sender_id != reader_id and not m.is_read:
                self.messages[i] = m.model_copy(update={"is_read": True})
                updated.append(self.messages[i])
        for m in updated:
            await self._publish(EventType.UPDATE, m)
        return updated

    async def get_profile(self, user_id):
        return self.profiles.get(user_id)

    async def _publish(self, event_type, message):
        if self.feed is not None:
            await self.feed.publish(
                ChangeEvent(table=MESSAGES_TABLE, type=event_type, record=message.model_dump(mode="json"))
            )


class FakeSubscription:
    def __init__(self, feed, table, callback, row_filter, on_status):
        self.feed = feed
        self.table = table
        self.callback = callback
        self.row_filter = row_filter
        self.on_status = on_status
        self.closed = False

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.feed.subscriptions.remove(self)


class FakeFeed:
    """Synchronous push feed; ``drop``/``restore`` simulate a lost connection."""

    def __init__(self):
        self.subscriptions: List[FakeSubscription] = []
        self.published: List[ChangeEvent] = []
        self.connected = True
        self.fail_subscribe = False

    async def subscribe(self, table, callback, *, row_filter=None, on_status=None):
        if self.fail_subscribe:
            raise SubscriptionLost("feed down")
        subscription = FakeSubscription(self, table, callback, row_filter, on_status)
        self.subscriptions.append(subscription)
        return subscription

    async def publish(self, event):
        self.published.append(event)
        self.deliver(event)

    def deliver(self, event):
        if not self.connected:
            return
        for s in list(self.subscriptions):
            if event.matches(s.table, s.row_filter):
                s.callback(event)

    def _status(self, status):
        for s in list(self.subscriptions):
            if s.on_status is not None:
                s.on_status(status)

    def drop(self):
        self.connected = False
        self._status(FeedStatus.LOST)

    def restore(self):
        self.connected = True
        self._status(FeedStatus.RECONNECTED)


class FakeBlobStore:
    def __init__(self):
        self.uploads = []
        self.fail = False

    async def upload(self, path, data, content_type):
        if self.fail:
            raise UploadFailed(f"rejected {path}")
        self.uploads.append((path, data, content_type))
        return f"https://cdn.example.com/chat-media/{path}"


def message_event(message: Message, event_type: EventType = EventType.INSERT) -> ChangeEvent:
    return ChangeEvent(table=MESSAGES_TABLE, type=event_type, record=message.model_dump(mode="json"))


@pytest.fixture
def feed():
    return FakeFeed()


@pytest.fixture
def make_store(feed):
    def _make(first_message_id: int = 1) -> InMemoryChatStore:
        return InMemoryChatStore(feed=feed, first_message_id=first_message_id)

    return _make


@pytest.fixture
def store(make_store):
    return make_store()


@pytest.fixture
def blobs():
    return FakeBlobStore()


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def at(t0):
    def _at(seconds: int) -> datetime:
        return t0 + timedelta(seconds=seconds)

    return _at


@pytest.fixture
def event_for():
    return message_event


@pytest.fixture
def until():
    async def _until(predicate, attempts: int = 200, delay: float = 0.0):
        for _ in range(attempts):
            if predicate():
                return
            await asyncio.sleep(delay)
        assert predicate(), "condition not reached"

    return _until


#scope : function < class < module < package < session
@pytest.fixture(scope="function")
def client(store, blobs):
    from talent_chat.api.v1 import route
    from talent_chat.main import app

    app.dependency_overrides[route.get_store] = lambda: store
    app.dependency_overrides[route.get_blob_store] = lambda: blobs
    yield TestClient(app)
    app.dependency_overrides.clear()
