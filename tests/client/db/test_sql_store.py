import asyncio
from datetime import timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from talent_chat.client.db.psql import session_scope
from talent_chat.client.db.store import SqlChatStore
from talent_chat.db.models import Message as MessageRow
from talent_chat.db.models import Profile as ProfileRow
from talent_chat.db.session import Base
from talent_chat.model.chat.event import EventType
from talent_chat.model.chat.message import MediaType, NewMessage
from talent_chat.service.chat.directory import ConversationDirectory
from talent_chat.service.chat.errors import DuplicateConversation


@pytest.fixture
def factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'chat.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    engine.dispose()


@pytest.fixture
def sql_store(factory, feed):
    return SqlChatStore(factory, feed=feed)


def _seed(factory, conversation_id, sender_id, content, created_at, is_read=False):
    with session_scope(factory) as db:
        db.add(
            MessageRow(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content,
                is_read=is_read,
                created_at=created_at,
            )
        )


@pytest.mark.asyncio
async def test_create_stores_pair_in_canonical_order(sql_store):
    created = await sql_store.create_conversation("zoe", "adam")

    assert (created.participant_a, created.participant_b) == ("adam", "zoe")
    assert created.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_find_matches_either_ordering(sql_store):
    created = await sql_store.create_conversation("client-1", "talent-1")

    assert (await sql_store.find_conversation("client-1", "talent-1")).id == created.id
    assert (await sql_store.find_conversation("talent-1", "client-1")).id == created.id
    assert await sql_store.find_conversation("client-1", "talent-2") is None


@pytest.mark.asyncio
async def test_second_create_for_pair_is_rejected(sql_store):
    await sql_store.create_conversation("client-1", "talent-1")

    with pytest.raises(DuplicateConversation):
        await sql_store.create_conversation("talent-1", "client-1")


@pytest.mark.asyncio
async def test_concurrent_resolution_creates_one_row(sql_store):
    directory = ConversationDirectory(sql_store)

    ids = await asyncio.gather(
        directory.resolve_conversation("client-1", "talent-1"),
        directory.resolve_conversation("talent-1", "client-1"),
        directory.resolve_conversation("client-1", "talent-1"),
    )

    assert len(set(ids)) == 1
    assert len(await sql_store.list_conversations("client-1")) == 1


@pytest.mark.asyncio
async def test_list_conversations_by_participant(sql_store):
    first = await sql_store.create_conversation("client-1", "talent-1")
    second = await sql_store.create_conversation("talent-2", "client-1")
    await sql_store.create_conversation("talent-1", "talent-2")

    listed = await sql_store.list_conversations("client-1")

    assert sorted(c.id for c in listed) == sorted([first.id, second.id])
    assert await sql_store.get_conversation(first.id) == first
    assert await sql_store.get_conversation("missing") is None


@pytest.mark.asyncio
async def test_messages_are_listed_oldest_first(sql_store, factory, t0):
    conversation = await sql_store.create_conversation("client-1", "talent-1")
    _seed(factory, conversation.id, "talent-1", "later", t0 + timedelta(seconds=30))
    _seed(factory, conversation.id, "client-1", "earlier", t0)

    messages = await sql_store.list_messages(conversation.id)
    last = await sql_store.last_message(conversation.id)

    assert [m.content for m in messages] == ["earlier", "later"]
    assert messages[0].created_at == t0
    assert last.content == "later"


@pytest.mark.asyncio
async def test_insert_assigns_id_bumps_conversation_and_publishes(sql_store, feed):
    conversation = await sql_store.create_conversation("client-1", "talent-1")

    stored = await sql_store.insert_message(
        NewMessage(
            conversation_id=conversation.id,
            sender_id="client-1",
            media_url="https://cdn.example.com/chat-media/a.jpg",
            media_type=MediaType.IMAGE,
        )
    )

    assert stored.id.isdigit()
    assert stored.is_read is False
    assert stored.media_type is MediaType.IMAGE
    assert stored.created_at.tzinfo is timezone.utc
    refreshed = await sql_store.get_conversation(conversation.id)
    assert refreshed.updated_at == stored.created_at
    [event] = feed.published
    assert event.type is EventType.INSERT
    assert event.record["id"] == stored.id
    assert event.record["conversation_id"] == conversation.id


@pytest.mark.asyncio
async def test_unread_counts_and_mark_read(sql_store, factory, feed, t0):
    conversation = await sql_store.create_conversation("client-1", "talent-1")
    _seed(factory, conversation.id, "talent-1", "one", t0)
    _seed(factory, conversation.id, "talent-1", "two", t0 + timedelta(seconds=1))
    _seed(factory, conversation.id, "talent-1", "seen", t0 + timedelta(seconds=2), is_read=True)
    _seed(factory, conversation.id, "client-1", "mine", t0 + timedelta(seconds=3))

    assert await sql_store.count_unread(conversation.id, "client-1") == 2
    assert await sql_store.count_unread(conversation.id, "talent-1") == 1

    updated = await sql_store.mark_read(conversation.id, "client-1")

    assert sorted(m.content for m in updated) == ["one", "two"]
    assert all(m.is_read for m in updated)
    assert await sql_store.count_unread(conversation.id, "client-1") == 0
    assert [e.type for e in feed.published] == [EventType.UPDATE, EventType.UPDATE]
    assert await sql_store.mark_read(conversation.id, "client-1") == []


@pytest.mark.asyncio
async def test_publish_failure_does_not_fail_insert(factory):
    class BrokenFeed:
        async def publish(self, event):
            raise ConnectionError("redis down")

    store = SqlChatStore(factory, feed=BrokenFeed())
    conversation = await store.create_conversation("client-1", "talent-1")

    stored = await store.insert_message(
        NewMessage(conversation_id=conversation.id, sender_id="client-1", content="still saved")
    )

    assert [m.id for m in await store.list_messages(conversation.id)] == [stored.id]


@pytest.mark.asyncio
async def test_get_profile(sql_store, factory):
    with session_scope(factory) as db:
        db.add(ProfileRow(id="talent-1", first_name="Ana", last_name="Rojas"))

    profile = await sql_store.get_profile("talent-1")

    assert profile.display_name == "Ana Rojas"
    assert await sql_store.get_profile("nobody") is None
