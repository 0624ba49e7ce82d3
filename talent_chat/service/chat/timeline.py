"""Pure operations over a conversation's ordered message list.

Lists are never mutated in place; every function returns a new list sorted by
``(created_at, id)`` with at most one entry per id.
"""
from bisect import insort
from typing import Iterable, List, Sequence, Tuple

from talent_chat.model.chat.message import Message


def _id_order(message_id: str) -> Tuple[int, int, str]:
    # Numeric store ids compare as numbers; anything else (provisional ids) after them
    if message_id.isdigit():
        return (0, int(message_id), "")
    return (1, 0, message_id)


def sort_key(message: Message):
    return (message.created_at, _id_order(message.id))


def contains(messages: Sequence[Message], message_id: str) -> bool:
    return any(m.id == message_id for m in messages)


def ordered(messages: Iterable[Message]) -> List[Message]:
    unique = {}
    for m in messages:
        unique[m.id] = m
    return sorted(unique.values(), key=sort_key)


def insert(messages: Sequence[Message], message: Message) -> List[Message]:
    """Adds ``message`` at its sorted position; a known id leaves the list as is."""
    result = list(messages)
    if contains(result, message.id):
        return result
    insort(result, message, key=sort_key)
    return result


def replace(messages: Sequence[Message], message: Message) -> List[Message]:
    """Swaps the entry sharing ``message.id``; unknown ids are ignored."""
    if not contains(messages, message.id):
        return list(messages)
    return ordered(message if m.id == message.id else m for m in messages)


def discard(messages: Sequence[Message], message_id: str) -> List[Message]:
    return [m for m in messages if m.id != message_id]


def promote(messages: Sequence[Message], provisional_id: str, durable: Message) -> List[Message]:
    """Replaces a provisional entry with its acknowledged row.

    If the durable id already arrived through the feed the provisional entry is
    simply dropped. The durable created_at may differ from the local one, so
    the entry is re-positioned.
    """
    remaining = discard(messages, provisional_id)
    if contains(remaining, durable.id):
        return remaining
    return insert(remaining, durable)


def reconcile(messages: Sequence[Message], fetched: Iterable[Message]) -> List[Message]:
    """Merges a fresh history fetch into the current list.

    Fetched rows win over cached copies with the same id. Entries absent from
    the fetch (pending provisional sends, late pushes) are kept.
    """
    merged = {m.id: m for m in messages}
    for m in fetched:
        merged[m.id] = m
    return sorted(merged.values(), key=sort_key)


def mark_read(messages: Sequence[Message], message_ids: Iterable[str]) -> List[Message]:
    ids = set(message_ids)
    return [m.model_copy(update={"is_read": True}) if m.id in ids else m for m in messages]
