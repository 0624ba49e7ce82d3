from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Protocol

from talent_chat.model.chat.conversation import Conversation, Profile
from talent_chat.model.chat.event import ChangeEvent, FeedStatus
from talent_chat.model.chat.message import Message, NewMessage

EventCallback = Callable[[ChangeEvent], None]
StatusCallback = Callable[[FeedStatus], None]


class ChatStore(Protocol):
    async def find_conversation(self, party_a: str, party_b: str) -> Optional[Conversation]: ...

    async def create_conversation(self, party_a: str, party_b: str) -> Conversation:
        """Raises DuplicateConversation when the pair already exists."""
        ...

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    async def list_conversations(self, participant_id: str) -> List[Conversation]: ...

    async def list_messages(self, conversation_id: str) -> List[Message]:
        """Oldest first."""
        ...

    async def insert_message(self, message: NewMessage) -> Message: ...

    async def last_message(self, conversation_id: str) -> Optional[Message]: ...

    async def count_unread(self, conversation_id: str, viewer_id: str) -> int: ...

    async def mark_read(self, conversation_id: str, reader_id: str) -> List[Message]:
        """Flags the other party's unread messages; returns the updated rows."""
        ...


class ProfileStore(Protocol):
    async def get_profile(self, user_id: str) -> Optional[Profile]: ...


class Subscription(Protocol):
    async def close(self) -> None: ...


class PushFeed(Protocol):
    async def subscribe(
        self,
        table: str,
        callback: EventCallback,
        *,
        row_filter: Optional[Dict[str, Any]] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> Subscription:
        """Raises SubscriptionLost if the channel cannot be established."""
        ...

    async def publish(self, event: ChangeEvent) -> None: ...


class BlobStore(Protocol):
    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Returns the public url; raises UploadFailed."""
        ...
