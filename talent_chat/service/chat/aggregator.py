from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import talent_chat.config.config as configs
from talent_chat.client.contracts import ChatStore, ProfileStore, PushFeed, Subscription
from talent_chat.model.chat.conversation import Conversation, ConversationSummary
from talent_chat.model.chat.event import MESSAGES_TABLE, ChangeEvent, FeedStatus
from talent_chat.service.chat.errors import FetchFailed, SubscriptionLost

logger = logging.getLogger(__name__)

SummaryListener = Callable[[Tuple[ConversationSummary, ...]], None]


def _order(summaries: Iterable[ConversationSummary]) -> List[ConversationSummary]:
    return sorted(summaries, key=lambda s: (s.last_message_time, s.conversation_id), reverse=True)


async def build_summary(
    store: ChatStore,
    profiles: Optional[ProfileStore],
    conversation: Conversation,
    viewer_id: str,
) -> Optional[ConversationSummary]:
    """Summary row for one conversation, or None when it has no messages yet."""
    last = await store.last_message(conversation.id)
    if last is None:
        return None
    unread = await store.count_unread(conversation.id, viewer_id)
    other_id = conversation.other(viewer_id)
    profile = await profiles.get_profile(other_id) if profiles is not None else None
    return ConversationSummary(
        conversation_id=conversation.id,
        other_user_id=other_id,
        other_user_name=profile.display_name if profile is not None else other_id,
        other_user_avatar=profile.avatar_url if profile is not None else None,
        last_message_content=last.content,
        last_message_time=last.created_at,
        unread_count=unread,
    )


async def _collect(
    store: ChatStore, profiles: Optional[ProfileStore], viewer_id: str
) -> Tuple[List[Conversation], List[ConversationSummary]]:
    conversations = await store.list_conversations(viewer_id)
    rows = await asyncio.gather(*(build_summary(store, profiles, c, viewer_id) for c in conversations))
    return conversations, _order(r for r in rows if r is not None)


async def _fetch(
    store: ChatStore, profiles: Optional[ProfileStore], viewer_id: str, timeout: float
) -> Tuple[List[Conversation], List[ConversationSummary]]:
    try:
        return await asyncio.wait_for(_collect(store, profiles, viewer_id), timeout=timeout)
    except Exception as exc:
        logger.exception("conversation list fetch failed viewer=%s", viewer_id)
        raise FetchFailed(f"conversation list fetch failed for {viewer_id}") from exc


async def list_conversations(
    store: ChatStore,
    viewer_id: str,
    profiles: Optional[ProfileStore] = None,
    timeout: float = configs.FETCH_TIMEOUT_SEC,
) -> List[ConversationSummary]:
    """Summaries of the viewer's conversations, most recently active first.

    Conversations without messages are left out.
    """
    _, summaries = await _fetch(store, profiles, viewer_id, timeout)
    return summaries


class ConversationListAggregator:
    """Keeps the viewer's conversation list live.

    Listens to every message insert and update and filters on the client: an
    event for a conversation the viewer is part of recomputes that single row.
    A feed reconnect triggers a full refetch.
    """

    def __init__(
        self,
        store: ChatStore,
        feed: PushFeed,
        viewer_id: str,
        profiles: Optional[ProfileStore] = None,
        *,
        fetch_timeout: float = configs.FETCH_TIMEOUT_SEC,
    ):
        self._store = store
        self._feed = feed
        self._viewer_id = viewer_id
        self._profiles = profiles
        self._fetch_timeout = fetch_timeout

        self._known: Dict[str, Conversation] = {}
        self._summaries: List[ConversationSummary] = []
        self._subscription: Optional[Subscription] = None
        self._live = False
        self._closed = False
        self._lock = asyncio.Lock()
        self._listeners: List[SummaryListener] = []
        self._tasks: Set[asyncio.Task] = set()

    @property
    def summaries(self) -> Tuple[ConversationSummary, ...]:
        return tuple(self._summaries)

    @property
    def live(self) -> bool:
        return self._live

    def add_listener(self, listener: SummaryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def start(self) -> None:
        await self.refresh()
        try:
            self._subscription = await self._feed.subscribe(
                MESSAGES_TABLE, self._on_event, on_status=self._on_feed_status
            )
        except SubscriptionLost:
            logger.warning("feed unavailable, conversation list not live viewer=%s", self._viewer_id)
            return
        self._live = True

    async def refresh(self) -> Tuple[ConversationSummary, ...]:
        """Full refetch. Raises FetchFailed and keeps the previous list on failure."""
        async with self._lock:
            conversations, summaries = await _fetch(
                self._store, self._profiles, self._viewer_id, self._fetch_timeout
            )
            if not self._closed:
                self._known = {c.id: c for c in conversations}
                self._apply(summaries)
        return self.summaries

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._live = False
        for task in list(self._tasks):
            task.cancel()
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_event(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        conversation_id = event.record.get("conversation_id")
        if not conversation_id:
            return
        self._spawn(self._recompute(str(conversation_id)))

    def _on_feed_status(self, status: FeedStatus) -> None:
        if self._closed:
            return
        if status is FeedStatus.LOST:
            self._live = False
            logger.warning("feed lost, conversation list stale viewer=%s", self._viewer_id)
        elif status is FeedStatus.DEGRADED:
            logger.warning("feed degraded viewer=%s", self._viewer_id)
        elif status is FeedStatus.RECONNECTED:
            self._live = True
            self._spawn(self._refresh_in_background())

    async def _recompute(self, conversation_id: str) -> None:
        async with self._lock:
            conversation = self._known.get(conversation_id)
            try:
                if conversation is None:
                    conversation = await asyncio.wait_for(
                        self._store.get_conversation(conversation_id), timeout=self._fetch_timeout
                    )
                    if conversation is None or not conversation.involves(self._viewer_id):
                        return
                summary = await asyncio.wait_for(
                    build_summary(self._store, self._profiles, conversation, self._viewer_id),
                    timeout=self._fetch_timeout,
                )
            except Exception:
                logger.exception("summary refresh failed conversation=%s", conversation_id)
                return
            if self._closed:
                return
            self._known[conversation.id] = conversation
            rows = [s for s in self._summaries if s.conversation_id != conversation_id]
            if summary is not None:
                rows.append(summary)
            self._apply(_order(rows))

    async def _refresh_in_background(self) -> None:
        try:
            await self.refresh()
        except FetchFailed:
            logger.warning("conversation list refetch failed after reconnect viewer=%s", self._viewer_id)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _apply(self, summaries: List[ConversationSummary]) -> None:
        self._summaries = summaries
        snapshot = tuple(summaries)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("summary listener failed viewer=%s", self._viewer_id)
