from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Set, Tuple

from pydantic import ValidationError

import talent_chat.config.config as configs
from talent_chat.client.contracts import BlobStore, ChatStore, PushFeed, Subscription
from talent_chat.model.chat.event import MESSAGES_TABLE, ChangeEvent, EventType, FeedStatus
from talent_chat.model.chat.message import PROVISIONAL_PREFIX, MediaUpload, Message
from talent_chat.service.chat import timeline
from talent_chat.service.chat.delivery import deliver_message
from talent_chat.service.chat.errors import FetchFailed, MergerStateError, SendFailed, SubscriptionLost

logger = logging.getLogger(__name__)

ChangeListener = Callable[[Tuple[Message, ...]], None]


class MergerState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LIVE = "live"
    CLOSED = "closed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageStreamMerger:
    """Live, ordered and duplicate-free view of one conversation.

    Three sources feed the list: provisional entries appended by ``send``,
    the acknowledged rows that promote them, and insert/update events from the
    push feed. The list is exposed oldest first, sorted by ``(created_at, id)``
    after every change, and listeners receive a snapshot on each change.

    All mutation happens on the event loop; feed callbacks are plain
    functions invoked from it.
    """

    def __init__(
        self,
        store: ChatStore,
        feed: PushFeed,
        viewer_id: str,
        blobs: Optional[BlobStore] = None,
        *,
        fetch_timeout: float = configs.FETCH_TIMEOUT_SEC,
        insert_timeout: float = configs.INSERT_TIMEOUT_SEC,
        upload_timeout: float = configs.UPLOAD_TIMEOUT_SEC,
        reconnect_delay: float = configs.RECONNECT_DELAY_SEC,
        max_attempts: int = configs.RECONNECT_MAX_ATTEMPTS,
        mark_read_on_open: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._feed = feed
        self._viewer_id = viewer_id
        self._blobs = blobs
        self._fetch_timeout = fetch_timeout
        self._insert_timeout = insert_timeout
        self._upload_timeout = upload_timeout
        self._reconnect_delay = reconnect_delay
        self._max_attempts = max(1, max_attempts)
        self._mark_read_on_open = mark_read_on_open
        self._clock = clock

        self._state = MergerState.IDLE
        self._conversation_id: Optional[str] = None
        self._messages: List[Message] = []
        self._subscription: Optional[Subscription] = None
        self._load_error: Optional[FetchFailed] = None
        self._opening = False
        self._feed_connected = False
        self._listeners: List[ChangeListener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._provisional_ids = itertools.count(1)

    @property
    def state(self) -> MergerState:
        return self._state

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def load_error(self) -> Optional[FetchFailed]:
        return self._load_error

    @property
    def feed_connected(self) -> bool:
        return self._feed_connected

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def open(self, conversation_id: str) -> None:
        """Loads history, subscribes to the feed and goes live.

        Raises FetchFailed when the history fetch fails; the merger stays in
        ``loading`` with ``load_error`` set and ``open`` may be called again.
        """
        if self._state in (MergerState.LIVE, MergerState.CLOSED):
            raise MergerStateError(f"cannot open a merger in state {self._state.value}")
        if self._opening:
            raise MergerStateError("open already in progress")

        self._opening = True
        self._conversation_id = conversation_id
        self._state = MergerState.LOADING
        self._load_error = None
        try:
            try:
                fetched = await self._fetch()
            except FetchFailed as exc:
                self._load_error = exc
                raise
            if self._state is MergerState.CLOSED:
                return
            self._messages = timeline.ordered(fetched)

            subscription = await self._subscribe()
            if self._state is MergerState.CLOSED:
                if subscription is not None:
                    await subscription.close()
                return
            self._subscription = subscription
            self._state = MergerState.LIVE
        finally:
            self._opening = False

        logger.info("conversation live id=%s messages=%s", conversation_id, len(self._messages))
        if self._subscription is None:
            self._spawn(self._resubscribe())
        self._notify()
        if self._mark_read_on_open:
            await self.mark_read()

    async def send(self, content: Optional[str] = None, media: Optional[MediaUpload] = None) -> Message:
        """Shows the message immediately, then writes it durably.

        Returns the stored message. On failure the provisional entry is
        removed and SendFailed (UploadFailed for the media step) is raised;
        resubmitting is up to the caller.
        """
        if self._state is not MergerState.LIVE:
            raise MergerStateError(f"cannot send in state {self._state.value}")
        content = content.strip() if content else None
        if not content and media is None:
            raise ValueError("message needs content or media")

        conversation_id = self._conversation_id
        provisional = Message(
            id=f"{PROVISIONAL_PREFIX}{next(self._provisional_ids)}",
            conversation_id=conversation_id,
            sender_id=self._viewer_id,
            content=content,
            media_url=media.uri if media is not None else None,
            media_type=media.media_type if media is not None else None,
            is_read=False,
            created_at=self._clock(),
        )
        self._apply(timeline.insert(self._messages, provisional))

        try:
            durable = await deliver_message(
                self._store,
                self._blobs,
                conversation_id,
                self._viewer_id,
                content=content,
                media=media,
                upload_timeout=self._upload_timeout,
                insert_timeout=self._insert_timeout,
            )
        except (SendFailed, asyncio.CancelledError):
            if self._state is MergerState.LIVE:
                self._apply(timeline.discard(self._messages, provisional.id))
            raise

        # A closed view keeps its last list; the durable row is all that remains
        if self._state is MergerState.LIVE:
            self._apply(timeline.promote(self._messages, provisional.id, durable))
        return durable

    def on_push_event(self, event: ChangeEvent) -> None:
        if self._state is not MergerState.LIVE or event.table != MESSAGES_TABLE:
            return
        try:
            message = Message.model_validate(event.record)
        except ValidationError:
            logger.warning("dropping malformed message event conversation=%s", self._conversation_id)
            return
        if message.conversation_id != self._conversation_id:
            return

        if event.type is EventType.INSERT:
            if timeline.contains(self._messages, message.id):
                logger.debug("dropping redelivered message id=%s", message.id)
                return
            self._apply(timeline.insert(self._messages, message))
        elif timeline.contains(self._messages, message.id):
            self._apply(timeline.replace(self._messages, message))

    async def mark_read(self) -> int:
        """Flags the other party's unread messages as read; returns how many changed."""
        if self._state is not MergerState.LIVE:
            raise MergerStateError(f"cannot mark read in state {self._state.value}")
        try:
            updated = await asyncio.wait_for(
                self._store.mark_read(self._conversation_id, self._viewer_id),
                timeout=self._insert_timeout,
            )
        except Exception:
            # Flags stay unread until the next successful mark_read
            logger.exception("mark read failed conversation=%s", self._conversation_id)
            return 0
        if updated and self._state is MergerState.LIVE:
            self._apply(timeline.mark_read(self._messages, [m.id for m in updated]))
        return len(updated)

    async def close(self) -> None:
        if self._state is MergerState.CLOSED:
            return
        self._state = MergerState.CLOSED
        self._feed_connected = False
        for task in list(self._tasks):
            task.cancel()
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()
        logger.info("conversation closed id=%s", self._conversation_id)

    async def wait_idle(self) -> None:
        """Waits for background resubscribe and reconcile work to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _fetch(self) -> List[Message]:
        try:
            return await asyncio.wait_for(
                self._store.list_messages(self._conversation_id),
                timeout=self._fetch_timeout,
            )
        except Exception as exc:
            logger.exception("history fetch failed conversation=%s", self._conversation_id)
            raise FetchFailed(f"history fetch failed for conversation {self._conversation_id}") from exc

    async def _subscribe(self) -> Optional[Subscription]:
        try:
            subscription = await self._feed.subscribe(
                MESSAGES_TABLE,
                self.on_push_event,
                row_filter={"conversation_id": self._conversation_id},
                on_status=self._on_feed_status,
            )
        except SubscriptionLost:
            # Sends still work; _resubscribe keeps retrying in the background
            logger.warning("feed unavailable, conversation not live id=%s", self._conversation_id)
            self._feed_connected = False
            return None
        self._feed_connected = True
        return subscription

    def _on_feed_status(self, status: FeedStatus) -> None:
        if self._state is MergerState.CLOSED:
            return
        if status is FeedStatus.LOST:
            self._feed_connected = False
            logger.warning("feed lost conversation=%s", self._conversation_id)
        elif status is FeedStatus.DEGRADED:
            logger.warning("feed degraded, still reconnecting conversation=%s", self._conversation_id)
        elif status is FeedStatus.RECONNECTED:
            self._feed_connected = True
            self._spawn(self._reconcile())

    async def _resubscribe(self) -> None:
        attempt = 0
        while self._state is MergerState.LIVE and self._subscription is None:
            attempt += 1
            await asyncio.sleep(self._reconnect_delay * min(attempt, self._max_attempts))
            if self._state is not MergerState.LIVE:
                return
            subscription = await self._subscribe()
            if subscription is None:
                if attempt == self._max_attempts:
                    logger.warning(
                        "feed subscribe still failing conversation=%s attempts=%s", self._conversation_id, attempt
                    )
                continue
            if self._state is not MergerState.LIVE:
                self._feed_connected = False
                await subscription.close()
                return
            self._subscription = subscription
            logger.info("feed subscribed conversation=%s attempts=%s", self._conversation_id, attempt)
            await self._reconcile()

    async def _reconcile(self) -> None:
        # Recovers events dropped while the feed was down
        try:
            fetched = await self._fetch()
        except FetchFailed:
            logger.warning("reconcile fetch failed conversation=%s", self._conversation_id)
            return
        if self._state is MergerState.LIVE:
            self._apply(timeline.reconcile(self._messages, fetched))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _apply(self, messages: List[Message]) -> None:
        self._messages = messages
        self._notify()

    def _notify(self) -> None:
        snapshot = tuple(self._messages)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("message listener failed conversation=%s", self._conversation_id)
