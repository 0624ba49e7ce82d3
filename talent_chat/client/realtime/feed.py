from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

import talent_chat.config.config as configs
from talent_chat.client.contracts import EventCallback, StatusCallback
from talent_chat.model.chat.event import ChangeEvent, FeedStatus
from talent_chat.service.chat.errors import SubscriptionLost

logger = logging.getLogger(__name__)

_REDIS_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


def build_redis() -> Redis:
    return Redis(host=configs.REDIS_HOST, port=configs.REDIS_PORT, decode_responses=True)


class RedisSubscription:
    """One pub/sub listener for a table channel.

    Rows are filtered on the client. A dropped connection is reported as
    ``LOST`` and the channel is re-subscribed with linear backoff; after
    ``max_attempts`` consecutive failures the status turns ``DEGRADED`` and
    retries continue at the longest delay until ``close()``.
    """

    def __init__(
        self,
        redis: Redis,
        channel: str,
        table: str,
        callback: EventCallback,
        row_filter: Optional[Dict[str, Any]] = None,
        on_status: Optional[StatusCallback] = None,
        reconnect_delay: float = configs.RECONNECT_DELAY_SEC,
        max_attempts: int = configs.RECONNECT_MAX_ATTEMPTS,
    ):
        self._redis = redis
        self._channel = channel
        self._table = table
        self._callback = callback
        self._row_filter = row_filter
        self._on_status = on_status
        self._reconnect_delay = reconnect_delay
        self._max_attempts = max(1, max_attempts)
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        try:
            await self._connect()
        except _REDIS_ERRORS as exc:
            raise SubscriptionLost(f"subscribe failed channel={self._channel}") from exc
        self._task = asyncio.create_task(self._listen())
        self._notify(FeedStatus.SUBSCRIBED)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._release()
        self._notify(FeedStatus.CLOSED)

    async def _connect(self) -> None:
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self._channel)

    async def _release(self) -> None:
        if self._pubsub is None:
            return
        pubsub, self._pubsub = self._pubsub, None
        try:
            await pubsub.aclose()
        except _REDIS_ERRORS:
            logger.warning("pubsub close failed channel=%s", self._channel)

    async def _listen(self) -> None:
        while not self._closed:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except _REDIS_ERRORS:
                logger.warning("feed connection lost channel=%s", self._channel)
                self._notify(FeedStatus.LOST)
                await self._reconnect()
                continue
            if message is None or message.get("type") != "message":
                continue
            self._dispatch(message["data"])

    async def _reconnect(self) -> None:
        attempt = 0
        while not self._closed:
            attempt += 1
            await asyncio.sleep(self._reconnect_delay * min(attempt, self._max_attempts))
            await self._release()
            try:
                await self._connect()
            except _REDIS_ERRORS:
                if attempt == self._max_attempts:
                    logger.warning("feed reconnect failing channel=%s attempts=%s", self._channel, attempt)
                    self._notify(FeedStatus.DEGRADED)
                continue
            logger.info("feed reconnected channel=%s attempts=%s", self._channel, attempt)
            self._notify(FeedStatus.RECONNECTED)
            return

    def _dispatch(self, data) -> None:
        try:
            event = ChangeEvent.model_validate_json(data)
        except ValidationError:
            logger.warning("dropping malformed event channel=%s", self._channel)
            return
        if not event.matches(self._table, self._row_filter):
            return
        try:
            self._callback(event)
        except Exception:
            logger.exception("event callback failed channel=%s", self._channel)

    def _notify(self, status: FeedStatus) -> None:
        if self._on_status is None:
            return
        try:
            self._on_status(status)
        except Exception:
            logger.exception("status callback failed channel=%s status=%s", self._channel, status.value)


class RedisFeed:
    """Push feed on Redis pub/sub, one channel per table."""

    def __init__(
        self,
        redis: Optional[Redis] = None,
        channel_prefix: str = configs.REALTIME_CHANNEL_PREFIX,
        reconnect_delay: float = configs.RECONNECT_DELAY_SEC,
        max_attempts: int = configs.RECONNECT_MAX_ATTEMPTS,
    ):
        self._redis = redis if redis is not None else build_redis()
        self._prefix = channel_prefix
        self._reconnect_delay = reconnect_delay
        self._max_attempts = max_attempts

    def channel(self, table: str) -> str:
        return f"{self._prefix}:{table}"

    async def publish(self, event: ChangeEvent) -> None:
        await self._redis.publish(self.channel(event.table), event.model_dump_json())

    async def subscribe(
        self,
        table: str,
        callback: EventCallback,
        *,
        row_filter: Optional[Dict[str, Any]] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> RedisSubscription:
        subscription = RedisSubscription(
            self._redis,
            self.channel(table),
            table,
            callback,
            row_filter=row_filter,
            on_status=on_status,
            reconnect_delay=self._reconnect_delay,
            max_attempts=self._max_attempts,
        )
        await subscription.start()
        return subscription

    async def aclose(self) -> None:
        await self._redis.aclose()
