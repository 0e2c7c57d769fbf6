"""Reference-counted live feed subscriptions, one feed connection per topic."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from convo_sync.backend import FeedProvider
from convo_sync.config import SyncSettings
from convo_sync.models import (
    ChangeEvent,
    EntityType,
    SubscriptionInfo,
    SubscriptionStatus,
    Topic,
)
from convo_sync.normalizer import ErrorCallback, normalize

logger = structlog.get_logger(__name__)

EventCallback = Callable[[ChangeEvent], None]
StatusCallback = Callable[[Topic, SubscriptionStatus], None]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass(eq=False, slots=True)
class _Consumer:
    on_event: EventCallback
    on_status: StatusCallback | None


@dataclass(eq=False, slots=True)
class _Subscription:
    topic: Topic
    status: SubscriptionStatus = SubscriptionStatus.CONNECTING
    consumers: list[_Consumer] = field(default_factory=list)
    task: asyncio.Task[None] | None = None


class SubscriptionHandle:
    """One consumer's attachment to a topic feed."""

    __slots__ = ("_manager", "_sub", "_consumer", "_closed")

    def __init__(
        self, manager: SubscriptionManager, sub: _Subscription, consumer: _Consumer
    ) -> None:
        self._manager = manager
        self._sub = sub
        self._consumer = consumer
        self._closed = False

    @property
    def topic(self) -> Topic:
        return self._sub.topic

    @property
    def closed(self) -> bool:
        return self._closed or self._consumer not in self._sub.consumers

    @property
    def status(self) -> SubscriptionStatus:
        if self.closed:
            return SubscriptionStatus.CLOSED
        return self._sub.status

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._manager._detach(self._sub, self._consumer)


class SubscriptionManager:
    def __init__(
        self,
        provider: FeedProvider,
        *,
        max_attempts: int = 5,
        backoff_initial: float = 0.25,
        backoff_max: float = 8.0,
        on_error: ErrorCallback | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if backoff_initial <= 0 or backoff_max < backoff_initial:
            raise ValueError("backoff must satisfy 0 < initial <= max")
        self._provider = provider
        self._max_attempts = max_attempts
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self._on_error = on_error
        self._sleep = sleep
        self._subs: dict[Topic, _Subscription] = {}
        self._closing: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(
        cls,
        provider: FeedProvider,
        settings: SyncSettings,
        *,
        on_error: ErrorCallback | None = None,
    ) -> SubscriptionManager:
        return cls(
            provider,
            max_attempts=settings.reconnect_max_attempts,
            backoff_initial=settings.backoff_initial_seconds,
            backoff_max=settings.backoff_max_seconds,
            on_error=on_error,
        )

    def subscribe(
        self,
        topic: Topic,
        on_event: EventCallback,
        *,
        on_status: StatusCallback | None = None,
    ) -> SubscriptionHandle:
        """Attach a consumer to `topic`, opening the feed if this is the first one.

        Must be called from inside the running event loop.
        """
        sub = self._subs.get(topic)
        if sub is None:
            sub = _Subscription(topic=topic)
            self._subs[topic] = sub
            sub.task = asyncio.get_running_loop().create_task(
                self._pump(sub), name=f"feed:{topic.key}"
            )
            logger.info("subscription_opened", topic=topic.key)
        consumer = _Consumer(on_event=on_event, on_status=on_status)
        sub.consumers.append(consumer)
        return SubscriptionHandle(self, sub, consumer)

    def info(self, topic: Topic) -> SubscriptionInfo | None:
        sub = self._subs.get(topic)
        if sub is None:
            return None
        return SubscriptionInfo(topic=topic, status=sub.status, ref_count=len(sub.consumers))

    def topics(self) -> list[Topic]:
        return list(self._subs)

    async def wait_idle(self) -> None:
        """Wait until every torn-down feed has finished closing."""
        while self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    async def aclose(self) -> None:
        for sub in list(self._subs.values()):
            sub.consumers.clear()
            self._teardown(sub)
        await self.wait_idle()

    def _detach(self, sub: _Subscription, consumer: _Consumer) -> None:
        if consumer not in sub.consumers:
            return
        sub.consumers.remove(consumer)
        if not sub.consumers:
            self._teardown(sub)

    def _teardown(self, sub: _Subscription) -> None:
        if self._subs.get(sub.topic) is sub:
            del self._subs[sub.topic]
        sub.status = SubscriptionStatus.CLOSED
        task = sub.task
        if task is not None and not task.done():
            task.cancel()
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
        logger.info("subscription_closed", topic=sub.topic.key)

    def _expire(self, sub: _Subscription) -> None:
        if self._subs.get(sub.topic) is sub:
            del self._subs[sub.topic]
        self._set_status(sub, SubscriptionStatus.CLOSED)
        sub.consumers.clear()

    def _set_status(self, sub: _Subscription, status: SubscriptionStatus) -> None:
        if sub.status == status:
            return
        sub.status = status
        for consumer in list(sub.consumers):
            if consumer.on_status is None:
                continue
            try:
                consumer.on_status(sub.topic, status)
            except Exception:
                logger.exception("status_callback_failed", topic=sub.topic.key)

    def _dispatch(self, sub: _Subscription, entity_type: EntityType, raw: Any) -> None:
        event = normalize(raw, entity_type, topic=sub.topic, on_error=self._on_error)
        if event is None:
            return
        if event.topic != sub.topic:
            logger.debug("event_out_of_scope", topic=sub.topic.key, event_topic=event.topic.key)
            return
        for consumer in list(sub.consumers):
            # A callback may close other handles of this topic mid-dispatch.
            if consumer not in sub.consumers:
                continue
            try:
                consumer.on_event(event)
            except Exception:
                logger.exception("event_callback_failed", topic=sub.topic.key)

    def _backoff(self, attempt: int) -> float:
        return min(self._backoff_initial * (2 ** (attempt - 1)), self._backoff_max)

    async def _pump(self, sub: _Subscription) -> None:
        topic = sub.topic
        failures = 0
        try:
            while True:
                self._set_status(sub, SubscriptionStatus.CONNECTING)
                try:
                    conn = await self._provider.connect(topic)
                except ConnectionError as e:
                    logger.warning("feed_connect_failed", topic=topic.key, error=str(e))
                else:
                    failures = 0
                    self._set_status(sub, SubscriptionStatus.ACTIVE)
                    logger.info("feed_connected", topic=topic.key)
                    try:
                        async for entity_type, raw in conn:
                            self._dispatch(sub, entity_type, raw)
                        logger.warning("feed_ended", topic=topic.key)
                    except ConnectionError as e:
                        logger.warning("feed_disconnected", topic=topic.key, error=str(e))
                    finally:
                        await conn.aclose()

                failures += 1
                if failures > self._max_attempts:
                    logger.error("feed_retries_exhausted", topic=topic.key, attempts=failures)
                    self._expire(sub)
                    return
                self._set_status(sub, SubscriptionStatus.CONNECTING)
                delay = self._backoff(failures)
                logger.info("feed_retry_scheduled", topic=topic.key, attempt=failures, delay=delay)
                await self._sleep(delay)
        except Exception:
            logger.exception("feed_crashed", topic=topic.key)
            self._expire(sub)
