"""The sync engine: feeds, reconciliation and unread state wired to a data platform."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

import structlog
from pydantic import ValidationError

from convo_sync.backend import BlobStore, DataPlatform, FeedProvider, MutationError
from convo_sync.common import now
from convo_sync.config import SyncSettings
from convo_sync.models import (
    Body,
    ChangeEvent,
    EntityType,
    Item,
    LikeState,
    MediaRef,
    SubscriptionStatus,
    Topic,
    TopicKind,
    UnreadState,
)
from convo_sync.normalizer import ErrorCallback, entity_from_row
from convo_sync.store import ReconciliationStore, remote_item
from convo_sync.subscriptions import SubscriptionHandle, SubscriptionManager
from convo_sync.unread import UnreadAggregator

logger = structlog.get_logger(__name__)

ChangeCallback = Callable[["TopicView"], None]


class TopicNotOpenError(RuntimeError):
    pass


def item_entity_type(topic: Topic) -> EntityType:
    return EntityType.MESSAGE if topic.kind == TopicKind.CONVERSATION else EntityType.COMMENT


@dataclass(eq=False, slots=True)
class _OpenTopic:
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    handle: SubscriptionHandle | None = None
    views: list[TopicView] = field(default_factory=list)


class TopicView:
    """A UI-side handle on an open topic. Close it when the screen goes away."""

    def __init__(
        self, engine: ConversationSync, topic: Topic, on_change: ChangeCallback | None
    ) -> None:
        self.engine = engine
        self.topic = topic
        self.on_change = on_change
        self.closed = False

    @property
    def status(self) -> SubscriptionStatus:
        if self.closed:
            return SubscriptionStatus.CLOSED
        return self.engine.status(self.topic)

    def snapshot(self) -> tuple[Item, ...]:
        return self.engine.snapshot(self.topic)

    def unread(self) -> UnreadState:
        return self.engine.unread(self.topic)

    def likes(self) -> LikeState:
        return self.engine.likes(self.topic)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.engine._release(self)


class ConversationSync:
    """Keeps open topics in sync for one viewer.

    Flow per event: feed -> normalizer -> store -> aggregator -> view callbacks.
    """

    def __init__(
        self,
        platform: DataPlatform,
        feed: FeedProvider,
        *,
        viewer_id: str,
        settings: SyncSettings | None = None,
        blobs: BlobStore | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.platform = platform
        self.viewer_id = viewer_id
        self.blobs = blobs
        self.settings = settings or SyncSettings.from_env()
        self.store = ReconciliationStore.from_settings(self.settings)
        self.aggregator = UnreadAggregator(viewer_id, acknowledger=platform)
        self.subscriptions = SubscriptionManager.from_settings(
            feed, self.settings, on_error=on_error
        )
        self._open: dict[Topic, _OpenTopic] = {}

    async def __aenter__(self) -> ConversationSync:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def open(self, topic: Topic, *, on_change: ChangeCallback | None = None) -> TopicView:
        """Open `topic`, loading its history; repeat opens share one feed subscription."""
        if topic.kind == TopicKind.CONVERSATION:
            topic.other_participant(self.viewer_id)

        entry = self._open.get(topic)
        if entry is not None:
            while True:
                await entry.ready.wait()
                if self._open.get(topic) is not entry:
                    return await self.open(topic, on_change=on_change)
                if entry.handle is None or entry.handle.status != SubscriptionStatus.CLOSED:
                    break
                await self._resubscribe(topic, entry)
            view = TopicView(self, topic, on_change)
            entry.views.append(view)
            return view

        entry = _OpenTopic()
        self._open[topic] = entry
        try:
            await self._load(topic, entry)
        except BaseException:
            if entry.handle is not None:
                entry.handle.close()
            self.store.drop(topic)
            self.aggregator.untrack(topic)
            del self._open[topic]
            raise
        finally:
            entry.ready.set()

        view = TopicView(self, topic, on_change)
        entry.views.append(view)
        logger.info("topic_opened", topic=topic.key, items=len(self.store.snapshot(topic)))
        return view

    async def _resubscribe(self, topic: Topic, entry: _OpenTopic) -> None:
        """Subscribe again after the feed gave up reconnecting, refetching what was missed."""
        entry.ready = asyncio.Event()
        try:
            await self._load(topic, entry, reseed=True)
        except BaseException:
            if entry.handle is not None:
                entry.handle.close()
            self.store.abort_load(topic)
            raise
        finally:
            entry.ready.set()
        if self._open.get(topic) is not entry:
            # Every view closed while the history was being refetched.
            if entry.handle is not None:
                entry.handle.close()
            if topic not in self._open:
                self.store.drop(topic)
                self.aggregator.untrack(topic)
            return
        logger.info("topic_resubscribed", topic=topic.key)

    async def _load(self, topic: Topic, entry: _OpenTopic, *, reseed: bool = False) -> None:
        summary = await self.platform.unread_summary(topic, self.viewer_id)
        likes: dict[str, str] = {}
        if topic.kind == TopicKind.POST:
            for row in await self.platform.fetch_likes(topic):
                likes[str(row["id"])] = str(row["user_id"])
        if reseed:
            self.aggregator.untrack(topic)
        self.aggregator.track(
            topic,
            unread_count=summary.unread_count,
            last_activity_at=summary.last_activity_at,
            likes=likes,
        )

        self.store.begin_load(topic)
        entry.handle = self.subscriptions.subscribe(
            topic, self._on_event, on_status=self._on_status
        )
        rows = await self.platform.fetch_items(topic)
        self.store.complete_load(topic, self._items_from_rows(topic, rows))

    def _items_from_rows(self, topic: Topic, rows: list[dict[str, Any]]) -> list[Item]:
        entity_type = item_entity_type(topic)
        items: list[Item] = []
        for row in rows:
            try:
                entity = entity_from_row(entity_type, row)
                items.append(remote_item(entity, fallback_created_at=now()))
            except (ValidationError, ValueError) as e:
                logger.warning("history_row_dropped", topic=topic.key, error=str(e))
        return items

    def _on_event(self, event: ChangeEvent) -> None:
        if event.topic not in self._open:
            return
        self.store.apply_remote(event.topic, event)
        self.aggregator.on_event(event)
        self._notify(event.topic)

    def _on_status(self, topic: Topic, status: SubscriptionStatus) -> None:
        logger.info("topic_status", topic=topic.key, status=str(status))
        self._notify(topic)

    def _notify(self, topic: Topic) -> None:
        entry = self._open.get(topic)
        if entry is None:
            return
        for view in list(entry.views):
            if view.on_change is None or view.closed:
                continue
            try:
                view.on_change(view)
            except Exception:
                logger.exception("view_callback_failed", topic=topic.key)

    def _release(self, view: TopicView) -> None:
        entry = self._open.get(view.topic)
        if entry is None or view not in entry.views:
            return
        entry.views.remove(view)
        if entry.views:
            return
        del self._open[view.topic]
        if entry.handle is not None:
            entry.handle.close()
        self.store.drop(view.topic)
        self.aggregator.untrack(view.topic)
        logger.info("topic_released", topic=view.topic.key)

    def _require_open(self, topic: Topic) -> None:
        if topic not in self._open:
            raise TopicNotOpenError(topic.key)

    # -- mutations -------------------------------------------------------------

    def _append_pending(self, topic: Topic, body: Body) -> tuple[str, bool]:
        ts = now()
        existing = self.store.find_pending(
            topic, author_id=self.viewer_id, body=body, created_at=ts
        )
        if existing is not None:
            logger.info("send_deduplicated", topic=topic.key, local_id=existing)
            return existing, False
        local_id = self.store.append_local(
            topic, author_id=self.viewer_id, body=body, created_at=ts
        )
        self._notify(topic)
        return local_id, True

    async def send(self, topic: Topic, text: str) -> str:
        """Show `text` immediately as a pending item, then persist it. Returns the local id.

        A failed insert raises MutationError; the pending item stays visible.
        A repeat of a send that is still pending in the same dedupe bucket is not persisted
        again; its local id is returned.
        """
        if not text or not text.strip():
            raise ValueError("message text must be non-empty")
        self._require_open(topic)
        local_id, created = self._append_pending(topic, text)
        if created:
            await self.platform.insert_item(topic, author_id=self.viewer_id, content=text)
        return local_id

    async def send_media(self, topic: Topic, filename: str, data: bytes) -> str:
        """Upload a photo or video into the conversation's folder and send it."""
        if topic.kind != TopicKind.CONVERSATION:
            raise ValueError("media can only be sent to conversations")
        if self.blobs is None:
            raise MutationError("upload", "no blob store configured")
        if not data:
            raise ValueError("media data must be non-empty")
        ext = PurePosixPath(filename).suffix.lstrip(".").lower()
        if not ext:
            raise ValueError(f"cannot infer media type from {filename!r}")
        self._require_open(topic)

        path = f"{topic.media_folder}/{int(now() * 1000)}.{ext}"
        try:
            path = await self.blobs.upload(path, data)
        except (OSError, ValueError) as e:
            raise MutationError("upload", str(e)) from e

        local_id, created = self._append_pending(topic, MediaRef(path))
        if created:
            await self.platform.insert_item(
                topic, author_id=self.viewer_id, content=None, media_url=path
            )
        return local_id

    async def delete(self, topic: Topic, item_id: str) -> bool:
        """Delete a confirmed item and its media. Returns False if it did not exist."""
        row = await self.platform.delete_item(topic, item_id)
        if row is None:
            return False
        media_url = row.get("media_url")
        if media_url and self.blobs is not None:
            await self.blobs.remove([media_url])
        return True

    async def clear_history(self, topic: Topic) -> int:
        """Delete every message of a conversation together with its media."""
        if topic.kind != TopicKind.CONVERSATION:
            raise ValueError("only conversations can be cleared")
        rows = await self.platform.fetch_items(topic)
        media = [r["media_url"] for r in rows if r.get("media_url")]
        deleted = await self.platform.delete_history(topic)
        if media and self.blobs is not None:
            await self.blobs.remove(media)
        logger.info("history_cleared", topic=topic.key, deleted=deleted, media=len(media))
        return deleted

    def mark_read(self, topic: Topic) -> None:
        self.aggregator.mark_read(topic)
        self._notify(topic)

    # -- queries ---------------------------------------------------------------

    def snapshot(self, topic: Topic) -> tuple[Item, ...]:
        return self.store.snapshot(topic)

    def unread(self, topic: Topic) -> UnreadState:
        return self.aggregator.state_of(topic)

    def conversations(self) -> list[UnreadState]:
        return self.aggregator.conversations()

    def likes(self, topic: Topic) -> LikeState:
        return self.aggregator.likes_of(topic)

    def status(self, topic: Topic) -> SubscriptionStatus:
        info = self.subscriptions.info(topic)
        return SubscriptionStatus.CLOSED if info is None else info.status

    def open_topics(self) -> list[Topic]:
        return list(self._open)

    async def aclose(self) -> None:
        for entry in list(self._open.values()):
            for view in list(entry.views):
                view.close()
        await self.subscriptions.aclose()
        await self.aggregator.wait_acks()
