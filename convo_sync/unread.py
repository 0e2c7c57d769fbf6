from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from convo_sync.models import (
    ChangeEvent,
    EntityType,
    EventKind,
    LikeState,
    Topic,
    TopicKind,
    UnreadState,
)

logger = structlog.get_logger(__name__)


class ReadAcknowledger(Protocol):
    async def mark_read(self, topic: Topic, viewer_id: str) -> int: ...


@dataclass(eq=False, slots=True)
class _Tracked:
    unread_count: int = 0
    last_activity_at: float | None = None
    unread_ids: set[str] = field(default_factory=set)
    likes: dict[str, str] = field(default_factory=dict)


class UnreadAggregator:
    """Derives unread counts, last activity and like tallies from change events.

    Only topics registered with `track()` are followed; events for anything else are
    ignored. Nothing here touches item lists.
    """

    def __init__(self, viewer_id: str, *, acknowledger: ReadAcknowledger | None = None) -> None:
        if not viewer_id:
            raise ValueError("viewer_id must be non-empty")
        self.viewer_id = viewer_id
        self._acknowledger = acknowledger
        self._tracked: dict[Topic, _Tracked] = {}
        self._acks: set[asyncio.Task[None]] = set()

    def track(
        self,
        topic: Topic,
        *,
        unread_count: int = 0,
        last_activity_at: float | None = None,
        likes: Mapping[str, str] | None = None,
    ) -> None:
        """Start following `topic`, seeded with what the backend already knows.

        Re-tracking an already tracked topic keeps its current state.
        """
        if unread_count < 0:
            raise ValueError("unread_count must be >= 0")
        if topic in self._tracked:
            return
        self._tracked[topic] = _Tracked(
            unread_count=unread_count,
            last_activity_at=last_activity_at,
            likes=dict(likes or {}),
        )

    def untrack(self, topic: Topic) -> None:
        self._tracked.pop(topic, None)

    def is_tracked(self, topic: Topic) -> bool:
        return topic in self._tracked

    def on_event(self, event: ChangeEvent) -> None:
        tracked = self._tracked.get(event.topic)
        if tracked is None:
            return
        entity = event.entity

        if event.entity_type == EntityType.LIKE:
            if event.kind == EventKind.INSERT and entity.author_id is not None:
                tracked.likes[entity.id] = entity.author_id
            elif event.kind == EventKind.DELETE:
                tracked.likes.pop(entity.id, None)
            return

        if event.kind == EventKind.INSERT:
            if tracked.last_activity_at is None or event.server_timestamp > tracked.last_activity_at:
                tracked.last_activity_at = event.server_timestamp
            if entity.author_id is None or entity.author_id == self.viewer_id:
                return
            if entity.id in tracked.unread_ids:
                return
            tracked.unread_ids.add(entity.id)
            tracked.unread_count += 1
        elif event.kind == EventKind.DELETE and entity.id in tracked.unread_ids:
            tracked.unread_ids.discard(entity.id)
            tracked.unread_count = max(0, tracked.unread_count - 1)

    def mark_read(self, topic: Topic) -> None:
        """Zero the topic's unread count and acknowledge it remotely in the background.

        A failed acknowledgement is logged; the local count stays at zero.
        """
        tracked = self._tracked.get(topic)
        if tracked is not None:
            tracked.unread_count = 0
            tracked.unread_ids.clear()
        if self._acknowledger is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("read_ack_skipped", topic=topic.key, reason="no running event loop")
            return
        task = loop.create_task(self._acknowledge(topic), name=f"read-ack:{topic.key}")
        self._acks.add(task)
        task.add_done_callback(self._acks.discard)

    async def _acknowledge(self, topic: Topic) -> None:
        assert self._acknowledger is not None
        try:
            await self._acknowledger.mark_read(topic, self.viewer_id)
        except Exception:
            logger.exception("read_ack_failed", topic=topic.key, viewer_id=self.viewer_id)

    async def wait_acks(self) -> None:
        while self._acks:
            await asyncio.gather(*list(self._acks), return_exceptions=True)

    def state_of(self, topic: Topic) -> UnreadState:
        tracked = self._tracked.get(topic)
        if tracked is None:
            return UnreadState(topic=topic)
        return UnreadState(
            topic=topic,
            unread_count=tracked.unread_count,
            last_activity_at=tracked.last_activity_at,
        )

    def likes_of(self, topic: Topic) -> LikeState:
        tracked = self._tracked.get(topic)
        if tracked is None:
            return LikeState(topic=topic)
        return LikeState(
            topic=topic,
            count=len(tracked.likes),
            liked_by_viewer=self.viewer_id in tracked.likes.values(),
        )

    def conversations(self) -> list[UnreadState]:
        """Tracked conversations, most recently active first."""
        states = [
            self.state_of(t) for t in self._tracked if t.kind == TopicKind.CONVERSATION
        ]
        states.sort(
            key=lambda s: (s.last_activity_at is not None, s.last_activity_at or 0.0),
            reverse=True,
        )
        return states
