"""Per-topic ordered item lists merging optimistic local entries with confirmed ones."""

from __future__ import annotations

import bisect
import dataclasses
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import structlog

from convo_sync.common import new_id, now
from convo_sync.config import SyncSettings
from convo_sync.models import Body, ChangeEvent, Entity, EntityType, EventKind, Item, Origin, Topic

logger = structlog.get_logger(__name__)


def remote_item(entity: Entity, *, fallback_created_at: float) -> Item:
    if entity.author_id is None:
        raise ValueError(f"entity {entity.id} has no author")
    created_at = entity.created_at if entity.created_at is not None else fallback_created_at
    return Item(
        id=entity.id,
        author_id=entity.author_id,
        body=entity.body,
        created_at=created_at,
        origin=Origin.REMOTE,
    )


@dataclass(eq=False, slots=True)
class _TopicItems:
    confirmed: list[Item] = field(default_factory=list)
    pending: list[Item] = field(default_factory=list)
    ids: set[str] = field(default_factory=set)
    loading: bool = False
    buffer: list[ChangeEvent] = field(default_factory=list)

    def insert_confirmed(self, item: Item) -> None:
        assert item.id is not None
        # bisect_right keeps arrival order among equal timestamps.
        pos = bisect.bisect_right(self.confirmed, item.created_at, key=lambda i: i.created_at)
        self.confirmed.insert(pos, item)
        self.ids.add(item.id)

    def index_of(self, item_id: str) -> int | None:
        if item_id not in self.ids:
            return None
        for i, item in enumerate(self.confirmed):
            if item.id == item_id:
                return i
        return None

    def take_pending(self, author_id: str, body: Body) -> Item | None:
        for i, item in enumerate(self.pending):
            if item.author_id == author_id and item.body == body:
                return self.pending.pop(i)
        return None


class ReconciliationStore:
    """Owns the visible item list of every open topic.

    Local (optimistic) items sit after the confirmed ones until a matching remote insert
    arrives: same author, equal body, oldest pending first.
    """

    def __init__(
        self,
        *,
        dedupe_window: float = 1.0,
        clock: Callable[[], float] = now,
    ) -> None:
        if dedupe_window <= 0:
            raise ValueError("dedupe_window must be > 0")
        self._dedupe_window = dedupe_window
        self._clock = clock
        self._topics: dict[Topic, _TopicItems] = {}

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> ReconciliationStore:
        return cls(dedupe_window=settings.local_dedupe_seconds)

    def _state(self, topic: Topic) -> _TopicItems:
        state = self._topics.get(topic)
        if state is None:
            state = _TopicItems()
            self._topics[topic] = state
        return state

    def topics(self) -> list[Topic]:
        return list(self._topics)

    def append_local(
        self,
        topic: Topic,
        *,
        author_id: str,
        body: Body,
        created_at: float | None = None,
    ) -> str:
        """Append an optimistic item at the tail and return its local id.

        A repeat of the same author/body inside one dedupe bucket returns the id of the
        entry already pending instead of adding a second one.
        """
        if not author_id:
            raise ValueError("author_id must be non-empty")
        if body is None or body == "":
            raise ValueError("body must be non-empty")
        ts = self._clock() if created_at is None else created_at
        existing = self.find_pending(topic, author_id=author_id, body=body, created_at=ts)
        if existing is not None:
            return existing

        state = self._state(topic)
        local_id = f"local-{new_id()}"
        state.pending.append(
            Item(
                id=None,
                author_id=author_id,
                body=body,
                created_at=ts,
                origin=Origin.LOCAL,
                local_id=local_id,
            )
        )
        return local_id

    def find_pending(
        self,
        topic: Topic,
        *,
        author_id: str,
        body: Body,
        created_at: float | None = None,
    ) -> str | None:
        """Local id of the pending item an `append_local` with these values collapses into."""
        state = self._topics.get(topic)
        if state is None:
            return None
        ts = self._clock() if created_at is None else created_at
        bucket = int(ts // self._dedupe_window)
        for item in state.pending:
            if (
                item.author_id == author_id
                and item.body == body
                and int(item.created_at // self._dedupe_window) == bucket
            ):
                return item.local_id
        return None

    def discard_local(self, topic: Topic, local_id: str) -> bool:
        state = self._topics.get(topic)
        if state is None:
            return False
        for i, item in enumerate(state.pending):
            if item.local_id == local_id:
                del state.pending[i]
                return True
        return False

    def apply_remote(self, topic: Topic, event: ChangeEvent) -> None:
        if event.topic != topic:
            raise ValueError(f"event for {event.topic.key} applied to {topic.key}")
        if event.entity_type == EntityType.LIKE:
            return
        state = self._state(topic)
        if state.loading:
            state.buffer.append(event)
            return
        self._apply(state, event, replay=False)

    def begin_load(self, topic: Topic) -> None:
        """Buffer remote events until `complete_load` installs the fetched history."""
        self._state(topic).loading = True

    def complete_load(self, topic: Topic, items: Iterable[Item]) -> None:
        state = self._state(topic)
        previous = state.ids
        state.confirmed = []
        state.ids = set()
        for item in sorted(items, key=lambda i: i.created_at):
            if item.id is None or item.id in state.ids:
                continue
            if item.id not in previous:
                # A row stored while the feed was down confirms its pending send.
                match = state.take_pending(item.author_id, item.body)
                if match is not None:
                    item = dataclasses.replace(item, local_id=match.local_id)
            state.insert_confirmed(item)

        buffered = state.buffer
        state.buffer = []
        state.loading = False
        for event in buffered:
            self._apply(state, event, replay=True)
        logger.debug(
            "topic_loaded",
            topic=topic.key,
            items=len(state.confirmed),
            replayed=len(buffered),
        )

    def abort_load(self, topic: Topic) -> None:
        """Stop buffering and apply what was buffered, keeping the current items."""
        state = self._topics.get(topic)
        if state is None or not state.loading:
            return
        buffered = state.buffer
        state.buffer = []
        state.loading = False
        for event in buffered:
            self._apply(state, event, replay=False)

    def snapshot(self, topic: Topic) -> tuple[Item, ...]:
        state = self._topics.get(topic)
        if state is None:
            return ()
        return (*state.confirmed, *state.pending)

    def pending(self, topic: Topic) -> tuple[Item, ...]:
        state = self._topics.get(topic)
        return () if state is None else tuple(state.pending)

    def is_loading(self, topic: Topic) -> bool:
        state = self._topics.get(topic)
        return state is not None and state.loading

    def drop(self, topic: Topic) -> None:
        self._topics.pop(topic, None)

    def _apply(self, state: _TopicItems, event: ChangeEvent, *, replay: bool) -> None:
        entity = event.entity
        if event.kind == EventKind.INSERT:
            self._apply_insert(state, event, replay=replay)
        elif event.kind == EventKind.DELETE:
            idx = state.index_of(entity.id)
            if idx is not None:
                del state.confirmed[idx]
                state.ids.discard(entity.id)
        elif event.kind == EventKind.UPDATE:
            idx = state.index_of(entity.id)
            if idx is None or entity.partial:
                return
            state.confirmed[idx] = dataclasses.replace(state.confirmed[idx], body=entity.body)

    def _apply_insert(self, state: _TopicItems, event: ChangeEvent, *, replay: bool) -> None:
        entity = event.entity
        if entity.partial or entity.author_id is None:
            logger.warning("insert_without_row", topic=event.topic.key, id=entity.id)
            return
        if entity.id in state.ids:
            if replay:
                # History already holds this row; retire the optimistic copy it confirms.
                state.take_pending(entity.author_id, entity.body)
            return

        item = remote_item(entity, fallback_created_at=event.server_timestamp)
        match = state.take_pending(entity.author_id, entity.body)
        if match is not None:
            item = dataclasses.replace(item, local_id=match.local_id)
        state.insert_confirmed(item)
