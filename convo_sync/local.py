"""In-process backend: SQLite rows, a change-feed hub and a filesystem blob store."""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Any

import structlog

from convo_sync.backend import FeedDisconnectedError, MutationError, RawFeedEvent, UnreadSummary
from convo_sync.common import now
from convo_sync.config import SyncSettings
from convo_sync.db import NotFoundError, PlatformDB
from convo_sync.models import EntityType, Topic, TopicKind
from convo_sync.normalizer import TABLES

logger = structlog.get_logger(__name__)

_CLOSED = object()


def _commit_timestamp() -> str:
    return datetime.fromtimestamp(now(), tz=UTC).isoformat()


class LocalFeedConnection:
    """A live feed for one topic. Iterates `(entity_type, payload)` pairs."""

    def __init__(self, hub: FeedHub, topic: Topic) -> None:
        self.hub = hub
        self.topic = topic
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    def __aiter__(self) -> LocalFeedConnection:
        return self

    async def __anext__(self) -> RawFeedEvent:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, ConnectionError):
            raise item
        return item

    def deliver(self, event: RawFeedEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def disconnect(self, reason: str = "connection lost") -> None:
        """Drop the connection as a network failure would."""
        self.hub.detach(self)
        self._queue.put_nowait(FeedDisconnectedError(reason))

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.hub.detach(self)
        self._queue.put_nowait(_CLOSED)


class FeedHub:
    """Fans published row changes out to the connections whose topic they concern."""

    def __init__(self) -> None:
        self._connections: dict[Topic, list[LocalFeedConnection]] = {}
        self.online = True
        self.connects = 0

    def open(self, topic: Topic) -> LocalFeedConnection:
        if not self.online:
            raise FeedDisconnectedError(f"feed unavailable for {topic.key}")
        conn = LocalFeedConnection(self, topic)
        self._connections.setdefault(topic, []).append(conn)
        self.connects += 1
        return conn

    def detach(self, conn: LocalFeedConnection) -> None:
        conns = self._connections.get(conn.topic)
        if conns is None or conn not in conns:
            return
        conns.remove(conn)
        if not conns:
            del self._connections[conn.topic]

    def connections(self, topic: Topic) -> list[LocalFeedConnection]:
        return list(self._connections.get(topic, ()))

    def publish(
        self,
        topic: Topic,
        entity_type: EntityType,
        event_type: str,
        *,
        new: dict[str, Any] | None = None,
        old: dict[str, Any] | None = None,
    ) -> int:
        payload = {
            "eventType": event_type,
            "schema": "public",
            "table": TABLES[entity_type],
            "new": new or {},
            "old": old or {},
            "commit_timestamp": _commit_timestamp(),
        }
        conns = self.connections(topic)
        for conn in conns:
            conn.deliver((entity_type, payload))
        return len(conns)


class FileBlobStore:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser()

    def _resolve(self, path: str) -> Path:
        rel = PurePosixPath(path)
        if not path or rel.is_absolute() or ".." in rel.parts:
            raise ValueError(f"invalid blob path: {path!r}")
        return self.root.joinpath(*rel.parts)

    async def upload(self, path: str, data: bytes) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return path

    async def download(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise NotFoundError(path)
        return target.read_bytes()

    async def remove(self, paths: Sequence[str]) -> int:
        removed = 0
        for path in paths:
            target = self._resolve(path)
            if target.is_file():
                target.unlink()
                removed += 1
        return removed


@contextmanager
def _mutation(operation: str) -> Iterator[None]:
    try:
        yield
    except (ValueError, RuntimeError, sqlite3.Error) as e:
        raise MutationError(operation, str(e)) from e


class LocalPlatform:
    """`DataPlatform`, `FeedProvider` and read acknowledger over `PlatformDB`.

    Every mutation publishes the affected rows to the hub in the backend's wire shape.
    """

    def __init__(
        self,
        db: PlatformDB,
        *,
        hub: FeedHub | None = None,
        blobs: FileBlobStore | None = None,
    ) -> None:
        self.db = db
        self.hub = hub or FeedHub()
        self.blobs = blobs

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> LocalPlatform:
        return cls(PlatformDB(path=settings.db_path), blobs=FileBlobStore(settings.blob_dir))

    # -- FeedProvider ----------------------------------------------------------

    async def connect(self, topic: Topic) -> LocalFeedConnection:
        return self.hub.open(topic)

    # -- DataPlatform ----------------------------------------------------------

    async def fetch_items(self, topic: Topic) -> list[dict[str, Any]]:
        if topic.kind == TopicKind.CONVERSATION:
            a, b = topic.participants
            return self.db.messages_between(user_a=a, user_b=b)
        return self.db.comments_for_post(post_id=topic.post_id)

    async def fetch_likes(self, topic: Topic) -> list[dict[str, Any]]:
        if topic.kind != TopicKind.POST:
            return []
        return self.db.likes_for_post(post_id=topic.post_id)

    async def unread_summary(self, topic: Topic, viewer_id: str) -> UnreadSummary:
        if topic.kind == TopicKind.CONVERSATION:
            a, b = topic.participants
            unread = 0
            if viewer_id in topic.participants:
                unread = self.db.unread_count(
                    viewer_id=viewer_id, other_id=topic.other_participant(viewer_id)
                )
            return UnreadSummary(
                unread_count=unread,
                last_activity_at=self.db.last_activity(user_a=a, user_b=b),
            )
        comments = self.db.comments_for_post(post_id=topic.post_id)
        last = max((c["created_at"] for c in comments), default=None)
        return UnreadSummary(unread_count=0, last_activity_at=last)

    async def insert_item(
        self,
        topic: Topic,
        *,
        author_id: str,
        content: str | None,
        media_url: str | None = None,
    ) -> dict[str, Any]:
        with _mutation("insert"):
            if topic.kind == TopicKind.CONVERSATION:
                row = self.db.message_insert(
                    sender_id=author_id,
                    receiver_id=topic.other_participant(author_id),
                    content=content,
                    media_url=media_url,
                )
                entity_type = EntityType.MESSAGE
            else:
                if content is None:
                    raise ValueError("comments need content")
                row = self.db.comment_insert(
                    post_id=topic.post_id, user_id=author_id, content=content
                )
                entity_type = EntityType.COMMENT
        self.hub.publish(topic, entity_type, "INSERT", new=row)
        return row

    async def delete_item(self, topic: Topic, item_id: str) -> dict[str, Any] | None:
        with _mutation("delete"):
            if topic.kind == TopicKind.CONVERSATION:
                row = self._message_in(topic, item_id)
                if row is not None:
                    self.db.delete_message(message_id=row["id"])
                entity_type = EntityType.MESSAGE
            else:
                row = self.db.delete_comment(comment_id=item_id)
                entity_type = EntityType.COMMENT
        if row is None:
            return None
        self.hub.publish(topic, entity_type, "DELETE", old=row)
        return row

    async def delete_history(self, topic: Topic) -> int:
        with _mutation("delete_history"):
            if topic.kind == TopicKind.CONVERSATION:
                a, b = topic.participants
                rows = self.db.delete_messages_between(user_a=a, user_b=b)
                entity_type = EntityType.MESSAGE
            else:
                rows = self.db.delete_comments_for_post(post_id=topic.post_id)
                entity_type = EntityType.COMMENT
        for row in rows:
            self.hub.publish(topic, entity_type, "DELETE", old=row)
        return len(rows)

    async def mark_read(self, topic: Topic, viewer_id: str) -> int:
        if topic.kind != TopicKind.CONVERSATION:
            return 0
        with _mutation("mark_read"):
            other_id = topic.other_participant(viewer_id)
            updated = self.db.mark_read(viewer_id=viewer_id, other_id=other_id)
        logger.debug("messages_marked_read", topic=topic.key, viewer_id=viewer_id, count=updated)
        return updated

    # -- likes -----------------------------------------------------------------

    async def like(self, post_id: str | int, user_id: str) -> dict[str, Any]:
        with _mutation("like"):
            row, existed = self.db.like_add(post_id=post_id, user_id=user_id)
        if not existed:
            self.hub.publish(Topic.post(post_id), EntityType.LIKE, "INSERT", new=row)
        return row

    async def unlike(self, post_id: str | int, user_id: str) -> dict[str, Any] | None:
        with _mutation("unlike"):
            row = self.db.like_remove(post_id=post_id, user_id=user_id)
        if row is not None:
            self.hub.publish(Topic.post(post_id), EntityType.LIKE, "DELETE", old=row)
        return row

    def _message_in(self, topic: Topic, item_id: str) -> dict[str, Any] | None:
        try:
            row = self.db.get_message(message_id=item_id)
        except NotFoundError:
            return None
        if Topic.conversation(row["sender_id"], row["receiver_id"]) != topic:
            return None
        return row
