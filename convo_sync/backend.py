"""Interfaces of the external data platform the engine runs against.

Anything that persists rows, pushes change notifications or stores blobs sits
behind these protocols so the hosted backend can be swapped (see `convo_sync.local`
for the SQLite-backed implementation).
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from convo_sync.models import EntityType, Topic

RawFeedEvent = tuple[EntityType, dict[str, Any]]


class FeedDisconnectedError(ConnectionError):
    """The change feed dropped; callers may reconnect."""


class MutationError(RuntimeError):
    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.message = message


class FeedConnection(Protocol):
    def __aiter__(self) -> AsyncIterator[RawFeedEvent]: ...

    async def aclose(self) -> None: ...


class FeedProvider(Protocol):
    async def connect(self, topic: Topic) -> FeedConnection:
        """Open a live change feed scoped to `topic`.

        Raises FeedDisconnectedError (or ConnectionError) when the feed cannot be opened.
        """
        ...


@dataclass(frozen=True, slots=True)
class UnreadSummary:
    unread_count: int
    last_activity_at: float | None


class DataPlatform(Protocol):
    async def fetch_items(self, topic: Topic) -> list[dict[str, Any]]:
        """Return the topic's rows (messages or comments) in ascending creation order."""
        ...

    async def fetch_likes(self, topic: Topic) -> list[dict[str, Any]]:
        """Return the like rows of a post topic (empty for conversations)."""
        ...

    async def unread_summary(self, topic: Topic, viewer_id: str) -> UnreadSummary: ...

    async def insert_item(
        self,
        topic: Topic,
        *,
        author_id: str,
        content: str | None,
        media_url: str | None = None,
    ) -> dict[str, Any]: ...

    async def delete_item(self, topic: Topic, item_id: str) -> dict[str, Any] | None:
        """Delete one row; returns the deleted row, or None if it did not exist."""
        ...

    async def delete_history(self, topic: Topic) -> int: ...

    async def mark_read(self, topic: Topic, viewer_id: str) -> int: ...


class BlobStore(Protocol):
    async def upload(self, path: str, data: bytes) -> str: ...

    async def download(self, path: str) -> bytes: ...

    async def remove(self, paths: Sequence[str]) -> int: ...
