from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

_VIDEO_RE = re.compile(r"\.(mp4|webm|ogg)$", re.IGNORECASE)


class TopicKind(StrEnum):
    CONVERSATION = "conversation"
    POST = "post"


class EventKind(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class EntityType(StrEnum):
    MESSAGE = "message"
    LIKE = "like"
    COMMENT = "comment"


class Origin(StrEnum):
    LOCAL = "local"
    REMOTE = "remote"


class SubscriptionStatus(StrEnum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class Topic:
    """A live-feed scope: a two-party conversation or a single post.

    Conversation participants are stored sorted so both sides derive the same key.
    """

    kind: TopicKind
    participants: tuple[str, ...]

    @classmethod
    def conversation(cls, user_a: str, user_b: str) -> Topic:
        if not user_a or not user_b:
            raise ValueError("conversation participants must be non-empty")
        if user_a == user_b:
            raise ValueError("a conversation needs two distinct participants")
        lo, hi = sorted((user_a, user_b))
        return cls(kind=TopicKind.CONVERSATION, participants=(lo, hi))

    @classmethod
    def post(cls, post_id: str | int) -> Topic:
        pid = str(post_id)
        if not pid:
            raise ValueError("post_id must be non-empty")
        return cls(kind=TopicKind.POST, participants=(pid,))

    @classmethod
    def parse(cls, key: str) -> Topic:
        kind, sep, rest = key.partition(":")
        if not sep or not rest:
            raise ValueError(f"invalid topic key: {key!r}")
        if kind == TopicKind.POST:
            return cls.post(rest)
        if kind == TopicKind.CONVERSATION:
            a, sep, b = rest.partition("|")
            if not sep:
                raise ValueError(f"invalid conversation key: {key!r}")
            return cls.conversation(a, b)
        raise ValueError(f"unknown topic kind: {kind!r}")

    @property
    def key(self) -> str:
        return f"{self.kind}:{'|'.join(self.participants)}"

    @property
    def post_id(self) -> str:
        if self.kind != TopicKind.POST:
            raise ValueError("not a post topic")
        return self.participants[0]

    @property
    def media_folder(self) -> str:
        return "-".join(self.participants)

    def other_participant(self, viewer_id: str) -> str:
        if self.kind != TopicKind.CONVERSATION or viewer_id not in self.participants:
            raise ValueError(f"{viewer_id!r} is not a participant of {self.key}")
        a, b = self.participants
        return b if viewer_id == a else a

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True, slots=True)
class MediaRef:
    path: str

    @property
    def is_video(self) -> bool:
        return _VIDEO_RE.search(self.path) is not None


Body = str | MediaRef | None


@dataclass(frozen=True, slots=True)
class Entity:
    id: str
    author_id: str | None = None
    body: Body = None
    created_at: float | None = None
    target_id: str | None = None
    partial: bool = False


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    topic: Topic
    kind: EventKind
    entity_type: EntityType
    entity: Entity
    server_timestamp: float


@dataclass(frozen=True, slots=True)
class Item:
    id: str | None
    author_id: str
    body: Body
    created_at: float
    origin: Origin
    local_id: str | None = None

    @property
    def confirmed(self) -> bool:
        return self.origin == Origin.REMOTE


@dataclass(frozen=True, slots=True)
class SubscriptionInfo:
    topic: Topic
    status: SubscriptionStatus
    ref_count: int


@dataclass(frozen=True, slots=True)
class UnreadState:
    topic: Topic
    unread_count: int = 0
    last_activity_at: float | None = None


@dataclass(frozen=True, slots=True)
class LikeState:
    topic: Topic
    count: int = 0
    liked_by_viewer: bool = False


@dataclass(frozen=True, slots=True)
class EventDiagnostic:
    entity_type: EntityType
    reason: str
    raw: Any = field(default=None, compare=False)


def item_to_dict(item: Item) -> dict[str, Any]:
    body = item.body
    return {
        "id": item.id,
        "local_id": item.local_id,
        "author_id": item.author_id,
        "content": body if isinstance(body, str) else None,
        "media_url": body.path if isinstance(body, MediaRef) else None,
        "created_at": item.created_at,
        "origin": str(item.origin),
    }
