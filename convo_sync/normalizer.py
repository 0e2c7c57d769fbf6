"""Normalize backend change-feed payloads into `ChangeEvent`s.

The backend delivers row-level notifications shaped like
``{"eventType": "INSERT", "schema": "public", "table": "messages", "new": {...}, "old": {...}}``
with per-table row layouts. Everything downstream only ever sees `ChangeEvent`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from convo_sync.common import now, to_epoch
from convo_sync.models import (
    Body,
    ChangeEvent,
    Entity,
    EntityType,
    EventDiagnostic,
    EventKind,
    MediaRef,
    Topic,
)

logger = structlog.get_logger(__name__)

TABLES: dict[EntityType, str] = {
    EntityType.MESSAGE: "messages",
    EntityType.LIKE: "likes",
    EntityType.COMMENT: "comments",
}

ErrorCallback = Callable[[EventDiagnostic], None]


class MalformedEventError(ValueError):
    pass


def _as_id(value: Any) -> Any:
    # Backend primary keys are bigints; ids are handled as strings everywhere.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


def _as_epoch(value: Any) -> Any:
    if value is None:
        return None
    return to_epoch(value)


class RawChange(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str = Field(validation_alias=AliasChoices("event", "eventType", "type"))
    schema_name: str | None = Field(default=None, validation_alias="schema")
    table: str | None = None
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None
    commit_timestamp: float | None = None

    @field_validator("event")
    @classmethod
    def event_name(cls, v: str) -> str:
        name = v.strip().lower()
        if name not in {k.value for k in EventKind}:
            raise ValueError(f"unknown event type: {v!r}")
        return name

    @field_validator("commit_timestamp", mode="before")
    @classmethod
    def commit_epoch(cls, v: Any) -> Any:
        return _as_epoch(v)


class _Row(BaseModel, ABC):
    model_config = ConfigDict(extra="ignore")

    id: str
    created_at: float | None = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        return _as_id(v)

    @field_validator("created_at", mode="before")
    @classmethod
    def created_epoch(cls, v: Any) -> Any:
        return _as_epoch(v)

    @abstractmethod
    def topic(self) -> Topic: ...

    @abstractmethod
    def entity(self) -> Entity: ...


class MessageRow(_Row):
    sender_id: str
    receiver_id: str
    content: str | None = None
    media_url: str | None = None

    @field_validator("sender_id", "receiver_id", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> Any:
        return _as_id(v)

    def topic(self) -> Topic:
        return Topic.conversation(self.sender_id, self.receiver_id)

    def entity(self) -> Entity:
        body: Body = MediaRef(self.media_url) if self.media_url else self.content
        return Entity(
            id=self.id,
            author_id=self.sender_id,
            body=body,
            created_at=self.created_at,
        )


class CommentRow(_Row):
    post_id: str
    user_id: str
    content: str | None = None

    @field_validator("post_id", "user_id", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> Any:
        return _as_id(v)

    def topic(self) -> Topic:
        return Topic.post(self.post_id)

    def entity(self) -> Entity:
        return Entity(
            id=self.id,
            author_id=self.user_id,
            body=self.content,
            created_at=self.created_at,
            target_id=self.post_id,
        )


class LikeRow(_Row):
    post_id: str
    user_id: str

    @field_validator("post_id", "user_id", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> Any:
        return _as_id(v)

    def topic(self) -> Topic:
        return Topic.post(self.post_id)

    def entity(self) -> Entity:
        return Entity(
            id=self.id,
            author_id=self.user_id,
            created_at=self.created_at,
            target_id=self.post_id,
        )


class IdOnlyRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        return _as_id(v)


ROW_MODELS: dict[EntityType, type[_Row]] = {
    EntityType.MESSAGE: MessageRow,
    EntityType.LIKE: LikeRow,
    EntityType.COMMENT: CommentRow,
}


def entity_from_row(entity_type: EntityType | str, row: dict[str, Any]) -> Entity:
    """Parse one stored row (as returned by a history fetch). Raises ValidationError."""
    return ROW_MODELS[EntityType(entity_type)].model_validate(row).entity()


def normalize(
    raw: Any,
    entity_type: EntityType | str,
    *,
    topic: Topic | None = None,
    on_error: ErrorCallback | None = None,
    clock: Callable[[], float] = now,
) -> ChangeEvent | None:
    """Convert one raw change payload into a `ChangeEvent`.

    `topic` is the scope of the feed the payload arrived on; it is only used when the row
    itself is too sparse to derive one (id-only deletes).

    Malformed payloads are dropped: returns None, logs a warning and reports an
    `EventDiagnostic` through `on_error`.
    """
    etype = EntityType(entity_type)
    try:
        return _normalize(raw, etype, topic=topic, clock=clock)
    except (ValidationError, MalformedEventError) as e:
        reason = _reason(e)
        logger.warning("event_dropped", entity_type=str(etype), reason=reason)
        if on_error is not None:
            on_error(EventDiagnostic(entity_type=etype, reason=reason, raw=raw))
        return None


def _normalize(
    raw: Any,
    entity_type: EntityType,
    *,
    topic: Topic | None,
    clock: Callable[[], float],
) -> ChangeEvent:
    if not isinstance(raw, dict):
        raise MalformedEventError(f"payload must be an object, got {type(raw).__name__}")

    change = RawChange.model_validate(raw)
    expected_table = TABLES[entity_type]
    if change.table is not None and change.table != expected_table:
        raise MalformedEventError(f"table {change.table!r} does not carry {entity_type} rows")

    kind = EventKind(change.event)
    row = change.old if kind == EventKind.DELETE else change.new
    if not row:
        raise MalformedEventError(f"{kind} payload carries no row")

    model = ROW_MODELS[entity_type]
    try:
        parsed = model.model_validate(row)
    except ValidationError:
        if kind != EventKind.DELETE:
            raise
        parsed = None

    if parsed is not None:
        try:
            event_topic = parsed.topic()
        except ValueError as e:
            raise MalformedEventError(str(e)) from e
        entity = parsed.entity()
    else:
        ident = IdOnlyRow.model_validate(row)
        if topic is None:
            raise MalformedEventError("cannot derive a topic from an id-only row")
        event_topic = topic
        entity = Entity(id=ident.id, partial=True)

    if change.commit_timestamp is not None:
        server_ts = change.commit_timestamp
    elif entity.created_at is not None:
        server_ts = entity.created_at
    else:
        server_ts = clock()

    return ChangeEvent(
        topic=event_topic,
        kind=kind,
        entity_type=entity_type,
        entity=entity,
        server_timestamp=server_ts,
    )


def _reason(e: Exception) -> str:
    if isinstance(e, ValidationError):
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        return f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))
    return str(e)
