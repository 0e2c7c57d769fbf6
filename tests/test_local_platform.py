from __future__ import annotations

import asyncio

import pytest

from convo_sync.backend import FeedDisconnectedError, MutationError
from convo_sync.db import NotFoundError, PlatformDB
from convo_sync.local import FileBlobStore, LocalPlatform
from convo_sync.models import EntityType, EventKind, Topic
from convo_sync.normalizer import normalize

T = Topic.conversation("alice", "bob")


def _platform(tmp_path) -> LocalPlatform:
    return LocalPlatform(
        PlatformDB(path=str(tmp_path / "convo.sqlite")),
        blobs=FileBlobStore(tmp_path / "blobs"),
    )


async def _next(conn):
    return await asyncio.wait_for(conn.__anext__(), timeout=1.0)


@pytest.mark.anyio
async def test_insert_publishes_wire_payload_to_matching_feeds(tmp_path):
    platform = _platform(tmp_path)
    conn = await platform.connect(T)
    other = await platform.connect(Topic.conversation("alice", "carol"))

    row = await platform.insert_item(T, author_id="alice", content="hi")

    entity_type, payload = await _next(conn)
    assert entity_type == EntityType.MESSAGE
    assert payload["eventType"] == "INSERT"
    assert payload["table"] == "messages"
    assert payload["schema"] == "public"
    assert payload["new"] == row
    assert other._queue.empty()

    event = normalize(payload, entity_type)
    assert event is not None
    assert event.topic == T
    assert event.entity.id == str(row["id"])

    await conn.aclose()
    await other.aclose()
    assert platform.hub.connections(T) == []


@pytest.mark.anyio
async def test_delete_and_history_publish_deletes(tmp_path):
    platform = _platform(tmp_path)
    r1 = await platform.insert_item(T, author_id="alice", content="one")
    await platform.insert_item(T, author_id="bob", content="two")
    conn = await platform.connect(T)

    assert await platform.delete_item(T, str(r1["id"])) == r1
    assert await platform.delete_item(T, str(r1["id"])) is None
    assert await platform.delete_history(T) == 1

    kinds = []
    for _ in range(2):
        entity_type, payload = await _next(conn)
        event = normalize(payload, entity_type)
        kinds.append((event.kind, event.entity.body))
    assert kinds == [(EventKind.DELETE, "one"), (EventKind.DELETE, "two")]
    assert await platform.fetch_items(T) == []
    await conn.aclose()


@pytest.mark.anyio
async def test_delete_item_ignores_messages_of_other_conversations(tmp_path):
    platform = _platform(tmp_path)
    row = await platform.insert_item(
        Topic.conversation("alice", "carol"), author_id="alice", content="private"
    )
    assert await platform.delete_item(T, str(row["id"])) is None
    assert await platform.delete_item(T, "999") is None


@pytest.mark.anyio
async def test_unread_summary_and_mark_read(tmp_path):
    platform = _platform(tmp_path)
    await platform.insert_item(T, author_id="bob", content="1")
    last = await platform.insert_item(T, author_id="bob", content="2")

    summary = await platform.unread_summary(T, "alice")
    assert summary.unread_count == 2
    assert summary.last_activity_at == last["created_at"]

    assert await platform.mark_read(T, "alice") == 2
    assert (await platform.unread_summary(T, "alice")).unread_count == 0
    assert await platform.mark_read(Topic.post(1), "alice") == 0


@pytest.mark.anyio
async def test_insert_failures_become_mutation_errors(tmp_path):
    platform = _platform(tmp_path)
    with pytest.raises(MutationError) as exc:
        await platform.insert_item(T, author_id="mallory", content="hi")
    assert exc.value.operation == "insert"

    with pytest.raises(MutationError):
        await platform.insert_item(Topic.post(404), author_id="alice", content="hi")


@pytest.mark.anyio
async def test_post_comments_and_likes(tmp_path):
    platform = _platform(tmp_path)
    post = platform.db.post_create(user_id="alice", media_url="alice/1.jpg")
    topic = Topic.post(post["id"])
    conn = await platform.connect(topic)

    comment = await platform.insert_item(topic, author_id="bob", content="nice")
    await platform.like(post["id"], "bob")
    await platform.like(post["id"], "bob")
    await platform.unlike(post["id"], "bob")

    received = []
    for _ in range(3):
        entity_type, payload = await _next(conn)
        received.append((entity_type, payload["eventType"]))
    assert received == [
        (EntityType.COMMENT, "INSERT"),
        (EntityType.LIKE, "INSERT"),
        (EntityType.LIKE, "DELETE"),
    ]
    assert conn._queue.empty()
    assert await platform.fetch_items(topic) == [comment]
    assert await platform.fetch_likes(topic) == []
    assert await platform.fetch_likes(T) == []
    await conn.aclose()


@pytest.mark.anyio
async def test_offline_hub_refuses_and_disconnect_raises(tmp_path):
    platform = _platform(tmp_path)
    platform.hub.online = False
    with pytest.raises(FeedDisconnectedError):
        await platform.connect(T)

    platform.hub.online = True
    conn = await platform.connect(T)
    conn.disconnect()
    with pytest.raises(FeedDisconnectedError):
        await _next(conn)
    assert platform.hub.connections(T) == []


@pytest.mark.anyio
async def test_file_blob_store(tmp_path):
    blobs = FileBlobStore(tmp_path / "blobs")

    path = await blobs.upload("alice-bob/1.png", b"\x89PNG")
    assert await blobs.download(path) == b"\x89PNG"
    assert await blobs.remove([path, "alice-bob/missing.png"]) == 1

    with pytest.raises(NotFoundError):
        await blobs.download(path)
    with pytest.raises(ValueError):
        await blobs.upload("../escape.png", b"x")
    with pytest.raises(ValueError):
        await blobs.upload("/abs.png", b"x")
