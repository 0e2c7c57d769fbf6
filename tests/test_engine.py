from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from convo_sync.backend import MutationError
from convo_sync.config import SyncSettings
from convo_sync.db import PlatformDB
from convo_sync.engine import ConversationSync, TopicNotOpenError
from convo_sync.local import FileBlobStore, LocalPlatform
from convo_sync.models import MediaRef, Origin, SubscriptionStatus, Topic

T = Topic.conversation("alice", "bob")


def _settings(tmp_path: Path, **overrides) -> SyncSettings:
    values = {
        "db_path": str(tmp_path / "convo.sqlite"),
        "blob_dir": str(tmp_path / "blobs"),
        "backoff_initial_seconds": 0.01,
        "backoff_max_seconds": 0.02,
    }
    values.update(overrides)
    return SyncSettings(**values)


def _platform(settings: SyncSettings, cls=LocalPlatform) -> LocalPlatform:
    return cls(PlatformDB(path=settings.db_path), blobs=FileBlobStore(settings.blob_dir))


def _engine(platform: LocalPlatform, settings: SyncSettings, viewer="alice") -> ConversationSync:
    return ConversationSync(
        platform, platform, viewer_id=viewer, settings=settings, blobs=platform.blobs
    )


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.mark.anyio
async def test_open_loads_history_and_unread(tmp_path):
    settings = _settings(tmp_path)
    platform = _platform(settings)
    await platform.insert_item(T, author_id="bob", content="hey")
    await platform.insert_item(T, author_id="alice", content="hi")
    await platform.insert_item(T, author_id="bob", content="there?")

    async with _engine(platform, settings) as engine:
        view = await engine.open(T)
        await settle()

        assert [i.body for i in view.snapshot()] == ["hey", "hi", "there?"]
        assert all(i.origin == Origin.REMOTE for i in view.snapshot())
        assert view.unread().unread_count == 2
        assert view.status == SubscriptionStatus.ACTIVE
        assert [s.topic for s in engine.conversations()] == [T]


@pytest.mark.anyio
async def test_send_is_optimistic_then_confirmed_once(tmp_path):
    settings = _settings(tmp_path)
    platform = _platform(settings)
    changes = []

    async with _engine(platform, settings) as engine:
        view = await engine.open(T, on_change=changes.append)
        await settle()

        local_id = await engine.send(T, "hello")
        pending = view.snapshot()
        assert [(i.body, i.origin) for i in pending] == [("hello", Origin.LOCAL)]

        await settle()
        confirmed = view.snapshot()
        assert len(confirmed) == 1
        assert confirmed[0].origin == Origin.REMOTE
        assert confirmed[0].local_id == local_id
        assert confirmed[0].id is not None
        assert view.unread().unread_count == 0
        assert len(changes) >= 2


@pytest.mark.anyio
async def test_remote_insert_counts_unread_and_mark_read_acknowledges(tmp_path):
    settings = _settings(tmp_path)
    platform = _platform(settings)

    async with _engine(platform, settings) as engine:
        view = await engine.open(T)
        await settle()

        await platform.insert_item(T, author_id="bob", content="yo")
        await settle()
        assert view.unread().unread_count == 1
        assert view.snapshot()[-1].body == "yo"

        engine.mark_read(T)
        assert view.unread().unread_count == 0
        await engine.aggregator.wait_acks()
        assert platform.db.unread_count(viewer_id="alice", other_id="bob") == 0

        await platform.insert_item(T, author_id="bob", content="again")
        await settle()
        assert view.unread().unread_count == 1


@pytest.mark.anyio
async def test_reopen_shares_one_subscription_and_last_close_releases(tmp_path):
    settings = _settings(tmp_path)
    platform = _platform(settings)

    async with _engine(platform, settings) as engine:
        v1 = await engine.open(T)
        v2 = await engine.open(T)
        await settle()

        assert platform.hub.connects == 1
        assert engine.subscriptions.info(T).ref_count == 1

        v1.close()
        v1.close()
        await settle()
        assert v2.status == SubscriptionStatus.ACTIVE
        assert v1.status == SubscriptionStatus.CLOSED

        v2.close()
        await engine.subscriptions.wait_idle()
        assert engine.open_topics() == []
        assert platform.hub.connections(T) == []
        assert engine.snapshot(T) == ()
        assert not engine.aggregator.is_tracked(T)

        # Rows published after release are not applied anywhere.
        await platform.insert_item(T, author_id="bob", content="late")
        await settle()
        assert engine.snapshot(T) == ()


@pytest.mark.anyio
async def test_send_validation(tmp_path):
    settings = _settings(tmp_path)
    platform = _platform(settings)

    async with _engine(platform, settings) as engine:
        with pytest.raises(TopicNotOpenError):
            await engine.send(T, "hi")

        await engine.open(T)
        with pytest.raises(ValueError):
            await engine.send(T, "   ")
        with pytest.raises(ValueError):
            await engine.open(Topic.conversation("bob", "carol"))


@pytest.mark.anyio
async def test_failed_send_keeps_optimistic_item(tmp_path, monkeypatch):
    settings = _settings(tmp_path)
    platform = _platform(settings)

    async def broken_insert(*args, **kwargs):
        raise MutationError("insert", "backend unavailable")

    async with _engine(platform, settings) as engine:
        view = await engine.open(T)
        monkeypatch.setattr(platform, "insert_item", broken_insert)

        with pytest.raises(MutationError):
            await engine.send(T, "lost?")

        await settle()
        snap = view.snapshot()
        assert [(i.body, i.origin) for i in snap] == [("lost?", Origin.LOCAL)]


@pytest.mark.anyio
async def test_send_media_and_delete_remove_blob(tmp_path):
    settings = _settings(tmp_path)
    platform = _platform(settings)

    async with _engine(platform, settings) as engine:
        view = await engine.open(T)
        await settle()

        await engine.send_media(T, "Beach.PNG", b"\x89PNG")
        await settle()

        (item,) = view.snapshot()
        assert item.confirmed
        assert isinstance(item.body, MediaRef)
        assert item.body.path.startswith("alice-bob/")
        assert item.body.path.endswith(".png")
        assert await platform.blobs.download(item.body.path) == b"\x89PNG"

        assert await engine.delete(T, item.id)
        assert not await engine.delete(T, item.id)
        await settle()
        assert view.snapshot() == ()
        assert not (Path(settings.blob_dir) / item.body.path).exists()

        with pytest.raises(ValueError):
            await engine.send_media(T, "noext", b"x")
        with pytest.raises(ValueError):
            await engine.send_media(Topic.post(1), "a.png", b"x")


@pytest.mark.anyio
async def test_clear_history_deletes_messages_and_media(tmp_path):
    settings = _settings(tmp_path)
    platform = _platform(settings)

    async with _engine(platform, settings) as engine:
        view = await engine.open(T)
        await settle()
        await engine.send(T, "one")
        await engine.send_media(T, "clip.mp4", b"video")
        await platform.insert_item(T, author_id="bob", content="two")
        await settle()
        assert len(view.snapshot()) == 3
        media_path = next(i.body.path for i in view.snapshot() if isinstance(i.body, MediaRef))
        assert MediaRef(media_path).is_video

        assert await engine.clear_history(T) == 3
        await settle()

        assert view.snapshot() == ()
        assert not (Path(settings.blob_dir) / media_path).exists()
        with pytest.raises(ValueError):
            await engine.clear_history(Topic.post(1))


@pytest.mark.anyio
async def test_history_race_buffers_early_events(tmp_path):
    class RacyPlatform(LocalPlatform):
        async def fetch_items(self, topic):
            rows = await super().fetch_items(topic)
            await settle()
            await self.insert_item(topic, author_id="bob", content="raced")
            await settle()
            return rows

    settings = _settings(tmp_path)
    platform = _platform(settings, cls=RacyPlatform)
    await platform.insert_item(T, author_id="alice", content="before")

    async with _engine(platform, settings) as engine:
        view = await engine.open(T)

        assert [i.body for i in view.snapshot()] == ["before", "raced"]
        assert view.unread().unread_count == 1


@pytest.mark.anyio
async def test_feed_drop_reconnects(tmp_path):
    settings = _settings(tmp_path)
    platform = _platform(settings)

    async with _engine(platform, settings) as engine:
        view = await engine.open(T)
        await settle()

        platform.hub.connections(T)[0].disconnect()
        await asyncio.sleep(0.1)

        assert platform.hub.connects == 2
        assert view.status == SubscriptionStatus.ACTIVE

        await platform.insert_item(T, author_id="bob", content="after reconnect")
        await settle()
        assert view.snapshot()[-1].body == "after reconnect"


@pytest.mark.anyio
async def test_exhausted_reconnect_closes_only_that_topic(tmp_path):
    settings = _settings(tmp_path, reconnect_max_attempts=1)
    platform = _platform(settings)
    statuses = []
    other = Topic.conversation("alice", "carol")

    async with _engine(platform, settings) as engine:
        view = await engine.open(T, on_change=lambda v: statuses.append(v.status))
        other_view = await engine.open(other)
        await settle()

        platform.hub.online = False
        platform.hub.connections(T)[0].disconnect()
        await asyncio.sleep(0.2)

        assert view.status == SubscriptionStatus.CLOSED
        assert SubscriptionStatus.CLOSED in statuses
        assert other_view.status == SubscriptionStatus.ACTIVE


@pytest.mark.anyio
async def test_post_topic_tracks_comments_and_likes(tmp_path):
    settings = _settings(tmp_path)
    platform = _platform(settings)
    post = platform.db.post_create(user_id="bob", media_url="bob/1.jpg")
    await platform.like(post["id"], "carol")
    topic = Topic.post(post["id"])

    async with _engine(platform, settings) as engine:
        view = await engine.open(topic)
        await settle()
        assert view.likes().count == 1
        assert not view.likes().liked_by_viewer

        await platform.like(post["id"], "alice")
        await engine.send(topic, "great shot")
        await settle()

        assert view.likes().count == 2
        assert view.likes().liked_by_viewer
        assert [i.body for i in view.snapshot()] == ["great shot"]
        assert view.snapshot()[0].confirmed

        await platform.unlike(post["id"], "carol")
        await settle()
        assert engine.likes(topic).count == 1


@pytest.mark.anyio
async def test_repeat_send_in_one_bucket_is_persisted_once(tmp_path):
    settings = _settings(tmp_path, local_dedupe_seconds=3600.0)
    platform = _platform(settings)

    async with _engine(platform, settings) as engine:
        view = await engine.open(T)
        await settle()

        first = await engine.send(T, "ok")
        second = await engine.send(T, "ok")
        assert first == second
        assert len(view.snapshot()) == 1

        await settle()
        assert len(platform.db.messages_between(user_a="alice", user_b="bob")) == 1
        (item,) = view.snapshot()
        assert item.confirmed
        assert item.local_id == first

        # Once confirmed, the same text is a new message again.
        await engine.send(T, "ok")
        await settle()
        assert len(view.snapshot()) == 2
        assert len(platform.db.messages_between(user_a="alice", user_b="bob")) == 2


@pytest.mark.anyio
async def test_reopen_after_exhausted_reconnect_subscribes_again(tmp_path):
    settings = _settings(tmp_path, reconnect_max_attempts=1)
    platform = _platform(settings)

    async with _engine(platform, settings) as engine:
        view = await engine.open(T)
        await settle()

        platform.hub.online = False
        platform.hub.connections(T)[0].disconnect()
        await asyncio.sleep(0.2)
        assert view.status == SubscriptionStatus.CLOSED

        # Stored while nobody was listening.
        await platform.insert_item(T, author_id="bob", content="missed")
        platform.hub.online = True

        reopened = await engine.open(T)
        await settle()

        assert reopened.status == SubscriptionStatus.ACTIVE
        assert view.status == SubscriptionStatus.ACTIVE
        assert engine.subscriptions.info(T).ref_count == 1
        assert [i.body for i in view.snapshot()] == ["missed"]
        assert view.unread().unread_count == 1

        await platform.insert_item(T, author_id="bob", content="live again")
        await settle()
        assert [i.body for i in reopened.snapshot()] == ["missed", "live again"]
        assert view.unread().unread_count == 2
