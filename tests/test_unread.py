from __future__ import annotations

import asyncio

import pytest

from convo_sync.models import ChangeEvent, Entity, EntityType, EventKind, Topic
from convo_sync.unread import UnreadAggregator

T = Topic.conversation("A", "B")
POST = Topic.post(9)


def event(id_, author, *, kind=EventKind.INSERT, topic=T, entity_type=EntityType.MESSAGE, ts=None):
    return ChangeEvent(
        topic=topic,
        kind=kind,
        entity_type=entity_type,
        entity=Entity(id=str(id_), author_id=author, body="x", created_at=ts),
        server_timestamp=float(id_) if ts is None else ts,
    )


class FakeAcknowledger:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[Topic, str]] = []

    async def mark_read(self, topic, viewer_id):
        self.calls.append((topic, viewer_id))
        if self.fail:
            raise ConnectionError("backend down")
        return 1


def test_insert_from_other_author_counts_and_updates_activity():
    agg = UnreadAggregator("A")
    agg.track(T)

    agg.on_event(event(5, "B", ts=50.0))

    state = agg.state_of(T)
    assert state.unread_count == 1
    assert state.last_activity_at == 50.0


def test_own_inserts_update_activity_only():
    agg = UnreadAggregator("A")
    agg.track(T)

    agg.on_event(event(1, "A", ts=10.0))

    assert agg.state_of(T).unread_count == 0
    assert agg.state_of(T).last_activity_at == 10.0


def test_untracked_topics_are_ignored():
    agg = UnreadAggregator("A")
    agg.on_event(event(1, "B"))

    assert not agg.is_tracked(T)
    assert agg.state_of(T).unread_count == 0
    assert agg.conversations() == []


def test_mark_read_then_new_insert_counts_one():
    agg = UnreadAggregator("A")
    agg.track(T, unread_count=3)

    agg.mark_read(T)
    agg.on_event(event(7, "B"))

    assert agg.state_of(T).unread_count == 1


def test_duplicate_insert_counts_once_and_delete_decrements():
    agg = UnreadAggregator("A")
    agg.track(T)
    agg.on_event(event(1, "B"))
    agg.on_event(event(1, "B"))
    agg.on_event(event(2, "B"))
    assert agg.state_of(T).unread_count == 2

    agg.on_event(event(1, None, kind=EventKind.DELETE))
    agg.on_event(event(42, None, kind=EventKind.DELETE))
    assert agg.state_of(T).unread_count == 1


def test_track_is_idempotent_and_validates():
    agg = UnreadAggregator("A")
    agg.track(T, unread_count=2, last_activity_at=5.0)
    agg.track(T, unread_count=0)
    assert agg.state_of(T).unread_count == 2

    with pytest.raises(ValueError):
        agg.track(Topic.conversation("A", "C"), unread_count=-1)
    with pytest.raises(ValueError):
        UnreadAggregator("")


def test_conversations_sorted_by_last_activity():
    agg = UnreadAggregator("A")
    t_c = Topic.conversation("A", "C")
    t_d = Topic.conversation("A", "D")
    agg.track(T, last_activity_at=10.0)
    agg.track(t_c, last_activity_at=30.0)
    agg.track(t_d)
    agg.track(POST, last_activity_at=99.0)

    agg.on_event(event(20, "B", ts=40.0))

    assert [s.topic for s in agg.conversations()] == [T, t_c, t_d]


def test_likes_are_tallied_per_post():
    agg = UnreadAggregator("A")
    agg.track(POST, likes={"1": "B"})

    agg.on_event(event(2, "A", topic=POST, entity_type=EntityType.LIKE))
    agg.on_event(event(3, "C", topic=POST, entity_type=EntityType.LIKE))
    agg.on_event(event(3, None, kind=EventKind.DELETE, topic=POST, entity_type=EntityType.LIKE))

    likes = agg.likes_of(POST)
    assert likes.count == 2
    assert likes.liked_by_viewer
    assert agg.state_of(POST).unread_count == 0


def test_comments_count_as_unread_on_post_topics():
    agg = UnreadAggregator("A")
    agg.track(POST)
    agg.on_event(event(1, "B", topic=POST, entity_type=EntityType.COMMENT))
    assert agg.state_of(POST).unread_count == 1


@pytest.mark.anyio
async def test_mark_read_acknowledges_in_background():
    ack = FakeAcknowledger()
    agg = UnreadAggregator("A", acknowledger=ack)
    agg.track(T, unread_count=2)

    agg.mark_read(T)
    assert agg.state_of(T).unread_count == 0

    await agg.wait_acks()
    assert ack.calls == [(T, "A")]


@pytest.mark.anyio
async def test_failed_acknowledgement_keeps_local_zero():
    ack = FakeAcknowledger(fail=True)
    agg = UnreadAggregator("A", acknowledger=ack)
    agg.track(T, unread_count=2)

    agg.mark_read(T)
    await agg.wait_acks()
    await asyncio.sleep(0)

    assert ack.calls == [(T, "A")]
    assert agg.state_of(T).unread_count == 0


def test_mark_read_outside_event_loop_skips_ack():
    ack = FakeAcknowledger()
    agg = UnreadAggregator("A", acknowledger=ack)
    agg.track(T, unread_count=1)

    agg.mark_read(T)

    assert agg.state_of(T).unread_count == 0
    assert ack.calls == []
