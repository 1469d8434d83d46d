import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from relay.expiry import ExpirySweeper, compute_deadline, is_expired, validate_expiry_time, visible_last_message
from schemas.events import ChatMessage
from schemas.rooms import LastMessage, Room

SENT_AT = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_room(ttl=60, last_message=None):
    return Room(id="r1", participants=["alice", "bob"], message_expiry_time=ttl, last_message=last_message)


def test_deadline_is_sent_at_plus_room_expiry():
    assert compute_deadline(make_room(ttl=60), SENT_AT) == SENT_AT + timedelta(seconds=60)
    assert compute_deadline(15, SENT_AT) == SENT_AT + timedelta(seconds=15)


def test_naive_timestamps_are_treated_as_utc():
    naive = SENT_AT.replace(tzinfo=None)
    assert compute_deadline(10, naive) == SENT_AT + timedelta(seconds=10)


def test_message_is_live_until_its_deadline():
    message = LastMessage(text="hi", sender="alice", timestamp=SENT_AT)

    assert not is_expired(message, now=SENT_AT + timedelta(seconds=59), ttl=60)
    assert is_expired(message, now=SENT_AT + timedelta(seconds=60), ttl=60)
    assert is_expired(message, now=SENT_AT + timedelta(seconds=61), ttl=60)


def test_zero_expiry_is_expired_immediately():
    message = LastMessage(text="gone", sender="alice", timestamp=SENT_AT)

    assert is_expired(message, now=SENT_AT, ttl=0)


def test_stamped_deadline_wins_over_ttl():
    message = ChatMessage(text="hi", sender="alice", timestamp=SENT_AT, expires_at=SENT_AT + timedelta(seconds=5))

    assert is_expired(message, now=SENT_AT + timedelta(seconds=5), ttl=600)


def test_default_ttl_applies_without_room():
    message = LastMessage(text="hi", sender="alice", timestamp=SENT_AT)

    assert not is_expired(message, now=SENT_AT + timedelta(seconds=30))
    assert is_expired(message, now=SENT_AT + timedelta(seconds=60))


@pytest.mark.parametrize("value", [-1, 1.5, "60", None, True])
def test_invalid_expiry_times_are_rejected(value):
    with pytest.raises(ValueError):
        validate_expiry_time(value)


def test_visible_last_message_redacts_expired():
    last = LastMessage(text="hi", sender="alice", timestamp=SENT_AT)
    room = make_room(ttl=60, last_message=last)

    assert visible_last_message(room, now=SENT_AT + timedelta(seconds=10)) == last
    assert visible_last_message(room, now=SENT_AT + timedelta(seconds=60)) is None
    assert visible_last_message(make_room(), now=SENT_AT) is None


@pytest.mark.asyncio
async def test_sweep_clears_only_expired_summaries(directory):
    short, _ = directory.create_room(["alice", "bob"], message_expiry_time=10)
    long, _ = directory.create_room(["alice", "carol"], message_expiry_time=3600)
    directory.update_last_message(short.id, ChatMessage(text="soon gone", sender="alice", timestamp=SENT_AT))
    directory.update_last_message(long.id, ChatMessage(text="still here", sender="carol", timestamp=SENT_AT))

    sweeper = ExpirySweeper(directory, interval=60)
    cleared = await sweeper.sweep_once(now=SENT_AT + timedelta(seconds=10))

    assert cleared == [short.id]
    assert directory.get_room(short.id).last_message is None
    assert directory.get_room(long.id).last_message.text == "still here"

    assert await sweeper.sweep_once(now=SENT_AT + timedelta(seconds=20)) == []


@pytest.mark.asyncio
async def test_sweeper_start_and_stop(directory):
    sweeper = ExpirySweeper(directory, interval=0.01)

    sweeper.start()
    assert sweeper.running
    await asyncio.sleep(0.05)
    await sweeper.stop()

    assert not sweeper.running
