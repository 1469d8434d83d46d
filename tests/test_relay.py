from datetime import timedelta

import pytest

from relay.broadcast import MessageRelay
from relay.errors import DirectoryUnavailable, InvalidMessage, NotAMember
from relay.registry import RoomRegistry


class BrokenDirectory:
    def __init__(self):
        self.calls = 0

    def update_last_message(self, room_id, message):
        self.calls += 1
        raise DirectoryUnavailable("connection refused")


@pytest.mark.asyncio
async def test_message_reaches_other_subscriber_and_updates_directory(verifier, directory, connect):
    registry = RoomRegistry(verifier, directory)
    relay = MessageRelay(registry, directory)
    room, _ = directory.create_room(["alice", "bob"])
    a, b = connect(), connect()

    await registry.join(room.id, "alice-token", a)
    assert registry.subscriber_count(room.id) == 1
    await registry.join(room.id, "bob-token", b)
    assert registry.subscriber_count(room.id) == 2

    ack = await relay.send(room.id, a, {"text": "hi", "sender": "alice"})
    await relay.drain()
    await b.flush()

    received = b.websocket.messages()
    assert len(received) == 1
    assert received[0]["room_id"] == room.id
    assert received[0]["message"]["text"] == "hi"
    assert received[0]["message"]["sender"] == "alice"
    assert ack.delivered == 2

    stored = directory.get_room(room.id)
    assert stored.last_message.text == "hi"
    assert stored.last_message.sender == "alice"


@pytest.mark.asyncio
async def test_send_without_join_is_rejected(registry, connect):
    relay = MessageRelay(registry)
    a, b, c = connect(), connect(), connect()
    await registry.join("r1", "alice-token", a)
    await registry.join("r1", "bob-token", b)

    with pytest.raises(NotAMember):
        await relay.send("r1", c, {"text": "spoof", "sender": "carol"})

    for conn in (a, b, c):
        await conn.flush()
        assert conn.websocket.sent == []


@pytest.mark.asyncio
async def test_loose_mode_accepts_non_member(registry, connect):
    relay = MessageRelay(registry, strict=False)
    a, c = connect(), connect()
    await registry.join("r1", "alice-token", a)

    ack = await relay.send("r1", c, {"text": "hello", "sender": "carol"})
    await a.flush()

    assert ack.delivered == 1
    assert a.websocket.messages()[0]["message"]["sender"] == "carol"


@pytest.mark.asyncio
async def test_sender_handle_comes_from_subscription(registry, connect):
    relay = MessageRelay(registry)
    a, b = connect(), connect()
    await registry.join("r1", "alice-token", a)
    await registry.join("r1", "bob-token", b)

    await relay.send("r1", a, {"text": "it's bob", "sender": "bob"})
    await b.flush()

    assert b.websocket.messages()[0]["message"]["sender"] == "alice"


@pytest.mark.asyncio
async def test_messages_from_one_sender_arrive_in_order(registry, connect):
    relay = MessageRelay(registry)
    a, b = connect(), connect()
    await registry.join("r1", "alice-token", a)
    await registry.join("r1", "bob-token", b)

    for i in range(25):
        await relay.send("r1", a, {"text": f"m{i}"})
    await b.flush()

    assert [m["message"]["text"] for m in b.websocket.messages()] == [f"m{i}" for i in range(25)]


@pytest.mark.asyncio
async def test_sends_from_two_senders_keep_relay_order(registry, connect):
    relay = MessageRelay(registry)
    a, b, c = connect(), connect(), connect()
    for conn, token in ((a, "alice-token"), (b, "bob-token"), (c, "carol-token")):
        await registry.join("r1", token, conn)

    await relay.send("r1", a, {"text": "1"})
    await relay.send("r1", b, {"text": "2"})
    await relay.send("r1", a, {"text": "3"})
    for conn in (a, b, c):
        await conn.flush()

    orders = [[m["message"]["text"] for m in conn.websocket.messages()] for conn in (a, b, c)]
    assert orders == [["1", "2", "3"]] * 3


@pytest.mark.asyncio
async def test_echo_to_sender_can_be_disabled(registry, connect):
    relay = MessageRelay(registry, echo_to_sender=False)
    a, b = connect(), connect()
    await registry.join("r1", "alice-token", a)
    await registry.join("r1", "bob-token", b)

    ack = await relay.send("r1", a, {"text": "hi"})
    await a.flush()
    await b.flush()

    assert ack.delivered == 1
    assert a.websocket.messages() == []
    assert len(b.websocket.messages()) == 1


@pytest.mark.asyncio
async def test_broken_subscriber_does_not_affect_others(registry, connect):
    relay = MessageRelay(registry)
    a, broken, b = connect(), connect(fail=True), connect()
    for conn, token in ((a, "alice-token"), (broken, "carol-token"), (b, "bob-token")):
        await registry.join("r1", token, conn)

    await relay.send("r1", a, {"text": "first"})
    await relay.send("r1", a, {"text": "second"})
    await b.flush()
    await broken.flush()

    assert [m["message"]["text"] for m in b.websocket.messages()] == ["first", "second"]
    assert broken.closed
    assert broken.deliver({"type": "message"}) is False


@pytest.mark.asyncio
async def test_disconnected_connection_receives_nothing_more(registry, connect):
    relay = MessageRelay(registry)
    a, b = connect(), connect()
    await registry.join("r1", "alice-token", a)
    await registry.join("r2", "alice-token", a)
    await registry.join("r1", "bob-token", b)
    await registry.join("r2", "bob-token", b)

    await registry.disconnect(b)
    await relay.send("r1", a, {"text": "anyone?"})
    await relay.send("r2", a, {"text": "hello?"})
    await b.flush()

    assert b.websocket.sent == []
    assert registry.subscriber_count("r1") == 1
    assert registry.subscriber_count("r2") == 1


@pytest.mark.asyncio
async def test_expiry_deadline_uses_room_ttl(verifier, directory, connect):
    registry = RoomRegistry(verifier, directory)
    relay = MessageRelay(registry, directory)
    room, _ = directory.create_room(["alice", "bob"], message_expiry_time=5)
    a = connect()
    await registry.join(room.id, "alice-token", a)

    ack = await relay.send(room.id, a, {"text": "short lived"})
    await relay.drain()

    assert ack.message.expires_at - ack.message.timestamp == timedelta(seconds=5)


@pytest.mark.asyncio
@pytest.mark.parametrize("message", [{"text": ""}, {"text": "   "}, {"sender": "alice"}, {"text": 42}, "hi"])
async def test_invalid_messages_are_rejected(registry, connect, message):
    relay = MessageRelay(registry)
    a = connect()
    await registry.join("r1", "alice-token", a)

    with pytest.raises(InvalidMessage):
        await relay.send("r1", a, message)


@pytest.mark.asyncio
async def test_persistence_failure_warns_sender_but_keeps_delivery(registry, connect):
    directory = BrokenDirectory()
    relay = MessageRelay(registry, directory)
    a, b = connect(), connect()
    await registry.join("r1", "alice-token", a)
    await registry.join("r1", "bob-token", b)

    ack = await relay.send("r1", a, {"text": "still delivered"})
    await relay.drain()
    await a.flush()
    await b.flush()

    assert ack.delivered == 2
    assert directory.calls == 1
    assert [m["message"]["text"] for m in b.websocket.messages()] == ["still delivered"]
    warnings = [p for p in a.websocket.sent if p["type"] == "warning"]
    assert len(warnings) == 1
    assert warnings[0]["code"] == "directory_unavailable"
    assert warnings[0]["room_id"] == "r1"
    assert not [p for p in b.websocket.sent if p["type"] == "warning"]
