import json

import fakeredis
import pytest
import pytest_asyncio

from backend import RoomDirectory, UserStore
from relay.connection import Connection
from relay.errors import Unauthorized
from relay.identity import UserIdentity
from relay.registry import RoomRegistry


class FakeWebSocket:
    """Collects every payload the writer task sends."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_text(self, text: str):
        if self.fail:
            raise RuntimeError("socket is closed")
        self.sent.append(json.loads(text))

    def messages(self):
        return [p for p in self.sent if p["type"] == "message"]


class StubVerifier:
    """verify() backed by a fixed token -> identity table."""

    def __init__(self, identities):
        self.identities = identities

    async def verify(self, credential):
        identity = self.identities.get(credential)
        if identity is None:
            raise Unauthorized()
        return identity


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def directory(fake_redis):
    return RoomDirectory(fake_redis)


@pytest.fixture
def users(fake_redis):
    return UserStore(fake_redis)


@pytest.fixture
def verifier():
    return StubVerifier({
        "alice-token": UserIdentity(user_id="u-alice", username="alice"),
        "bob-token": UserIdentity(user_id="u-bob", username="bob"),
        "carol-token": UserIdentity(user_id="u-carol", username="carol"),
    })


@pytest.fixture
def registry(verifier):
    """Registry without a directory: any room id can be joined."""
    return RoomRegistry(verifier)


@pytest_asyncio.fixture
async def connect():
    """Factory for started connections; writers are stopped after the test."""
    created = []

    def _connect(fail: bool = False) -> Connection:
        connection = Connection(FakeWebSocket(fail=fail))
        connection.start()
        created.append(connection)
        return connection

    yield _connect
    for connection in created:
        await connection.close()
