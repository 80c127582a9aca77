"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

TEST_SECRET = "test-secret-with-enough-length-for-hs256"


@pytest_asyncio.fixture
async def storage():
    """Create in-memory storage for testing."""
    from chat_core.storage import Storage

    st = Storage(":memory:")
    await st.init()
    yield st
    await st.close()


@pytest.fixture
def event_bus(storage):
    """Create EventBus with storage."""
    from chat_core.event_bus import EventBus

    return EventBus(storage)


@pytest.fixture
def tracker(storage, event_bus):
    """Create Tracker with storage and event bus."""
    from chat_core.tracker import Tracker

    return Tracker(event_bus=event_bus, storage=storage)


@pytest.fixture
def verifier():
    """JWT verifier with a fixed secret."""
    from chat_core.identity import JWTIdentityVerifier

    return JWTIdentityVerifier(secret=TEST_SECRET)


@pytest.fixture
def presence(event_bus, storage):
    from chat_core.presence import PresenceTracker

    return PresenceTracker(event_bus, storage)


@pytest.fixture
def conversations(storage):
    from chat_core.state import ConversationService

    return ConversationService(storage)


@pytest.fixture
def rooms(storage):
    from chat_core.state import RoomService

    return RoomService(storage)


@pytest.fixture
def typing_registry():
    from chat_core.state import TypingRegistry

    return TypingRegistry()


@pytest.fixture
def pipeline(storage, event_bus, conversations, rooms):
    from chat_core.messaging import MessagePipeline

    return MessagePipeline(storage, event_bus, conversations, rooms)


@pytest_asyncio.fixture
async def gateway(
    storage,
    event_bus,
    tracker,
    verifier,
    presence,
    conversations,
    rooms,
    typing_registry,
    pipeline,
):
    """Started Gateway wired to in-memory components."""
    from chat_core.gateway import Gateway

    gw = Gateway(
        storage=storage,
        event_bus=event_bus,
        tracker=tracker,
        verifier=verifier,
        presence=presence,
        conversations=conversations,
        rooms=rooms,
        typing=typing_registry,
        pipeline=pipeline,
    )
    await gw.start()
    yield gw
    await gw.stop()


class FakeTransport:
    """Records frames instead of writing to a socket."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail
        self.close_code: int | None = None

    async def send_json(self, data) -> None:
        if self.fail:
            raise ConnectionResetError("socket closed")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        if self.fail:
            raise ConnectionResetError("socket closed")
        self.close_code = code

    def events(self, name: str | None = None) -> list[dict]:
        """Pushed frames, optionally filtered by event name."""
        return [f for f in self.sent if name is None or f["event"] == name]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def transport_factory():
    return FakeTransport


@pytest.fixture
def make_user(storage):
    """Factory saving users straight into storage."""
    from chat_core.models import User

    async def _make(user_id: str, name: str | None = None) -> User:
        name = name or user_id.capitalize()
        user = User(
            id=user_id,
            email=f"{user_id}@example.edu",
            name=name,
            handle=user_id,
        )
        await storage.save_user(user)
        return user

    return _make


@pytest_asyncio.fixture
async def alice(make_user):
    return await make_user("alice")


@pytest_asyncio.fixture
async def bob(make_user):
    return await make_user("bob")


@pytest_asyncio.fixture
async def carol(make_user):
    return await make_user("carol")


@pytest.fixture
def connect(gateway, verifier):
    """Open an authenticated gateway connection for a user."""

    async def _connect(user, transport: FakeTransport | None = None):
        transport = transport or FakeTransport()
        connection = await gateway.connect(transport, verifier.issue(user))
        return connection, transport

    return _connect
