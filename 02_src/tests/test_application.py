"""Tests for Application."""

import pytest

from chat_core.app import Application
from chat_core.identity import JWTIdentityVerifier
from chat_core.models import Topic

from conftest import TEST_SECRET, FakeTransport


def _app() -> Application:
    return Application(db_path=":memory:", verifier=JWTIdentityVerifier(secret=TEST_SECRET))


class TestApplicationStart:
    """Tests for Application.start()."""

    @pytest.mark.asyncio
    async def test_start_initializes_components(self):
        app = _app()
        await app.start()
        try:
            assert app._storage is not None
            assert app._event_bus is not None
            assert app._tracker is not None
            assert app._gateway is not None
            assert app._users is not None
        finally:
            await app.stop()

    @pytest.mark.asyncio
    async def test_tracker_and_gateway_subscribed(self):
        app = _app()
        await app.start()
        try:
            for topic in Topic:
                assert len(app._event_bus._subscribers[topic]) == 2
        finally:
            await app.stop()

    @pytest.mark.asyncio
    async def test_missing_secret_fails_fast(self, monkeypatch):
        monkeypatch.delenv("JWT_SECRET", raising=False)
        app = Application(db_path=":memory:")
        with pytest.raises(ValueError):
            await app.start()

    def test_properties_before_start(self):
        app = _app()
        with pytest.raises(RuntimeError):
            app.storage
        with pytest.raises(RuntimeError):
            app.gateway
        with pytest.raises(RuntimeError):
            app.users


class TestApplicationLifecycle:
    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self):
        app = _app()
        await app.start()
        event_bus = app._event_bus
        await app.stop()

        for topic in Topic:
            assert event_bus._subscribers[topic] == []

    @pytest.mark.asyncio
    async def test_reset_clears_data(self):
        app = _app()
        await app.start()
        try:
            user = await app.users.upsert_user("alice@example.edu", "Alice")
            transport = FakeTransport()
            connection = await app.gateway.connect(transport, app.verifier.issue(user))

            await app.reset()
            assert await app.storage.get_user(user.id) is None
            assert len(app.gateway.connections) == 0
            assert not connection.is_authenticated
            assert transport.close_code is not None
        finally:
            await app.stop()

    @pytest.mark.asyncio
    async def test_end_to_end_room_message(self):
        app = _app()
        await app.start()
        try:
            from conftest import FakeTransport

            alice = await app.users.upsert_user("alice@example.edu", "Alice")
            bob = await app.users.upsert_user("bob@example.edu", "Bob")
            gateway = app.gateway

            alice_conn = await gateway.connect(FakeTransport(), app.verifier.issue(alice))
            bob_transport = FakeTransport()
            bob_conn = await gateway.connect(bob_transport, app.verifier.issue(bob))

            created = await gateway.dispatch(alice_conn, "room:create", {"name": "Study"})
            room_id = created["room"]["id"]
            await gateway.dispatch(bob_conn, "room:join", {"roomId": room_id})
            await gateway.dispatch(
                alice_conn, "message:send:room", {"roomId": room_id, "content": "hello"}
            )

            assert bob_transport.events("message:new")[0]["data"]["message"]["content"] == "hello"

            traced = await app.storage.get_trace_events(event_types=["bus_message_published"])
            assert any(e.data["event"] == "message:new" for e in traced)
        finally:
            await app.stop()
