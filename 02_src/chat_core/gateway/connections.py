"""Live connections and their channel subscriptions."""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Protocol

from ..logging_config import get_logger
from ..models import User
from .protocol import REPLY_EVENT, OutboundFrame

logger = get_logger(__name__)


class IConnectionTransport(Protocol):
    """Anything that can push a JSON frame to one client."""

    async def send_json(self, data: Any) -> None:
        ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        ...


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """One client socket bound (after authentication) to a user."""

    transport: IConnectionTransport
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: ConnectionState = ConnectionState.UNAUTHENTICATED
    user_id: str | None = None
    user_name: str | None = None
    channels: set[str] = field(default_factory=set)

    @property
    def is_authenticated(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED

    def authenticate(self, user: User) -> None:
        self.user_id = user.id
        self.user_name = user.name
        self.state = ConnectionState.AUTHENTICATED

    def close(self) -> None:
        self.state = ConnectionState.CLOSED

    async def push(self, event: str, data: dict) -> None:
        await self.transport.send_json(OutboundFrame(event=event, data=data).dump())

    async def reply(self, request_id: str | None, data: dict) -> None:
        await self.transport.send_json(
            OutboundFrame(event=REPLY_EVENT, data=data, request_id=request_id).dump()
        )


class ConnectionTable:
    """Channel id -> subscribed connections, owned by the gateway."""

    def __init__(self):
        self._connections: dict[str, Connection] = {}
        self._channels: dict[str, set[str]] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def add(self, connection: Connection) -> None:
        self._connections[connection.id] = connection

    def remove(self, connection: Connection) -> None:
        for channel in list(connection.channels):
            self.unsubscribe(connection, channel)
        self._connections.pop(connection.id, None)

    def clear(self) -> list[Connection]:
        """Drop every connection and subscription. Returns the dropped connections."""
        connections = list(self._connections.values())
        self._connections.clear()
        self._channels.clear()
        for connection in connections:
            connection.channels.clear()
        return connections

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def subscribe(self, connection: Connection, channel: str) -> None:
        self._channels.setdefault(channel, set()).add(connection.id)
        connection.channels.add(channel)

    def unsubscribe(self, connection: Connection, channel: str) -> None:
        members = self._channels.get(channel)
        if members is not None:
            members.discard(connection.id)
            if not members:
                del self._channels[channel]
        connection.channels.discard(channel)

    def is_subscribed(self, connection: Connection, channel: str) -> bool:
        return connection.id in self._channels.get(channel, ())

    def subscribers(self, channels: Iterable[str]) -> list[Connection]:
        """Connections subscribed to any of the channels, each listed once."""
        seen: set[str] = set()
        result = []
        for channel in channels:
            for connection_id in sorted(self._channels.get(channel, ())):
                if connection_id in seen:
                    continue
                seen.add(connection_id)
                connection = self._connections.get(connection_id)
                if connection is not None:
                    result.append(connection)
        return result

    def authenticated(self) -> list[Connection]:
        return [c for c in self._connections.values() if c.is_authenticated]

    def for_user(self, user_id: str) -> list[Connection]:
        return [c for c in self._connections.values() if c.user_id == user_id]

    async def deliver(self, connections: list[Connection], event: str, data: dict) -> int:
        """Best-effort push. Failed sockets are skipped, never retried."""
        if not connections:
            return 0

        results = await asyncio.gather(
            *[connection.push(event, data) for connection in connections],
            return_exceptions=True,
        )

        delivered = 0
        for connection, result in zip(connections, results):
            if isinstance(result, Exception):
                logger.debug(
                    "Dropped %s for connection %s: %s",
                    event,
                    connection.id,
                    result,
                    extra={"connection_id": connection.id, "event": event},
                )
            else:
                delivered += 1
        return delivered
