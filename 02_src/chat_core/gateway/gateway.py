"""Real-time gateway: authenticates connections and dispatches client events."""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

from ..channels import conversation_channel, room_channel, user_channel
from ..errors import AuthenticationError, ChatError, UnauthorizedError, ValidationFailure
from ..event_bus import IEventBus
from ..identity import IIdentityVerifier
from ..logging_config import get_logger
from ..messaging import IMessagePipeline
from ..models import BusMessage, ParentType, Room, Topic
from ..presence import IPresenceTracker
from ..schemas import ConversationOut, MessageOut, RoomOut, UserOut
from ..state import IConversationService, IRoomService, ITypingRegistry
from ..storage import IStorage
from ..tracker import ITracker
from .connections import Connection, ConnectionState, ConnectionTable, IConnectionTransport
from .protocol import (
    ArchiveConversationRequest,
    ConversationRequest,
    CreateRoomRequest,
    EditMessageRequest,
    JoinByInviteRequest,
    JoinRoomRequest,
    ListConversationsRequest,
    MessageRequest,
    PinConversationRequest,
    PublicRoomsRequest,
    RoomRequest,
    SendConversationMessageRequest,
    SendRoomMessageRequest,
    StartConversationRequest,
    TypingRequest,
    parse_request,
)

logger = get_logger(__name__)

# Service Restart
RESET_CLOSE_CODE = 1012

RequestHandler = Callable[[Connection, dict], Awaitable[dict]]
EventHandler = Callable[[Connection, dict], Awaitable[None]]


class IGateway(Protocol):
    """Connection lifecycle and event dispatch."""

    async def start(self) -> None:
        """Subscribe to EventBus topics for outbound fan-out."""
        ...

    async def stop(self) -> None:
        """Unsubscribe from EventBus."""
        ...

    async def connect(
        self, transport: IConnectionTransport, credential: str | None
    ) -> Connection:
        """Authenticate a new connection or raise AuthenticationError."""
        ...

    async def dispatch(
        self, connection: Connection, event: str, data: dict | None
    ) -> dict | None:
        """Run one client event. Returns the reply, or None for fire-and-forget."""
        ...

    async def disconnect(self, connection: Connection) -> None:
        """Close a connection and mark its user offline."""
        ...

    async def reset(self) -> None:
        """Close all connections and clear typing and presence."""
        ...


def _chronological(messages: list) -> list[dict]:
    return [MessageOut.model_validate(m).dump() for m in reversed(messages)]


class Gateway:
    """Routes events between live connections and the chat services."""

    def __init__(
        self,
        storage: IStorage,
        event_bus: IEventBus,
        tracker: ITracker,
        verifier: IIdentityVerifier,
        presence: IPresenceTracker,
        conversations: IConversationService,
        rooms: IRoomService,
        typing: ITypingRegistry,
        pipeline: IMessagePipeline,
    ):
        self._storage = storage
        self._event_bus = event_bus
        self._tracker = tracker
        self._verifier = verifier
        self._presence = presence
        self._conversations = conversations
        self._rooms = rooms
        self._typing = typing
        self._pipeline = pipeline
        self._connections = ConnectionTable()

        self._requests: dict[str, RequestHandler] = {
            "conversation:start": self._start_conversation,
            "conversation:list": self._list_conversations,
            "conversation:read": self._read_conversation,
            "conversation:archive": self._archive_conversation,
            "conversation:pin": self._pin_conversation,
            "conversation:unread": self._total_unread,
            "message:send:conversation": self._send_conversation_message,
            "message:send:room": self._send_room_message,
            "message:read": self._read_message,
            "message:edit": self._edit_message,
            "message:delete": self._delete_message,
            "room:create": self._create_room,
            "room:join": self._join_room,
            "room:join:invite": self._join_by_invite,
            "room:leave": self._leave_room,
            "room:list": self._list_rooms,
            "room:public": self._public_rooms,
            "room:invite": self._regenerate_invite,
            "presence:online": self._online_users,
        }
        self._events: dict[str, EventHandler] = {
            "typing:start": self._typing_start,
            "typing:stop": self._typing_stop,
        }

    @property
    def connections(self) -> ConnectionTable:
        return self._connections

    async def start(self) -> None:
        for topic in Topic:
            self._event_bus.subscribe(topic, self._handle_bus_message)
        logger.info("Gateway started")

    async def stop(self) -> None:
        for topic in Topic:
            self._event_bus.unsubscribe(topic, self._handle_bus_message)
        logger.info("Gateway stopped")

    # Connection lifecycle
    async def connect(
        self, transport: IConnectionTransport, credential: str | None
    ) -> Connection:
        connection = Connection(transport=transport)
        try:
            identity = self._verifier.verify(credential)
            user = await self._storage.get_user(identity.id)
            if user is None:
                raise AuthenticationError("User not found")
        except AuthenticationError as e:
            connection.close()
            logger.warning(
                "Connection rejected: %s", e, extra={"connection_id": connection.id}
            )
            await self._tracker.track(
                "connection_rejected", "gateway", {"reason": e.message, "code": e.code}
            )
            raise

        connection.authenticate(user)
        self._connections.add(connection)
        self._connections.subscribe(connection, user_channel(user.id))

        logger.info(
            "%s connected",
            user.name,
            extra={"connection_id": connection.id, "user_id": user.id},
        )
        await self._tracker.track(
            "connection_opened",
            "gateway",
            {"connection_id": connection.id, "user_id": user.id},
        )
        await self._presence.mark_online(user.id, connection.id)
        return connection

    async def disconnect(self, connection: Connection) -> None:
        if connection.state is ConnectionState.CLOSED:
            return

        was_authenticated = connection.is_authenticated
        connection.close()
        self._connections.remove(connection)
        if not was_authenticated:
            return

        # Typing entries of this user stay until an explicit stop
        logger.info(
            "%s disconnected",
            connection.user_name,
            extra={"connection_id": connection.id, "user_id": connection.user_id},
        )
        await self._tracker.track(
            "connection_closed",
            "gateway",
            {"connection_id": connection.id, "user_id": connection.user_id},
        )
        await self._presence.mark_offline(connection.user_id, connection.id)

    async def reset(self) -> None:
        """Close every live connection and forget transient state."""
        connections = self._connections.clear()
        for connection in connections:
            connection.close()
        results = await asyncio.gather(
            *[
                connection.transport.close(code=RESET_CLOSE_CODE, reason="Server reset")
                for connection in connections
            ],
            return_exceptions=True,
        )
        for connection, result in zip(connections, results):
            if isinstance(result, Exception):
                logger.debug(
                    "Close failed for connection %s: %s",
                    connection.id,
                    result,
                    extra={"connection_id": connection.id},
                )

        self._typing.clear()
        self._presence.clear()
        logger.info("Gateway reset, %d connections closed", len(connections))

    # Dispatch
    async def dispatch(
        self, connection: Connection, event: str, data: dict | None
    ) -> dict | None:
        if not connection.is_authenticated:
            return self._error_reply(AuthenticationError("Not authenticated"))

        if event in self._events:
            try:
                await self._events[event](connection, data or {})
            except Exception as e:
                logger.warning(
                    "Dropped %s: %s",
                    event,
                    e,
                    extra={"connection_id": connection.id, "event": event},
                )
            return None

        handler = self._requests.get(event)
        if handler is None:
            return self._error_reply(ValidationFailure(f"Unknown event: {event}"))

        try:
            result = await handler(connection, data or {})
        except ChatError as e:
            logger.info(
                "%s failed: %s",
                event,
                e,
                extra={"connection_id": connection.id, "user_id": connection.user_id, "event": event},
            )
            await self._tracker.track(
                "request_failed",
                "gateway",
                {"event": event, "user_id": connection.user_id, "code": e.code, "error": e.message},
            )
            return self._error_reply(e)
        except Exception as e:
            logger.error(
                "Error handling %s: %s",
                event,
                e,
                exc_info=True,
                extra={"connection_id": connection.id, "event": event},
            )
            await self._tracker.track(
                "request_failed",
                "gateway",
                {"event": event, "user_id": connection.user_id, "code": "internal_error", "error": str(e)},
            )
            return {"success": False, "error": "Internal error", "code": "internal_error"}

        return {"success": True, **result}

    @staticmethod
    def _error_reply(error: ChatError) -> dict:
        return {"success": False, "error": error.message, "code": error.code}

    # Outbound fan-out
    async def _handle_bus_message(self, bus_message: BusMessage) -> None:
        """Push a published event to the connections it targets."""
        payload = bus_message.payload
        event = payload.get("event")
        if not event:
            return

        if payload.get("broadcast"):
            targets = self._connections.authenticated()
        else:
            targets = self._connections.subscribers(payload.get("channels", []))

        exclude = payload.get("exclude_connection")
        if exclude:
            targets = [c for c in targets if c.id != exclude]

        await self._connections.deliver(targets, event, payload.get("data", {}))

    # Conversations
    def _conversation_out(self, conversation, user_id: str) -> dict:
        return ConversationOut.from_conversation(
            conversation, user_id, self._typing.typing_users(conversation.id)
        ).dump()

    async def _start_conversation(self, connection: Connection, data: dict) -> dict:
        request = parse_request(StartConversationRequest, data)
        user_id = connection.user_id

        conversation = await self._conversations.find_or_create(user_id, request.other_user_id)
        self._connections.subscribe(connection, conversation_channel(conversation.id))

        # Opening the conversation counts as viewing it
        await self._conversations.reset_unread(conversation.id, user_id)
        conversation.states[user_id].unread_count = 0

        messages = await self._pipeline.recent_messages(conversation.id)
        return {
            "conversation": self._conversation_out(conversation, user_id),
            "messages": _chronological(messages),
        }

    async def _list_conversations(self, connection: Connection, data: dict) -> dict:
        request = parse_request(ListConversationsRequest, data)
        conversations = await self._conversations.list_conversations(
            connection.user_id, include_archived=request.include_archived
        )
        return {
            "conversations": [
                self._conversation_out(c, connection.user_id) for c in conversations
            ]
        }

    async def _read_conversation(self, connection: Connection, data: dict) -> dict:
        request = parse_request(ConversationRequest, data)
        await self._conversations.reset_unread(request.conversation_id, connection.user_id)
        return {"conversationId": request.conversation_id, "unreadCount": 0}

    async def _archive_conversation(self, connection: Connection, data: dict) -> dict:
        request = parse_request(ArchiveConversationRequest, data)
        await self._conversations.set_archived(
            request.conversation_id, connection.user_id, request.archived
        )
        return {"conversationId": request.conversation_id, "archived": request.archived}

    async def _pin_conversation(self, connection: Connection, data: dict) -> dict:
        request = parse_request(PinConversationRequest, data)
        await self._conversations.set_pinned(
            request.conversation_id, connection.user_id, request.pinned
        )
        return {"conversationId": request.conversation_id, "pinned": request.pinned}

    async def _total_unread(self, connection: Connection, data: dict) -> dict:
        return {"total": await self._conversations.total_unread_count(connection.user_id)}

    # Messages
    async def _send_conversation_message(self, connection: Connection, data: dict) -> dict:
        request = parse_request(SendConversationMessageRequest, data)
        message = await self._pipeline.send_message(
            request.conversation_id,
            connection.user_id,
            request.content,
            parent_type=ParentType.CONVERSATION,
            reply_to_id=request.reply_to_id,
        )
        return {"message": MessageOut.model_validate(message).dump()}

    async def _send_room_message(self, connection: Connection, data: dict) -> dict:
        request = parse_request(SendRoomMessageRequest, data)
        message = await self._pipeline.send_message(
            request.room_id,
            connection.user_id,
            request.content,
            parent_type=ParentType.ROOM,
            reply_to_id=request.reply_to_id,
        )
        return {"message": MessageOut.model_validate(message).dump()}

    async def _read_message(self, connection: Connection, data: dict) -> dict:
        request = parse_request(MessageRequest, data)
        message = await self._pipeline.get_message(request.message_id)
        await self._pipeline.resolve_parent(
            message.parent_id, connection.user_id, message.parent_type
        )
        await self._pipeline.mark_read(message.id, connection.user_id)
        return {"messageId": message.id}

    async def _edit_message(self, connection: Connection, data: dict) -> dict:
        request = parse_request(EditMessageRequest, data)
        message = await self._pipeline.get_message(request.message_id)
        await self._pipeline.resolve_parent(
            message.parent_id, connection.user_id, message.parent_type
        )
        if message.sender_id != connection.user_id:
            raise UnauthorizedError("Only the sender can edit a message")
        edited = await self._pipeline.edit_message(message.id, request.content)
        return {"message": MessageOut.model_validate(edited).dump()}

    async def _delete_message(self, connection: Connection, data: dict) -> dict:
        request = parse_request(MessageRequest, data)
        message = await self._pipeline.get_message(request.message_id)
        parent = await self._pipeline.resolve_parent(
            message.parent_id, connection.user_id, message.parent_type
        )
        if message.sender_id != connection.user_id:
            if not (isinstance(parent, Room) and parent.is_admin_or_owner(connection.user_id)):
                raise UnauthorizedError("Only the sender or a room admin can delete a message")
        await self._pipeline.soft_delete(message.id)
        return {"messageId": message.id}

    # Rooms
    async def _room_reply(self, connection: Connection, room: Room) -> dict:
        self._connections.subscribe(connection, room_channel(room.id))
        messages = await self._pipeline.recent_messages(room.id)
        return {
            "room": RoomOut.from_room(
                room, include_invite_code=room.is_admin_or_owner(connection.user_id)
            ).dump(),
            "messages": _chronological(messages),
        }

    async def _create_room(self, connection: Connection, data: dict) -> dict:
        request = parse_request(CreateRoomRequest, data)
        room = await self._rooms.create_room(
            connection.user_id,
            request.name,
            description=request.description,
            is_private=request.is_private,
            max_members=request.max_members,
            category=request.category,
        )
        self._connections.subscribe(connection, room_channel(room.id))
        return {"room": RoomOut.from_room(room, include_invite_code=True).dump()}

    async def _join_room(self, connection: Connection, data: dict) -> dict:
        request = parse_request(JoinRoomRequest, data)
        room = await self._rooms.join_room(
            request.room_id, connection.user_id, request.invite_code
        )
        return await self._room_reply(connection, room)

    async def _join_by_invite(self, connection: Connection, data: dict) -> dict:
        request = parse_request(JoinByInviteRequest, data)
        room = await self._rooms.join_by_invite_code(request.invite_code, connection.user_id)
        return await self._room_reply(connection, room)

    async def _leave_room(self, connection: Connection, data: dict) -> dict:
        request = parse_request(RoomRequest, data)
        await self._rooms.leave_room(request.room_id, connection.user_id)
        channel = room_channel(request.room_id)
        for own in self._connections.for_user(connection.user_id):
            self._connections.unsubscribe(own, channel)
        return {"roomId": request.room_id}

    async def _list_rooms(self, connection: Connection, data: dict) -> dict:
        rooms = await self._rooms.list_user_rooms(connection.user_id)
        return {
            "rooms": [
                RoomOut.from_room(
                    r, include_invite_code=r.is_admin_or_owner(connection.user_id)
                ).dump()
                for r in rooms
            ]
        }

    async def _public_rooms(self, connection: Connection, data: dict) -> dict:
        request = parse_request(PublicRoomsRequest, data)
        rooms = await self._rooms.list_public_rooms(
            limit=request.limit, category=request.category
        )
        return {"rooms": [RoomOut.from_room(r).dump() for r in rooms]}

    async def _regenerate_invite(self, connection: Connection, data: dict) -> dict:
        request = parse_request(RoomRequest, data)
        code = await self._rooms.regenerate_invite_code(request.room_id, connection.user_id)
        return {"roomId": request.room_id, "inviteCode": code}

    async def _online_users(self, connection: Connection, data: dict) -> dict:
        users = await self._presence.online_users()
        return {"users": [UserOut.model_validate(u).dump() for u in users]}

    # Typing
    async def _typing_start(self, connection: Connection, data: dict) -> None:
        await self._set_typing(connection, data, True)

    async def _typing_stop(self, connection: Connection, data: dict) -> None:
        await self._set_typing(connection, data, False)

    async def _set_typing(self, connection: Connection, data: dict, is_typing: bool) -> None:
        request = parse_request(TypingRequest, data)
        if request.conversation_id:
            parent_id, key = request.conversation_id, "conversationId"
            channel = conversation_channel(parent_id)
        elif request.room_id:
            parent_id, key = request.room_id, "roomId"
            channel = room_channel(parent_id)
        else:
            return

        # Subscribing already required passing the participant/member check
        if not self._connections.is_subscribed(connection, channel):
            logger.debug(
                "Typing ignored for unsubscribed channel %s",
                channel,
                extra={"connection_id": connection.id, "channel": channel},
            )
            return

        self._typing.set_typing(parent_id, connection.user_id, is_typing)

        event_data = {"userId": connection.user_id, key: parent_id}
        if is_typing:
            event_data["userName"] = connection.user_name

        await self._event_bus.publish(
            BusMessage(
                id=str(uuid.uuid4()),
                topic=Topic.TYPING,
                payload={
                    "event": "typing:start" if is_typing else "typing:stop",
                    "data": event_data,
                    "channels": [channel],
                    "exclude_connection": connection.id,
                },
                source="gateway",
                timestamp=datetime.now(timezone.utc),
            )
        )
