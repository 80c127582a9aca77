"""Application bootstrap and lifecycle management."""

import os
from typing import Protocol

from .config import resolve_db_path
from .event_bus import EventBus, IEventBus
from .gateway import Gateway
from .identity import IIdentityVerifier, JWTIdentityVerifier
from .logging_config import get_logger
from .messaging import MessagePipeline
from .presence import PresenceTracker
from .state import ConversationService, IUserService, RoomService, TypingRegistry, UserService
from .storage import IStorage, Storage
from .tracker import ITracker, Tracker

logger = get_logger(__name__)


class IApplication(Protocol):
    """Bootstrap and lifecycle."""

    async def start(self) -> None:
        """Initialize components in dependency order."""
        ...

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        ...

    async def reset(self) -> None:
        """Reset data between test runs."""
        ...


class Application:
    """Main application bootstrap."""

    def __init__(
        self,
        db_path: str | None = None,
        verifier: IIdentityVerifier | None = None,
    ):
        env_db_path = os.getenv("DATABASE_URL") if db_path is None else db_path
        self._db_path = resolve_db_path(env_db_path)
        self._verifier = verifier

        # Components (will be initialized in start())
        self._storage: IStorage | None = None
        self._event_bus: IEventBus | None = None
        self._tracker: ITracker | None = None
        self._gateway: Gateway | None = None
        self._users: IUserService | None = None

    async def start(self) -> None:
        """Initialize components in dependency order."""
        logger.info("Starting application")

        # 1. Identity (fails fast without a signing secret)
        if self._verifier is None:
            self._verifier = JWTIdentityVerifier()

        # 2. Storage (no dependencies)
        self._storage = Storage(self._db_path)
        await self._storage.init()
        logger.info("Storage initialized at %s", self._db_path)

        # 3. EventBus (depends on Storage for persistence)
        self._event_bus = EventBus(self._storage)

        # 4. Tracker (depends on EventBus + Storage)
        self._tracker = Tracker(self._event_bus, self._storage)
        await self._tracker.start()

        # 5. State engine and message pipeline
        self._users = UserService(self._storage)
        conversations = ConversationService(self._storage)
        rooms = RoomService(self._storage)
        pipeline = MessagePipeline(self._storage, self._event_bus, conversations, rooms)
        presence = PresenceTracker(self._event_bus, self._storage)

        # 6. Gateway (depends on everything above)
        self._gateway = Gateway(
            storage=self._storage,
            event_bus=self._event_bus,
            tracker=self._tracker,
            verifier=self._verifier,
            presence=presence,
            conversations=conversations,
            rooms=rooms,
            typing=TypingRegistry(),
            pipeline=pipeline,
        )
        await self._gateway.start()
        logger.info("All components initialized successfully")

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        if self._gateway:
            await self._gateway.stop()
        if self._tracker:
            await self._tracker.stop()
        if self._storage:
            await self._storage.close()
            logger.info("Storage closed")

    async def reset(self) -> None:
        """Reset data between test runs."""
        if self._gateway:
            await self._gateway.reset()
        if self._storage:
            await self._storage.clear()
            logger.info("Storage cleared")

    @property
    def storage(self) -> IStorage:
        """Get storage instance."""
        if not self._storage:
            raise RuntimeError("Application not started")
        return self._storage

    @property
    def gateway(self) -> Gateway:
        """Get gateway instance."""
        if not self._gateway:
            raise RuntimeError("Application not started")
        return self._gateway

    @property
    def users(self) -> IUserService:
        """Get user service."""
        if not self._users:
            raise RuntimeError("Application not started")
        return self._users

    @property
    def verifier(self) -> IIdentityVerifier:
        """Get identity verifier."""
        if not self._verifier:
            raise RuntimeError("Application not started")
        return self._verifier
