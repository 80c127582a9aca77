"""User registration and profile lookups."""

import os
from typing import Protocol

from ..config import HANDLE_ATTEMPTS
from ..errors import DuplicateNameError, NotFoundError, ValidationFailure
from ..logging_config import get_logger
from ..models import User
from ..storage import IStorage

logger = get_logger(__name__)


class IUserService(Protocol):
    async def upsert_user(self, email: str, name: str) -> User:
        """Create the user for an email on first login, refresh the name after."""
        ...

    async def get_user(self, user_id: str) -> User:
        ...

    async def list_online_users(self) -> list[User]:
        ...


class UserService:
    def __init__(self, storage: IStorage, allowed_domain: str | None = None):
        self._storage = storage
        if allowed_domain is None:
            allowed_domain = os.getenv("ALLOWED_EMAIL_DOMAIN")
        self._allowed_domain = allowed_domain.lower().lstrip("@") if allowed_domain else None

    async def upsert_user(self, email: str, name: str) -> User:
        email = (email or "").strip().lower()
        local, _, domain = email.partition("@")
        if not local or not domain:
            raise ValidationFailure("Invalid email address")
        if self._allowed_domain and domain != self._allowed_domain:
            raise ValidationFailure(f"Only {self._allowed_domain} emails are allowed")

        name = (name or "").strip() or local
        existing = await self._storage.get_user_by_email(email)
        if existing is not None:
            user = await self._storage.upsert_user(email, name, handle=existing.handle)
        else:
            user = await self._create_user(email, name, local)
        logger.info("User %s signed in", user.id, extra={"user_id": user.id})
        return user

    async def _create_user(self, email: str, name: str, local: str) -> User:
        for attempt in range(1, HANDLE_ATTEMPTS + 1):
            handle = local if attempt == 1 else f"{local}{attempt}"
            try:
                return await self._storage.upsert_user(email, name, handle=handle)
            except DuplicateNameError:
                continue
        raise DuplicateNameError(f"No free handle for {local}")

    async def get_user(self, user_id: str) -> User:
        user = await self._storage.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def list_online_users(self) -> list[User]:
        return await self._storage.get_online_users()
