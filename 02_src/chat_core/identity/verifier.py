"""Bearer credential issuing and verification (signed JWT)."""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

import jwt

from ..config import DEFAULT_JWT_ALGORITHM, DEFAULT_JWT_EXPIRES_HOURS
from ..errors import InvalidCredentialError
from ..models import User


@dataclass
class Identity:
    """Claims carried by a verified credential."""

    id: str
    email: str | None = None


class IIdentityVerifier(Protocol):
    """Turns a bearer credential into a user identity."""

    def verify(self, credential: str | None) -> Identity:
        """Return the identity or raise InvalidCredentialError."""
        ...

    def issue(self, user: User) -> str:
        """Sign a credential for a user."""
        ...


class JWTIdentityVerifier:
    """HS256 JWT issuer/verifier sharing one secret."""

    def __init__(
        self,
        secret: str | None = None,
        algorithm: str | None = None,
        expires_hours: int | None = None,
    ):
        self._secret = secret or os.getenv("JWT_SECRET")
        if not self._secret:
            raise ValueError("JWT_SECRET environment variable not set")

        self._algorithm = algorithm or os.getenv("JWT_ALGORITHM", DEFAULT_JWT_ALGORITHM)
        if expires_hours is None:
            expires_hours = int(
                os.getenv("JWT_EXPIRES_HOURS", str(DEFAULT_JWT_EXPIRES_HOURS))
            )
        self._expires = timedelta(hours=expires_hours)

    def issue(self, user: User) -> str:
        """Sign a credential for a user."""
        payload = {
            "id": user.id,
            "email": user.email,
            "exp": datetime.now(timezone.utc) + self._expires,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, credential: str | None) -> Identity:
        """Return the identity or raise InvalidCredentialError."""
        if not credential:
            raise InvalidCredentialError("No token")

        try:
            payload = jwt.decode(credential, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as e:
            raise InvalidCredentialError("Token expired") from e
        except jwt.InvalidTokenError as e:
            raise InvalidCredentialError("Invalid token") from e

        user_id = payload.get("id")
        if not user_id:
            raise InvalidCredentialError("Token has no identity")

        return Identity(id=str(user_id), email=payload.get("email"))
