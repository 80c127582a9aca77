"""Error taxonomy shared by all chat components."""


class ChatError(Exception):
    """Base class for failures reported back to a client."""

    code = "chat_error"
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class AuthenticationError(ChatError):
    """Missing or unusable credential. Fatal for a connection."""

    code = "authentication_failed"
    default_message = "Authentication failed"


class InvalidCredentialError(AuthenticationError):
    """Credential could not be verified by the identity provider."""

    code = "invalid_credential"
    default_message = "Invalid token"


class UnauthorizedError(ChatError):
    """Authenticated, but not a participant or member."""

    code = "unauthorized"
    default_message = "Not authorized"


class NotFoundError(ChatError):
    code = "not_found"
    default_message = "Not found"


class ValidationFailure(ChatError):
    code = "validation_failed"
    default_message = "Invalid request"


class CapacityExceededError(ChatError):
    code = "capacity_exceeded"
    default_message = "Room has reached maximum capacity"


class AlreadyMemberError(ChatError):
    code = "already_member"
    default_message = "User is already a member of this room"


class NotAMemberError(ChatError):
    code = "not_a_member"
    default_message = "User is not a member of this room"


class DuplicateNameError(ChatError):
    """Unique room name or invite code already taken."""

    code = "duplicate_name"
    default_message = "Name already taken"
