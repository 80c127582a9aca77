"""Project-level configuration, path helpers and domain limits."""

from pathlib import Path
from typing import Union

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_ROOT / "03_data"
LOGS_DIR = PROJECT_ROOT / "04_logs"
DEFAULT_DB_PATH = DATA_DIR / "chat.db"
DEFAULT_LOG_PATH = LOGS_DIR / "app.log"

DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Messages
MESSAGE_MAX_LENGTH = 5000
RECENT_MESSAGES_LIMIT = 50
TOMBSTONE_TEXT = "This message was deleted"

# Rooms
ROOM_NAME_MAX_LENGTH = 100
ROOM_DESCRIPTION_MAX_LENGTH = 500
ROOM_MIN_MEMBERS = 2
ROOM_MAX_MEMBERS = 1000
ROOM_DEFAULT_MAX_MEMBERS = 100
PUBLIC_ROOMS_LIMIT = 20

# Invite codes skip 0/O and 1/I/L
INVITE_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
INVITE_CODE_LENGTH = 8
INVITE_CODE_ATTEMPTS = 10

# Handles fall back to local2, local3, ... when another domain holds the local part
HANDLE_ATTEMPTS = 10

# Credentials
DEFAULT_JWT_ALGORITHM = "HS256"
DEFAULT_JWT_EXPIRES_HOURS = 24


PathLike = Union[str, Path]


def resolve_db_path(env_value: PathLike | None = None) -> PathLike:
    """Resolve DATABASE_URL to an absolute path."""
    if not env_value:
        return DEFAULT_DB_PATH

    if str(env_value) == ":memory:":
        return ":memory:"

    candidate = Path(env_value)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate
