"""EventBus data models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Topic(str, Enum):
    """EventBus topics."""

    PRESENCE = "presence"
    MESSAGE = "message"
    TYPING = "typing"


@dataclass
class BusMessage:
    """A message exchanged through EventBus.

    Payload keys understood by the gateway:
        event: outbound event name pushed to clients
        data: event body
        channels: target channel names
        broadcast: deliver to every authenticated connection instead
        exclude_connection: connection id that must not receive it
    """

    id: str
    topic: Topic
    payload: dict
    source: str  # component that published
    timestamp: datetime
