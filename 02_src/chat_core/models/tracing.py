"""Tracing and observability data models."""

from dataclasses import dataclass
from datetime import datetime


@dataclass
class TraceEvent:
    """A single persisted observability record."""

    id: str
    event_type: str  # e.g. "connection_opened", "bus_message_published"
    actor: str  # component that recorded it
    data: dict
    timestamp: datetime
