"""Real-time gateway module."""

from .connections import Connection, ConnectionState, ConnectionTable, IConnectionTransport
from .gateway import Gateway, IGateway

__all__ = [
    "Connection",
    "ConnectionState",
    "ConnectionTable",
    "IConnectionTransport",
    "Gateway",
    "IGateway",
]
