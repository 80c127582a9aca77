"""Presence module."""

from .presence import IPresenceTracker, PresenceTracker

__all__ = ["IPresenceTracker", "PresenceTracker"]
