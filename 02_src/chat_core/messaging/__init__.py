"""Messaging module."""

from .pipeline import IMessagePipeline, MessagePipeline

__all__ = ["IMessagePipeline", "MessagePipeline"]
