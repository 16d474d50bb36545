"""Operator messaging channels."""

from .base import (
    ChannelError,
    InboundAction,
    InboundText,
    InlineAction,
    Keyboard,
    MessageNotFound,
    MessageRef,
    NotificationChannel,
)

__all__ = [
    "ChannelError",
    "InboundAction",
    "InboundText",
    "InlineAction",
    "Keyboard",
    "MessageNotFound",
    "MessageRef",
    "NotificationChannel",
]
