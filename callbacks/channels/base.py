"""NotificationChannel ABC — the messaging platform operators work in.

The rest of the callback desk talks to operators only through this
interface:

  outbound: messages to the shared operator channel (group/topic) and
            direct messages to one operator, both with optional inline
            action buttons; in-place edits of earlier messages
  inbound:  button presses (actions) and free-text replies, delivered to
            registered async handlers

Concrete channels translate between this vocabulary and a platform's own
API (Telegram Bot API for ``TelegramChannel``).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence


class ChannelError(Exception):
    """A message could not be delivered through the channel."""


class MessageNotFound(ChannelError):
    """The message to edit no longer exists or can no longer be edited."""


@dataclass(frozen=True)
class MessageRef:
    """Opaque identity of a delivered message (chat + message id)."""

    chat_id: int
    message_id: int


@dataclass(frozen=True)
class InlineAction:
    """One button attached to a message."""

    label: str
    action_id: str


# Rows of buttons; an empty keyboard removes all buttons on edit.
Keyboard = Sequence[Sequence[InlineAction]]


@dataclass
class InboundAction:
    """An operator pressed a button."""

    interaction_id: str
    data: str
    operator_id: int
    operator_name: str
    message: Optional[MessageRef] = None
    # Buttons on the pressed message at the time of the press
    keyboard: Optional[Keyboard] = None


@dataclass
class InboundText:
    """An operator sent a free-text message to the bot."""

    chat_id: int
    operator_id: int
    operator_name: str
    text: str


ActionHandler = Callable[[InboundAction], Awaitable[None]]
TextHandler = Callable[[InboundText], Awaitable[None]]


class NotificationChannel(ABC):
    """Abstract operator messaging channel."""

    def __init__(self) -> None:
        self._action_handlers: list[ActionHandler] = []
        self._text_handlers: list[TextHandler] = []

    def on_inbound_action(self, handler: ActionHandler) -> None:
        """Register a coroutine called for every button press."""
        self._action_handlers.append(handler)

    def on_inbound_text(self, handler: TextHandler) -> None:
        """Register a coroutine called for every free-text message."""
        self._text_handlers.append(handler)

    @abstractmethod
    async def send_to_operator_channel(
        self, text: str, actions: Keyboard | None = None,
    ) -> MessageRef:
        """Post a message to the shared operator channel.

        Raises:
            ChannelError: the channel is not configured or delivery failed.
        """

    @abstractmethod
    async def send_direct(
        self, operator_id: int, text: str, actions: Keyboard | None = None,
    ) -> MessageRef:
        """Send a direct message to one operator.

        Raises:
            ChannelError: delivery failed.
        """

    @abstractmethod
    async def edit_message(
        self, ref: MessageRef, text: str, actions: Keyboard | None = None,
    ) -> None:
        """Replace the text (and buttons) of an earlier message.

        ``actions=None`` leaves the buttons untouched, an empty keyboard
        removes them.

        Raises:
            MessageNotFound: the message is gone or not editable.
            ChannelError: any other delivery failure.
        """

    @abstractmethod
    async def edit_actions(self, ref: MessageRef, actions: Keyboard) -> None:
        """Replace only the buttons of an earlier message.

        Raises:
            MessageNotFound: the message is gone or not editable.
            ChannelError: any other delivery failure.
        """

    @abstractmethod
    async def acknowledge_action(self, interaction_id: str, text: str) -> None:
        """Answer a button press so the client stops its spinner."""

    async def start(self) -> None:
        """Begin receiving inbound events."""

    async def close(self) -> None:
        """Stop receiving and release transport resources.

        Safe to call multiple times.
        """
