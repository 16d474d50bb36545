"""Telegram Bot API channel.

Outbound calls go through ``https://api.telegram.org/bot<token>/<method>``
with HTML formatting. Inbound events are fetched by long-polling
``getUpdates``:

  callback_query  → InboundAction  (button press)
  message.text    → InboundText    (free-text reply or command)

Each inbound event is handed to the registered handlers in its own task,
so a slow handler never blocks polling or the next event.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

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

log = logging.getLogger("callbacks.channels.telegram")

API_BASE = "https://api.telegram.org"

BOT_COMMANDS = [
    {"command": "start", "description": "Main menu and bot info"},
    {"command": "help", "description": "Help and command list"},
    {"command": "status", "description": "System status"},
    {"command": "schedule", "description": "Your scheduled visits"},
    {"command": "pending", "description": "Clients ready for scheduling"},
    {"command": "cancel", "description": "Cancel the current action"},
]

_NOT_FOUND_MARKERS = (
    "message to edit not found",
    "message can't be edited",
    "message_id_invalid",
)


def _keyboard_markup(actions: Keyboard) -> dict[str, Any]:
    return {
        "inline_keyboard": [
            [{"text": a.label, "callback_data": a.action_id} for a in row]
            for row in actions
        ]
    }


def _display_name(user: dict[str, Any]) -> str:
    return user.get("first_name") or user.get("username") or "Operator"


def _parse_keyboard(message: dict[str, Any]) -> Keyboard | None:
    markup = message.get("reply_markup") or {}
    rows = markup.get("inline_keyboard")
    if rows is None:
        return None
    return [
        [InlineAction(b.get("text", ""), b["callback_data"]) for b in row if "callback_data" in b]
        for row in rows
    ]


class TelegramChannel(NotificationChannel):
    """NotificationChannel backed by a Telegram bot."""

    def __init__(
        self,
        token: str,
        workers_group_id: Optional[int] = None,
        workers_topic_id: Optional[int] = None,
        poll_timeout: int = 30,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__()
        if not token:
            raise ValueError("Telegram bot token must be provided.")
        self._base_url = f"{API_BASE}/bot{token}"
        self._group_id = workers_group_id
        self._topic_id = workers_topic_id
        self._poll_timeout = poll_timeout
        self._client = client or httpx.AsyncClient(timeout=poll_timeout + 10)

        self._offset = 0
        self._poll_task: asyncio.Task | None = None
        self._handler_tasks: set[asyncio.Task] = set()
        self._closed = False

    # ── Bot API plumbing ─────────────────────────────────────────

    async def _call(self, method: str, **payload: Any) -> Any:
        """Invoke a Bot API method and return its ``result``."""
        try:
            resp = await self._client.post(f"{self._base_url}/{method}", json=payload)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ChannelError(f"Telegram {method} failed: {e}") from e

        if not data.get("ok"):
            description = str(data.get("description", "unknown error"))
            lowered = description.lower()
            if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
                raise MessageNotFound(description)
            raise ChannelError(f"Telegram {method}: {description}")
        return data.get("result")

    def _send_payload(self, chat_id: int, text: str, actions: Keyboard | None) -> dict:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if actions is not None:
            payload["reply_markup"] = _keyboard_markup(actions)
        return payload

    @staticmethod
    def _ref(result: dict[str, Any]) -> MessageRef:
        return MessageRef(chat_id=result["chat"]["id"], message_id=result["message_id"])

    # ── NotificationChannel interface ────────────────────────────

    async def send_to_operator_channel(
        self, text: str, actions: Keyboard | None = None,
    ) -> MessageRef:
        if self._group_id is None:
            raise ChannelError("TELEGRAM_WORKERS_GROUP_ID not configured")
        payload = self._send_payload(self._group_id, text, actions)
        if self._topic_id is not None:
            payload["message_thread_id"] = self._topic_id
        result = await self._call("sendMessage", **payload)
        log.info("Message sent to workers group")
        return self._ref(result)

    async def send_direct(
        self, operator_id: int, text: str, actions: Keyboard | None = None,
    ) -> MessageRef:
        result = await self._call("sendMessage", **self._send_payload(operator_id, text, actions))
        log.info("Direct message sent to %s", operator_id)
        return self._ref(result)

    async def edit_message(
        self, ref: MessageRef, text: str, actions: Keyboard | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "chat_id": ref.chat_id,
            "message_id": ref.message_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if actions is not None:
            payload["reply_markup"] = _keyboard_markup(actions)
        try:
            await self._call("editMessageText", **payload)
        except ChannelError as e:
            # Editing to identical content is not a failure
            if "message is not modified" in str(e).lower():
                return
            raise

    async def edit_actions(self, ref: MessageRef, actions: Keyboard) -> None:
        try:
            await self._call(
                "editMessageReplyMarkup",
                chat_id=ref.chat_id,
                message_id=ref.message_id,
                reply_markup=_keyboard_markup(actions),
            )
        except ChannelError as e:
            if "message is not modified" in str(e).lower():
                return
            raise

    async def acknowledge_action(self, interaction_id: str, text: str) -> None:
        await self._call("answerCallbackQuery", callback_query_id=interaction_id, text=text)

    # ── Lifecycle ────────────────────────────────────────────────

    async def get_me(self) -> dict[str, Any]:
        return await self._call("getMe")

    async def set_commands(self) -> None:
        await self._call("setMyCommands", commands=BOT_COMMANDS)

    async def start(self) -> None:
        """Verify the bot token, publish commands and start polling."""
        me = await self.get_me()
        log.info("Telegram bot connected: @%s", me.get("username", "?"))
        try:
            await self.set_commands()
        except ChannelError as e:
            log.warning("Failed to set bot commands: %s", e)
        self._closed = False
        self._poll_task = asyncio.create_task(self._poll_loop(), name="telegram-poll")

    async def close(self) -> None:
        self._closed = True
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        for task in list(self._handler_tasks):
            task.cancel()
        await self._client.aclose()

    # ── Inbound ──────────────────────────────────────────────────

    async def _poll_loop(self) -> None:
        backoff = 1.0
        while not self._closed:
            try:
                updates = await self._call(
                    "getUpdates",
                    offset=self._offset,
                    timeout=self._poll_timeout,
                    allowed_updates=["message", "callback_query"],
                )
                backoff = 1.0
            except ChannelError as e:
                log.error("Telegram polling error: %s", e)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 30.0)
                continue

            for update in updates or []:
                self._offset = max(self._offset, update.get("update_id", 0) + 1)
                self.dispatch_update(update)

    def dispatch_update(self, update: dict[str, Any]) -> None:
        """Normalize one raw update and schedule its handlers."""
        callback = update.get("callback_query")
        if callback:
            message = callback.get("message") or {}
            user = callback.get("from") or {}
            ref = None
            if message.get("message_id") and message.get("chat"):
                ref = self._ref(message)
            action = InboundAction(
                interaction_id=str(callback.get("id", "")),
                data=callback.get("data") or "",
                operator_id=user.get("id", 0),
                operator_name=_display_name(user),
                message=ref,
                keyboard=_parse_keyboard(message),
            )
            log.info("Callback query received: %s from %s", action.data, action.operator_name)
            for handler in self._action_handlers:
                self._spawn(handler(action))
            return

        message = update.get("message")
        if message and message.get("text") is not None:
            chat = message.get("chat", {})
            if chat.get("type", "private") != "private":
                return  # only direct messages drive dialogues
            user = message.get("from") or {}
            text = InboundText(
                chat_id=chat.get("id", 0),
                operator_id=user.get("id", 0),
                operator_name=_display_name(user),
                text=message["text"],
            )
            for handler in self._text_handlers:
                self._spawn(handler(text))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Inbound handler failed: %s", exc, exc_info=exc)
