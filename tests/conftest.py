"""Shared fakes and fixtures: an in-memory channel and a scriptable change feed."""

import itertools
import os
import sys
from datetime import datetime, timezone
from typing import Optional

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from callbacks.channels.base import (
    ChannelError,
    InboundAction,
    InboundText,
    Keyboard,
    MessageNotFound,
    MessageRef,
    NotificationChannel,
)
from callbacks.realtime.feed import (
    ChangeFeed,
    ChangeHandlers,
    StatusCallback,
    Subscription,
    SubscriptionStatus,
)
from callbacks.store.memory import InMemoryRequestStore
from callbacks.timers import ManualTaskScheduler

GROUP_CHAT_ID = -100200300
OPERATOR_ID = 4242
OPERATOR_NAME = "Ann"
START = datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc)


class FakeChannel(NotificationChannel):
    """Records every outbound call; inbound events are injected by tests."""

    def __init__(self) -> None:
        super().__init__()
        self.messages: dict[MessageRef, dict] = {}
        self.sent: list[dict] = []
        self.edits: list[dict] = []
        self.acks: list[tuple[str, str]] = []
        self.fail_sends = False
        self.fail_acks = False
        self.started = False
        self.closed = False
        self._ids = itertools.count(1)

    def _deliver(self, kind: str, chat_id: int, text: str, actions: Keyboard | None) -> MessageRef:
        if self.fail_sends:
            raise ChannelError("delivery failed")
        ref = MessageRef(chat_id=chat_id, message_id=next(self._ids))
        entry = {"kind": kind, "ref": ref, "text": text, "actions": actions}
        self.messages[ref] = dict(entry)
        self.sent.append(entry)
        return ref

    async def send_to_operator_channel(self, text, actions=None):
        return self._deliver("channel", GROUP_CHAT_ID, text, actions)

    async def send_direct(self, operator_id, text, actions=None):
        return self._deliver("direct", operator_id, text, actions)

    async def edit_message(self, ref, text, actions=None):
        if ref not in self.messages:
            raise MessageNotFound("message to edit not found")
        self.messages[ref]["text"] = text
        if actions is not None:
            self.messages[ref]["actions"] = actions
        self.edits.append({"ref": ref, "text": text, "actions": actions})

    async def edit_actions(self, ref, actions):
        if ref not in self.messages:
            raise MessageNotFound("message to edit not found")
        self.messages[ref]["actions"] = actions
        self.edits.append({"ref": ref, "text": None, "actions": actions})

    async def acknowledge_action(self, interaction_id, text):
        if self.fail_acks:
            raise ChannelError("query is too old")
        self.acks.append((interaction_id, text))

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    # ── Test helpers ─────────────────────────────────────────────

    def delete(self, ref: MessageRef) -> None:
        self.messages.pop(ref, None)

    def channel_messages(self) -> list[dict]:
        return [m for m in self.sent if m["kind"] == "channel"]

    def direct_messages(self, operator_id: int = OPERATOR_ID) -> list[dict]:
        return [m for m in self.sent if m["kind"] == "direct" and m["ref"].chat_id == operator_id]

    def last_direct(self, operator_id: int = OPERATOR_ID) -> dict:
        return self.direct_messages(operator_id)[-1]

    async def press(
        self,
        data: str,
        operator_id: int = OPERATOR_ID,
        operator_name: str = OPERATOR_NAME,
        ref: Optional[MessageRef] = None,
    ) -> None:
        """Press a button; with ``ref`` the press comes from that message."""
        action = InboundAction(
            interaction_id=f"q{len(self.acks) + 1}",
            data=data,
            operator_id=operator_id,
            operator_name=operator_name,
            message=ref,
            keyboard=self.messages[ref]["actions"] if ref in self.messages else None,
        )
        for handler in self._action_handlers:
            await handler(action)

    async def say(
        self, text: str, operator_id: int = OPERATOR_ID, operator_name: str = OPERATOR_NAME,
    ) -> None:
        message = InboundText(
            chat_id=operator_id, operator_id=operator_id, operator_name=operator_name, text=text,
        )
        for handler in self._text_handlers:
            await handler(message)


def action_ids(actions: Optional[Keyboard]) -> list[str]:
    return [a.action_id for row in (actions or []) for a in row]


class FakeChangeFeed(ChangeFeed):
    """Change feed driven by the test: statuses and events are pushed by hand."""

    def __init__(self) -> None:
        self.subscriptions: list[Subscription] = []
        self.unsubscribed: list[Subscription] = []
        self.subscribe_errors: list[Exception] = []
        self.probe_results: list[bool] = []
        self.probes = 0
        self.closed = False

    async def subscribe(
        self, table: str, handlers: ChangeHandlers, on_status: StatusCallback,
        topic: str | None = None,
    ) -> Subscription:
        if self.subscribe_errors:
            raise self.subscribe_errors.pop(0)
        sub = Subscription(
            topic=f"realtime:{topic or table}", table=table, handlers=handlers, on_status=on_status,
        )
        self.subscriptions.append(sub)
        return sub

    async def unsubscribe(self, subscription: Subscription) -> None:
        if subscription.active:
            subscription.active = False
            self.unsubscribed.append(subscription)

    async def probe(self, table: str, timeout: float = 10.0) -> bool:
        self.probes += 1
        return self.probe_results.pop(0) if self.probe_results else True

    async def close(self) -> None:
        self.closed = True

    # ── Test helpers ─────────────────────────────────────────────

    @property
    def current(self) -> Subscription:
        return self.subscriptions[-1]

    @property
    def active(self) -> list[Subscription]:
        return [s for s in self.subscriptions if s.active]

    async def emit(self, status: SubscriptionStatus, error: Optional[str] = None) -> None:
        await self.current.on_status(status, error)

    async def insert(self, row: dict) -> None:
        await self.current.handlers.on_insert(row)

    async def update(self, row: dict, old: dict) -> None:
        await self.current.handlers.on_update(row, old)

    async def delete(self, old: dict) -> None:
        await self.current.handlers.on_delete(old)


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def clock():
    return ManualTaskScheduler(START)


@pytest.fixture
def store():
    return InMemoryRequestStore()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def feed():
    return FakeChangeFeed()


@pytest.fixture
def services(store, channel, feed, clock):
    from callbacks.app import build_services
    from callbacks.config import Settings

    config = Settings(
        supabase_url="https://project.supabase.co",
        supabase_service_role_key="service-key",
        telegram_bot_token="123:abc",
        telegram_workers_group_id=GROUP_CHAT_ID,
        timezone="UTC",
    )
    return build_services(config, store=store, channel=channel, feed=feed, scheduler=clock)


@pytest.fixture
async def record(store):
    return await store.create({
        "id": "R1",
        "name": "Ivan Petrov",
        "phone": "+79991234567",
        "service_type": "Fridge repair",
        "created_at": START,
    })


