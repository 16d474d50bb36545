"""Inline-button router — turns button presses into request transitions.

Button payloads have the shape ``{verb}_{record_id}``; the one compound verb
is ``schedule_pending``. Payloads are parsed once, at the boundary, into a
``ParsedAction`` and everything downstream dispatches on ``ActionVerb``.

Every press is acknowledged before any I/O so repeated taps do not queue
duplicate work. Presses on the same request are serialised by a per-record
lock. Problems found after the acknowledgement (unknown request, closed
request, store failure) go to the operator as a short direct message.
A button pressed on a direct message is taken off that message, and a
completed request drops out of every /schedule list that showed it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable

from callbacks.channels.base import ChannelError, InboundAction, NotificationChannel
from callbacks.conversation import ConversationEngine
from callbacks.locks import KeyedLock
from callbacks.models.request import CallbackRequest, RequestStatus
from callbacks.notifications import NotificationDispatcher
from callbacks.reminders import ReminderScheduler
from callbacks.store.base import RequestNotFound, RequestStore, StoreError
from callbacks.timers import TaskScheduler

log = logging.getLogger("callbacks.actions")


class ActionVerb(str, Enum):
    CONTACTED = "contacted"
    CANCEL = "cancel"
    SCHEDULE = "schedule"
    SCHEDULE_PENDING = "schedule_pending"
    COMPLETE = "complete"


@dataclass(frozen=True)
class ParsedAction:
    verb: ActionVerb
    record_id: str

    def encode(self) -> str:
        return f"{self.verb.value}_{self.record_id}"


def parse_action(data: str) -> ParsedAction | None:
    """Parse a button payload; None for anything malformed or unknown."""
    if not data:
        return None
    compound = f"{ActionVerb.SCHEDULE_PENDING.value}_"
    if data.startswith(compound):
        verb, record_id = ActionVerb.SCHEDULE_PENDING, data[len(compound):]
    else:
        prefix, sep, record_id = data.partition("_")
        if not sep:
            return None
        try:
            verb = ActionVerb(prefix)
        except ValueError:
            return None
        if verb is ActionVerb.SCHEDULE_PENDING:
            return None
    if not record_id:
        return None
    return ParsedAction(verb=verb, record_id=record_id)


ACK_TEXT = {
    ActionVerb.CONTACTED: "📞 Request assigned to you, check direct messages",
    ActionVerb.CANCEL: "❌ Cancelling request",
    ActionVerb.SCHEDULE: "📅 Scheduling request sent to direct messages",
    ActionVerb.SCHEDULE_PENDING: "📅 Visit scheduling started in direct messages",
    ActionVerb.COMPLETE: "✅ Marking request as completed",
}
UNKNOWN_ACTION = "❌ Unknown action"


class ActionRouter:
    def __init__(
        self,
        channel: NotificationChannel,
        store: RequestStore,
        dispatcher: NotificationDispatcher,
        engine: ConversationEngine,
        reminders: ReminderScheduler,
        clock: TaskScheduler,
        locks: KeyedLock | None = None,
    ) -> None:
        self._channel = channel
        self._store = store
        self._dispatcher = dispatcher
        self._engine = engine
        self._reminders = reminders
        self._clock = clock
        self._locks = locks or KeyedLock()
        self._handlers: dict[ActionVerb, Callable[[InboundAction, str], Awaitable[None]]] = {
            ActionVerb.CONTACTED: self._contacted,
            ActionVerb.CANCEL: self._cancel,
            ActionVerb.SCHEDULE: self._schedule,
            ActionVerb.SCHEDULE_PENDING: self._schedule,
            ActionVerb.COMPLETE: self._complete,
        }

    async def handle(self, action: InboundAction) -> None:
        parsed = parse_action(action.data)
        await self._acknowledge(action, ACK_TEXT[parsed.verb] if parsed else UNKNOWN_ACTION)
        if parsed is None:
            log.warning("Unknown action %r from %s", action.data, action.operator_id)
            return

        log.info(
            "Action %s on request %s by %s",
            parsed.verb.value, parsed.record_id, action.operator_name,
        )
        async with self._locks.hold(parsed.record_id):
            await self._remove_pressed_button(action)
            await self._handlers[parsed.verb](action, parsed.record_id)

    async def _acknowledge(self, action: InboundAction, text: str) -> None:
        try:
            await self._channel.acknowledge_action(action.interaction_id, text)
        except Exception as e:
            log.warning("Acknowledging %s failed: %s", action.interaction_id, e)

    async def _remove_pressed_button(self, action: InboundAction) -> None:
        """Take a used button off a direct message so it cannot be pressed twice."""
        ref = action.message
        if ref is None or action.keyboard is None or ref.chat_id != action.operator_id:
            return
        remaining = [
            [button for button in row if button.action_id != action.data]
            for row in action.keyboard
        ]
        try:
            await self._channel.edit_actions(ref, [row for row in remaining if row])
        except ChannelError as e:
            log.info("Could not remove button %s from %s: %s", action.data, ref, e)

    async def _reply(self, action: InboundAction, text: str) -> None:
        await self._dispatcher.send_direct(action.operator_id, text)

    async def _load(self, action: InboundAction, record_id: str) -> CallbackRequest | None:
        try:
            record = await self._store.get(record_id)
        except StoreError as e:
            log.error("Loading request %s failed: %s", record_id, e)
            await self._reply(action, "❌ An error occurred while processing the request")
            return None
        if record is None:
            await self._reply(action, "❌ Request not found")
        return record

    async def _mutate(
        self, action: InboundAction, record_id: str, fields: dict,
    ) -> CallbackRequest | None:
        try:
            return await self._store.update(record_id, fields)
        except RequestNotFound:
            await self._reply(action, "❌ Request not found")
        except StoreError as e:
            log.error("Updating request %s failed: %s", record_id, e)
            await self._reply(action, "❌ Could not update the request, please try again")
        return None

    # ── Verbs ────────────────────────────────────────────────────

    async def _contacted(self, action: InboundAction, record_id: str) -> None:
        record = await self._load(action, record_id)
        if record is None:
            return
        if record.is_closed:
            await self._reply(action, "❌ This request is already closed")
            return

        record = await self._mutate(action, record_id, {
            "status": RequestStatus.CONTACTED,
            "assigned_to": action.operator_name,
            "assigned_user_id": action.operator_id,
        })
        if record is None:
            return
        await self._dispatcher.notify_status_changed(
            record, f"📞 Contacted the client ({action.operator_name}), request assigned", [],
        )
        await self._engine.start_info_collection(action.operator_id, action.operator_name, record)

    async def _cancel(self, action: InboundAction, record_id: str) -> None:
        record = await self._mutate(action, record_id, {"status": RequestStatus.CANCELLED})
        if record is None:
            return
        self._reminders.cancel_for_record(record_id)
        await self._engine.end_sessions_for_record(
            record_id, f"❌ Request {record_id} was cancelled, dialogue closed",
        )
        await self._dispatcher.notify_status_changed(
            record, f"❌ Request cancelled ({action.operator_name})", [],
        )
        await self._engine.refresh_views_for_record(record_id)

    async def _schedule(self, action: InboundAction, record_id: str) -> None:
        record = await self._load(action, record_id)
        if record is None:
            return
        if record.is_closed:
            await self._reply(action, "❌ This request is already closed")
            return
        if not record.has_collected_info:
            await self._reply(action, "❌ Collect the client's details before scheduling")
            return

        if record.status != RequestStatus.IN_PROGRESS:
            record = await self._mutate(action, record_id, {"status": RequestStatus.IN_PROGRESS})
            if record is None:
                return
        await self._engine.start_scheduling(action.operator_id, action.operator_name, record)
        await self._dispatcher.notify_status_changed(
            record, f"📅 Visit scheduling started ({action.operator_name})", [],
        )

    async def _complete(self, action: InboundAction, record_id: str) -> None:
        record = await self._load(action, record_id)
        if record is None:
            return
        if record.status == RequestStatus.COMPLETED:
            await self._reply(action, f"ℹ️ Request {record_id} is already completed")
            await self._engine.refresh_views_for_record(record_id)
            return

        now: datetime = self._clock.now()
        record = await self._mutate(action, record_id, {
            "status": RequestStatus.COMPLETED,
            "completed_at": now,
            "completed_by": action.operator_name,
        })
        if record is None:
            return
        self._reminders.cancel_for_record(record_id)
        await self._engine.end_sessions_for_record(
            record_id, f"✅ Request {record_id} was completed, dialogue closed",
        )
        await self._dispatcher.notify_status_changed(
            record, f"✅ Request completed ({action.operator_name})", [],
        )
        await self._engine.refresh_views_for_record(record_id)
