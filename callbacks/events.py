"""Change events on the request table → notifications and cleanup.

Delivery is at-least-once and unordered across records, so every handler
is idempotent: a replayed insert finds the message identity already set
and does nothing; an update that does not change the status is ignored.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import ValidationError

from callbacks.conversation import ConversationEngine
from callbacks.models.request import CLOSED_STATUSES, CallbackRequest
from callbacks.notifications import NotificationDispatcher
from callbacks.realtime.feed import ChangeHandlers
from callbacks.reminders import ReminderScheduler

log = logging.getLogger("callbacks.events")


def _parse(row: dict[str, Any]) -> Optional[CallbackRequest]:
    try:
        return CallbackRequest.model_validate(row)
    except ValidationError as e:
        log.warning("Ignoring malformed request row %s: %s", row.get("id"), e.error_count())
        return None


class RequestEventHandler:
    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        reminders: ReminderScheduler,
        engine: ConversationEngine | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._reminders = reminders
        self._engine = engine

    @property
    def handlers(self) -> ChangeHandlers:
        return ChangeHandlers(
            on_insert=self.on_insert,
            on_update=self.on_update,
            on_delete=self.on_delete,
        )

    async def on_insert(self, row: dict[str, Any]) -> None:
        record = _parse(row)
        if record is None:
            return
        log.info("New request %s received", record.id)
        await self._dispatcher.notify_created(record)

    async def on_update(self, row: dict[str, Any], old_row: dict[str, Any]) -> None:
        record = _parse(row)
        if record is None:
            return
        # old_row only carries the primary key unless REPLICA IDENTITY FULL is set
        old_status = old_row.get("status")
        if old_status == record.status.value:
            return
        if record.status in CLOSED_STATUSES and old_status not in {s.value for s in CLOSED_STATUSES}:
            dropped = self._reminders.cancel_for_record(record.id)
            ended = 0
            if self._engine is not None:
                ended = await self._engine.end_sessions_for_record(
                    record.id, f"ℹ️ Request {record.id} was closed, dialogue ended",
                )
            log.info(
                "Request %s closed (%s): %d reminder(s), %d dialogue(s) dropped",
                record.id, record.status.value, dropped, ended,
            )

    async def on_delete(self, old_row: dict[str, Any]) -> None:
        record_id = old_row.get("id")
        if record_id is None:
            return
        record_id = str(record_id)
        self._reminders.cancel_for_record(record_id)
        if self._engine is not None:
            await self._engine.end_sessions_for_record(
                record_id, f"ℹ️ Request {record_id} was deleted, dialogue ended",
            )
        self._dispatcher.forget(record_id)
        log.info("Request %s deleted", record_id)
